from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional, Union
import inspect
from datetime import datetime, timezone
from langchain_openai import OpenAIEmbeddings
import structlog

from voice_relay.config import settings
from voice_relay.application.api.route.calls import router as calls_router
from voice_relay.application.websocket.connection_manager import ConnectionManager
from voice_relay.application.websocket.ws_server import router as ws_router, connection_stats
from voice_relay.domain.actions.action_executor import ActionExecutor
from voice_relay.domain.actions.action_registry import ActionRegistry
from voice_relay.domain.context.knowledge_cache import KnowledgeCache
from voice_relay.domain.context.memory.cache_memory_store import CacheMemoryStore
from voice_relay.domain.extraction.variable_extractor import VariableExtractor
from voice_relay.domain.models.session import LLMSettings, TelephonyCredentials
from voice_relay.domain.orchestration.core.call_orchestrator import CallOrchestrator
from voice_relay.domain.streaming.streaming_handler import StreamingCompletionDriver
from voice_relay.infrastructure.llm.openai_client import OpenAICompletionClient
from voice_relay.infrastructure.observability.logging import setup_logging
from voice_relay.infrastructure.repository.workflow_repository import JsonWorkflowRepository
from voice_relay.infrastructure.telephony.twilio_client import TwilioTelephonyClient
from voice_relay.infrastructure.vector.vector_search import VectorSearchClient, load_knowledge_store

logger = structlog.get_logger(__name__)

EngineFactory = Callable[[ConnectionManager], Union[CallOrchestrator, Awaitable[CallOrchestrator]]]


async def build_orchestrator(connection_manager: ConnectionManager) -> CallOrchestrator:
    """Wire the engine against OpenAI, the knowledge store and Twilio"""

    completion_client = OpenAICompletionClient(
        api_key=settings.OPENAI_API_KEY,
        request_timeout=settings.COMPLETION_TIMEOUT,
    )
    embeddings = OpenAIEmbeddings(model=settings.EMBEDDING_MODEL, api_key=settings.OPENAI_API_KEY)
    vector_store = await load_knowledge_store(settings.KNOWLEDGE_FILE, embeddings)

    knowledge_cache = KnowledgeCache(
        vector_client=VectorSearchClient(embeddings, vector_store),
        store=CacheMemoryStore(
            default_ttl=settings.KNOWLEDGE_CACHE_TTL_SECONDS,
            max_entries=settings.KNOWLEDGE_CACHE_MAX_ENTRIES,
        ),
        probe_query=settings.KNOWLEDGE_PROBE_QUERY,
        top_k=settings.KNOWLEDGE_TOP_K,
        embedding_timeout=settings.EMBEDDING_TIMEOUT,
        query_timeout=settings.VECTOR_QUERY_TIMEOUT,
    )
    credentials = TelephonyCredentials(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
    )

    return CallOrchestrator(
        sender=connection_manager,
        workflow_repository=JsonWorkflowRepository(settings.WORKFLOWS_FILE),
        knowledge_cache=knowledge_cache,
        completion_driver=StreamingCompletionDriver(
            completion_client,
            token_timeout=settings.TOKEN_IDLE_TIMEOUT,
            total_timeout=settings.COMPLETION_TIMEOUT,
        ),
        variable_extractor=VariableExtractor(
            completion_client,
            model=settings.EXTRACTION_MODEL,
            timeout=settings.EXTRACTION_TIMEOUT,
        ),
        action_executor=ActionExecutor(ActionRegistry(), timeout=settings.ACTION_TIMEOUT),
        telephony_client=TwilioTelephonyClient(credentials),
        default_llm=LLMSettings(
            model=settings.LLM_MODEL,
            temperature=settings.LLM_TEMPERATURE,
            voice=settings.TTS_VOICE,
        ),
        system_prompt=settings.SYSTEM_PROMPT,
        default_agent_id=settings.DEFAULT_AGENT_ID,
        credentials=credentials,
        knowledge_policy=settings.KNOWLEDGE_POLICY,
        grace_seconds=settings.TERMINATION_GRACE_SECONDS,
        telephony_timeout=settings.TELEPHONY_TIMEOUT,
        on_session_closed=connection_manager.disconnect,
    )


def create_app(engine_factory: Optional[EngineFactory] = None) -> FastAPI:
    """Build the relay application.

    engine_factory receives the ConnectionManager and returns the
    CallOrchestrator (or an awaitable of one); it defaults to the production
    wiring.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

        connection_manager = ConnectionManager()
        factory = engine_factory or build_orchestrator
        orchestrator = factory(connection_manager)
        if inspect.isawaitable(orchestrator):
            orchestrator = await orchestrator

        app.state.connection_manager = connection_manager
        app.state.orchestrator = orchestrator
        await orchestrator.start()
        logger.info("Relay server started", websocket_url=settings.websocket_url)

        yield

        for session_id in list(connection_manager.active_connections.keys()):
            await connection_manager.disconnect(session_id)
        await orchestrator.stop()
        logger.info("Relay server shutdown")

    app = FastAPI(title="Voice Relay", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ws_router)
    app.include_router(calls_router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        orchestrator: CallOrchestrator = app.state.orchestrator
        return {
            "status": "healthy",
            **connection_stats(app.state.connection_manager),
            "active_sessions": len(orchestrator.session_store),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
