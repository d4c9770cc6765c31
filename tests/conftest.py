import asyncio
from typing import Any, Dict, List, Optional

import pytest

from voice_relay.application.websocket.schema.events import BaseEvent
from voice_relay.domain.actions.action_executor import ActionExecutor
from voice_relay.domain.actions.action_registry import ActionRegistry
from voice_relay.domain.context.context_assembler import KnowledgePolicy
from voice_relay.domain.context.knowledge_cache import KnowledgeCache
from voice_relay.domain.extraction.variable_extractor import VariableExtractor
from voice_relay.domain.models.session import KnowledgeChunk, LLMSettings, TelephonyCredentials
from voice_relay.domain.models.workflow import Workflow
from voice_relay.domain.orchestration.core.call_orchestrator import CallOrchestrator
from voice_relay.domain.streaming.streaming_handler import StreamingCompletionDriver
from voice_relay.infrastructure.repository.workflow_repository import InMemoryWorkflowRepository


class FakeSender:
    """Records outbound events in send order"""

    def __init__(self):
        self.sent: List[tuple] = []

    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        self.sent.append((session_id, event.to_wire()))
        return True

    def events(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [wire for sid, wire in self.sent if session_id is None or sid == session_id]

    def terminals(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [e for e in self.events(session_id) if e["type"] == "text" and e["last"]]

    def tokens(self, session_id: Optional[str] = None) -> List[str]:
        return [e["token"] for e in self.events(session_id) if e["type"] == "text" and not e["last"]]

    def clear(self):
        self.sent.clear()


class FakeCompletionClient:
    """Streams canned tokens; complete() returns a canned extraction reply"""

    def __init__(
        self,
        tokens: Optional[List[str]] = None,
        completion: str = "{}",
        error: Optional[Exception] = None,
        block_after: Optional[int] = None,
        complete_delay: float = 0.0,
    ):
        self.tokens = tokens if tokens is not None else ["Hello", " there", "!"]
        self.completion = completion
        self.error = error
        self.block_after = block_after
        self.complete_delay = complete_delay
        self.stream_calls: List[List[Dict[str, str]]] = []
        self.complete_calls: List[List[Dict[str, str]]] = []
        self.release = asyncio.Event()

    async def stream(self, messages, llm):
        self.stream_calls.append(messages)
        for i, token in enumerate(self.tokens):
            if self.block_after is not None and i == self.block_after:
                await self.release.wait()
            yield token
        if self.error is not None:
            raise self.error

    async def complete(self, messages, llm):
        self.complete_calls.append(messages)
        if self.complete_delay:
            await asyncio.sleep(self.complete_delay)
        if isinstance(self.completion, Exception):
            raise self.completion
        return self.completion


class FakeVectorClient:
    """Counts upstream calls"""

    def __init__(self, chunks: Optional[List[KnowledgeChunk]] = None, delay: float = 0.0,
                 embed_error: Optional[Exception] = None, query_error: Optional[Exception] = None):
        self.chunks = chunks if chunks is not None else [KnowledgeChunk(text="We open at nine.")]
        self.delay = delay
        self.embed_error = embed_error
        self.query_error = query_error
        self.embed_calls: List[str] = []
        self.query_calls: List[tuple] = []

    async def embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.embed_error is not None:
            raise self.embed_error
        return [float(len(text)), 1.0]

    async def query(self, vector, top_k, filter=None):
        self.query_calls.append((vector, top_k, filter))
        if self.query_error is not None:
            raise self.query_error
        return list(self.chunks)


class FakeTelephonyClient:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.ended: List[str] = []

    async def end_call(self, call_sid: str, credentials: TelephonyCredentials) -> None:
        self.ended.append(call_sid)
        if self.error is not None:
            raise self.error


def make_workflow(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]], agent_id: str = "agent-1") -> Workflow:
    return Workflow.from_definition({
        "id": f"wf-{agent_id}",
        "agent_id": agent_id,
        "is_active": True,
        "nodes": nodes,
        "edges": edges,
    })


def linear_workflow(agent_id: str = "agent-1", closing_message: Optional[str] = "Goodbye!",
                    actions: Optional[List[str]] = None) -> Workflow:
    """A(entry) -> B -> C(end_call)"""
    end_data: Dict[str, Any] = {"actions": actions or []}
    if closing_message:
        end_data["message"] = closing_message
    return make_workflow(
        nodes=[
            {"id": "A", "type": "conversation", "name": "Greeting", "data": {"prompt": "Greet the caller."}},
            {"id": "B", "type": "conversation", "name": "Details",
             "data": {"prompt": "Ask for details.", "extract_variables": {"output": ["name", "date"]}}},
            {"id": "C", "type": "end_call", "name": "Goodbye", "data": end_data},
        ],
        edges=[
            {"source": "A", "target": "B", "condition": {"type": "direct"}},
            {"source": "B", "target": "C", "condition": {"type": "direct"}},
        ],
        agent_id=agent_id,
    )


class Engine:
    """Orchestrator plus its fakes"""

    def __init__(self, workflow: Optional[Workflow] = None, completion: Optional[FakeCompletionClient] = None,
                 vector: Optional[FakeVectorClient] = None, telephony: Optional[FakeTelephonyClient] = None,
                 grace_seconds: float = 0.01, sender=None, knowledge_policy: str = KnowledgePolicy.ALL):
        self.sender = sender or FakeSender()
        self.completion = completion or FakeCompletionClient()
        self.vector = vector or FakeVectorClient()
        self.telephony = telephony or FakeTelephonyClient()
        self.registry = ActionRegistry()
        self.action_calls: List[str] = []
        self.closed: List[str] = []

        async def crm_sync(session, params):
            self.action_calls.append("crm_sync")
            return {"synced": True}

        async def on_closed(session_id: str):
            self.closed.append(session_id)

        self.registry.register_action("crm_sync", crm_sync)
        self.repository = InMemoryWorkflowRepository({"agent-1": workflow or linear_workflow()})
        self.orchestrator = CallOrchestrator(
            sender=self.sender,
            workflow_repository=self.repository,
            knowledge_cache=KnowledgeCache(self.vector),
            completion_driver=StreamingCompletionDriver(self.completion, token_timeout=1.0, total_timeout=2.0),
            variable_extractor=VariableExtractor(self.completion, model="test-model", timeout=1.0),
            action_executor=ActionExecutor(self.registry, timeout=1.0),
            telephony_client=self.telephony,
            default_llm=LLMSettings(model="test-model"),
            system_prompt="You are a helpful assistant.",
            default_agent_id="agent-1",
            grace_seconds=grace_seconds,
            knowledge_policy=knowledge_policy,
            telephony_timeout=1.0,
            on_session_closed=on_closed,
        )


@pytest.fixture
def engine():
    return Engine()
