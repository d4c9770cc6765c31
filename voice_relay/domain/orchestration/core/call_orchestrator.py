from typing import Dict, Any, Optional, Protocol, Callable, Awaitable
import asyncio
import structlog

from voice_relay.application.websocket.schema.events import (
    BaseEvent, EventType, SetupEvent, PromptEvent, InterruptEvent, ReadyEvent
)
from voice_relay.domain.actions.action_executor import ActionExecutor
from voice_relay.domain.context.context_assembler import KnowledgePolicy
from voice_relay.domain.context.knowledge_cache import KnowledgeCache
from voice_relay.domain.context.state.session_store import SessionStore
from voice_relay.domain.errors import ConfigurationError, UpstreamError, StateError, VoiceRelayError
from voice_relay.domain.extraction.variable_extractor import VariableExtractor
from voice_relay.domain.models.session import (
    Session, SessionStatus, TurnRole, LLMSettings, TelephonyCredentials, ConversationTurn
)
from voice_relay.domain.models.workflow import Workflow
from voice_relay.domain.orchestration.termination import TerminationCoordinator, TelephonyClient
from voice_relay.domain.streaming.streaming_handler import (
    StreamingCompletionDriver, TokenStream, EventSender
)
from voice_relay.infrastructure.observability.logging import conversation_logger
from .turn_workflow import TurnWorkflow

logger = structlog.get_logger(__name__)


class WorkflowRepository(Protocol):
    async def get_active_workflow(self, agent_id: str) -> Optional[Workflow]:
        ...


class TurnHandle:
    """In-flight prompt turn for one session"""

    def __init__(self, stream: TokenStream, history_start: int = 0):
        self.stream = stream
        self.history_start = history_start
        self.task: Optional[asyncio.Task] = None
        self.interrupted = False
        self.spoken: Optional[str] = None

    def reply(self, session: Session) -> Optional[ConversationTurn]:
        """The assistant reply recorded by this turn, if any yet"""
        for entry in session.history[self.history_start:]:
            if entry.role == TurnRole.ASSISTANT:
                return entry
        return None

    def mark_reply_interrupted(self, session: Session) -> bool:
        """Flag the recorded reply as cut off, trimmed to what was heard"""
        reply = self.reply(session)
        if reply is None:
            return False
        reply.interrupted = True
        if self.spoken:
            reply.content = self.spoken
        return True


class CallOrchestrator:
    """Session orchestration engine.

    Owns the session store and the in-flight turn of every session. Events for
    one session are expected one at a time in arrival order; interrupts and
    closes may arrive while a turn is running and cancel it.
    """

    def __init__(
        self,
        sender: EventSender,
        workflow_repository: WorkflowRepository,
        knowledge_cache: KnowledgeCache,
        completion_driver: StreamingCompletionDriver,
        variable_extractor: VariableExtractor,
        action_executor: ActionExecutor,
        telephony_client: TelephonyClient,
        default_llm: LLMSettings,
        system_prompt: str = "",
        default_agent_id: str = "default",
        credentials: Optional[TelephonyCredentials] = None,
        knowledge_policy: str = KnowledgePolicy.ALL,
        grace_seconds: float = 3.0,
        telephony_timeout: float = 10.0,
        workflow_timeout: float = 10.0,
        session_store: Optional[SessionStore] = None,
        on_session_closed: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.sender = sender
        self.workflow_repository = workflow_repository
        self.knowledge_cache = knowledge_cache
        self.default_llm = default_llm
        self.system_prompt = system_prompt
        self.default_agent_id = default_agent_id
        self.credentials = credentials or TelephonyCredentials()
        self.workflow_timeout = workflow_timeout
        self.session_store = session_store or SessionStore()

        self.termination = TerminationCoordinator(
            session_store=self.session_store,
            action_executor=action_executor,
            completion_driver=completion_driver,
            telephony_client=telephony_client,
            grace_seconds=grace_seconds,
            telephony_timeout=telephony_timeout,
            knowledge_policy=knowledge_policy,
            on_closed=on_session_closed,
        )
        self.turn_graph = TurnWorkflow(
            completion_driver=completion_driver,
            variable_extractor=variable_extractor,
            termination=self.termination,
            knowledge_policy=knowledge_policy,
        ).build()

        self._turns: Dict[str, TurnHandle] = {}
        self._handlers: Dict[EventType, Callable[[Optional[str], Any], Awaitable[Any]]] = {
            EventType.SETUP: self._on_setup,
            EventType.PROMPT: self.handle_prompt,
            EventType.INTERRUPT: self.handle_interrupt,
            EventType.DTMF: self._on_ignored,
            EventType.INFO: self._on_ignored,
        }
        self.running = False

    async def start(self):
        self.running = True
        logger.info("Call orchestrator started")

    async def stop(self):
        """Cancel in-flight turns and pending closes, drop every session"""
        self.running = False
        turns = list(self._turns.values())
        for turn in turns:
            if turn.task is not None and not turn.task.done():
                turn.task.cancel()
        await asyncio.gather(*(t.task for t in turns if t.task is not None), return_exceptions=True)
        self._turns.clear()

        await self.termination.stop()
        sessions = await self.session_store.clear()
        for session in sessions:
            if session.status != SessionStatus.CLOSED:
                session.transition_to(SessionStatus.CLOSED)
        logger.info("Call orchestrator stopped", released_sessions=len(sessions))

    async def dispatch(self, session_id: Optional[str], event: BaseEvent):
        """Route an inbound event to its handler"""
        handler = self._handlers.get(EventType(event.type))
        if handler is None:
            logger.warning("No handler for event", event_type=event.type, session_id=session_id)
            return None
        return await handler(session_id, event)

    async def _on_setup(self, session_id: Optional[str], event: SetupEvent) -> Session:
        return await self.handle_setup(event)

    async def _on_ignored(self, session_id: Optional[str], event: BaseEvent):
        logger.debug("Ignoring relay event", event_type=event.type, session_id=session_id)

    async def handle_setup(self, event: SetupEvent) -> Session:
        """Create the session, load its workflow and prefetch knowledge"""

        agent_id = event.agent_id or self.default_agent_id
        session_id = event.session_id

        try:
            workflow = await asyncio.wait_for(
                self.workflow_repository.get_active_workflow(agent_id),
                timeout=self.workflow_timeout
            )
        except asyncio.TimeoutError as e:
            raise UpstreamError("Workflow lookup timed out", service="workflow",
                                session_id=session_id) from e

        if workflow is None:
            raise ConfigurationError(f"No active workflow for agent {agent_id!r}",
                                     session_id=session_id)

        params = event.custom_parameters
        llm = LLMSettings(
            model=params.get("model") or self.default_llm.model,
            temperature=float(params.get("temperature", self.default_llm.temperature)),
            voice=params.get("voice") or self.default_llm.voice,
        )
        session = Session(
            session_id=session_id,
            agent_id=agent_id,
            workflow=workflow,
            system_prompt=self.system_prompt,
            llm=llm,
            credentials=self.credentials,
        )
        entry = workflow.entry_node()
        session.current_node_id = entry.id if entry else None
        session.add_turn(TurnRole.SYSTEM, self.system_prompt)

        await self.session_store.create(session)
        session.knowledge_chunks = await self.knowledge_cache.prefetch_knowledge(agent_id)

        previous = session.transition_to(SessionStatus.ACTIVE)
        conversation_logger.log_status_change(session_id, previous.value, session.status.value)

        await self.sender.send_event(
            session_id,
            ReadyEvent(session_id=session_id, node_id=session.current_node_id)
        )
        return session

    async def handle_prompt(self, session_id: Optional[str], event: PromptEvent):
        """Run one turn. Exactly one terminal event is sent whatever happens,
        unless the transport itself goes away."""

        stream = TokenStream(self.sender, session_id)
        session = self.session_store.get(session_id)

        if session is None:
            await stream.fail(f"Unknown session: {session_id}")
            return
        if not session.is_active:
            logger.info("Prompt ignored, session not active",
                        session_id=session_id, status=session.status.value)
            await stream.finish()
            return
        if not event.text.strip():
            await stream.finish()
            return

        turn = TurnHandle(stream, history_start=len(session.history))
        turn.task = asyncio.create_task(self._run_turn(session, event.text, turn))
        self._turns[session_id] = turn

        try:
            await turn.task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not turn.interrupted or (current is not None and current.cancelling()):
                raise
            logger.info("Turn interrupted", session_id=session_id)
        finally:
            if self._turns.get(session_id) is turn:
                del self._turns[session_id]

    async def _run_turn(self, session: Session, utterance: str, turn: TurnHandle):
        stream = turn.stream

        try:
            await self.turn_graph.ainvoke(TurnWorkflow.initial_state(session, stream, utterance))
        except asyncio.CancelledError:
            if turn.interrupted and not turn.mark_reply_interrupted(session):
                spoken = turn.spoken or stream.text
                if spoken:
                    session.add_turn(TurnRole.ASSISTANT, spoken, interrupted=True)
            if turn.interrupted:
                await stream.finish()
            raise
        except UpstreamError as e:
            logger.error("Turn failed upstream", session_id=session.session_id,
                         service=e.service, error=e.message)
            session.log_error(e.message, {"service": e.service})
            if not stream.finished:
                await stream.fail(e.message)
        except VoiceRelayError as e:
            logger.error("Turn rejected", session_id=session.session_id, error=e.message)
            session.log_error(e.message)
            await stream.fail(e.message)
        except Exception as e:
            logger.exception("Turn failed", session_id=session.session_id)
            session.log_error(str(e))
            await stream.fail("Something went wrong while answering.")

        # Barge-in during playback of a reply that had already streamed
        if turn.interrupted:
            turn.mark_reply_interrupted(session)

        if not stream.finished:
            await stream.finish()

    async def _cancel_turn(self, session_id: str, interrupted: bool, spoken: Optional[str] = None) -> bool:
        turn = self._turns.get(session_id)
        if turn is None or turn.task is None or turn.task.done():
            return False

        turn.interrupted = interrupted
        turn.spoken = spoken
        turn.task.cancel()
        await asyncio.gather(turn.task, return_exceptions=True)
        return True

    async def handle_interrupt(self, session_id: Optional[str], event: InterruptEvent):
        """Cancel the in-flight completion; the turn still sends its terminal event.

        Once the reply has fully streamed the turn is left to extract and
        advance, and the interrupt only marks the recorded reply.
        """

        session = self.session_store.get(session_id)
        if session is None or not session.is_active:
            logger.debug("Interrupt ignored", session_id=session_id)
            return False

        turn = self._turns.get(session_id)
        in_playback = turn is not None and turn.stream.finished
        if in_playback and turn.task is not None and not turn.task.done():
            turn.interrupted = True
            turn.spoken = event.utterance_until_interrupt
            turn.mark_reply_interrupted(session)
            logger.info("Reply interrupted during playback", session_id=session_id)
            return True

        cancelled = await self._cancel_turn(
            session_id, interrupted=True, spoken=event.utterance_until_interrupt
        )
        if not cancelled:
            logger.debug("Interrupt with no turn in flight", session_id=session_id)
        return cancelled

    async def end_call(self, session_id: str):
        """Explicit end-call request from outside the conversation"""

        session = self.session_store.require(session_id)
        if not session.is_active:
            raise StateError(f"Session {session_id} is {session.status.value}", session_id=session_id)

        await self._cancel_turn(session_id, interrupted=True)

        node = session.current_node
        stream = TokenStream(self.sender, session_id)
        await self.termination.terminate(session, stream, node if node is not None and node.is_terminal else None)

    async def close_session(self, session_id: Optional[str]):
        """Transport closed: drop the in-flight turn and release the session"""

        if session_id is None:
            return
        await self._cancel_turn(session_id, interrupted=False)
        session = await self.termination.release(session_id)
        if session is not None:
            logger.info("Session closed by transport", session_id=session_id,
                        turns=len(session.history))

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.session_store.get(session_id)

    def has_turn_in_flight(self, session_id: str) -> bool:
        turn = self._turns.get(session_id)
        return turn is not None and turn.task is not None and not turn.task.done()
