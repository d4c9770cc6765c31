from typing import Dict, Optional, Protocol, Callable, Awaitable
import asyncio
import structlog

from voice_relay.domain.actions.action_executor import ActionExecutor
from voice_relay.domain.context.context_assembler import build_prompt, build_messages, KnowledgePolicy
from voice_relay.domain.context.state.session_store import SessionStore
from voice_relay.domain.errors import UpstreamError
from voice_relay.domain.models.session import Session, SessionStatus, TelephonyCredentials, TurnRole
from voice_relay.domain.models.workflow import BaseNode, NodeType
from voice_relay.domain.streaming.streaming_handler import StreamingCompletionDriver, TokenStream
from voice_relay.infrastructure.observability.logging import conversation_logger

logger = structlog.get_logger(__name__)

DEFAULT_GOODBYE = "Thank you for calling. Goodbye."


class TelephonyClient(Protocol):
    async def end_call(self, call_sid: str, credentials: TelephonyCredentials) -> None:
        ...


class TerminationCoordinator:
    """Runs the end-of-call protocol: active -> terminating -> closed"""

    def __init__(
        self,
        session_store: SessionStore,
        action_executor: ActionExecutor,
        completion_driver: StreamingCompletionDriver,
        telephony_client: TelephonyClient,
        grace_seconds: float = 3.0,
        telephony_timeout: float = 10.0,
        knowledge_policy: str = KnowledgePolicy.ALL,
        on_closed: Optional[Callable[[str], Awaitable[None]]] = None,
    ):
        self.session_store = session_store
        self.action_executor = action_executor
        self.completion_driver = completion_driver
        self.telephony_client = telephony_client
        self.grace_seconds = grace_seconds
        self.telephony_timeout = telephony_timeout
        self.on_closed = on_closed
        self.knowledge_policy = knowledge_policy
        self._close_tasks: Dict[str, asyncio.Task] = {}

    async def terminate(self, session: Session, stream: TokenStream, node: Optional[BaseNode] = None):
        """Execute actions, speak the closing message, hang up, schedule release"""

        previous = session.transition_to(SessionStatus.TERMINATING)
        conversation_logger.log_status_change(session.session_id, previous.value, session.status.value)

        if node is not None:
            await self.action_executor.execute_actions(session, node.actions)

        await self._emit_closing_message(session, stream, node)
        await self._hang_up(session)
        self.schedule_close(session.session_id)

    async def _emit_closing_message(self, session: Session, stream: TokenStream, node: Optional[BaseNode]):
        message = node.config.message if node is not None and node.type == NodeType.END_CALL else None

        try:
            if message:
                await stream.send_text(message, end_call=True)
            elif node is not None and node.instruction:
                prompt = build_prompt(
                    session.system_prompt, node, session.variables, session.knowledge_chunks,
                    policy=self.knowledge_policy,
                )
                await self.completion_driver.stream_completion(
                    session, build_messages(prompt, session.history), stream, end_call=True
                )
            else:
                await stream.send_text(DEFAULT_GOODBYE, end_call=True)
        except UpstreamError as e:
            session.log_error(e.message, {"phase": "closing_message"})
        finally:
            if not stream.finished:
                await stream.finish(end_call=True)

        if stream.text:
            session.add_turn(TurnRole.ASSISTANT, stream.text)

    async def _hang_up(self, session: Session):
        try:
            await asyncio.wait_for(
                self.telephony_client.end_call(session.session_id, session.credentials),
                timeout=self.telephony_timeout
            )
            logger.info("Hangup requested", session_id=session.session_id)
        except asyncio.TimeoutError:
            logger.error("Hangup request timed out", session_id=session.session_id)
        except Exception as e:
            logger.error("Hangup request failed", session_id=session.session_id, error=str(e))

    def schedule_close(self, session_id: str):
        """Release the session once the closing message had time to play"""
        if session_id in self._close_tasks:
            return
        task = asyncio.create_task(self._close_after_grace(session_id))
        self._close_tasks[session_id] = task
        task.add_done_callback(lambda _t: self._close_tasks.pop(session_id, None))

    def has_pending_close(self, session_id: str) -> bool:
        return session_id in self._close_tasks

    async def _close_after_grace(self, session_id: str):
        await asyncio.sleep(self.grace_seconds)
        await self.release(session_id)
        if self.on_closed is not None:
            await self.on_closed(session_id)

    async def release(self, session_id: str) -> Optional[Session]:
        """Remove the session from the store and mark it closed"""
        session = await self.session_store.remove(session_id)
        if session is not None and session.status != SessionStatus.CLOSED:
            previous = session.transition_to(SessionStatus.CLOSED)
            conversation_logger.log_status_change(session_id, previous.value, SessionStatus.CLOSED.value)
        return session

    async def stop(self):
        tasks = list(self._close_tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._close_tasks.clear()
