from typing import Dict, List, Any, Optional, Protocol, AsyncIterator
import asyncio
import structlog

from voice_relay.application.websocket.schema.events import BaseEvent, TextTokenEvent, ErrorEvent
from voice_relay.domain.errors import StateError, UpstreamError
from voice_relay.domain.models.session import Session, LLMSettings

logger = structlog.get_logger(__name__)


class EventSender(Protocol):
    async def send_event(self, session_id: str, event: BaseEvent) -> bool:
        ...


class CompletionClient(Protocol):
    """Chat completion collaborator"""

    def stream(self, messages: List[Dict[str, str]], llm: LLMSettings) -> AsyncIterator[str]:
        ...

    async def complete(self, messages: List[Dict[str, str]], llm: LLMSettings) -> str:
        ...


class TokenStream:
    """Ordered token sink for one turn.

    Guarantees a single terminal event: finish() is idempotent and the engine
    calls it on every exit path.
    """

    def __init__(self, sender: EventSender, session_id: str):
        self.sender = sender
        self.session_id = session_id
        self.tokens: List[str] = []
        self.finished = False
        self.end_call = False
        self.failed = False

    @property
    def text(self) -> str:
        return "".join(self.tokens)

    async def send_token(self, token: str):
        if self.finished:
            raise StateError("Token sent after the terminal event", session_id=self.session_id)
        if not token:
            return

        self.tokens.append(token)
        await self.sender.send_event(self.session_id, TextTokenEvent(token=token, last=False))

    async def send_text(self, text: str, end_call: bool = False):
        """Send a complete message as one token followed by the terminal event"""
        await self.send_token(text)
        await self.finish(end_call=end_call)

    async def finish(self, end_call: bool = False) -> bool:
        if self.finished:
            return False

        self.finished = True
        self.end_call = end_call
        await self.sender.send_event(
            self.session_id,
            TextTokenEvent(token="", last=True, end_call=True if end_call else None)
        )
        return True

    async def fail(self, message: str, end_call: bool = False):
        """Report a turn failure and close out the turn"""
        self.failed = True
        if not self.finished:
            await self.sender.send_event(self.session_id, ErrorEvent(message=message))
        await self.finish(end_call=end_call)


async def _aclose(iterator: Any):
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        try:
            await aclose()
        except Exception as e:
            logger.debug("Error closing completion stream", error=str(e))


class StreamingCompletionDriver:
    """Drives one streaming completion per turn into a TokenStream"""

    def __init__(
        self,
        completion_client: CompletionClient,
        token_timeout: float = 15.0,
        total_timeout: float = 60.0,
    ):
        self.completion_client = completion_client
        self.token_timeout = token_timeout
        self.total_timeout = total_timeout

    async def stream_completion(
        self,
        session: Session,
        messages: List[Dict[str, str]],
        stream: TokenStream,
        end_call: bool = False,
    ) -> str:
        """Stream tokens in generation order, then the terminal event.

        On upstream failure or timeout an error event and the terminal event
        are sent before UpstreamError is raised.
        """

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.total_timeout
        iterator = self.completion_client.stream(messages, session.llm).__aiter__()

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                try:
                    token = await asyncio.wait_for(
                        iterator.__anext__(),
                        timeout=min(self.token_timeout, remaining)
                    )
                except StopAsyncIteration:
                    break
                await stream.send_token(token)

        except asyncio.TimeoutError as e:
            logger.error("Completion timed out", session_id=session.session_id,
                         tokens=len(stream.tokens))
            await stream.fail("The assistant took too long to respond.", end_call=end_call)
            raise UpstreamError("Completion timed out", service="completion",
                                session_id=session.session_id) from e
        except StateError:
            raise
        except Exception as e:
            logger.error("Completion failed", session_id=session.session_id, error=str(e))
            await stream.fail("The assistant is unavailable right now.", end_call=end_call)
            raise UpstreamError(f"Completion failed: {e}", service="completion",
                                session_id=session.session_id) from e
        finally:
            await _aclose(iterator)

        await stream.finish(end_call=end_call)
        logger.debug("Completion streamed", session_id=session.session_id,
                     tokens=len(stream.tokens))
        return stream.text
