from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from typing import Any, Dict, Optional, Set
import asyncio
import json
import structlog
from structlog.contextvars import bind_contextvars

from .connection_manager import ConnectionManager
from .schema.events import (
    BaseEvent, InterruptEvent, SetupEvent, PromptEvent,
    ErrorEvent, TextTokenEvent, inbound_event_adapter
)
from voice_relay.domain.errors import ProtocolError, VoiceRelayError
from voice_relay.domain.orchestration.core.call_orchestrator import CallOrchestrator

logger = structlog.get_logger(__name__)

router = APIRouter()


def parse_event(raw: str) -> BaseEvent:
    """Decode one relay frame into a typed inbound event"""
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Malformed JSON frame: {e}") from e

    if not isinstance(data, dict):
        raise ProtocolError("Relay frame must be a JSON object")

    try:
        return inbound_event_adapter.validate_python(data)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {data.get('type')!r} event: {e.error_count()} errors") from e


class RelayConnection:
    """Per-socket state: the session id once setup has been seen"""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.session_id: Optional[str] = None
        self.queue: "asyncio.Queue[BaseEvent]" = asyncio.Queue()


async def _reject_before_setup(connection: RelayConnection, event: BaseEvent):
    logger.warning("Event before setup", event_type=event.type)
    if isinstance(event, PromptEvent):
        await connection.websocket.send_json(ErrorEvent(message="Session has not been set up").to_wire())
        await connection.websocket.send_json(TextTokenEvent(token="", last=True).to_wire())


async def _process_events(
    connection: RelayConnection,
    orchestrator: CallOrchestrator,
    connection_manager: ConnectionManager,
):
    """Handle queued events one at a time so a session never runs two turns at once"""

    while True:
        event = await connection.queue.get()
        try:
            if isinstance(event, SetupEvent):
                connection.session_id = event.session_id
                bind_contextvars(session_id=event.session_id)
                await connection_manager.register(
                    event.session_id, connection.websocket, event.agent_id
                )
                await orchestrator.handle_setup(event)
            elif connection.session_id is None:
                await _reject_before_setup(connection, event)
            else:
                await orchestrator.dispatch(connection.session_id, event)

        except VoiceRelayError as e:
            logger.error("Event rejected", event_type=event.type, error=e.message,
                         error_type=type(e).__name__)
            if connection.session_id is not None:
                await connection_manager.send_error(connection.session_id, e.message)
        except Exception as e:
            logger.exception("Error processing event", event_type=event.type)
            if connection.session_id is not None:
                await connection_manager.send_error(
                    connection.session_id, f"Error processing event: {str(e)}"
                )
        finally:
            connection.queue.task_done()


# Strong references to releases still running after their handler was cancelled
_releases: Set["asyncio.Future[None]"] = set()


async def _release_connection(
    connection: RelayConnection,
    worker: asyncio.Task,
    orchestrator: CallOrchestrator,
    connection_manager: ConnectionManager,
):
    """Stop the worker, drop the session and forget the socket"""
    worker.cancel()
    await asyncio.gather(worker, return_exceptions=True)
    await orchestrator.close_session(connection.session_id)
    if connection.session_id is not None:
        await connection_manager.disconnect(connection.session_id, close=False)


@router.websocket("/ws")
async def relay_websocket(websocket: WebSocket):
    """ConversationRelay endpoint, one call per connection"""

    orchestrator: CallOrchestrator = websocket.app.state.orchestrator
    connection_manager: ConnectionManager = websocket.app.state.connection_manager

    await websocket.accept()
    connection = RelayConnection(websocket)
    worker = asyncio.create_task(_process_events(connection, orchestrator, connection_manager))

    try:
        while True:
            raw = await websocket.receive_text()

            try:
                event = parse_event(raw)
            except ProtocolError as e:
                logger.warning("Ignoring relay frame", session_id=connection.session_id, error=e.message)
                continue

            # Interrupts must reach the in-flight turn, not wait behind it
            if isinstance(event, InterruptEvent):
                if connection.session_id is not None:
                    await orchestrator.handle_interrupt(connection.session_id, event)
                continue

            await connection.queue.put(event)

    except WebSocketDisconnect:
        logger.info("Relay disconnected", session_id=connection.session_id)
    except Exception as e:
        logger.error("WebSocket error", error=str(e), session_id=connection.session_id)
    finally:
        # Runs to completion even when the handler itself is being cancelled
        release = asyncio.ensure_future(
            _release_connection(connection, worker, orchestrator, connection_manager)
        )
        _releases.add(release)
        release.add_done_callback(_releases.discard)
        await asyncio.shield(release)


def connection_stats(connection_manager: ConnectionManager) -> Dict[str, Any]:
    return {"active_connections": len(connection_manager.active_connections)}
