from typing import Dict, List, Any
import asyncio
import time
import structlog

from voice_relay.domain.models.session import Session
from voice_relay.domain.models.workflow import NodeAction
from voice_relay.infrastructure.observability.logging import conversation_logger
from .action_registry import ActionRegistry

logger = structlog.get_logger(__name__)


class ActionExecutor:
    """Runs declared node actions best-effort, each exactly once"""

    def __init__(self, registry: ActionRegistry, timeout: float = 10.0):
        self.registry = registry
        self.timeout = timeout

    async def execute_actions(self, session: Session, actions: List[NodeAction]) -> List[Dict[str, Any]]:
        results = []
        for action in actions:
            results.append(await self.execute_action(session, action))
        return results

    async def execute_action(self, session: Session, action: NodeAction) -> Dict[str, Any]:
        """Failures are logged and reported in the result, never raised"""

        start = time.monotonic()
        handler = self.registry.get_handler(action.name)

        if handler is None:
            error = f"Unknown action: {action.name}"
            conversation_logger.log_action_execution(
                action.name, session.session_id, action.params, success=False, error=error
            )
            return {"action": action.name, "success": False, "error": error}

        try:
            output = await asyncio.wait_for(handler(session, action.params), timeout=self.timeout)
        except asyncio.TimeoutError:
            error = "Action timed out"
        except Exception as e:
            error = str(e)
        else:
            duration_ms = (time.monotonic() - start) * 1000
            conversation_logger.log_action_execution(
                action.name, session.session_id, action.params, duration_ms=duration_ms
            )
            return {"action": action.name, "success": True, "output": output}

        duration_ms = (time.monotonic() - start) * 1000
        conversation_logger.log_action_execution(
            action.name, session.session_id, action.params,
            duration_ms=duration_ms, success=False, error=error
        )
        return {"action": action.name, "success": False, "error": error}
