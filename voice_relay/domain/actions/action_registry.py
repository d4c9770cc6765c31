from typing import Dict, List, Any, Optional, Callable, Awaitable
import structlog

from voice_relay.domain.models.session import Session

logger = structlog.get_logger(__name__)

ActionHandler = Callable[[Session, Dict[str, Any]], Awaitable[Any]]


async def log_summary_action(session: Session, params: Dict[str, Any]) -> Dict[str, Any]:
    """Write the call outcome to the log"""
    summary = session.get_state_summary()
    logger.info("Call summary", **summary)
    return summary


class ActionRegistry:
    """Registry of named side effects nodes may declare"""

    def __init__(self):
        self.actions: Dict[str, Dict[str, Any]] = {}
        self.register_action(
            "log_summary",
            log_summary_action,
            description="Log the call summary and extracted variables"
        )

    def register_action(self, name: str, handler: ActionHandler, description: str = ""):
        """Register a new action handler"""

        if name in self.actions:
            logger.warning("Overriding registered action", action=name)
        self.actions[name] = {
            "name": name,
            "handler": handler,
            "description": description,
        }

    def get_handler(self, name: str) -> Optional[ActionHandler]:
        entry = self.actions.get(name)
        return entry["handler"] if entry else None

    def list_actions(self) -> List[Dict[str, str]]:
        return [
            {"name": entry["name"], "description": entry["description"]}
            for entry in self.actions.values()
        ]
