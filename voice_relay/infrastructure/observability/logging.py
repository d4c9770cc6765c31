import structlog
import logging
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import os


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "voice-relay"
) -> None:
    """Setup structured logging configuration"""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO)
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(
        service=service_name,
        environment=os.getenv("ENVIRONMENT", "development"),
        version=os.getenv("SERVICE_VERSION", "unknown")
    )


def add_service_context(logger: logging.Logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add service context to all log entries"""

    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()

    # Call sid is bound per connection by the websocket endpoint
    session_id = structlog.contextvars.get_contextvars().get("session_id")
    if session_id and "session_id" not in event_dict:
        event_dict["session_id"] = session_id

    return event_dict


class ConversationLogger:
    """Specialized logger for conversation events"""

    def __init__(self, name: str):
        self.logger = structlog.get_logger(name)

    def log_turn(
        self,
        session_id: str,
        role: str,
        content: str,
        node_id: Optional[str] = None,
        **kwargs
    ):
        """Log a conversation turn"""

        self.logger.info(
            "conversation_turn",
            session_id=session_id,
            role=role,
            content_length=len(content),
            node_id=node_id,
            **kwargs
        )

    def log_action_execution(
        self,
        action_name: str,
        session_id: str,
        params: Dict[str, Any],
        duration_ms: Optional[float] = None,
        success: bool = True,
        error: Optional[str] = None
    ):
        """Log declared node action executions"""

        self.logger.info(
            "action_execution",
            action_name=action_name,
            session_id=session_id,
            params=params,
            duration_ms=duration_ms,
            success=success,
            error=error
        )

    def log_workflow_transition(
        self,
        session_id: str,
        from_node: Optional[str],
        to_node: Optional[str],
        condition: Optional[str] = None,
    ):
        """Log workflow node transitions"""

        self.logger.info(
            "workflow_transition",
            session_id=session_id,
            from_node=from_node,
            to_node=to_node,
            condition=condition,
        )

    def log_status_change(
        self,
        session_id: str,
        from_status: str,
        to_status: str,
    ):
        """Log session state machine changes"""

        self.logger.info(
            "session_status_change",
            session_id=session_id,
            from_status=from_status,
            to_status=to_status,
        )


# Global logger instance
conversation_logger = ConversationLogger("voice_relay")
