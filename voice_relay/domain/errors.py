"""
Error taxonomy for the session orchestration engine.

ConfigurationError is surfaced to the transport immediately, UpstreamError is
recovered locally for auxiliary steps, ProtocolError is logged and ignored,
StateError means "no transition".
"""

from typing import Optional


class VoiceRelayError(Exception):
    """Base error for the engine"""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.session_id = session_id


class ConfigurationError(VoiceRelayError):
    """Unknown session or agent, malformed workflow or node configuration"""


class UpstreamError(VoiceRelayError):
    """A model, vector store, or telephony call failed or timed out"""

    def __init__(self, message: str, service: str = "unknown", session_id: Optional[str] = None):
        super().__init__(message, session_id=session_id)
        self.service = service


class ProtocolError(VoiceRelayError):
    """Malformed inbound event or unknown event type"""


class StateError(VoiceRelayError):
    """Workflow or session state does not allow the requested change"""
