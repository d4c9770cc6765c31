from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from enum import Enum

from voice_relay.domain.errors import StateError
from voice_relay.domain.models.workflow import Workflow, BaseNode


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Session lifecycle states"""
    SETUP = "setup"
    ACTIVE = "active"
    TERMINATING = "terminating"
    CLOSED = "closed"


ALLOWED_TRANSITIONS: Dict[SessionStatus, frozenset] = {
    SessionStatus.SETUP: frozenset({SessionStatus.ACTIVE, SessionStatus.CLOSED}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.TERMINATING, SessionStatus.CLOSED}),
    SessionStatus.TERMINATING: frozenset({SessionStatus.CLOSED}),
    SessionStatus.CLOSED: frozenset(),
}


class TurnRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ConversationTurn(BaseModel):
    """One role-tagged entry of the conversation history"""
    role: TurnRole
    content: str
    node_id: Optional[str] = None
    interrupted: bool = False
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class KnowledgeChunk(BaseModel):
    """Retrieved passage used to ground responses"""
    text: str
    embedding: Optional[List[float]] = None
    score: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LLMSettings(BaseModel):
    """Model and voice configuration for one call"""
    model: str
    temperature: float = 0.3
    voice: Optional[str] = None


class TelephonyCredentials(BaseModel):
    """Credentials required to hang up the call"""
    account_sid: Optional[str] = None
    auth_token: Optional[str] = Field(None, repr=False)


class Session(BaseModel):
    """Live state of one call"""
    session_id: str
    agent_id: str
    status: SessionStatus = Field(default=SessionStatus.SETUP)
    workflow: Workflow = Field(default_factory=Workflow)
    system_prompt: str = ""
    history: List[ConversationTurn] = Field(default_factory=list)
    current_node_id: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    knowledge_chunks: List[KnowledgeChunk] = Field(default_factory=list)
    llm: LLMSettings
    credentials: TelephonyCredentials = Field(default_factory=TelephonyCredentials)
    error_log: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    last_activity: datetime = Field(default_factory=_utcnow)

    @property
    def current_node(self) -> Optional[BaseNode]:
        return self.workflow.get_node(self.current_node_id)

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def transition_to(self, status: SessionStatus) -> SessionStatus:
        """Move the session state machine, returning the previous status"""
        previous = self.status
        if status not in ALLOWED_TRANSITIONS[previous]:
            raise StateError(
                f"Illegal session transition {previous.value} -> {status.value}",
                session_id=self.session_id,
            )
        self.status = status
        self.last_activity = _utcnow()
        return previous

    def add_turn(self, role: TurnRole, content: str, interrupted: bool = False) -> ConversationTurn:
        turn = ConversationTurn(
            role=role,
            content=content,
            node_id=self.current_node_id,
            interrupted=interrupted,
        )
        self.history.append(turn)
        self.last_activity = _utcnow()
        return turn

    def merge_variables(self, extracted: Dict[str, Any]):
        """Later extractions overwrite same-named keys"""
        self.variables.update(extracted)

    def log_error(self, error: str, context: Optional[Dict[str, Any]] = None):
        self.error_log.append({
            "timestamp": _utcnow(),
            "error": error,
            "context": context or {}
        })

    def get_state_summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_id": self.agent_id,
            "status": self.status.value,
            "current_node": self.current_node_id,
            "turns": len(self.history),
            "variables": dict(self.variables),
            "knowledge_chunks": len(self.knowledge_chunks),
            "errors": len(self.error_log),
            "last_activity": self.last_activity.isoformat()
        }
