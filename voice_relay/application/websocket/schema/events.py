from typing import Dict, Any, Optional, Literal, Union, Annotated
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, TypeAdapter
from enum import Enum


class EventType(str, Enum):
    """Relay WebSocket event types"""
    SETUP = "setup"
    PROMPT = "prompt"
    INTERRUPT = "interrupt"
    DTMF = "dtmf"
    INFO = "info"
    TEXT = "text"
    ERROR = "error"
    READY = "ready"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: EventType

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# Inbound

class SetupEvent(BaseEvent):
    """Call setup, sent once when the relay connects"""
    type: Literal["setup"] = "setup"
    session_id: str = Field(validation_alias=AliasChoices("callSid", "sessionId", "session_id"))
    from_number: Optional[str] = Field(None, validation_alias=AliasChoices("from", "from_number"))
    to_number: Optional[str] = Field(None, validation_alias=AliasChoices("to", "to_number"))
    custom_parameters: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("customParameters", "custom_parameters"),
    )

    @property
    def agent_id(self) -> Optional[str]:
        return self.custom_parameters.get("agentId") or self.custom_parameters.get("agent_id")


class PromptEvent(BaseEvent):
    """Transcribed caller utterance"""
    type: Literal["prompt"] = "prompt"
    text: str = Field(validation_alias=AliasChoices("voicePrompt", "text"))
    lang: Optional[str] = None
    last: bool = True


class InterruptEvent(BaseEvent):
    """Caller barged in while the assistant was speaking"""
    type: Literal["interrupt"] = "interrupt"
    utterance_until_interrupt: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("utteranceUntilInterrupt", "utterance_until_interrupt"),
    )
    duration_until_interrupt_ms: Optional[int] = Field(
        None,
        validation_alias=AliasChoices("durationUntilInterruptMs", "duration_until_interrupt_ms"),
    )


class DtmfEvent(BaseEvent):
    type: Literal["dtmf"] = "dtmf"
    digit: Optional[str] = None


class InfoEvent(BaseEvent):
    type: Literal["info"] = "info"


InboundEvent = Annotated[
    Union[SetupEvent, PromptEvent, InterruptEvent, DtmfEvent, InfoEvent],
    Field(discriminator="type"),
]

inbound_event_adapter = TypeAdapter(InboundEvent)


# Outbound

class TextTokenEvent(BaseEvent):
    """One streamed token; exactly one per turn has last=True"""
    type: Literal[EventType.TEXT] = EventType.TEXT
    token: str
    last: bool = False
    end_call: Optional[bool] = Field(None, serialization_alias="endCall")


class ErrorEvent(BaseEvent):
    """Turn-level failure"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    message: str


class ReadyEvent(BaseEvent):
    """Session-ready acknowledgement"""
    type: Literal[EventType.READY] = EventType.READY
    session_id: str = Field(serialization_alias="sessionId")
    node_id: Optional[str] = Field(None, serialization_alias="nodeId")


OutboundEvent = Union[TextTokenEvent, ErrorEvent, ReadyEvent]
