from typing import Dict, Any, List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, Field, AliasChoices, PrivateAttr, ValidationError, field_validator
from enum import Enum
import structlog

from voice_relay.domain.errors import ConfigurationError

logger = structlog.get_logger(__name__)


class NodeType(str, Enum):
    """Workflow node types"""
    CONVERSATION = "conversation"
    END_CALL = "end_call"
    API_REQUEST = "api_request"
    TRANSFER_CALL = "transfer_call"


class ConditionType(str, Enum):
    """Edge condition types"""
    DIRECT = "direct"
    INTENT = "intent"


class ExtractionField(BaseModel):
    """A single field the extractor should pull out of an utterance"""
    name: str
    description: Optional[str] = None


class ExtractionPlan(BaseModel):
    """Variable extraction plan declared on a node"""
    output: List[ExtractionField] = Field(default_factory=list)

    @field_validator("output", mode="before")
    @classmethod
    def _coerce_field_names(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [{"name": item} if isinstance(item, str) else item for item in value]
        return value

    @property
    def field_names(self) -> List[str]:
        return [f.name for f in self.output]

    def is_empty(self) -> bool:
        return not self.output


class NodeAction(BaseModel):
    """Declarative side effect executed when a call terminates"""
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)


class NodeConfig(BaseModel):
    """Configuration shared by every node type"""
    prompt: Optional[str] = Field(None, validation_alias=AliasChoices("prompt", "instruction"))
    actions: List[NodeAction] = Field(default_factory=list)
    extract_variables: Optional[ExtractionPlan] = Field(
        None,
        validation_alias=AliasChoices("extract_variables", "extractVariables", "variable_extraction"),
    )

    @field_validator("actions", mode="before")
    @classmethod
    def _coerce_action_names(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, list):
            return [{"name": item} if isinstance(item, str) else item for item in value]
        return value


class ConversationConfig(NodeConfig):
    pass


class EndCallConfig(NodeConfig):
    message: Optional[str] = Field(None, description="Static closing message spoken before hangup")


class ApiRequestConfig(NodeConfig):
    url: str
    method: str = "POST"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Dict[str, Any]] = None


class TransferCallConfig(NodeConfig):
    phone_number: str = Field(validation_alias=AliasChoices("phone_number", "phoneNumber"))


class BaseNode(BaseModel):
    id: str
    name: str = Field("", validation_alias=AliasChoices("name", "label"))

    @property
    def display_name(self) -> str:
        return self.name or self.id

    @property
    def instruction(self) -> Optional[str]:
        return self.config.prompt

    @property
    def extraction_plan(self) -> Optional[ExtractionPlan]:
        return self.config.extract_variables

    @property
    def actions(self) -> List[NodeAction]:
        return self.config.actions

    @property
    def is_terminal(self) -> bool:
        return self.type == NodeType.END_CALL


class ConversationNode(BaseNode):
    type: Literal["conversation"] = "conversation"
    config: ConversationConfig = Field(
        default_factory=ConversationConfig,
        validation_alias=AliasChoices("config", "data"),
    )


class EndCallNode(BaseNode):
    type: Literal["end_call"] = "end_call"
    config: EndCallConfig = Field(
        default_factory=EndCallConfig,
        validation_alias=AliasChoices("config", "data"),
    )


class ApiRequestNode(BaseNode):
    type: Literal["api_request"] = "api_request"
    config: ApiRequestConfig = Field(validation_alias=AliasChoices("config", "data"))


class TransferCallNode(BaseNode):
    type: Literal["transfer_call"] = "transfer_call"
    config: TransferCallConfig = Field(validation_alias=AliasChoices("config", "data"))


Node = Annotated[
    Union[ConversationNode, EndCallNode, ApiRequestNode, TransferCallNode],
    Field(discriminator="type"),
]


class DirectCondition(BaseModel):
    type: Literal["direct"] = "direct"

    def matches(self, user_utterance: str) -> bool:
        return True


class IntentCondition(BaseModel):
    type: Literal["intent"] = "intent"
    phrases: List[str] = Field(validation_alias=AliasChoices("intent", "phrases", "keywords"))

    @field_validator("phrases", mode="before")
    @classmethod
    def _coerce_single_phrase(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value

    def matches(self, user_utterance: str) -> bool:
        """Case-insensitive substring test against the user utterance"""
        utterance = (user_utterance or "").lower()
        return any(
            phrase.strip().lower() in utterance
            for phrase in self.phrases
            if phrase and phrase.strip()
        )


EdgeCondition = Annotated[Union[DirectCondition, IntentCondition], Field(discriminator="type")]


class Edge(BaseModel):
    id: Optional[str] = None
    source: str = Field(validation_alias=AliasChoices("source", "source_node_id", "sourceNodeId"))
    target: str = Field(validation_alias=AliasChoices("target", "target_node_id", "targetNodeId"))
    condition: Optional[EdgeCondition] = None

    @field_validator("condition", mode="before")
    @classmethod
    def _coerce_condition(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"type": value}
        if isinstance(value, dict) and "type" not in value:
            return {"type": ConditionType.INTENT.value if "intent" in value else ConditionType.DIRECT.value, **value}
        return value

    @property
    def is_direct(self) -> bool:
        """An absent condition is unconditional"""
        return self.condition is None or self.condition.type == ConditionType.DIRECT

    def matches(self, user_utterance: str) -> bool:
        if self.condition is None:
            return True
        return self.condition.matches(user_utterance)


class Workflow(BaseModel):
    """Read-only snapshot of an agent's conversation graph"""
    id: Optional[str] = None
    agent_id: Optional[str] = None
    name: str = ""
    is_active: bool = True
    nodes: List[Node] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)

    _nodes_by_id: Dict[str, BaseNode] = PrivateAttr(default_factory=dict)
    _outgoing: Dict[str, List[Edge]] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        self._nodes_by_id = {node.id: node for node in self.nodes}
        outgoing: Dict[str, List[Edge]] = {}
        for edge in self.edges:
            outgoing.setdefault(edge.source, []).append(edge)
        self._outgoing = outgoing

    @classmethod
    def from_definition(cls, definition: Dict[str, Any]) -> "Workflow":
        """Parse a workflow definition from the external store.

        Raises ConfigurationError for malformed nodes or an ambiguous entry node.
        Unreachable nodes and dangling edges are logged, not rejected.
        """
        try:
            workflow = cls.model_validate(definition)
        except ValidationError as e:
            raise ConfigurationError(f"Malformed workflow definition: {e}") from e

        if workflow.nodes:
            entries = workflow.entry_candidates()
            if len(entries) != 1:
                raise ConfigurationError(
                    f"Workflow {workflow.id!r} must have exactly one entry node, "
                    f"found {[n.id for n in entries]}"
                )

            unreachable = workflow.unreachable_nodes()
            if unreachable:
                logger.warning("Workflow has unreachable nodes",
                               workflow_id=workflow.id,
                               nodes=[n.id for n in unreachable])

            dangling = workflow.dangling_edges()
            if dangling:
                logger.warning("Workflow has edges to unknown nodes",
                               workflow_id=workflow.id,
                               edges=[(e.source, e.target) for e in dangling])

        return workflow

    def get_node(self, node_id: Optional[str]) -> Optional[BaseNode]:
        if node_id is None:
            return None
        return self._nodes_by_id.get(node_id)

    def has_node(self, node_id: Optional[str]) -> bool:
        return node_id is not None and node_id in self._nodes_by_id

    def outgoing_edges(self, node_id: str) -> List[Edge]:
        """Outgoing edges in declaration order"""
        return list(self._outgoing.get(node_id, []))

    def entry_candidates(self) -> List[BaseNode]:
        targets = {edge.target for edge in self.edges if edge.source != edge.target}
        return [node for node in self.nodes if node.id not in targets]

    def entry_node(self) -> Optional[BaseNode]:
        entries = self.entry_candidates()
        return entries[0] if len(entries) == 1 else None

    def unreachable_nodes(self) -> List[BaseNode]:
        entry = self.entry_node()
        if entry is None:
            return []

        seen = {entry.id}
        frontier = [entry.id]
        while frontier:
            node_id = frontier.pop()
            for edge in self._outgoing.get(node_id, []):
                if edge.target not in seen:
                    seen.add(edge.target)
                    frontier.append(edge.target)

        return [node for node in self.nodes if node.id not in seen]

    def dangling_edges(self) -> List[Edge]:
        return [
            edge for edge in self.edges
            if edge.source not in self._nodes_by_id or edge.target not in self._nodes_by_id
        ]
