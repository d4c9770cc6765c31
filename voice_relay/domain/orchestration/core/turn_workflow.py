from typing import TypedDict, List, Dict, Any, Optional, Literal
from langgraph.graph import StateGraph, END
import structlog

from voice_relay.domain.context.context_assembler import build_prompt, build_messages, KnowledgePolicy
from voice_relay.domain.extraction.variable_extractor import VariableExtractor
from voice_relay.domain.models.session import Session, TurnRole
from voice_relay.domain.models.workflow import BaseNode
from voice_relay.domain.orchestration.termination import TerminationCoordinator
from voice_relay.domain.streaming.streaming_handler import StreamingCompletionDriver, TokenStream
from voice_relay.domain.workflow.transition_resolver import resolve_transition
from voice_relay.infrastructure.observability.logging import conversation_logger

logger = structlog.get_logger(__name__)


class TurnState(TypedDict):
    """State for one prompt turn through the graph"""
    session: Session
    stream: TokenStream
    utterance: str
    node: Optional[BaseNode]
    messages: List[Dict[str, str]]
    response: str
    extracted: Dict[str, Any]
    next_node_id: Optional[str]
    terminated: bool


class TurnWorkflow:
    """Per-turn pipeline: check terminal, assemble context, generate, extract, advance"""

    def __init__(
        self,
        completion_driver: StreamingCompletionDriver,
        variable_extractor: VariableExtractor,
        termination: TerminationCoordinator,
        knowledge_policy: str = KnowledgePolicy.ALL,
    ):
        self.completion_driver = completion_driver
        self.variable_extractor = variable_extractor
        self.termination = termination
        self.knowledge_policy = knowledge_policy

    def build(self):
        """Create the turn graph"""

        workflow = StateGraph(TurnState)

        workflow.add_node("record_input", self.record_input_node)
        workflow.add_node("terminate", self.termination_node)
        workflow.add_node("assemble_context", self.context_node)
        workflow.add_node("generate", self.generation_node)
        workflow.add_node("extract_variables", self.extraction_node)
        workflow.add_node("advance", self.transition_node)

        workflow.set_entry_point("record_input")

        # A session sitting on an end_call node terminates instead of replying
        workflow.add_conditional_edges(
            "record_input",
            self.route_on_node_type,
            {
                "terminate": "terminate",
                "respond": "assemble_context"
            }
        )
        workflow.add_edge("terminate", END)
        workflow.add_edge("assemble_context", "generate")

        workflow.add_conditional_edges(
            "generate",
            self.route_on_extraction_plan,
            {
                "extract": "extract_variables",
                "advance": "advance"
            }
        )
        workflow.add_edge("extract_variables", "advance")
        workflow.add_edge("advance", END)

        return workflow.compile()

    @staticmethod
    def initial_state(session: Session, stream: TokenStream, utterance: str) -> TurnState:
        return {
            "session": session,
            "stream": stream,
            "utterance": utterance,
            "node": None,
            "messages": [],
            "response": "",
            "extracted": {},
            "next_node_id": None,
            "terminated": False,
        }

    async def record_input_node(self, state: TurnState) -> Dict[str, Any]:
        session = state["session"]
        session.add_turn(TurnRole.USER, state["utterance"])
        conversation_logger.log_turn(session.session_id, TurnRole.USER.value,
                                     state["utterance"], node_id=session.current_node_id)
        return {"node": session.current_node}

    def route_on_node_type(self, state: TurnState) -> Literal["terminate", "respond"]:
        node = state.get("node")
        if node is not None and node.is_terminal:
            return "terminate"
        return "respond"

    async def termination_node(self, state: TurnState) -> Dict[str, Any]:
        await self.termination.terminate(state["session"], state["stream"], state["node"])
        return {"terminated": True}

    async def context_node(self, state: TurnState) -> Dict[str, Any]:
        session = state["session"]
        prompt = build_prompt(
            session.system_prompt,
            state["node"],
            session.variables,
            session.knowledge_chunks,
            policy=self.knowledge_policy,
        )
        return {"messages": build_messages(prompt, session.history)}

    async def generation_node(self, state: TurnState) -> Dict[str, Any]:
        session = state["session"]
        response = await self.completion_driver.stream_completion(
            session, state["messages"], state["stream"]
        )
        session.add_turn(TurnRole.ASSISTANT, response)
        conversation_logger.log_turn(session.session_id, TurnRole.ASSISTANT.value,
                                     response, node_id=session.current_node_id)
        return {"response": response}

    def route_on_extraction_plan(self, state: TurnState) -> Literal["extract", "advance"]:
        node = state.get("node")
        plan = node.extraction_plan if node is not None else None
        if plan is not None and not plan.is_empty():
            return "extract"
        return "advance"

    async def extraction_node(self, state: TurnState) -> Dict[str, Any]:
        session = state["session"]
        extracted = await self.variable_extractor.extract_variables(
            state["utterance"], state["node"].extraction_plan
        )
        if extracted:
            session.merge_variables(extracted)
            logger.info("Variables extracted", session_id=session.session_id,
                        fields=sorted(extracted))
        return {"extracted": extracted}

    async def transition_node(self, state: TurnState) -> Dict[str, Any]:
        session = state["session"]
        current = session.current_node_id
        edge = resolve_transition(session.workflow, current, state["response"], state["utterance"])

        if edge is None:
            return {"next_node_id": None}

        # Dangling edge: no transition
        if not session.workflow.has_node(edge.target):
            logger.warning("Transition target missing, staying on current node",
                           session_id=session.session_id, node_id=current, target=edge.target)
            return {"next_node_id": None}

        session.current_node_id = edge.target
        conversation_logger.log_workflow_transition(
            session.session_id,
            current,
            edge.target,
            condition=edge.condition.type if edge.condition else "direct",
        )
        return {"next_node_id": edge.target}
