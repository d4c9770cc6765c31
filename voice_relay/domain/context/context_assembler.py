from typing import Dict, List, Any, Optional, Sequence

from voice_relay.domain.models.session import ConversationTurn, KnowledgeChunk, TurnRole
from voice_relay.domain.models.workflow import BaseNode


class KnowledgePolicy:
    ALL = "all"
    TOP = "top"


def _format_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def build_prompt(
    base_system_prompt: str,
    current_node: Optional[BaseNode],
    extracted_variables: Dict[str, Any],
    knowledge_chunks: Sequence[KnowledgeChunk],
    policy: str = KnowledgePolicy.ALL,
) -> str:
    """Assemble the grounding system prompt for one turn. Pure, no I/O."""

    sections: List[str] = [base_system_prompt.strip()] if base_system_prompt else []

    if current_node is not None:
        step = [f"Current step: {current_node.display_name}"]
        if current_node.instruction:
            step.append(current_node.instruction.strip())
        sections.append("\n".join(step))

    if extracted_variables:
        lines = [f"{key}: {_format_value(value)}" for key, value in extracted_variables.items()]
        sections.append("Known details:\n" + "\n".join(lines))

    texts = [chunk.text.strip() for chunk in knowledge_chunks if chunk.text and chunk.text.strip()]
    if texts:
        if policy == KnowledgePolicy.TOP:
            texts = texts[:1]
        sections.append("Relevant knowledge:\n" + "\n\n".join(texts))

    return "\n\n".join(sections)


def build_messages(system_prompt: str, history: Sequence[ConversationTurn]) -> List[Dict[str, str]]:
    """System prompt first, then the user/assistant history"""

    messages = [{"role": TurnRole.SYSTEM.value, "content": system_prompt}]
    messages.extend(
        turn.to_message()
        for turn in history
        if turn.role != TurnRole.SYSTEM and turn.content
    )
    return messages
