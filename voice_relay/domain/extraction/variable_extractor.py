from typing import Dict, List, Any, Optional
import asyncio
import json
import re
import structlog

from voice_relay.domain.models.session import LLMSettings
from voice_relay.domain.models.workflow import ExtractionPlan
from voice_relay.domain.streaming.streaming_handler import CompletionClient

logger = structlog.get_logger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


def build_extraction_messages(utterance: str, plan: ExtractionPlan) -> List[Dict[str, str]]:
    field_lines = [
        f"- {field.name}: {field.description}" if field.description else f"- {field.name}"
        for field in plan.output
    ]
    instructions = (
        "You extract structured data from a caller's utterance.\n"
        "Return ONLY a single JSON object with exactly these keys:\n"
        + "\n".join(field_lines)
        + "\nUse null for any value the utterance does not contain. "
        "Do not add other keys, prose, or code fences."
    )
    return [
        {"role": "system", "content": instructions},
        {"role": "user", "content": utterance},
    ]


def parse_extraction(raw: str, plan: ExtractionPlan) -> Dict[str, Any]:
    """Strictly parse the model output; anything but a JSON object yields {}"""

    text = (raw or "").strip()
    match = _FENCE_RE.match(text)
    if match:
        text = match.group(1)

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}

    if not isinstance(data, dict):
        return {}

    extracted = {}
    for name in plan.field_names:
        value = data.get(name)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        extracted[name] = value
    return extracted


class VariableExtractor:
    """Pulls node-declared fields out of the latest user utterance"""

    def __init__(self, completion_client: CompletionClient, model: str, timeout: float = 15.0):
        self.completion_client = completion_client
        self.llm = LLMSettings(model=model, temperature=0.0)
        self.timeout = timeout

    async def extract_variables(self, utterance: str, plan: Optional[ExtractionPlan]) -> Dict[str, Any]:
        """Never raises; failures are logged and produce an empty mapping"""

        if plan is None or plan.is_empty() or not utterance.strip():
            return {}

        messages = build_extraction_messages(utterance, plan)
        try:
            raw = await asyncio.wait_for(
                self.completion_client.complete(messages, self.llm),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Variable extraction timed out", fields=plan.field_names)
            return {}
        except Exception as e:
            logger.warning("Variable extraction failed", fields=plan.field_names, error=str(e))
            return {}

        extracted = parse_extraction(raw, plan)
        if not extracted:
            logger.info("No variables extracted", fields=plan.field_names)
        return extracted
