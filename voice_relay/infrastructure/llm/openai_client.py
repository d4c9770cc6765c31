"""
OpenAI chat completions built on langchain-openai.
"""

from typing import Dict, List, Tuple, AsyncIterator, Optional
from langchain_core.messages import BaseMessage, SystemMessage, HumanMessage, AIMessage
from langchain_openai import ChatOpenAI

from voice_relay.domain.models.session import LLMSettings


def to_langchain_messages(messages: List[Dict[str, str]]) -> List[BaseMessage]:
    converted: List[BaseMessage] = []
    for message in messages:
        role = message.get("role")
        content = message.get("content", "")
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def _chunk_text(content) -> str:
    if isinstance(content, str):
        return content
    # Content blocks
    return "".join(
        block.get("text", "") if isinstance(block, dict) else str(block)
        for block in content or []
    )


class OpenAICompletionClient:
    """Single-shot and streaming chat completions"""

    def __init__(self, api_key: Optional[str] = None, request_timeout: float = 60.0, max_retries: int = 1):
        self.api_key = api_key
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self._models: Dict[Tuple[str, float], ChatOpenAI] = {}

    def _get_model(self, llm: LLMSettings) -> ChatOpenAI:
        key = (llm.model, llm.temperature)
        if key not in self._models:
            kwargs = {
                "model": llm.model,
                "temperature": llm.temperature,
                "timeout": self.request_timeout,
                "max_retries": self.max_retries,
            }
            if self.api_key:
                kwargs["api_key"] = self.api_key
            self._models[key] = ChatOpenAI(**kwargs)
        return self._models[key]

    async def stream(self, messages: List[Dict[str, str]], llm: LLMSettings) -> AsyncIterator[str]:
        model = self._get_model(llm)
        async for chunk in model.astream(to_langchain_messages(messages)):
            text = _chunk_text(chunk.content)
            if text:
                yield text

    async def complete(self, messages: List[Dict[str, str]], llm: LLMSettings) -> str:
        model = self._get_model(llm)
        response = await model.ainvoke(to_langchain_messages(messages))
        return _chunk_text(response.content)
