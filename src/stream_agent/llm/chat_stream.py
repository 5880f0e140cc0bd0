"""Upstream language-model streams consumed by the orchestrator."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from typing import Any, Protocol

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from stream_agent.agent.registry import ToolRegistry
from stream_agent.infra.retry import RetryPolicy, retry
from stream_agent.types import ChatMessage

_SYSTEM_PROMPT = """
You are a calm, structured chief-of-staff assistant for a busy professional.
Answer in clear, complete sentences. Do not fabricate facts, events or prices.

When you need live data, call a tool by writing a marker on its own:
<tool_call name="TOOL_NAME" args={"key":"value"}></tool_call>
The args value must be a single JSON object. Never explain the marker syntax
to the user and never invent tool names.
""".strip()


class ChatStream(Protocol):
    """Produces incremental text for a message list."""

    def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str | bytes]: ...


def build_system_prompt(registry: ToolRegistry | None = None) -> str:
    """Append the available tool catalog to the base system prompt."""
    if registry is None or not len(registry):
        return _SYSTEM_PROMPT
    lines = [_SYSTEM_PROMPT, "", "Available tools:"]
    for spec in registry.specs():
        schema = spec.parameters_schema()
        required = ", ".join(schema.get("required", [])) or "none"
        params = ", ".join(schema.get("properties", {})) or "none"
        lines.append(f"- {spec.display_name}: {spec.description} (params: {params}; required: {required})")
    return "\n".join(lines)


def to_langchain_messages(messages: Sequence[ChatMessage], system_prompt: str | None = None) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    if system_prompt:
        converted.append(SystemMessage(content=system_prompt))
    for message in messages:
        if message.role == "assistant":
            converted.append(AIMessage(content=message.content))
        elif message.role == "system":
            converted.append(SystemMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


class LangChainChatStream:
    """Adapts any langchain-core chat model to `ChatStream`.

    Opening the stream is retried until the first chunk arrives; once text
    has been produced a failure is final, so no output is ever duplicated.
    """

    def __init__(
        self,
        llm: Any,
        *,
        system_prompt: str | None = None,
        retry_policy: RetryPolicy | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.llm = llm
        self.system_prompt = system_prompt if system_prompt is not None else _SYSTEM_PROMPT
        self.retry_policy = retry_policy or RetryPolicy()
        self.correlation_id = correlation_id

    async def stream(self, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        lc_messages = to_langchain_messages(messages, self.system_prompt)

        async def _open() -> tuple[AsyncIterator[Any], Any]:
            iterator = self.llm.astream(lc_messages).__aiter__()
            try:
                first = await iterator.__anext__()
            except StopAsyncIteration:
                return iterator, None
            return iterator, first

        iterator, first = await retry(
            _open,
            self.retry_policy,
            operation_name="llm.stream",
            correlation_id=self.correlation_id,
        )
        if first is None:
            return
        text = _chunk_text(first)
        if text:
            yield text
        async for chunk in iterator:
            text = _chunk_text(chunk)
            if text:
                yield text


def _chunk_text(chunk: Any) -> str:
    content = getattr(chunk, "content", chunk)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and item.get("type", "text") == "text":
                parts.append(str(item.get("text", "")))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts)
    return str(content or "")
