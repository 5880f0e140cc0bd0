"""Tool registry built on Pydantic v2 models."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from stream_agent.infra.retry import RetryPolicy

ToolHandler = Callable[[BaseModel], Awaitable[Any]]


class ToolDefinition(BaseModel):
    """Declarative tool definition for registration and validation.

    `id` is the stable registry key (e.g. ``flights-mcp::search-flights``);
    `display_name` is the name the model writes in its markers.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    id: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    description: str
    args_schema: type[BaseModel]
    handler: ToolHandler
    idempotent: bool = True
    retry_policy: RetryPolicy | None = None

    def validate_arguments(self, payload: Any) -> BaseModel:
        return self.args_schema.model_validate(payload)

    def parameters_schema(self) -> dict[str, Any]:
        return self.args_schema.model_json_schema()


class ToolRegistry:
    """Write-once catalog of tools, shared read-only by every session."""

    def __init__(self, definitions: list[ToolDefinition] | None = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        self._aliases: dict[str, str] = {}
        self._frozen = False
        for definition in definitions or []:
            self.register(definition)

    def register(self, definition: ToolDefinition) -> None:
        if self._frozen:
            raise RuntimeError("Tool registry is frozen; register tools at startup")
        if definition.id in self._tools:
            raise ValueError(f"Tool already registered: {definition.id}")
        alias = self._aliases.get(definition.display_name)
        if alias is not None:
            raise ValueError(f"Tool name already in use: {definition.display_name} ({alias})")
        self._tools[definition.id] = definition
        self._aliases[definition.display_name] = definition.id

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, tool_id: str) -> ToolDefinition | None:
        """Resolve a registry id or the display name used in markers."""
        definition = self._tools.get(tool_id)
        if definition is not None:
            return definition
        resolved = self._aliases.get(tool_id)
        return self._tools.get(resolved) if resolved is not None else None

    def specs(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def __contains__(self, tool_id: object) -> bool:
        return isinstance(tool_id, str) and self.lookup(tool_id) is not None

    def __len__(self) -> int:
        return len(self._tools)
