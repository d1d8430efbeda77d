"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from convoflow.models.llm import ToolResult


@dataclass(frozen=True)
class ToolContext:
    """Identifies the conversation a tool acts on."""

    tenant_id: str
    conversation_id: str


ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[ToolResult]]


@dataclass
class ToolDefinition:
    """Definition of an action the model may request."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler
    is_silent: bool = False

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        return self.input_schema_class.model_validate(raw_input)

    def describe(self) -> str:
        """Render the tool for the model's available-actions documentation."""
        properties = self.get_json_schema().get("properties", {})
        args = ", ".join(
            f"{name}: {spec.get('description', spec.get('type', 'any'))}" for name, spec in properties.items()
        )
        silent = " [silent]" if self.is_silent else ""
        return f"- {self.name}{silent}: {self.description}\n  args: {{{args}}}"
