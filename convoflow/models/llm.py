"""Generation-side data models (provider-agnostic)."""

import json
import re
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ToolRequest(BaseModel):
    """A side-effecting action the model asked for."""

    model_config = ConfigDict(extra="ignore")

    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class Decision(BaseModel):
    """Structured output of one generation turn."""

    model_config = ConfigDict(extra="ignore")

    reasoning: str = ""
    response_to_client: str | None = None
    tool_request: ToolRequest | None = None


class ToolResult(BaseModel):
    """Shared result shape for every tool invocation."""

    model_config = ConfigDict(extra="allow")

    success: bool
    error: str | None = None
    message: str | None = None
    data: dict[str, Any] | None = None

    @classmethod
    def ok(cls, message: str | None = None, **data: Any) -> "ToolResult":
        return cls(success=True, message=message, data=data or None)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)

    def to_prompt(self) -> str:
        """Render the result as JSON for the next turn's context."""
        return json.dumps(self.model_dump(exclude_none=True), ensure_ascii=False, default=str)


class DecisionParseError(ValueError):
    """Raised when model output is not a valid decision object."""


_FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_decision(raw: str) -> Decision:
    """Parse raw model text into a Decision.

    Strips markdown code fences, decodes JSON and validates the schema.
    Every failure surfaces as DecisionParseError.

    Args:
        raw: Text returned by the generation service

    Returns:
        Validated decision

    Raises:
        DecisionParseError: If the text is empty, not JSON, or not a decision object
    """
    cleaned = _FENCE_PATTERN.sub("", (raw or "").strip()).strip()
    if not cleaned:
        raise DecisionParseError("empty model output")

    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise DecisionParseError(f"model output is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise DecisionParseError(f"model output is {type(payload).__name__}, expected object")

    # Models sometimes emit an explicit null or empty tool request
    tool_request = payload.get("tool_request")
    if isinstance(tool_request, dict) and not tool_request.get("name"):
        payload["tool_request"] = None

    try:
        return Decision.model_validate(payload)
    except ValidationError as e:
        raise DecisionParseError(f"model output failed validation: {e}") from e


@dataclass
class TokenUsage:
    """Token usage reported by the generation service."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


@dataclass
class GenerationResult:
    """Text produced by one successful generation call."""

    text: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    attempted_models: list[str] = field(default_factory=list)
