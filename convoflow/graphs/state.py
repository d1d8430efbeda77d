"""State definitions for the reasoning loop graph."""

from typing import Literal

from pydantic import BaseModel, Field

from convoflow.models.conversation import Conversation, Message
from convoflow.models.llm import Decision, ToolResult
from convoflow.models.settings import TenantSettings

StopReason = Literal[
    "no_tool",
    "escalated",
    "conversation_ended",
    "final_answer",
    "max_turns",
    "generation_failed",
    "invalid_decision",
    "delivery_failed",
    "repeated_tool_failure",
]


class ReasoningState(BaseModel):
    """State carried through one reasoning loop.

    One loop handles one drained batch; nothing here outlives it.
    """

    # Fixed context
    tenant_id: str
    conversation_id: str
    settings: TenantSettings
    conversation: Conversation
    image_data_uri: str | None = None
    quoted_message: Message | None = None
    max_turns: int = 6

    # Running transcript sent as the user prompt
    transcript: str

    # Per-turn state
    turn: int = 0
    decision: Decision | None = None
    previous_reasoning: str | None = None
    failure_context: str | None = None
    failed_tool: str | None = None  # tool that failed in the previous turn
    tool_result: ToolResult | None = None

    # Control flow
    next_step: Literal["respond", "act", "generate", "escalate", "end"] | None = None
    stop_reason: StopReason | None = None

    # Observability
    model_used: str | None = None
    replies_sent: list[str] = Field(default_factory=list)
    tool_calls: list[str] = Field(default_factory=list)
