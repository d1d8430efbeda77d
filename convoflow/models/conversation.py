"""Conversation and message records."""

from datetime import UTC, datetime
from typing import Any, Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, Field

new_id = cuid_wrapper()

Folder = Literal["inbox", "support", "archived"]
Direction = Literal["customer", "agent"]
Origin = Literal["ai", "operator", "system", "tool"]
DeliveryStatus = Literal["sending", "sent", "delivered", "failed"]
FollowUpStep = Literal["first", "second", "third"]
MediaType = Literal["image", "video", "audio", "document"]
TranscriptionStatus = Literal["pending", "success", "failed"]

# delivered and failed are both terminal
STATUS_RANK: dict[str, int] = {"sending": 0, "sent": 1, "delivered": 2, "failed": 2}

FOLLOW_UP_SEQUENCE: dict[str, FollowUpStep | None] = {"first": "second", "second": "third", "third": None}


def utcnow() -> datetime:
    return datetime.now(UTC)


class Message(BaseModel):
    """A single message stored under a conversation."""

    id: str = Field(default_factory=new_id)
    direction: Direction
    origin: Origin | None = None
    text: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    status: DeliveryStatus | None = None

    media_type: MediaType | None = None
    media_url: str | None = None
    mimetype: str | None = None
    image_data_uri: str | None = None
    duration: int | None = None

    transcription: str | None = None
    transcription_status: TranscriptionStatus | None = None

    # Provider message key, needed to quote this message in a reply
    provider_key: dict[str, Any] | None = None
    api_response: dict[str, Any] | None = None

    def can_transition_to(self, status: DeliveryStatus) -> bool:
        """Check whether moving to ``status`` keeps the status history append-only."""
        if self.status is None:
            return True
        if self.status in ("delivered", "failed"):
            return False
        return STATUS_RANK[status] > STATUS_RANK[self.status]

    @property
    def content(self) -> str:
        """Best textual rendering of the message for prompts and previews."""
        if self.transcription:
            return self.transcription
        if self.text:
            return self.text
        if self.media_type:
            return f"[{self.media_type}]"
        return ""


class FollowUpState(BaseModel):
    """Where an idle conversation is in the follow-up sequence."""

    step: FollowUpStep
    due_at: datetime


class Conversation(BaseModel):
    """A customer conversation owned by one tenant."""

    id: str
    tenant_id: str
    name: str = ""
    preferred_name: str | None = None
    folder: Folder = "inbox"

    is_ai_active: bool = True
    is_ai_thinking: bool = False
    pending_messages: list[Message] = Field(default_factory=list)
    follow_up_state: FollowUpState | None = None

    operator_notes: list[str] = Field(default_factory=list)
    system_notes: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    intervention_reason: str | None = None

    last_message: str | None = None
    last_message_at: datetime | None = None
    last_ai_response: str | None = None
    last_follow_up_sent: FollowUpStep | None = None
    ai_summary: str | None = None
    unread_count: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return self.preferred_name or self.name or self.id
