"""Tenant configuration documents (read-only for the engine)."""

from typing import Literal

from pydantic import BaseModel, Field

from convoflow.models.conversation import FollowUpStep

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

NotificationEvent = Literal[
    "conversation_created",
    "conversation_updated",
    "message_received",
    "human_support_requested",
    "conversation_ended_by_ai",
    "tag_added",
    "appointment_scheduled",
    "appointment_canceled",
    "client_info_updated",
]


class FollowUpStepConfig(BaseModel):
    enabled: bool = False
    interval_hours: float = 24
    message: str = ""


class FollowUpSettings(BaseModel):
    first: FollowUpStepConfig = Field(default_factory=FollowUpStepConfig)
    second: FollowUpStepConfig = Field(default_factory=FollowUpStepConfig)
    third: FollowUpStepConfig = Field(default_factory=FollowUpStepConfig)

    def get(self, step: FollowUpStep) -> FollowUpStepConfig:
        return getattr(self, step)


class AutomationSettings(BaseModel):
    """Automation toggles for grouping, follow-ups and business hours."""

    is_message_grouping_enabled: bool = True
    message_grouping_interval: float = 10
    ai_temperature: float = 0.2

    is_follow_up_enabled: bool = False
    follow_ups: FollowUpSettings = Field(default_factory=FollowUpSettings)

    is_business_hours_enabled: bool = False
    send_out_of_hours_message: bool = False
    out_of_hours_message: str = ""


class AiProviderSettings(BaseModel):
    api_key: str | None = None
    primary_model: str | None = None
    is_fallback_enabled: bool = True


class AiConfig(BaseModel):
    """Tenant-authored persona and instructions."""

    full_prompt: str = ""


class MessagingCredentials(BaseModel):
    """Connection details for the tenant's messaging gateway instance."""

    api_url: str
    api_key: str
    instance_name: str


class TimeSlot(BaseModel):
    start: str  # HH:MM
    end: str  # HH:MM


class DaySchedule(BaseModel):
    enabled: bool = True
    slots: list[TimeSlot] = Field(default_factory=list)


class BusinessHours(BaseModel):
    """Weekly opening schedule keyed by lowercase English weekday name."""

    timezone: str = "America/Sao_Paulo"
    days: dict[str, DaySchedule] = Field(default_factory=dict)


class KnowledgeBaseItem(BaseModel):
    type: Literal["faq", "product"] = "faq"
    question: str | None = None
    answer: str | None = None
    name: str | None = None
    description: str | None = None
    price: float | None = None
    image_urls: list[str] = Field(default_factory=list)


class ActionConfig(BaseModel):
    """Outbound notification hook configured by the tenant."""

    name: str = ""
    event: NotificationEvent
    url: str
    is_active: bool = True
    secret: str | None = None
    trigger_tags: list[str] = Field(default_factory=list)


class TenantSettings(BaseModel):
    """Everything the engine needs to know about one tenant."""

    tenant_id: str
    automation: AutomationSettings = Field(default_factory=AutomationSettings)
    ai_provider: AiProviderSettings = Field(default_factory=AiProviderSettings)
    ai_config: AiConfig = Field(default_factory=AiConfig)
    messaging: MessagingCredentials | None = None
    business_hours: BusinessHours | None = None
    knowledge_base: list[KnowledgeBaseItem] = Field(default_factory=list)
    actions: list[ActionConfig] = Field(default_factory=list)
