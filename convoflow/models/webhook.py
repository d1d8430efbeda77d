"""Inbound messaging-gateway event payloads."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MessageKey(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    remote_jid: str = Field(alias="remoteJid")
    from_me: bool = Field(default=False, alias="fromMe")


class WebhookMessageData(BaseModel):
    """The ``data`` section of a messages.upsert event."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    key: MessageKey
    push_name: str | None = Field(default=None, alias="pushName")
    message: dict[str, Any] | None = None
    message_type: str | None = Field(default=None, alias="messageType")
    message_timestamp: int | None = Field(default=None, alias="messageTimestamp")
    status: str | None = None


class WebhookEvent(BaseModel):
    """Envelope posted by the gateway for every event."""

    model_config = ConfigDict(extra="allow")

    event: str
    instance: str | None = None
    data: dict[str, Any] | list[Any] | None = None
