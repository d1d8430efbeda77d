"""Persisted outbound sends with append-only delivery status."""

from dataclasses import dataclass
from typing import Any

from convoflow.clients.evolution import EvolutionClient, MessagingError, Presence
from convoflow.models.conversation import Message, Origin, utcnow
from convoflow.models.settings import MessagingCredentials
from convoflow.services.store import ConversationStore
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class SendResult:
    """Outcome of one outbound send."""

    success: bool
    message_id: str | None = None
    error: str | None = None
    network: bool = False


# Text stored for media messages that arrive without a caption
MEDIA_PLACEHOLDERS = {"image": "Imagem", "video": "Vídeo", "audio": "Áudio", "document": "Documento"}


def preview_line(message: Message, prefix: str | None = None) -> str:
    """Build the one-line conversation preview for a message."""
    caption = message.text if message.text != MEDIA_PLACEHOLDERS.get(message.media_type or "") else ""
    if message.media_type == "audio":
        text = "🎤 Áudio" + (f" ({message.duration}s)" if message.duration else "")
    elif message.media_type == "image":
        text = "📷 Imagem" + (f": {caption}" if caption else "")
    elif message.media_type:
        text = f"[{message.media_type.capitalize()}] {caption}".strip()
    else:
        text = message.text

    return f"{prefix}: {text}" if prefix else text


class OutboundMessenger:
    """Sends messages through the gateway and records them in the store."""

    def __init__(self, store: ConversationStore, client: EvolutionClient):
        self.store = store
        self.client = client

    async def send_text(
        self,
        tenant_id: str,
        conversation_id: str,
        text: str,
        origin: Origin = "ai",
        quoted: Message | None = None,
        link_preview: bool | None = None,
    ) -> SendResult:
        """Send a text message and persist it.

        The message is stored as ``sending`` first and then moved to
        ``delivered`` or ``failed``.

        Args:
            tenant_id: Tenant owning the conversation
            conversation_id: Destination conversation (phone number)
            text: Message body
            origin: Who authored the message
            quoted: Customer message to quote
            link_preview: Gateway link preview toggle

        Returns:
            Send outcome, with ``network`` set when retries were exhausted
        """
        credentials = await self._credentials(tenant_id)
        if credentials is None:
            return SendResult(success=False, error=f"Messaging credentials missing for tenant {tenant_id}")

        message = Message(direction="agent", origin=origin, text=text, status="sending")
        await self._record(tenant_id, conversation_id, message)

        quoted_payload = None
        if quoted is not None and quoted.provider_key:
            quoted_payload = {"key": quoted.provider_key, "message": {"conversation": quoted.content}}

        try:
            response = await self.client.send_text(credentials, conversation_id, text, quoted_payload, link_preview)
        except MessagingError as e:
            return await self._failed(tenant_id, conversation_id, message, e)

        await self.store.update_message_status(
            tenant_id, conversation_id, message.id, "delivered", api_response=self._simplify(response)
        )
        return SendResult(success=True, message_id=message.id)

    async def send_media(
        self,
        tenant_id: str,
        conversation_id: str,
        mediatype: str,
        media: str,
        caption: str | None = None,
        mimetype: str | None = None,
        file_name: str | None = None,
    ) -> SendResult:
        """Send one media item and persist it."""
        credentials = await self._credentials(tenant_id)
        if credentials is None:
            return SendResult(success=False, error=f"Messaging credentials missing for tenant {tenant_id}")

        message = Message(
            direction="agent",
            origin="ai",
            text=caption or "",
            status="sending",
            media_type=mediatype if mediatype in ("image", "video", "audio", "document") else "document",
            media_url=media,
            mimetype=mimetype,
        )
        await self._record(tenant_id, conversation_id, message)

        try:
            response = await self.client.send_media(
                credentials, conversation_id, mediatype, media, caption, mimetype, file_name
            )
        except MessagingError as e:
            return await self._failed(tenant_id, conversation_id, message, e)

        await self.store.update_message_status(
            tenant_id, conversation_id, message.id, "delivered", api_response=self._simplify(response)
        )
        return SendResult(success=True, message_id=message.id)

    async def send_presence(self, tenant_id: str, conversation_id: str, presence: Presence) -> bool:
        credentials = await self._credentials(tenant_id)
        if credentials is None:
            return False
        return await self.client.send_presence(credentials, conversation_id, presence)

    async def _credentials(self, tenant_id: str) -> MessagingCredentials | None:
        settings = await self.store.get_tenant_settings(tenant_id)
        if settings is None or settings.messaging is None:
            logger.error(f"No messaging credentials configured for tenant {tenant_id}")
            return None
        return settings.messaging

    async def _record(self, tenant_id: str, conversation_id: str, message: Message) -> None:
        await self.store.add_message(tenant_id, conversation_id, message)
        prefix = "IA" if message.origin == "ai" else "Você"
        await self.store.upsert_conversation(
            tenant_id, conversation_id, last_message=preview_line(message, prefix), last_message_at=utcnow()
        )

    async def _failed(
        self, tenant_id: str, conversation_id: str, message: Message, error: MessagingError
    ) -> SendResult:
        logger.error(f"Send to {conversation_id} failed for tenant {tenant_id}: {error}")
        await self.store.update_message_status(
            tenant_id, conversation_id, message.id, "failed", api_response={"error": str(error)}
        )
        return SendResult(success=False, message_id=message.id, error=str(error), network=error.network)

    @staticmethod
    def _simplify(response: dict[str, Any]) -> dict[str, Any]:
        key = response.get("key") if isinstance(response, dict) else None
        return {"key": key, "status": response.get("status")} if key else dict(response or {})
