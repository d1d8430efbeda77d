"""Normalizes inbound gateway events into conversation updates."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

from pydantic import ValidationError

from convoflow.models.conversation import MediaType, Message, utcnow
from convoflow.models.webhook import WebhookEvent, WebhookMessageData
from convoflow.services.business_hours import is_business_open
from convoflow.services.media import MediaError, MediaStorage, Transcriber, to_data_uri
from convoflow.services.notifications import ActionNotifier
from convoflow.services.outbound import MEDIA_PLACEHOLDERS, OutboundMessenger, preview_line
from convoflow.services.store import ConversationStore
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

UPSERT_EVENT = "messages.upsert"
GROUP_SUFFIX = "@g.us"
OPERATOR_TAKEOVER_NOTE = "AI disabled: operator message detected"

_MEDIA_KEYS: tuple[tuple[str, MediaType], ...] = (
    ("imageMessage", "image"),
    ("videoMessage", "video"),
    ("audioMessage", "audio"),
    ("documentMessage", "document"),
)


class MessageSink(Protocol):
    """Where canonical inbound messages go (the aggregation queue)."""

    async def enqueue(self, tenant_id: str, conversation_id: str, message: Message) -> None: ...


@dataclass
class MessageContent:
    """What the gateway's message object carries, flattened."""

    text: str
    media_type: MediaType | None = None
    mimetype: str | None = None
    duration: int | None = None
    base64: str | None = None


def extract_content(message: dict[str, Any] | None) -> MessageContent:
    """Flatten the gateway message object into text and media fields."""
    if not message:
        return MessageContent(text="")

    raw = message.get("base64")
    if message.get("conversation"):
        return MessageContent(text=message["conversation"], base64=raw)

    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return MessageContent(text=extended["text"], base64=raw)

    for key, media_type in _MEDIA_KEYS:
        media = message.get(key)
        if isinstance(media, dict):
            seconds = media.get("seconds")
            return MessageContent(
                text=media.get("caption") or MEDIA_PLACEHOLDERS[media_type],
                media_type=media_type,
                mimetype=media.get("mimetype"),
                duration=int(seconds) if isinstance(seconds, int | float) and seconds else None,
                base64=raw,
            )

    return MessageContent(text="", base64=raw)


def conversation_id_from_jid(remote_jid: str) -> str | None:
    """Extract the phone number from a ``number@server`` identity."""
    if "@" not in remote_jid:
        return None
    return remote_jid.split("@", 1)[0] or None


class GatewayAdapter:
    """Turns provider webhook payloads into stored messages and queued batches."""

    def __init__(
        self,
        store: ConversationStore,
        queue: MessageSink,
        messenger: OutboundMessenger,
        notifier: ActionNotifier,
        media_storage: MediaStorage | None = None,
        transcriber: Transcriber | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.messenger = messenger
        self.notifier = notifier
        self.media_storage = media_storage
        self.transcriber = transcriber
        self.clock = clock

    async def handle_event(self, tenant_id: str, payload: Any) -> str:
        """Process one webhook payload.

        Never raises: every failure is logged and reported through the
        returned outcome.

        Args:
            tenant_id: Tenant the webhook was registered for
            payload: Decoded JSON body

        Returns:
            Short outcome label (enqueued, operator_echo, group_ignored, ...)
        """
        try:
            event = WebhookEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Invalid webhook payload for tenant {tenant_id}: {e.errors()}")
            return "invalid_payload"

        if event.event != UPSERT_EVENT:
            logger.info(f"Ignoring '{event.event}' event for tenant {tenant_id}")
            return "ignored_event"

        try:
            data = WebhookMessageData.model_validate(event.data)
        except ValidationError as e:
            logger.warning(f"Invalid {UPSERT_EVENT} data for tenant {tenant_id}: {e.errors()}")
            return "invalid_payload"

        remote_jid = data.key.remote_jid
        if remote_jid.endswith(GROUP_SUFFIX):
            logger.info(f"Ignoring group message {data.key.id} from {remote_jid}")
            return "group_ignored"

        conversation_id = conversation_id_from_jid(remote_jid)
        if conversation_id is None:
            logger.warning(f"Cannot derive a conversation id from '{remote_jid}' (tenant {tenant_id})")
            return "invalid_payload"

        try:
            if data.key.from_me:
                return await self._handle_operator_echo(tenant_id, conversation_id, data)
            if data.message:
                return await self._handle_inbound(tenant_id, conversation_id, data)
        except Exception as e:
            logger.error(
                f"Webhook processing failed for {conversation_id} (tenant {tenant_id}): {e}", exc_info=True
            )
            return "error"

        if data.status:
            logger.info(f"Status update '{data.status}' for message {data.key.id} ignored")
            return "status_update"

        logger.info(f"{UPSERT_EVENT} without message or status ignored for {conversation_id}")
        return "ignored_upsert"

    async def _handle_operator_echo(self, tenant_id: str, conversation_id: str, data: WebhookMessageData) -> str:
        """Record a message sent from the tenant's own phone and hand the conversation to the operator."""
        content = extract_content(data.message)
        message = Message(
            id=data.key.id,
            direction="agent",
            origin="operator",
            text=content.text,
            timestamp=self._timestamp(data),
            status="delivered",
            media_type=content.media_type,
            mimetype=content.mimetype,
            duration=content.duration,
            provider_key=data.key.model_dump(by_alias=True),
        )
        await self.store.add_message(tenant_id, conversation_id, message)
        await self.store.upsert_conversation(
            tenant_id,
            conversation_id,
            is_ai_active=False,
            last_message=preview_line(message, "Você"),
            last_message_at=message.timestamp,
        )
        await self.store.add_message(
            tenant_id, conversation_id, Message(direction="agent", origin="system", text=OPERATOR_TAKEOVER_NOTE)
        )

        logger.info(f"Operator intervention detected for {conversation_id}, AI disabled (tenant {tenant_id})")
        return "operator_echo"

    async def _handle_inbound(self, tenant_id: str, conversation_id: str, data: WebhookMessageData) -> str:
        settings = await self.store.get_tenant_settings(tenant_id)
        if settings is None:
            logger.error(f"Unknown tenant {tenant_id}, dropping message {data.key.id}")
            return "unknown_tenant"

        content = extract_content(data.message)
        message = Message(
            id=data.key.id,
            direction="customer",
            text=content.text,
            timestamp=self._timestamp(data),
            media_type=content.media_type,
            mimetype=content.mimetype,
            duration=content.duration,
            transcription_status="pending" if content.media_type == "audio" else None,
            provider_key=data.key.model_dump(by_alias=True),
        )

        existing = await self.store.get_conversation(tenant_id, conversation_id)
        fields: dict[str, Any] = {
            "name": data.push_name or conversation_id,
            "last_message": preview_line(message),
            "last_message_at": message.timestamp,
            "unread_count": (existing.unread_count if existing else 0) + 1,
        }
        if existing is None:
            fields.update(folder="inbox", is_ai_active=True)
        elif existing.folder == "archived":
            logger.info(f"Re-opening archived conversation {conversation_id}")
            fields["folder"] = "inbox"
        await self.store.upsert_conversation(tenant_id, conversation_id, **fields)

        triggering = message.model_dump(mode="json", exclude={"image_data_uri"})
        self.notifier.fire(
            tenant_id,
            "conversation_created" if existing is None else "conversation_updated",
            {"conversation_id": conversation_id, "triggering_message": triggering},
        )

        data_uri = await self._store_media(tenant_id, conversation_id, message, content)

        await self.store.add_message(tenant_id, conversation_id, message)
        received = message.model_dump(mode="json", exclude={"image_data_uri"})
        self.notifier.fire(tenant_id, "message_received", {"conversation_id": conversation_id, "message": received})

        if message.media_type == "audio" and data_uri and message.transcription_status != "failed":
            await self._transcribe(tenant_id, conversation_id, message, data_uri)

        conversation = await self.store.get_conversation(tenant_id, conversation_id)
        if conversation is None or not conversation.is_ai_active:
            logger.info(f"AI inactive for {conversation_id}, message {message.id} stored only")
            return "ai_inactive"

        automation = settings.automation
        if automation.is_business_hours_enabled and not is_business_open(settings.business_hours, message.timestamp):
            logger.info(f"Message {message.id} for {conversation_id} arrived outside business hours")
            if automation.send_out_of_hours_message and automation.out_of_hours_message.strip():
                await self.messenger.send_text(tenant_id, conversation_id, automation.out_of_hours_message)
            return "closed"

        if message.text or message.transcription or message.media_type == "image":
            await self.queue.enqueue(tenant_id, conversation_id, message)
            return "enqueued"

        logger.info(f"Message {message.id} has no text, transcription or image for the assistant")
        return "no_content"

    async def _store_media(
        self, tenant_id: str, conversation_id: str, message: Message, content: MessageContent
    ) -> str | None:
        """Upload embedded media and fill the message's media fields. Returns the data URI."""
        if not message.media_type or not content.base64:
            return None

        data_uri = to_data_uri(content.base64, content.mimetype)
        try:
            if data_uri is None:
                raise MediaError("Cannot build a data URI without a mimetype")
            if self.media_storage is not None:
                message.media_url = await self.media_storage.save(tenant_id, conversation_id, data_uri)
        except (MediaError, OSError) as e:
            logger.error(f"Saving {message.media_type} for {conversation_id} failed: {e}")
            if message.media_type == "audio":
                message.transcription_status = "failed"
            return None

        if message.media_type == "image":
            message.image_data_uri = data_uri
        return data_uri

    async def _transcribe(self, tenant_id: str, conversation_id: str, message: Message, data_uri: str) -> None:
        transcription = await self.transcriber.transcribe(data_uri) if self.transcriber else None
        if transcription:
            message.transcription = transcription
            message.transcription_status = "success"
        else:
            logger.warning(f"Transcription failed for audio {message.id} in {conversation_id}")
            message.transcription_status = "failed"

        await self.store.update_message(
            tenant_id,
            conversation_id,
            message.id,
            transcription=message.transcription,
            transcription_status=message.transcription_status,
        )

    def _timestamp(self, data: WebhookMessageData) -> datetime:
        if data.message_timestamp:
            return datetime.fromtimestamp(data.message_timestamp, UTC)
        return self.clock()
