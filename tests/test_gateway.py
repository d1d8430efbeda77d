"""Tests for inbound webhook normalization."""

import pytest
from conftest import CONVERSATION_ID, NOW, TENANT_ID, make_settings

from convoflow.models.settings import ActionConfig, BusinessHours, DaySchedule
from convoflow.services.gateway import (
    OPERATOR_TAKEOVER_NOTE,
    GatewayAdapter,
    conversation_id_from_jid,
    extract_content,
)
from convoflow.services.notifications import sign_payload

JID = f"{CONVERSATION_ID}@s.whatsapp.net"


class RecordingSink:
    """Collects messages handed to the aggregation queue."""

    def __init__(self):
        self.messages = []

    async def enqueue(self, tenant_id, conversation_id, message):
        self.messages.append((tenant_id, conversation_id, message))


class FakeMediaStorage:
    def __init__(self):
        self.saved = []

    async def save(self, tenant_id, conversation_id, data_uri):
        self.saved.append(data_uri)
        return f"https://media.test/{tenant_id}/{conversation_id}/{len(self.saved)}"


class FakeTranscriber:
    def __init__(self, text=None):
        self.text = text
        self.calls = []

    async def transcribe(self, data_uri):
        self.calls.append(data_uri)
        return self.text


def upsert(message=None, from_me=False, jid=JID, message_id="MSG1", status=None, push_name="Maria"):
    """Build a messages.upsert webhook body."""
    data = {"key": {"id": message_id, "remoteJid": jid, "fromMe": from_me}, "pushName": push_name}
    if message is not None:
        data["message"] = message
    if status is not None:
        data["status"] = status
    return {"event": "messages.upsert", "instance": "inst", "data": data}


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def media_storage():
    return FakeMediaStorage()


@pytest.fixture
def transcriber():
    return FakeTranscriber("quero marcar um horário")


@pytest.fixture
def adapter(store, sink, messenger, notifier, media_storage, transcriber):
    return GatewayAdapter(store, sink, messenger, notifier, media_storage, transcriber, clock=lambda: NOW)


class TestExtractContent:
    """Tests for flattening gateway message objects."""

    def test_plain_conversation_text(self):
        """Test the plain text field."""
        assert extract_content({"conversation": "oi"}).text == "oi"

    def test_extended_text(self):
        """Test text from an extended text message."""
        content = extract_content({"extendedTextMessage": {"text": "veja https://exemplo.com"}})
        assert content.text == "veja https://exemplo.com"
        assert content.media_type is None

    def test_media_without_caption_uses_placeholder(self):
        """Test that captionless media gets a placeholder text."""
        content = extract_content({"audioMessage": {"mimetype": "audio/ogg; codecs=opus", "seconds": 7}})
        assert content.text == "Áudio"
        assert content.media_type == "audio"
        assert content.duration == 7

    def test_image_caption(self):
        """Test that an image caption becomes the text."""
        content = extract_content({"imageMessage": {"caption": "olha isso", "mimetype": "image/jpeg"}})
        assert (content.text, content.media_type, content.mimetype) == ("olha isso", "image", "image/jpeg")

    def test_empty_message(self):
        """Test that missing message objects produce empty text."""
        assert extract_content(None).text == ""
        assert extract_content({"reactionMessage": {"text": "👍"}}).text == ""


class TestConversationIdFromJid:
    """Tests for deriving conversation ids from remote identities."""

    def test_phone_number_is_extracted(self):
        """Test the number part of the identity."""
        assert conversation_id_from_jid(JID) == CONVERSATION_ID

    def test_malformed_identity(self):
        """Test identities without a server part."""
        assert conversation_id_from_jid("5511999990000") is None
        assert conversation_id_from_jid("@s.whatsapp.net") is None


class TestEventFiltering:
    """Tests for events that never reach the queue."""

    @pytest.mark.asyncio
    async def test_invalid_payload(self, adapter, sink):
        """Test that payloads without an event are rejected quietly."""
        assert await adapter.handle_event(TENANT_ID, {"data": {}}) == "invalid_payload"
        assert await adapter.handle_event(TENANT_ID, "not json object") == "invalid_payload"
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_other_events_ignored(self, adapter):
        """Test that non-upsert events are ignored."""
        assert await adapter.handle_event(TENANT_ID, {"event": "connection.update", "data": {}}) == "ignored_event"

    @pytest.mark.asyncio
    async def test_group_messages_ignored_even_when_from_me(self, adapter, store, sink):
        """Test that group chats are dropped before the operator check."""
        payload = upsert({"conversation": "oi grupo"}, from_me=True, jid="120363000000@g.us")

        assert await adapter.handle_event(TENANT_ID, payload) == "group_ignored"
        assert await store.get_conversation(TENANT_ID, "120363000000") is None
        assert sink.messages == []

    @pytest.mark.asyncio
    async def test_status_updates_ignored(self, adapter, store):
        """Test that upserts carrying only a status are not stored."""
        assert await adapter.handle_event(TENANT_ID, upsert(status="DELIVERY_ACK")) == "status_update"
        assert await store.get_conversation(TENANT_ID, CONVERSATION_ID) is None

    @pytest.mark.asyncio
    async def test_unknown_tenant(self, adapter, sink):
        """Test that messages for unconfigured tenants are dropped."""
        assert await adapter.handle_event("ghost", upsert({"conversation": "oi"})) == "unknown_tenant"
        assert sink.messages == []


class TestOperatorEcho:
    """Tests for messages sent from the tenant's own phone."""

    @pytest.mark.asyncio
    async def test_operator_message_disables_ai(self, adapter, store, sink, conversation):
        """Test that an operator message hands the conversation over."""
        payload = upsert({"conversation": "Oi Maria, aqui é a Ana"}, from_me=True)

        assert await adapter.handle_event(TENANT_ID, payload) == "operator_echo"

        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.is_ai_active is False
        assert stored.last_message == "Você: Oi Maria, aqui é a Ana"

        messages = await store.recent_messages(TENANT_ID, CONVERSATION_ID, 10)
        operator = [m for m in messages if m.origin == "operator"]
        assert [(m.text, m.status) for m in operator] == [("Oi Maria, aqui é a Ana", "delivered")]
        assert any(m.origin == "system" and m.text == OPERATOR_TAKEOVER_NOTE for m in messages)
        assert sink.messages == []


class TestInboundMessages:
    """Tests for customer messages."""

    @pytest.mark.asyncio
    async def test_new_conversation_is_created_and_enqueued(self, adapter, store, sink):
        """Test the first message from a new customer."""
        assert await adapter.handle_event(TENANT_ID, upsert({"conversation": "oi, tudo bem?"})) == "enqueued"

        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.name == "Maria"
        assert stored.folder == "inbox"
        assert stored.is_ai_active is True
        assert stored.unread_count == 1
        assert stored.last_message == "oi, tudo bem?"

        [(tenant_id, conversation_id, message)] = sink.messages
        assert (tenant_id, conversation_id) == (TENANT_ID, CONVERSATION_ID)
        assert message.id == "MSG1"
        assert message.provider_key == {"id": "MSG1", "remoteJid": JID, "fromMe": False}
        assert await store.get_message(TENANT_ID, CONVERSATION_ID, "MSG1") is not None

    @pytest.mark.asyncio
    async def test_unread_count_accumulates(self, adapter, store):
        """Test that each inbound message bumps the unread counter."""
        await adapter.handle_event(TENANT_ID, upsert({"conversation": "oi"}, message_id="A"))
        await adapter.handle_event(TENANT_ID, upsert({"conversation": "alô?"}, message_id="B"))

        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.unread_count == 2

    @pytest.mark.asyncio
    async def test_archived_conversation_is_reopened(self, adapter, store, conversation):
        """Test that a message on an archived conversation moves it back to the inbox."""
        await store.update_conversation(TENANT_ID, CONVERSATION_ID, folder="archived")

        await adapter.handle_event(TENANT_ID, upsert({"conversation": "voltei"}))

        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.folder == "inbox"

    @pytest.mark.asyncio
    async def test_inactive_ai_stores_only(self, adapter, store, sink, conversation):
        """Test that messages are stored but not enqueued while an operator is in charge."""
        await store.update_conversation(TENANT_ID, CONVERSATION_ID, is_ai_active=False)

        assert await adapter.handle_event(TENANT_ID, upsert({"conversation": "oi"})) == "ai_inactive"
        assert sink.messages == []
        assert await store.get_message(TENANT_ID, CONVERSATION_ID, "MSG1") is not None

    @pytest.mark.asyncio
    async def test_message_without_content_is_not_enqueued(self, adapter, sink):
        """Test that upserts with nothing for the assistant stop after storage."""
        payload = upsert({"reactionMessage": {"text": "👍"}})

        assert await adapter.handle_event(TENANT_ID, payload) == "no_content"
        assert sink.messages == []


class TestBusinessHoursGate:
    """Tests for messages arriving while the tenant is closed."""

    @pytest.fixture
    def settings(self):
        settings = make_settings(
            is_message_grouping_enabled=False,
            is_business_hours_enabled=True,
            send_out_of_hours_message=True,
            out_of_hours_message="Estamos fechados, respondemos amanhã.",
        )
        settings.business_hours = BusinessHours(days={"monday": DaySchedule(enabled=False)})
        return settings

    @pytest.mark.asyncio
    async def test_closed_sends_out_of_hours_message(self, adapter, sink, gateway_client):
        """Test that a closed tenant answers with the configured message instead of queueing."""
        assert await adapter.handle_event(TENANT_ID, upsert({"conversation": "oi"})) == "closed"

        assert sink.messages == []
        assert gateway_client.sent_texts == ["Estamos fechados, respondemos amanhã."]

    @pytest.mark.asyncio
    async def test_closed_without_message_stays_silent(self, adapter, store, sink, gateway_client, settings):
        """Test that nothing is sent when the out-of-hours message is off."""
        settings.automation.send_out_of_hours_message = False
        store.put_tenant_settings(settings)

        assert await adapter.handle_event(TENANT_ID, upsert({"conversation": "oi"})) == "closed"
        assert gateway_client.sent_texts == []


class TestMediaHandling:
    """Tests for embedded media and audio transcription."""

    @pytest.mark.asyncio
    async def test_image_is_stored_and_attached(self, adapter, store, sink, media_storage):
        """Test that images are uploaded and passed to the queue as a data URI."""
        payload = upsert({"imageMessage": {"mimetype": "image/jpeg"}, "base64": "aGVsbG8="})

        assert await adapter.handle_event(TENANT_ID, payload) == "enqueued"

        assert media_storage.saved == ["data:image/jpeg;base64,aGVsbG8="]
        [(_, _, message)] = sink.messages
        assert message.media_type == "image"
        assert message.image_data_uri == "data:image/jpeg;base64,aGVsbG8="
        assert message.media_url.startswith("https://media.test/")

        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.last_message == "📷 Imagem"

    @pytest.mark.asyncio
    async def test_audio_is_transcribed(self, adapter, store, sink, transcriber):
        """Test that audio transcriptions reach both the store and the queue."""
        payload = upsert({"audioMessage": {"mimetype": "audio/ogg; codecs=opus", "seconds": 4}, "base64": "T2dn"})

        assert await adapter.handle_event(TENANT_ID, payload) == "enqueued"

        assert transcriber.calls == ["data:audio/ogg;base64,T2dn"]
        [(_, _, message)] = sink.messages
        assert message.transcription == "quero marcar um horário"
        assert message.content == "quero marcar um horário"

        stored = await store.get_message(TENANT_ID, CONVERSATION_ID, "MSG1")
        assert stored.transcription_status == "success"

    @pytest.mark.asyncio
    async def test_failed_transcription_is_recorded(self, adapter, store, transcriber):
        """Test that a transcription failure marks the message as failed."""
        transcriber.text = None
        payload = upsert({"audioMessage": {"mimetype": "audio/ogg", "seconds": 4}, "base64": "T2dn"})

        await adapter.handle_event(TENANT_ID, payload)

        stored = await store.get_message(TENANT_ID, CONVERSATION_ID, "MSG1")
        assert stored.transcription_status == "failed"
        assert stored.transcription is None

    @pytest.mark.asyncio
    async def test_audio_without_mimetype_skips_transcription(self, adapter, store, transcriber):
        """Test that audio that cannot become a data URI is marked failed without transcribing."""
        payload = upsert({"audioMessage": {"seconds": 4}, "base64": "T2dn"})

        await adapter.handle_event(TENANT_ID, payload)

        assert transcriber.calls == []
        stored = await store.get_message(TENANT_ID, CONVERSATION_ID, "MSG1")
        assert stored.transcription_status == "failed"


class TestInboundNotifications:
    """Tests for events fired on inbound messages."""

    @pytest.fixture
    def settings(self):
        settings = make_settings(is_message_grouping_enabled=False)
        settings.actions = [
            ActionConfig(name="crm", event="message_received", url="https://hooks.test/received", secret="s3cret")
        ]
        return settings

    @pytest.mark.asyncio
    async def test_message_received_is_signed_and_sent(self, adapter, notifier, notifications):
        """Test that matching actions receive a signed notification."""
        await adapter.handle_event(TENANT_ID, upsert({"conversation": "oi"}))
        await notifier.drain()

        [request] = notifications
        assert str(request.url) == "https://hooks.test/received"
        assert request.headers["x-hub-signature-256"] == sign_payload(request.content, "s3cret")
