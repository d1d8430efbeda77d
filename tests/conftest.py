"""Shared fixtures and fakes for engine tests."""

import json
from datetime import UTC, datetime

import httpx
import pytest
import pytest_asyncio

from convoflow.clients.anthropic import GenerationError
from convoflow.clients.evolution import MessagingError
from convoflow.graphs.nodes import ReasoningNodes
from convoflow.graphs.reasoning import ReasoningLoopController
from convoflow.models.conversation import Message
from convoflow.models.llm import GenerationResult
from convoflow.models.settings import (
    AiProviderSettings,
    AutomationSettings,
    FollowUpSettings,
    FollowUpStepConfig,
    MessagingCredentials,
    TenantSettings,
)
from convoflow.services.appointments import InMemoryAppointmentService
from convoflow.services.delivery import DeliveryConfig, DeliveryPipeline
from convoflow.services.notifications import ActionNotifier
from convoflow.services.outbound import OutboundMessenger
from convoflow.services.store import InMemoryConversationStore
from convoflow.services.summaries import ConversationSummarizer
from convoflow.tools.registry import create_tool_dispatcher

TENANT_ID = "tenant-1"
CONVERSATION_ID = "5511999990000"
NOW = datetime(2025, 3, 10, 15, 0, tzinfo=UTC)  # Monday, 12:00 in Sao Paulo
SUMMARY = "* Main subject: opening hours\n* Outcome: question answered\n* Sentiment: satisfied"


class FakeEvolutionClient:
    """Records gateway calls; sends can be scripted to fail."""

    def __init__(self):
        self.texts: list[dict] = []
        self.media: list[dict] = []
        self.presences: list[str] = []
        self.failures: list[MessagingError] = []

    async def send_text(self, credentials, phone, text, quoted=None, link_preview=None):
        if self.failures:
            raise self.failures.pop(0)
        self.texts.append({"phone": phone, "text": text, "quoted": quoted})
        return {"key": {"id": f"SENT{len(self.texts)}", "fromMe": True}, "status": "PENDING"}

    async def send_media(self, credentials, phone, mediatype, media, caption=None, mimetype=None, file_name=None):
        if self.failures:
            raise self.failures.pop(0)
        self.media.append({"phone": phone, "mediatype": mediatype, "media": media, "caption": caption})
        return {"key": {"id": f"MEDIA{len(self.media)}"}}

    async def send_presence(self, credentials, phone, presence):
        self.presences.append(presence)
        return True

    async def aclose(self):
        pass

    @property
    def sent_texts(self) -> list[str]:
        return [entry["text"] for entry in self.texts]


class ScriptedGenerator:
    """Generation client returning scripted outputs in order.

    Each script entry is either raw model text or an exception to raise.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls: list[dict] = []

    async def generate(self, model, system_prompt, prompt, image_data_uri=None, temperature=None, api_key=None):
        self.calls.append({"model": model, "system_prompt": system_prompt, "prompt": prompt, "image": image_data_uri})
        if not self.script:
            raise GenerationError("script exhausted", model=model, retryable=False)

        entry = self.script.pop(0)
        if isinstance(entry, Exception):
            raise entry
        return GenerationResult(text=entry, model=model)

    @property
    def models(self) -> list[str]:
        return [call["model"] for call in self.calls]


def decision(reasoning="ok", response=None, tool=None, **args) -> str:
    """Build raw model output for a decision."""
    payload = {"reasoning": reasoning, "response_to_client": response}
    payload["tool_request"] = {"name": tool, "args": args} if tool else None
    return json.dumps(payload)


def make_settings(**automation) -> TenantSettings:
    return TenantSettings(
        tenant_id=TENANT_ID,
        automation=AutomationSettings(**automation),
        ai_provider=AiProviderSettings(api_key="sk-test", primary_model="claude-haiku-4-5"),
        messaging=MessagingCredentials(api_url="https://gateway.test", api_key="gw-key", instance_name="inst"),
    )


def follow_up_settings(first=True, second=True, third=True) -> FollowUpSettings:
    return FollowUpSettings(
        first=FollowUpStepConfig(enabled=first, interval_hours=2, message="Ainda está por aí?"),
        second=FollowUpStepConfig(enabled=second, interval_hours=24, message="Posso ajudar em algo mais?"),
        third=FollowUpStepConfig(enabled=third, interval_hours=72, message="Última chamada!"),
    )


def customer_message(text: str, **fields) -> Message:
    return Message(
        direction="customer",
        text=text,
        provider_key={"id": f"IN-{text[:8]}", "remoteJid": f"{CONVERSATION_ID}@s.whatsapp.net", "fromMe": False},
        **fields,
    )


@pytest.fixture
def settings():
    return make_settings(is_message_grouping_enabled=False)


@pytest.fixture
def store(settings):
    return InMemoryConversationStore([settings])


@pytest.fixture
def gateway_client():
    return FakeEvolutionClient()


@pytest.fixture
def messenger(store, gateway_client):
    return OutboundMessenger(store, gateway_client)


@pytest.fixture
def notifications():
    """Requests captured by the notifier's mock transport."""
    return []


@pytest.fixture
def notifier(store, notifications):
    def handler(request: httpx.Request) -> httpx.Response:
        notifications.append(request)
        return httpx.Response(200, json={"ok": True})

    return ActionNotifier(store, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


@pytest.fixture
def delivery(store, messenger):
    return DeliveryPipeline(
        store, messenger, DeliveryConfig(composing_delay=0, between_chunks_delay=0), clock=lambda: NOW
    )


@pytest.fixture
def appointments():
    return InMemoryAppointmentService()


@pytest.fixture
def summary_generator():
    return ScriptedGenerator(SUMMARY)


@pytest.fixture
def summarizer(store, summary_generator):
    return ConversationSummarizer(store, summary_generator)


@pytest.fixture
def dispatcher(store, messenger, notifier, appointments, summarizer):
    return create_tool_dispatcher(store, messenger, notifier, appointments, summarizer)


@pytest.fixture
def make_controller(store, dispatcher, delivery):
    """Build a loop controller around a scripted generator."""

    def build(generator, max_turns=6, handoff_message="Vou chamar alguém da equipe."):
        nodes = ReasoningNodes(generator, dispatcher, delivery, clock=lambda: NOW, handoff_message=handoff_message)
        return ReasoningLoopController(store, nodes, history_limit=30, max_turns=max_turns)

    return build


@pytest_asyncio.fixture
async def conversation(store):
    return await store.upsert_conversation(TENANT_ID, CONVERSATION_ID, name="Maria")
