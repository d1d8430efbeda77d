"""Engine wiring: builds every component and owns their lifecycle."""

import json
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from convoflow.clients.anthropic import AnthropicClient, Generator
from convoflow.clients.evolution import EvolutionClient
from convoflow.graphs.nodes import ReasoningNodes
from convoflow.graphs.reasoning import ReasoningLoopController
from convoflow.models.conversation import utcnow
from convoflow.models.settings import TenantSettings
from convoflow.services.aggregation import AggregationQueue, TimerRegistry
from convoflow.services.appointments import AppointmentService, InMemoryAppointmentService
from convoflow.services.delivery import DeliveryConfig, DeliveryPipeline
from convoflow.services.followups import FollowUpScheduler
from convoflow.services.gateway import GatewayAdapter
from convoflow.services.media import GroqTranscriber, LocalMediaStorage, MediaStorage, Transcriber
from convoflow.services.notifications import ActionNotifier
from convoflow.services.outbound import OutboundMessenger
from convoflow.services.store import ConversationStore, InMemoryConversationStore
from convoflow.services.summaries import ConversationSummarizer
from convoflow.tools.registry import create_tool_dispatcher
from convoflow.utils.config import EngineConfig
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)


def load_tenants(path: str | Path) -> list[TenantSettings]:
    """Load tenant configuration documents from a JSON list."""
    documents = json.loads(Path(path).read_text(encoding="utf-8"))
    return [TenantSettings.model_validate(document) for document in documents]


class Engine:
    """The conversation orchestration engine and its collaborators."""

    def __init__(
        self,
        store: ConversationStore,
        generator: Generator,
        client: EvolutionClient,
        notifier: ActionNotifier | None = None,
        media_storage: MediaStorage | None = None,
        transcriber: Transcriber | None = None,
        appointment_service: AppointmentService | None = None,
        config: EngineConfig | None = None,
        timers: TimerRegistry | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Wire the engine.

        Args:
            store: Conversation store
            generator: Text generation client
            client: Messaging gateway client
            notifier: Tenant notification sender (created if omitted)
            media_storage: Object storage for inbound media
            transcriber: Speech-to-text for inbound audio
            appointment_service: Calendar backing the scheduling tools
            config: Process configuration
            timers: Debounce timer registry
            clock: Source of the current instant
        """
        self.config = config or EngineConfig()
        self.store = store
        self.generator = generator
        self.client = client
        self.notifier = notifier or ActionNotifier(store)
        self.transcriber = transcriber

        self.messenger = OutboundMessenger(store, client)
        self.delivery = DeliveryPipeline(
            store,
            self.messenger,
            DeliveryConfig(
                composing_delay=self.config.composing_delay,
                between_chunks_delay=self.config.between_chunks_delay,
            ),
            clock=clock,
        )
        self.summarizer = ConversationSummarizer(store, generator, history_limit=self.config.history_limit)
        self.dispatcher = create_tool_dispatcher(
            store,
            self.messenger,
            self.notifier,
            appointment_service or InMemoryAppointmentService(),
            self.summarizer,
        )
        self.controller = ReasoningLoopController(
            store,
            ReasoningNodes(generator, self.dispatcher, self.delivery, clock=clock),
            history_limit=self.config.history_limit,
            max_turns=self.config.max_reasoning_turns,
        )
        self.queue = AggregationQueue(
            store, self.controller.run, timers=timers, busy_retry_seconds=self.config.busy_retry_seconds
        )
        self.gateway = GatewayAdapter(
            store, self.queue, self.messenger, self.notifier, media_storage, transcriber, clock=clock
        )
        self.follow_ups = FollowUpScheduler(store, self.messenger, clock=clock)

    @classmethod
    def from_config(cls, config: EngineConfig) -> "Engine":
        """Build an engine with the default production collaborators."""
        tenants = load_tenants(config.tenants_file) if config.tenants_file else []
        logger.info(f"Starting engine with {len(tenants)} tenant(s)")

        store = InMemoryConversationStore(tenants)
        return cls(
            store=store,
            generator=AnthropicClient(api_key=config.anthropic_api_key),
            client=EvolutionClient(),
            notifier=ActionNotifier(store),
            media_storage=LocalMediaStorage(config.media_storage_dir, config.media_base_url),
            transcriber=GroqTranscriber(api_key=config.groq_api_key),
            config=config,
        )

    async def aclose(self) -> None:
        """Stop pending timers and close HTTP clients."""
        await self.queue.shutdown()
        await self.notifier.aclose()
        await self.client.aclose()
        for resource in (self.generator, self.transcriber):
            close = getattr(resource, "aclose", None)
            if close is not None:
                await close()


_engine: Engine | None = None


def get_engine() -> Engine:
    """Get the process-wide engine, building it from the environment on first use."""
    global _engine
    if _engine is None:
        _engine = Engine.from_config(EngineConfig.from_env())
    return _engine


async def close_engine() -> None:
    global _engine
    if _engine is not None:
        await _engine.aclose()
        _engine = None
