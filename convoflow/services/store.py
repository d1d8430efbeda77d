"""Conversation store interface and in-memory implementation."""

from collections.abc import Iterable
from datetime import datetime
from typing import Any, Protocol

from convoflow.models.conversation import Conversation, DeliveryStatus, Message, utcnow
from convoflow.models.settings import TenantSettings
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)


class ConversationNotFoundError(LookupError):
    """Raised when an update targets a conversation that does not exist."""


class ConversationStore(Protocol):
    """Interface for the document store backing conversations.

    Every method operates on a single document and is atomic with respect to
    other coroutines: implementations must not yield control between reading
    and writing the same document.
    """

    async def get_tenant_settings(self, tenant_id: str) -> TenantSettings | None:
        """Get the configuration document for a tenant."""
        ...

    async def list_tenants(self) -> list[TenantSettings]:
        """List every tenant configuration."""
        ...

    async def get_conversation(self, tenant_id: str, conversation_id: str) -> Conversation | None:
        """Get a conversation snapshot, or None if it does not exist."""
        ...

    async def upsert_conversation(self, tenant_id: str, conversation_id: str, **fields: Any) -> Conversation:
        """Create the conversation if missing, then merge ``fields`` into it."""
        ...

    async def update_conversation(self, tenant_id: str, conversation_id: str, **fields: Any) -> Conversation:
        """Merge ``fields`` into an existing conversation.

        Raises:
            ConversationNotFoundError: If the conversation does not exist
        """
        ...

    async def append_to_list(self, tenant_id: str, conversation_id: str, field: str, values: Iterable[str]) -> None:
        """Array-union ``values`` into a list field (tags, notes)."""
        ...

    async def append_pending_message(self, tenant_id: str, conversation_id: str, message: Message) -> None:
        """Append a message to the conversation's pending queue."""
        ...

    async def drain_pending_messages(self, tenant_id: str, conversation_id: str) -> list[Message]:
        """Read and clear the pending queue in one indivisible step."""
        ...

    async def requeue_pending_messages(self, tenant_id: str, conversation_id: str, messages: list[Message]) -> None:
        """Put drained messages back at the head of the pending queue."""
        ...

    async def try_begin_thinking(self, tenant_id: str, conversation_id: str) -> bool:
        """Test-and-set the thinking flag. Returns False if it was already set."""
        ...

    async def end_thinking(self, tenant_id: str, conversation_id: str) -> None:
        """Clear the thinking flag."""
        ...

    async def add_message(self, tenant_id: str, conversation_id: str, message: Message) -> None:
        """Store a message record under the conversation."""
        ...

    async def get_message(self, tenant_id: str, conversation_id: str, message_id: str) -> Message | None:
        """Get a single message record."""
        ...

    async def update_message(self, tenant_id: str, conversation_id: str, message_id: str, **fields: Any) -> None:
        """Merge ``fields`` into a message record."""
        ...

    async def update_message_status(
        self,
        tenant_id: str,
        conversation_id: str,
        message_id: str,
        status: DeliveryStatus,
        api_response: dict[str, Any] | None = None,
    ) -> bool:
        """Advance a message's delivery status. Returns False if it would move backwards."""
        ...

    async def recent_messages(self, tenant_id: str, conversation_id: str, limit: int) -> list[Message]:
        """Get the most recent ``limit`` messages in chronological order."""
        ...

    async def latest_message(self, tenant_id: str, conversation_id: str) -> Message | None:
        """Get the most recent message, if any."""
        ...

    async def due_follow_ups(self, tenant_id: str, now: datetime) -> list[Conversation]:
        """Get inbox conversations whose follow-up is due at ``now``."""
        ...


class InMemoryConversationStore:
    """In-memory document store.

    Snapshots are deep copies so callers never mutate stored documents.
    None of the methods await internally, which keeps each one atomic under
    asyncio's cooperative scheduling.
    """

    def __init__(self, tenants: Iterable[TenantSettings] = ()):
        """Initialize with optional tenant configuration documents."""
        self._tenants: dict[str, TenantSettings] = {t.tenant_id: t for t in tenants}
        self._conversations: dict[tuple[str, str], Conversation] = {}
        self._messages: dict[tuple[str, str], dict[str, Message]] = {}

    def put_tenant_settings(self, settings: TenantSettings) -> None:
        """Register or replace a tenant configuration document."""
        self._tenants[settings.tenant_id] = settings

    async def get_tenant_settings(self, tenant_id: str) -> TenantSettings | None:
        settings = self._tenants.get(tenant_id)
        return settings.model_copy(deep=True) if settings else None

    async def list_tenants(self) -> list[TenantSettings]:
        return [settings.model_copy(deep=True) for settings in self._tenants.values()]

    async def get_conversation(self, tenant_id: str, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get((tenant_id, conversation_id))
        return conversation.model_copy(deep=True) if conversation else None

    async def upsert_conversation(self, tenant_id: str, conversation_id: str, **fields: Any) -> Conversation:
        key = (tenant_id, conversation_id)
        if key not in self._conversations:
            logger.info(f"Creating conversation {conversation_id} for tenant {tenant_id}")
            self._conversations[key] = Conversation(id=conversation_id, tenant_id=tenant_id)
        return self._merge(key, fields)

    async def update_conversation(self, tenant_id: str, conversation_id: str, **fields: Any) -> Conversation:
        key = (tenant_id, conversation_id)
        if key not in self._conversations:
            raise ConversationNotFoundError(f"Conversation {conversation_id} not found for tenant {tenant_id}")
        return self._merge(key, fields)

    async def append_to_list(self, tenant_id: str, conversation_id: str, field: str, values: Iterable[str]) -> None:
        conversation = self._require((tenant_id, conversation_id))
        current: list[str] = getattr(conversation, field)
        for value in values:
            if value not in current:
                current.append(value)
        conversation.updated_at = utcnow()

    async def append_pending_message(self, tenant_id: str, conversation_id: str, message: Message) -> None:
        conversation = self._require((tenant_id, conversation_id))
        conversation.pending_messages.append(message.model_copy(deep=True))

    async def drain_pending_messages(self, tenant_id: str, conversation_id: str) -> list[Message]:
        conversation = self._conversations.get((tenant_id, conversation_id))
        if conversation is None:
            return []
        drained = conversation.pending_messages
        conversation.pending_messages = []
        return drained

    async def requeue_pending_messages(self, tenant_id: str, conversation_id: str, messages: list[Message]) -> None:
        conversation = self._require((tenant_id, conversation_id))
        conversation.pending_messages = [*messages, *conversation.pending_messages]

    async def try_begin_thinking(self, tenant_id: str, conversation_id: str) -> bool:
        conversation = self._require((tenant_id, conversation_id))
        if conversation.is_ai_thinking:
            return False
        conversation.is_ai_thinking = True
        return True

    async def end_thinking(self, tenant_id: str, conversation_id: str) -> None:
        conversation = self._conversations.get((tenant_id, conversation_id))
        if conversation is not None:
            conversation.is_ai_thinking = False

    async def add_message(self, tenant_id: str, conversation_id: str, message: Message) -> None:
        messages = self._messages.setdefault((tenant_id, conversation_id), {})
        messages[message.id] = message.model_copy(deep=True)

    async def get_message(self, tenant_id: str, conversation_id: str, message_id: str) -> Message | None:
        message = self._messages.get((tenant_id, conversation_id), {}).get(message_id)
        return message.model_copy(deep=True) if message else None

    async def update_message(self, tenant_id: str, conversation_id: str, message_id: str, **fields: Any) -> None:
        message = self._messages.get((tenant_id, conversation_id), {}).get(message_id)
        if message is None:
            logger.warning(f"Message {message_id} not found in conversation {conversation_id}")
            return
        for name, value in fields.items():
            setattr(message, name, value)

    async def update_message_status(
        self,
        tenant_id: str,
        conversation_id: str,
        message_id: str,
        status: DeliveryStatus,
        api_response: dict[str, Any] | None = None,
    ) -> bool:
        message = self._messages.get((tenant_id, conversation_id), {}).get(message_id)
        if message is None:
            logger.warning(f"Status update for unknown message {message_id} in conversation {conversation_id}")
            return False

        if not message.can_transition_to(status):
            logger.info(f"Ignoring status regression for message {message_id}: {message.status} -> {status}")
            return False

        message.status = status
        if api_response is not None:
            message.api_response = api_response
        return True

    async def recent_messages(self, tenant_id: str, conversation_id: str, limit: int) -> list[Message]:
        messages = sorted(self._messages.get((tenant_id, conversation_id), {}).values(), key=lambda m: m.timestamp)
        return [message.model_copy(deep=True) for message in messages[-limit:]] if limit > 0 else []

    async def latest_message(self, tenant_id: str, conversation_id: str) -> Message | None:
        recent = await self.recent_messages(tenant_id, conversation_id, 1)
        return recent[0] if recent else None

    async def due_follow_ups(self, tenant_id: str, now: datetime) -> list[Conversation]:
        return [
            conversation.model_copy(deep=True)
            for (owner, _), conversation in self._conversations.items()
            if owner == tenant_id
            and conversation.folder == "inbox"
            and conversation.follow_up_state is not None
            and conversation.follow_up_state.due_at <= now
        ]

    def _require(self, key: tuple[str, str]) -> Conversation:
        conversation = self._conversations.get(key)
        if conversation is None:
            raise ConversationNotFoundError(f"Conversation {key[1]} not found for tenant {key[0]}")
        return conversation

    def _merge(self, key: tuple[str, str], fields: dict[str, Any]) -> Conversation:
        conversation = self._conversations[key]
        # Validating the merged document coerces dict values into nested models
        self._conversations[key] = Conversation.model_validate(
            {**conversation.model_dump(), **fields, "updated_at": utcnow()}
        )
        return self._conversations[key].model_copy(deep=True)
