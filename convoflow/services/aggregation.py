"""Per-conversation debounce queue feeding the reasoning loop."""

import asyncio
from collections.abc import Awaitable, Callable

from convoflow.graphs.reasoning import LoopOutcome
from convoflow.models.conversation import Message
from convoflow.services.store import ConversationStore
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

ConversationKey = tuple[str, str]
BatchProcessor = Callable[[str, str, list[Message]], Awaitable[LoopOutcome]]


class TimerRegistry:
    """Pending debounce timers keyed by (tenant_id, conversation_id).

    At most one timer exists per conversation: ``replace`` cancels the
    previous one before storing the new one.
    """

    def __init__(self):
        self._timers: dict[ConversationKey, asyncio.Task] = {}

    def replace(self, key: ConversationKey, task: asyncio.Task) -> None:
        previous = self._timers.get(key)
        if previous is not None and not previous.done():
            previous.cancel()
        self._timers[key] = task

    def pop_if_current(self, key: ConversationKey, task: asyncio.Task) -> bool:
        """Remove ``task`` if it is still the registered timer for ``key``."""
        if self._timers.get(key) is task:
            del self._timers[key]
            return True
        return False

    def cancel_all(self) -> None:
        for task in self._timers.values():
            task.cancel()
        self._timers.clear()

    def __contains__(self, key: ConversationKey) -> bool:
        return key in self._timers

    def __len__(self) -> int:
        return len(self._timers)


class AggregationQueue:
    """Buffers bursts of customer messages and hands them over as one batch."""

    def __init__(
        self,
        store: ConversationStore,
        processor: BatchProcessor,
        timers: TimerRegistry | None = None,
        busy_retry_seconds: float = 5.0,
    ):
        """Initialize the queue.

        Args:
            store: Conversation store holding the pending lists
            processor: Coroutine run with each drained batch (the loop controller)
            timers: Timer registry, injectable for tests
            busy_retry_seconds: Delay before retrying a batch whose loop was busy
        """
        self.store = store
        self.processor = processor
        self.timers = timers or TimerRegistry()
        self.busy_retry_seconds = busy_retry_seconds
        self._tasks: set[asyncio.Task] = set()

    async def enqueue(self, tenant_id: str, conversation_id: str, message: Message) -> None:
        """Append a message to the pending list and (re)start the debounce window."""
        await self.store.append_pending_message(tenant_id, conversation_id, message)

        settings = await self.store.get_tenant_settings(tenant_id)
        automation = settings.automation if settings else None
        if automation is None or not automation.is_message_grouping_enabled:
            await self.flush(tenant_id, conversation_id)
            return

        self._schedule(tenant_id, conversation_id, float(automation.message_grouping_interval))
        logger.debug(
            f"Debounce window of {automation.message_grouping_interval}s (re)started for {conversation_id}"
        )

    async def flush(self, tenant_id: str, conversation_id: str) -> LoopOutcome | None:
        """Drain the pending list and run the processor on it.

        Returns:
            The loop outcome, or None when nothing was pending
        """
        batch = await self.store.drain_pending_messages(tenant_id, conversation_id)
        if not batch:
            logger.debug(f"Nothing pending for {conversation_id}")
            return None

        logger.info(f"Processing batch of {len(batch)} message(s) for {conversation_id} (tenant {tenant_id})")
        outcome = await self.processor(tenant_id, conversation_id, batch)

        if not outcome.started:
            await self.store.requeue_pending_messages(tenant_id, conversation_id, batch)
            self._schedule(tenant_id, conversation_id, self.busy_retry_seconds)
            logger.info(f"Conversation {conversation_id} busy, batch requeued for {self.busy_retry_seconds}s")

        return outcome

    async def wait_idle(self) -> None:
        """Wait until no timer or processing task is outstanding."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self.timers.cancel_all()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, tenant_id: str, conversation_id: str, delay: float) -> None:
        key = (tenant_id, conversation_id)
        task = asyncio.create_task(self._fire_after(key, delay))
        self._track(task)
        self.timers.replace(key, task)

    async def _fire_after(self, key: ConversationKey, delay: float) -> None:
        await asyncio.sleep(delay)

        current = asyncio.current_task()
        if not self.timers.pop_if_current(key, current):
            return

        # Processing runs outside the timer task so a later enqueue cannot cancel it
        self._track(asyncio.create_task(self._process(*key)))

    async def _process(self, tenant_id: str, conversation_id: str) -> None:
        try:
            await self.flush(tenant_id, conversation_id)
        except Exception as e:
            logger.error(f"Batch processing failed for {conversation_id} (tenant {tenant_id}): {e}", exc_info=True)

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
