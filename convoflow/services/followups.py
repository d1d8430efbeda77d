"""Periodic follow-up sweep over idle conversations."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from convoflow.models.conversation import FOLLOW_UP_SEQUENCE, Conversation, FollowUpState, utcnow
from convoflow.models.settings import TenantSettings
from convoflow.services.business_hours import is_business_open
from convoflow.services.outbound import OutboundMessenger
from convoflow.services.store import ConversationStore
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class FollowUpSweepResult:
    """Counts from one sweep."""

    processed: int = 0
    failed: int = 0


class FollowUpScheduler:
    """Advances idle conversations through the first/second/third follow-up sequence."""

    def __init__(
        self,
        store: ConversationStore,
        messenger: OutboundMessenger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.messenger = messenger
        self.clock = clock

    async def run_sweep(self) -> FollowUpSweepResult:
        """Process every due follow-up of every tenant.

        Returns:
            Number of follow-ups sent and number of failed sends
        """
        result = FollowUpSweepResult()
        now = self.clock()

        for settings in await self.store.list_tenants():
            automation = settings.automation
            if not automation.is_follow_up_enabled:
                continue

            if automation.is_business_hours_enabled and not is_business_open(settings.business_hours, now):
                logger.info(f"Follow-up sweep skipped for tenant {settings.tenant_id}: outside business hours")
                continue

            due = await self.store.due_follow_ups(settings.tenant_id, now)
            if due:
                logger.info(f"{len(due)} follow-up(s) due for tenant {settings.tenant_id}")

            for conversation in due:
                await self._process(settings, conversation, now, result)

        logger.info(f"Follow-up sweep finished: {result.processed} sent, {result.failed} failed")
        return result

    async def _process(
        self, settings: TenantSettings, conversation: Conversation, now: datetime, result: FollowUpSweepResult
    ) -> None:
        tenant_id, conversation_id = settings.tenant_id, conversation.id

        latest = await self.store.latest_message(tenant_id, conversation_id)
        if latest is None:
            await self._clear(tenant_id, conversation_id)
            return

        if latest.direction == "customer":
            logger.info(f"Customer replied in {conversation_id}, follow-up cancelled")
            await self._clear(tenant_id, conversation_id)
            return

        if conversation.follow_up_state is None:
            await self._clear(tenant_id, conversation_id)
            return

        step = conversation.follow_up_state.step
        step_config = settings.automation.follow_ups.get(step)

        # A disabled or blank step is skipped without breaking the sequence
        if step_config.enabled and step_config.message.strip():
            sent = await self.messenger.send_text(tenant_id, conversation_id, step_config.message, origin="ai")
            if not sent.success:
                logger.error(f"Follow-up '{step}' to {conversation_id} failed: {sent.error}")
                result.failed += 1
                await self.store.update_conversation(
                    tenant_id, conversation_id, follow_up_state=None, last_follow_up_sent=step
                )
                return

            result.processed += 1
            logger.info(f"Follow-up '{step}' sent to {conversation_id}")

        next_step = FOLLOW_UP_SEQUENCE[step]
        next_state = None
        if next_step is not None and settings.automation.follow_ups.get(next_step).enabled:
            interval = settings.automation.follow_ups.get(next_step).interval_hours
            next_state = FollowUpState(step=next_step, due_at=now + timedelta(hours=interval))
            logger.info(f"Next follow-up '{next_step}' for {conversation_id} due at {next_state.due_at.isoformat()}")
        else:
            logger.info(f"Follow-up sequence finished for {conversation_id}")

        await self.store.update_conversation(
            tenant_id, conversation_id, follow_up_state=next_state, last_follow_up_sent=step
        )

    async def _clear(self, tenant_id: str, conversation_id: str) -> None:
        await self.store.update_conversation(tenant_id, conversation_id, follow_up_state=None)
