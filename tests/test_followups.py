"""Tests for the follow-up sweep."""

from datetime import timedelta

import pytest
import pytest_asyncio
from conftest import CONVERSATION_ID, NOW, TENANT_ID, customer_message, follow_up_settings, make_settings

from convoflow.clients.evolution import MessagingError
from convoflow.models.conversation import FollowUpState, Message
from convoflow.models.settings import BusinessHours, DaySchedule
from convoflow.services.followups import FollowUpScheduler


def follow_up_tenant(**automation):
    fields = {"is_message_grouping_enabled": False, "is_follow_up_enabled": True, "follow_ups": follow_up_settings()}
    fields.update(automation)
    return make_settings(**fields)


@pytest.fixture
def settings():
    return follow_up_tenant()


@pytest.fixture
def scheduler(store, messenger):
    return FollowUpScheduler(store, messenger, clock=lambda: NOW)


@pytest_asyncio.fixture
async def idle_conversation(store, conversation):
    """A conversation whose last message came from the assistant and whose first follow-up is due."""
    await store.add_message(
        TENANT_ID,
        CONVERSATION_ID,
        Message(direction="agent", origin="ai", text="Qual horário prefere?", timestamp=NOW - timedelta(hours=3)),
    )
    await store.update_conversation(
        TENANT_ID, CONVERSATION_ID, follow_up_state=FollowUpState(step="first", due_at=NOW - timedelta(minutes=1))
    )
    return await store.get_conversation(TENANT_ID, CONVERSATION_ID)


class TestFollowUpSequence:
    """Tests for advancing conversations through the sequence."""

    @pytest.mark.asyncio
    async def test_due_step_is_sent_and_next_scheduled(self, scheduler, store, gateway_client, idle_conversation):
        """Test that the first step is sent and the second is scheduled."""
        result = await scheduler.run_sweep()

        assert (result.processed, result.failed) == (1, 0)
        assert gateway_client.sent_texts == ["Ainda está por aí?"]
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state == FollowUpState(step="second", due_at=NOW + timedelta(hours=24))
        assert stored.last_follow_up_sent == "first"

    @pytest.mark.asyncio
    async def test_third_step_ends_the_sequence(self, scheduler, store, gateway_client, idle_conversation):
        """Test that nothing is scheduled after the third step."""
        await store.update_conversation(
            TENANT_ID, CONVERSATION_ID, follow_up_state=FollowUpState(step="third", due_at=NOW)
        )

        result = await scheduler.run_sweep()

        assert result.processed == 1
        assert gateway_client.sent_texts == ["Última chamada!"]
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state is None
        assert stored.last_follow_up_sent == "third"

    @pytest.mark.asyncio
    async def test_disabled_next_step_clears_state(self, store, messenger, gateway_client, idle_conversation):
        """Test that the sequence stops when the following step is off."""
        store.put_tenant_settings(follow_up_tenant(follow_ups=follow_up_settings(second=False)))
        scheduler = FollowUpScheduler(store, messenger, clock=lambda: NOW)

        await scheduler.run_sweep()

        assert gateway_client.sent_texts == ["Ainda está por aí?"]
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state is None

    @pytest.mark.asyncio
    async def test_disabled_current_step_is_skipped(self, store, messenger, gateway_client, idle_conversation):
        """Test that a disabled step sends nothing but the sequence still advances."""
        store.put_tenant_settings(follow_up_tenant(follow_ups=follow_up_settings(first=False)))
        scheduler = FollowUpScheduler(store, messenger, clock=lambda: NOW)

        result = await scheduler.run_sweep()

        assert result.processed == 0
        assert gateway_client.sent_texts == []
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state.step == "second"

    @pytest.mark.asyncio
    async def test_not_yet_due_is_left_alone(self, scheduler, store, gateway_client, idle_conversation):
        """Test that a follow-up due in the future is not processed."""
        future = FollowUpState(step="first", due_at=NOW + timedelta(minutes=5))
        await store.update_conversation(TENANT_ID, CONVERSATION_ID, follow_up_state=future)

        result = await scheduler.run_sweep()

        assert result.processed == 0
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state == future


class TestFollowUpCancellation:
    """Tests for follow-ups that are cleared instead of sent."""

    @pytest.mark.asyncio
    async def test_customer_reply_cancels_follow_up(self, scheduler, store, gateway_client, idle_conversation):
        """Test that a customer message after the reply clears the follow-up."""
        await store.add_message(
            TENANT_ID, CONVERSATION_ID, customer_message("ainda estou pensando", timestamp=NOW - timedelta(hours=1))
        )

        result = await scheduler.run_sweep()

        assert result.processed == 0
        assert gateway_client.sent_texts == []
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state is None

    @pytest.mark.asyncio
    async def test_conversation_without_messages_is_cleared(self, scheduler, store, conversation):
        """Test that a follow-up on an empty conversation is cleared."""
        await store.update_conversation(
            TENANT_ID, CONVERSATION_ID, follow_up_state=FollowUpState(step="first", due_at=NOW)
        )

        await scheduler.run_sweep()

        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state is None

    @pytest.mark.asyncio
    async def test_send_failure_is_counted_and_clears_state(
        self, scheduler, store, gateway_client, idle_conversation
    ):
        """Test that a failed send counts as failed and stops the sequence."""
        gateway_client.failures.append(MessagingError("bad request", status_code=400))

        result = await scheduler.run_sweep()

        assert (result.processed, result.failed) == (0, 1)
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state is None
        assert stored.last_follow_up_sent == "first"

    @pytest.mark.asyncio
    async def test_support_folder_is_not_swept(self, scheduler, store, gateway_client, idle_conversation):
        """Test that only inbox conversations receive follow-ups."""
        await store.update_conversation(TENANT_ID, CONVERSATION_ID, folder="support")

        result = await scheduler.run_sweep()

        assert result.processed == 0
        assert gateway_client.sent_texts == []


class TestFollowUpGating:
    """Tests for tenant-level gating of the sweep."""

    @pytest.mark.asyncio
    async def test_disabled_tenant_is_skipped(self, store, messenger, gateway_client, idle_conversation):
        """Test that tenants with follow-ups off are not processed."""
        store.put_tenant_settings(follow_up_tenant(is_follow_up_enabled=False))
        scheduler = FollowUpScheduler(store, messenger, clock=lambda: NOW)

        result = await scheduler.run_sweep()

        assert result.processed == 0
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state is not None

    @pytest.mark.asyncio
    async def test_closed_tenant_is_skipped(self, store, messenger, gateway_client, idle_conversation):
        """Test that nothing is sent outside business hours."""
        closed = follow_up_tenant(is_business_hours_enabled=True)
        closed.business_hours = BusinessHours(days={"monday": DaySchedule(enabled=False)})
        store.put_tenant_settings(closed)
        scheduler = FollowUpScheduler(store, messenger, clock=lambda: NOW)

        result = await scheduler.run_sweep()

        assert result.processed == 0
        assert gateway_client.sent_texts == []
        stored = await store.get_conversation(TENANT_ID, CONVERSATION_ID)
        assert stored.follow_up_state.step == "first"
