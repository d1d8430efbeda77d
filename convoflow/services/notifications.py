"""Tenant-configured outbound notifications (webhook actions)."""

import asyncio
import hashlib
import hmac
import json
from datetime import UTC, datetime
from typing import Any

import httpx

from convoflow.models.settings import ActionConfig, NotificationEvent
from convoflow.services.store import ConversationStore
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)


def sign_payload(body: bytes, secret: str) -> str:
    """Compute the ``x-hub-signature-256`` header value for a body."""
    digest = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def matches_trigger(action: ActionConfig, event: NotificationEvent, data: dict[str, Any]) -> bool:
    """Check whether an action should fire for this event payload."""
    if not action.is_active or action.event != event:
        return False

    if event == "tag_added" and action.trigger_tags:
        tag = str(data.get("tag", "")).lower()
        return any(trigger.lower() == tag for trigger in action.trigger_tags)

    return True


class ActionNotifier:
    """Delivers event notifications to the tenant's configured endpoints.

    Failures are logged and never raised: notifications must not interfere
    with message processing.
    """

    def __init__(self, store: ConversationStore, http_client: httpx.AsyncClient | None = None, timeout: float = 15.0):
        self.store = store
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
        self._background: set[asyncio.Task] = set()

    def fire(self, tenant_id: str, event: NotificationEvent, data: dict[str, Any]) -> None:
        """Schedule a notification without waiting for it."""
        task = asyncio.create_task(self.trigger(tenant_id, event, data))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def trigger(self, tenant_id: str, event: NotificationEvent, data: dict[str, Any]) -> int:
        """Send the event to every matching action.

        Args:
            tenant_id: Tenant whose actions are consulted
            event: Event name
            data: Event-specific payload

        Returns:
            Number of endpoints that accepted the notification
        """
        try:
            settings = await self.store.get_tenant_settings(tenant_id)
            if settings is None:
                return 0

            actions = [action for action in settings.actions if matches_trigger(action, event, data)]
            if not actions:
                return 0

            client_data = None
            conversation_id = data.get("conversation_id")
            if conversation_id:
                conversation = await self.store.get_conversation(tenant_id, conversation_id)
                if conversation is not None:
                    client_data = conversation.model_dump(mode="json", exclude={"pending_messages"})

            payload = {
                "event": event,
                "timestamp": datetime.now(UTC).isoformat(),
                "tenant_id": tenant_id,
                "data": {**data, "client_data": client_data},
            }
            body = json.dumps(payload, ensure_ascii=False, default=str).encode()

            logger.info(f"Triggering {len(actions)} action(s) for '{event}' (tenant {tenant_id})")
            results = await asyncio.gather(*(self._post(action, body) for action in actions))
            return sum(results)

        except Exception as e:
            logger.error(f"Notification '{event}' failed for tenant {tenant_id}: {e}", exc_info=True)
            return 0

    async def drain(self) -> None:
        """Wait for all scheduled notifications to finish."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        await self.http_client.aclose()

    async def _post(self, action: ActionConfig, body: bytes) -> bool:
        headers = {"Content-Type": "application/json", "User-Agent": "convoflow-notifier/1.0"}
        if action.secret:
            headers["x-hub-signature-256"] = sign_payload(body, action.secret)

        try:
            response = await self.http_client.post(action.url, content=body, headers=headers)
            response.raise_for_status()
            logger.info(f"Action '{action.name or action.event}' delivered to {action.url}")
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Action '{action.name or action.event}' to {action.url} failed: {e}")
            return False
