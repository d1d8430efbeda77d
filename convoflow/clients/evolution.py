"""Evolution-style messaging gateway client with retry handling."""

import asyncio
from dataclasses import dataclass
from typing import Any, Literal

import httpx

from convoflow.models.settings import MessagingCredentials
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

Presence = Literal["composing", "recording", "available", "unavailable", "paused"]


class MessagingError(Exception):
    """Raised when the gateway rejects or cannot be reached for a send."""

    def __init__(self, message: str, network: bool = False, status_code: int | None = None):
        super().__init__(message)
        self.network = network
        self.status_code = status_code


@dataclass
class MessagingConfig:
    """Configuration for the messaging gateway client."""

    max_attempts: int = 4
    retry_delay: float = 3.0
    timeout: float = 25.0
    presence_timeout: float = 5.0
    typing_delay_ms: int = 1200


class EvolutionClient:
    """Low-level client for the messaging gateway HTTP API."""

    def __init__(self, http_client: httpx.AsyncClient | None = None, config: MessagingConfig | None = None):
        """Initialize the gateway client.

        Args:
            http_client: Shared async HTTP client (created if omitted)
            config: Retry and timeout configuration
        """
        self.config = config or MessagingConfig()
        self.http_client = http_client or httpx.AsyncClient(timeout=self.config.timeout)

    async def aclose(self) -> None:
        await self.http_client.aclose()

    async def send_text(
        self,
        credentials: MessagingCredentials,
        phone: str,
        text: str,
        quoted: dict[str, Any] | None = None,
        link_preview: bool | None = None,
    ) -> dict[str, Any]:
        """Send a text message.

        Args:
            credentials: Tenant gateway credentials
            phone: Destination number (conversation id)
            text: Message body
            quoted: Provider message (key + message) to quote
            link_preview: Whether the gateway should render link previews

        Returns:
            Gateway response body

        Raises:
            MessagingError: On 4xx or once retries are exhausted
        """
        options: dict[str, Any] = {"delay": self.config.typing_delay_ms, "presence": "composing"}
        if quoted:
            options["quoted"] = quoted
        if link_preview is not None:
            options["linkPreview"] = link_preview

        body = {"number": phone, "text": text, "options": options}
        return await self._post_with_retries(credentials, f"/message/sendText/{credentials.instance_name}", body)

    async def send_media(
        self,
        credentials: MessagingCredentials,
        phone: str,
        mediatype: str,
        media: str,
        caption: str | None = None,
        mimetype: str | None = None,
        file_name: str | None = None,
    ) -> dict[str, Any]:
        """Send one media item by URL or base64 payload."""
        body: dict[str, Any] = {"number": phone, "mediatype": mediatype, "media": media}
        if caption:
            body["caption"] = caption
        if mimetype:
            body["mimetype"] = mimetype
        if file_name:
            body["fileName"] = file_name

        return await self._post_with_retries(credentials, f"/message/sendMedia/{credentials.instance_name}", body)

    async def send_presence(self, credentials: MessagingCredentials, phone: str, presence: Presence) -> bool:
        """Show a presence indicator to the remote party.

        Presence is cosmetic, so failures are logged and reported as False.
        """
        body = {"number": f"{phone}@s.whatsapp.net", "presence": presence, "delay": self.config.typing_delay_ms}
        url = self._url(credentials, f"/chat/sendPresence/{credentials.instance_name}")

        try:
            response = await self.http_client.post(
                url, json=body, headers=self._headers(credentials), timeout=self.config.presence_timeout
            )
            response.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning(f"Presence '{presence}' for {phone} failed: {e}")
            return False

    async def _post_with_retries(self, credentials: MessagingCredentials, path: str, body: dict[str, Any]) -> dict:
        """POST to the gateway, retrying transport errors and 5xx responses."""
        url = self._url(credentials, path)
        last_error = ""

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                response = await self.http_client.post(url, json=body, headers=self._headers(credentials))
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"Transport error on {path} (attempt {attempt}/{self.config.max_attempts}): {e}")
            else:
                if response.status_code < 400:
                    return response.json() if response.content else {}

                if response.status_code < 500:
                    # Client errors will not succeed on retry
                    raise MessagingError(
                        f"Gateway rejected request with {response.status_code}: {response.text[:300]}",
                        network=False,
                        status_code=response.status_code,
                    )

                last_error = f"HTTP {response.status_code}"
                logger.warning(f"Server error on {path} (attempt {attempt}/{self.config.max_attempts}): {last_error}")

            if attempt < self.config.max_attempts:
                await asyncio.sleep(self.config.retry_delay)

        raise MessagingError(
            f"Failed request after {self.config.max_attempts} attempts: {last_error}",
            network=True,
        )

    @staticmethod
    def _url(credentials: MessagingCredentials, path: str) -> str:
        return f"{credentials.api_url.rstrip('/')}{path}"

    @staticmethod
    def _headers(credentials: MessagingCredentials) -> dict[str, str]:
        return {"apikey": credentials.api_key, "Content-Type": "application/json"}
