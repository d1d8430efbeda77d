"""Media storage and audio transcription collaborators."""

import asyncio
import base64
import binascii
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import httpx

from convoflow.models.conversation import new_id
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

_DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[^;,]+)(?:;[^,]*)?;base64,(?P<data>.*)$", re.DOTALL)


class MediaError(ValueError):
    """Raised for malformed media payloads."""


@dataclass
class DecodedMedia:
    mimetype: str
    content: bytes

    @property
    def extension(self) -> str:
        subtype = self.mimetype.split("/")[-1] if "/" in self.mimetype else "bin"
        return subtype.split(";")[0].split("+")[0] or "bin"


def to_data_uri(raw: str, mimetype: str | None) -> str | None:
    """Normalize a gateway base64 field into a data URI."""
    if raw.startswith("data:"):
        return raw
    if not mimetype:
        return None
    return f"data:{mimetype.split(';')[0]};base64,{raw}"


def decode_data_uri(data_uri: str) -> DecodedMedia:
    """Decode a base64 data URI.

    Raises:
        MediaError: If the string is not a base64 data URI
    """
    match = _DATA_URI_PATTERN.match(data_uri)
    if not match or not match.group("data"):
        raise MediaError("Invalid base64 data URI")

    try:
        content = base64.b64decode(match.group("data"), validate=False)
    except binascii.Error as e:
        raise MediaError(f"Invalid base64 payload: {e}") from e

    return DecodedMedia(mimetype=match.group("mime"), content=content)


class MediaStorage(Protocol):
    """Object storage for inbound media."""

    async def save(self, tenant_id: str, conversation_id: str, data_uri: str) -> str:
        """Persist a data URI and return its public URL."""
        ...


class LocalMediaStorage:
    """Stores media files on the local filesystem under a public base URL."""

    def __init__(self, root: str | Path, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    async def save(self, tenant_id: str, conversation_id: str, data_uri: str) -> str:
        media = decode_data_uri(data_uri)
        relative = Path(tenant_id) / "conversations" / conversation_id / "media" / f"{new_id()}.{media.extension}"
        target = self.root / relative

        await asyncio.to_thread(self._write, target, media.content)
        logger.debug(f"Saved {len(media.content)} bytes of {media.mimetype} to {target}")

        return f"{self.base_url}/{relative.as_posix()}"

    @staticmethod
    def _write(target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)


class Transcriber(Protocol):
    """Speech-to-text for inbound audio."""

    async def transcribe(self, data_uri: str) -> str | None:
        """Return the transcription, or None on failure."""
        ...


class GroqTranscriber:
    """Audio transcription using Groq's Whisper API."""

    api_url = "https://api.groq.com/openai/v1/audio/transcriptions"

    def __init__(self, api_key: str | None = None, http_client: httpx.AsyncClient | None = None):
        self.api_key = api_key or os.environ.get("GROQ_API_KEY")
        self.model = os.environ.get("GROQ_TRANSCRIPTION_MODEL", "whisper-large-v3-turbo")
        self.language = os.environ.get("GROQ_TRANSCRIPTION_LANGUAGE", "pt")
        self.http_client = http_client or httpx.AsyncClient(timeout=60.0)

    async def transcribe(self, data_uri: str) -> str | None:
        if not self.api_key:
            logger.warning("Groq API key not configured for transcription")
            return None

        try:
            media = decode_data_uri(data_uri)
        except MediaError as e:
            logger.error(f"Cannot transcribe audio: {e}")
            return None

        files = {"file": (f"audio.{media.extension}", media.content, media.mimetype)}
        data = {"model": self.model, "language": self.language, "response_format": "json", "temperature": "0"}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            response = await self.http_client.post(self.api_url, headers=headers, files=files, data=data)
            response.raise_for_status()
            text = str(response.json().get("text", "") or "").strip()
            return text or None
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Groq transcription error: {e}")
            return None

    async def aclose(self) -> None:
        await self.http_client.aclose()
