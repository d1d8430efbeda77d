"""Humanized reply delivery: chunking, pacing and follow-up scheduling."""

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from convoflow.models.conversation import FollowUpState, Message, utcnow
from convoflow.services.outbound import OutboundMessenger
from convoflow.services.store import ConversationStore
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

# Payment codes (PIX "copia e cola") end with a CRC field 6304XXXX
PIX_PATTERN = re.compile(r"000201(?:[^\n]*?6304[0-9A-Fa-f]{4}|\S{50,})")
# Links, bare domains, emails and dotted numbers (prices, versions); trailing
# sentence punctuation stays outside the token
URL_PATTERN = re.compile(
    r"(?:https?://|www\.)\S*[^\s.,!?;:)]"
    r"|[\w.+-]+@[\w-]+(?:\.[\w-]+)+"
    r"|[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)+(?:[/?#:]\S*[^\s.,!?;:)])?"
)
# Sentence ends only where punctuation is followed by whitespace or the end
SENTENCE_PATTERN = re.compile(r".+?(?:[.!?]+(?=\s|$)|$)")
_PLACEHOLDER_PATTERN = re.compile(r"\x00(\d+)\x00")

FINALIZATION_KEYWORDS: tuple[str, ...] = (
    "obrigado",
    "obrigada",
    "agradeço",
    "tchau",
    "até logo",
    "qualquer outra dúvida",
    "precisar, é só chamar",
)


def is_finalizing(text: str) -> bool:
    """Check whether a reply reads as the natural end of the interaction."""
    lowered = text.lower()
    return any(keyword in lowered for keyword in FINALIZATION_KEYWORDS)


def split_into_chunks(text: str, min_length: int = 20) -> list[str]:
    """Split a reply into message-sized chunks.

    Paragraphs are split first, then sentences. Payment codes, links, emails
    and dotted numbers are masked beforehand so no chunk boundary can fall
    inside them. Fragments
    shorter than ``min_length`` are merged into the previous chunk.

    Args:
        text: Reply text
        min_length: Minimum length of a standalone chunk

    Returns:
        Ordered chunks, empty for blank input
    """
    if not text or not text.strip():
        return []

    protected: list[str] = []

    def protect(match: re.Match) -> str:
        protected.append(match.group(0))
        return f"\x00{len(protected) - 1}\x00"

    masked = URL_PATTERN.sub(protect, PIX_PATTERN.sub(protect, text.strip()))

    pieces: list[str] = []
    for paragraph in re.split(r"\n+", masked):
        if not paragraph.strip():
            continue
        pieces.extend(sentence.strip() for sentence in SENTENCE_PATTERN.findall(paragraph) if sentence.strip())

    chunks: list[str] = []
    for piece in pieces:
        restored = _PLACEHOLDER_PATTERN.sub(lambda m: protected[int(m.group(1))], piece)
        if chunks and len(restored) < min_length:
            chunks[-1] = f"{chunks[-1]} {restored}"
        else:
            chunks.append(restored)

    return chunks


@dataclass
class DeliveryConfig:
    """Pacing configuration for humanized delivery."""

    composing_delay: float = 1.0
    between_chunks_delay: float = 0.5
    min_chunk_length: int = 20


class DeliveryPipeline:
    """Sends a reply as paced chunks and updates conversation state afterwards."""

    def __init__(
        self,
        store: ConversationStore,
        messenger: OutboundMessenger,
        config: DeliveryConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.messenger = messenger
        self.config = config or DeliveryConfig()
        self.clock = clock

    async def deliver(
        self, tenant_id: str, conversation_id: str, text: str | None, quoted: Message | None = None
    ) -> bool:
        """Deliver a reply to the customer.

        Args:
            tenant_id: Tenant owning the conversation
            conversation_id: Destination conversation
            text: Reply text
            quoted: Customer message to quote on the first chunk

        Returns:
            True if every chunk was sent (blank text counts as success)
        """
        chunks = split_into_chunks(text or "", self.config.min_chunk_length)
        if not chunks:
            logger.debug(f"Blank reply for {conversation_id}, nothing to deliver")
            return True

        logger.info(f"Delivering {len(chunks)} chunk(s) to {conversation_id} (tenant {tenant_id})")

        for index, chunk in enumerate(chunks):
            await self.messenger.send_presence(tenant_id, conversation_id, "composing")
            await asyncio.sleep(self.config.composing_delay)

            result = await self.messenger.send_text(
                tenant_id, conversation_id, chunk, origin="ai", quoted=quoted if index == 0 else None
            )
            if not result.success:
                logger.error(
                    f"Chunk {index + 1}/{len(chunks)} to {conversation_id} failed, stopping delivery: {result.error}"
                )
                if result.network:
                    await self._escalate_technical_failure(tenant_id, conversation_id, result.error)
                return False

            await asyncio.sleep(self.config.between_chunks_delay)

        await self.messenger.send_presence(tenant_id, conversation_id, "available")
        await self._after_delivery(tenant_id, conversation_id, text or "")
        return True

    async def _after_delivery(self, tenant_id: str, conversation_id: str, text: str) -> None:
        follow_up_state = None

        settings = await self.store.get_tenant_settings(tenant_id)
        automation = settings.automation if settings else None
        if automation and automation.is_follow_up_enabled and automation.follow_ups.first.enabled:
            if is_finalizing(text):
                logger.info(f"Reply to {conversation_id} looks final, no follow-up scheduled")
            else:
                due_at = self.clock() + timedelta(hours=automation.follow_ups.first.interval_hours)
                follow_up_state = FollowUpState(step="first", due_at=due_at)
                logger.info(f"Follow-up 'first' scheduled for {conversation_id} at {due_at.isoformat()}")

        await self.store.update_conversation(
            tenant_id, conversation_id, last_ai_response=text, follow_up_state=follow_up_state
        )

    async def _escalate_technical_failure(self, tenant_id: str, conversation_id: str, error: str | None) -> None:
        logger.error(f"Escalating {conversation_id} to support after network failure: {error}")
        await self.store.update_conversation(
            tenant_id,
            conversation_id,
            folder="support",
            is_ai_active=False,
            intervention_reason="technical_failure",
        )
