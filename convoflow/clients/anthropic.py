"""Anthropic API client with rate limiting, error classification and model fallback ordering."""

import asyncio
import os
import re
import time
from dataclasses import dataclass
from typing import Protocol

import anthropic
import tiktoken
from anthropic import AsyncAnthropic
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from convoflow.models.llm import GenerationResult, TokenUsage
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

# Fallback priority, most capable first
KNOWN_MODELS: tuple[str, ...] = (
    "claude-sonnet-4-5",
    "claude-sonnet-4-0",
    "claude-3-7-sonnet-latest",
    "claude-haiku-4-5",
    "claude-3-5-haiku-latest",
)
DEFAULT_MODEL = "claude-haiku-4-5"

_DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[\w/+.-]+);base64,(?P<data>.+)$", re.DOTALL)


class GenerationError(Exception):
    """A failed generation call, classified for the fallback loop."""

    def __init__(self, message: str, model: str | None = None, retryable: bool = False):
        super().__init__(message)
        self.model = model
        self.retryable = retryable


class Generator(Protocol):
    """What the reasoning loop and the summarizer need from a generation client."""

    async def generate(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        image_data_uri: str | None = None,
        temperature: float | None = None,
        api_key: str | None = None,
    ) -> GenerationResult: ...


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    max_tokens: int = 1024
    temperature: float = 0.2
    timeout: float = 60.0

    # Token limits for validation and truncation
    max_prompt_tokens: int = 150_000
    token_headroom: int = 2000


def candidate_models(configured: str | None, fallback_enabled: bool = True) -> list[str]:
    """Build the ordered list of models to try for one turn.

    The tenant's configured model comes first (the default model if it is not
    recognized), followed by every other known model in priority order when
    fallback is enabled.

    Args:
        configured: Model id from tenant settings
        fallback_enabled: Whether other models may be tried

    Returns:
        Ordered, de-duplicated candidate list
    """
    primary = configured if configured in KNOWN_MODELS else DEFAULT_MODEL
    if configured and configured != primary:
        logger.warning(f"Unknown model '{configured}' configured, using default {DEFAULT_MODEL}")

    if not fallback_enabled:
        return [primary]

    return [primary, *(model for model in KNOWN_MODELS if model != primary)]


def classify_error(error: Exception, model: str | None = None) -> GenerationError:
    """Map an SDK exception to a GenerationError.

    Timeouts, dropped connections, 5xx (including overloaded) and rate limits are
    retryable on another model; everything else is terminal.
    """
    if isinstance(error, GenerationError):
        return error

    retryable = False
    if isinstance(error, (anthropic.APITimeoutError, anthropic.APIConnectionError, asyncio.TimeoutError)):
        retryable = True
    elif isinstance(error, anthropic.RateLimitError):
        retryable = True
    elif isinstance(error, anthropic.APIStatusError):
        retryable = error.status_code >= 500

    return GenerationError(f"{type(error).__name__}: {error}", model=model, retryable=retryable)


class AnthropicRateLimiter:
    """Moving-window rate limiter shared by all generation calls."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str = "anthropic") -> None:
        """Wait until the request fits within the configured limits."""
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        if not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_reset(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        if not self.limiter.hit(self.token_limit, token_identifier, cost=estimated_tokens):
            await self._wait_for_reset(self.token_limit, token_identifier, "Token")

    async def _wait_for_reset(self, limit, identifier: str, kind: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        if window_stats:
            wait_time = max(0.0, window_stats.reset_time - time.time())
            if wait_time > 0:
                logger.warning(f"{kind} rate limit exceeded for {identifier}, waiting {wait_time:.2f}s")
                await asyncio.sleep(wait_time)


class AnthropicClient:
    """Async Anthropic client used by the reasoning loop.

    One SDK client is kept per API key so tenants with their own keys do not
    share connection pools.
    """

    tokenizer: tiktoken.Encoding | None = None
    rate_limiter: AnthropicRateLimiter = AnthropicRateLimiter()

    def __init__(self, api_key: str | None = None, config: AnthropicConfig | None = None):
        """Initialize Anthropic client.

        Args:
            api_key: Default API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
        """
        self.default_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.config = config or AnthropicConfig()
        self._clients: dict[str, AsyncAnthropic] = {}

        try:
            # Close approximation for Claude
            self.tokenizer = tiktoken.encoding_for_model("gpt-4")
        except Exception:
            self.tokenizer = None

    async def generate(
        self,
        model: str,
        system_prompt: str,
        prompt: str,
        image_data_uri: str | None = None,
        temperature: float | None = None,
        api_key: str | None = None,
    ) -> GenerationResult:
        """Run one generation call against a single model.

        Args:
            model: Model id
            system_prompt: Instructions and context
            prompt: Conversation transcript ending with the customer's batch
            image_data_uri: Optional image attached to the customer's message
            temperature: Sampling temperature
            api_key: Tenant API key, overriding the default

        Returns:
            Generated text with usage

        Raises:
            GenerationError: Classified failure, including empty output
        """
        client = self._client_for(api_key)
        prompt = self.truncate_prompt(prompt, system_prompt)

        estimated_tokens = self.estimate_tokens(system_prompt + prompt)
        await self.rate_limiter.check_rate_limit(estimated_tokens)

        content: list[dict] = []
        if image_data_uri:
            image_block = self._image_block(image_data_uri)
            if image_block:
                content.append(image_block)
        content.append({"type": "text", "text": prompt})

        logger.debug(f"Calling {model} with ~{estimated_tokens} tokens")

        try:
            response = await client.messages.create(
                model=model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature if temperature is None else temperature,
                system=system_prompt,
                messages=[{"role": "user", "content": content}],
            )
        except Exception as e:
            raise classify_error(e, model) from e

        text = "".join(block.text for block in response.content if getattr(block, "type", None) == "text").strip()
        if not text:
            raise GenerationError(f"Model {model} returned empty output", model=model, retryable=True)

        usage = TokenUsage()
        if response.usage:
            usage = TokenUsage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                total_tokens=response.usage.input_tokens + response.usage.output_tokens,
            )

        return GenerationResult(text=text, model=response.model or model, usage=usage)

    def estimate_tokens(self, text: str) -> int:
        """Estimate token count for a piece of text."""
        try:
            return len(self.tokenizer.encode(text)) if self.tokenizer else len(text) // 4
        except Exception:
            # Fallback: roughly 4 characters per token
            return len(text) // 4

    def truncate_prompt(self, prompt: str, system_prompt: str) -> str:
        """Drop the oldest transcript lines until the prompt fits the token budget.

        Args:
            prompt: Transcript text, oldest lines first
            system_prompt: System prompt sharing the same budget

        Returns:
            Prompt that fits within limits
        """
        available = self.config.max_prompt_tokens - self.config.token_headroom - self.estimate_tokens(system_prompt)
        if self.estimate_tokens(prompt) <= available:
            return prompt

        lines = prompt.split("\n")
        kept: list[str] = []
        used = 0
        for line in reversed(lines):
            cost = self.estimate_tokens(line) + 1
            if used + cost > available:
                break
            kept.insert(0, line)
            used += cost

        logger.warning(f"Truncated prompt from {len(lines)} to {len(kept)} lines to fit {available} tokens")
        return "\n".join(kept)

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()

    def _client_for(self, api_key: str | None) -> AsyncAnthropic:
        key = api_key or self.default_api_key
        if not key:
            raise GenerationError("No Anthropic API key configured", retryable=False)

        if key not in self._clients:
            # Fallback across models replaces SDK-level retries
            self._clients[key] = AsyncAnthropic(api_key=key, timeout=self.config.timeout, max_retries=0)
        return self._clients[key]

    @staticmethod
    def _image_block(data_uri: str) -> dict | None:
        match = _DATA_URI_PATTERN.match(data_uri)
        if not match:
            logger.warning("Ignoring image that is not a base64 data URI")
            return None
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": match.group("mime"), "data": match.group("data")},
        }
