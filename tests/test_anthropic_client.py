"""Tests for the generation client: model ordering, error classification and prompt limits."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import anthropic
import httpx
import pytest

from convoflow.clients.anthropic import (
    DEFAULT_MODEL,
    KNOWN_MODELS,
    AnthropicClient,
    AnthropicConfig,
    GenerationError,
    candidate_models,
    classify_error,
)

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def status_error(cls, status_code):
    return cls("boom", response=httpx.Response(status_code, request=REQUEST), body=None)


def sdk_response(*texts, model="claude-haiku-4-5"):
    return SimpleNamespace(
        content=[SimpleNamespace(type="text", text=text) for text in texts],
        model=model,
        usage=SimpleNamespace(input_tokens=120, output_tokens=30),
    )


@pytest.fixture
def client():
    """Client with a stubbed SDK and rate limiter."""
    with patch.dict("os.environ", {"ANTHROPIC_API_KEY": "test-key"}):
        client = AnthropicClient(config=AnthropicConfig(max_prompt_tokens=100, token_headroom=0))
    client.tokenizer = None

    sdk = Mock()
    sdk.messages.create = AsyncMock(return_value=sdk_response('{"reasoning": "ok"}'))
    client._clients["test-key"] = sdk
    client.rate_limiter = Mock(check_rate_limit=AsyncMock())
    return client


class TestCandidateModels:
    """Tests for the model fallback order."""

    def test_configured_model_first(self):
        """Test that the configured model leads and the rest follow in priority order."""
        models = candidate_models("claude-haiku-4-5")

        assert models[0] == "claude-haiku-4-5"
        assert sorted(models) == sorted(KNOWN_MODELS)
        assert models[1:] == [model for model in KNOWN_MODELS if model != "claude-haiku-4-5"]

    def test_unknown_model_uses_default(self):
        """Test that unrecognized or missing models fall back to the default."""
        assert candidate_models("gpt-4o")[0] == DEFAULT_MODEL
        assert candidate_models(None)[0] == DEFAULT_MODEL

    def test_fallback_disabled(self):
        """Test that only the primary model is tried without fallback."""
        assert candidate_models("claude-sonnet-4-5", fallback_enabled=False) == ["claude-sonnet-4-5"]


class TestClassifyError:
    """Tests for retryable/terminal classification."""

    @pytest.mark.parametrize(
        "error",
        [
            anthropic.APITimeoutError(request=REQUEST),
            anthropic.APIConnectionError(request=REQUEST),
            status_error(anthropic.RateLimitError, 429),
            status_error(anthropic.InternalServerError, 529),
            status_error(anthropic.APIStatusError, 503),
        ],
    )
    def test_retryable_errors(self, error):
        """Test that transient failures may move on to another model."""
        classified = classify_error(error, "claude-sonnet-4-5")

        assert classified.retryable is True
        assert classified.model == "claude-sonnet-4-5"

    @pytest.mark.parametrize(
        "error",
        [
            status_error(anthropic.BadRequestError, 400),
            status_error(anthropic.AuthenticationError, 401),
            ValueError("unexpected"),
        ],
    )
    def test_terminal_errors(self, error):
        """Test that request and credential errors stop the fallback loop."""
        assert classify_error(error).retryable is False

    def test_generation_error_passes_through(self):
        """Test that already classified errors are returned unchanged."""
        error = GenerationError("empty", model="m", retryable=False)
        assert classify_error(error) is error


class TestGenerate:
    """Tests for a single generation call."""

    @pytest.mark.asyncio
    async def test_returns_text_and_usage(self, client):
        """Test that text blocks are joined and usage is reported."""
        result = await client.generate("claude-haiku-4-5", "system", "Cliente: oi")

        assert result.text == '{"reasoning": "ok"}'
        assert result.model == "claude-haiku-4-5"
        assert (result.usage.input_tokens, result.usage.output_tokens, result.usage.total_tokens) == (120, 30, 150)

        kwargs = client._clients["test-key"].messages.create.call_args.kwargs
        assert kwargs["system"] == "system"
        assert kwargs["messages"] == [{"role": "user", "content": [{"type": "text", "text": "Cliente: oi"}]}]

    @pytest.mark.asyncio
    async def test_image_is_sent_before_text(self, client):
        """Test that a data URI becomes an image block."""
        await client.generate("claude-haiku-4-5", "system", "veja", image_data_uri="data:image/png;base64,iVBOR")

        content = client._clients["test-key"].messages.create.call_args.kwargs["messages"][0]["content"]
        assert content[0] == {
            "type": "image",
            "source": {"type": "base64", "media_type": "image/png", "data": "iVBOR"},
        }
        assert content[1] == {"type": "text", "text": "veja"}

    @pytest.mark.asyncio
    async def test_invalid_image_is_dropped(self, client):
        """Test that non data URI images are ignored."""
        await client.generate("claude-haiku-4-5", "system", "veja", image_data_uri="https://cdn.test/a.png")

        content = client._clients["test-key"].messages.create.call_args.kwargs["messages"][0]["content"]
        assert content == [{"type": "text", "text": "veja"}]

    @pytest.mark.asyncio
    async def test_tenant_key_gets_its_own_sdk_client(self, client):
        """Test that a tenant API key does not reuse the default client."""
        with patch("convoflow.clients.anthropic.AsyncAnthropic") as sdk_class:
            sdk_class.return_value.messages.create = AsyncMock(return_value=sdk_response("{}"))
            await client.generate("claude-haiku-4-5", "system", "oi", api_key="sk-tenant")

        sdk_class.assert_called_once()
        assert sdk_class.call_args.kwargs["api_key"] == "sk-tenant"
        assert sdk_class.call_args.kwargs["max_retries"] == 0
        assert "sk-tenant" in client._clients

    @pytest.mark.asyncio
    async def test_empty_output_is_retryable(self, client):
        """Test that whitespace-only output lets the next candidate model be tried."""
        client._clients["test-key"].messages.create.return_value = sdk_response("  ")

        with pytest.raises(GenerationError) as exc_info:
            await client.generate("claude-haiku-4-5", "system", "oi")

        assert exc_info.value.retryable is True
        assert exc_info.value.model == "claude-haiku-4-5"

    @pytest.mark.asyncio
    async def test_sdk_errors_are_classified(self, client):
        """Test that SDK exceptions surface as GenerationError."""
        client._clients["test-key"].messages.create.side_effect = status_error(anthropic.InternalServerError, 529)

        with pytest.raises(GenerationError) as exc_info:
            await client.generate("claude-sonnet-4-5", "system", "oi")

        assert exc_info.value.retryable is True
        assert exc_info.value.model == "claude-sonnet-4-5"

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        """Test that generating without any key fails terminally."""
        with patch.dict("os.environ", {}, clear=True):
            client = AnthropicClient()

        with pytest.raises(GenerationError, match="No Anthropic API key"):
            await client.generate("claude-haiku-4-5", "system", "oi")


class TestPromptTruncation:
    """Tests for fitting the transcript into the token budget."""

    def test_prompt_within_limit_unchanged(self, client):
        """Test that short prompts are returned as-is."""
        assert client.truncate_prompt("Cliente: oi", "system") == "Cliente: oi"

    def test_oldest_lines_dropped_first(self, client):
        """Test that truncation keeps the most recent lines."""
        lines = [f"Cliente: mensagem {index:02d} ".ljust(40, ".") for index in range(20)]
        assert all(len(line) == 40 for line in lines)

        truncated = client.truncate_prompt("\n".join(lines), "")

        assert truncated.split("\n") == lines[-9:]

    def test_estimate_tokens_uses_tokenizer(self, client):
        """Test that the tokenizer is used when available."""
        client.tokenizer = Mock()
        client.tokenizer.encode.return_value = ["token"] * 7

        assert client.estimate_tokens("anything") == 7

    def test_estimate_tokens_fallback(self, client):
        """Test the character-based estimate without a tokenizer."""
        assert client.estimate_tokens("a" * 400) == 100
