"""Operator-facing conversation summaries."""

from convoflow.clients.anthropic import GenerationError, Generator, candidate_models
from convoflow.graphs.prompts import render_history
from convoflow.models.llm import ToolResult
from convoflow.services.store import ConversationStore
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = """You analyse customer service conversations and write a concise briefing for a human operator.
Answer only with plain-text bullet points, each starting with "* ":
* Main subject: what the customer wanted.
* Collected information: relevant details the customer shared (interests, budget, dates). Never include \
their name or phone number. Leave this bullet out when nothing relevant was collected.
* Outcome: where the conversation stopped and what should happen next.
* Sentiment: the customer's overall mood (neutral, satisfied, frustrated...).
Write in the language of the conversation. No JSON, no code."""

NO_NOTES = "No saved notes."


class ConversationSummarizer:
    """Generates a conversation's ``ai_summary`` from its stored history."""

    def __init__(self, store: ConversationStore, generator: Generator, history_limit: int = 100):
        self.store = store
        self.generator = generator
        self.history_limit = history_limit

    async def summarize(self, tenant_id: str, conversation_id: str) -> ToolResult:
        """Summarize the conversation and store the result.

        Candidate models are tried in the same order as in the reasoning loop.
        Failures are returned, never raised.

        Args:
            tenant_id: Tenant owning the conversation
            conversation_id: Conversation to summarize

        Returns:
            Result carrying the summary on success
        """
        settings = await self.store.get_tenant_settings(tenant_id)
        conversation = await self.store.get_conversation(tenant_id, conversation_id)
        if settings is None or conversation is None:
            return ToolResult.fail(f"Conversation {conversation_id} not found.")

        history = render_history(await self.store.recent_messages(tenant_id, conversation_id, self.history_limit))
        if not history:
            return ToolResult.ok("No history to summarize.")

        notes = "\n".join(conversation.operator_notes) or NO_NOTES
        prompt = (
            f"Conversation history:\n{history}\n\n"
            f"Saved notes about the customer:\n{notes}\n\n"
            "Write the summary now."
        )

        provider = settings.ai_provider
        for model in candidate_models(provider.primary_model, provider.is_fallback_enabled):
            try:
                result = await self.generator.generate(
                    model, SUMMARY_SYSTEM_PROMPT, prompt, temperature=0.2, api_key=provider.api_key
                )
            except GenerationError as e:
                if not e.retryable:
                    logger.error(f"Summary of {conversation_id} failed on {model}: {e}")
                    return ToolResult.fail(f"Summary generation failed: {e}")
                logger.warning(f"Retryable summary failure on {model} for {conversation_id}: {e}")
                continue

            summary = result.text.strip()
            if summary:
                await self.store.update_conversation(tenant_id, conversation_id, ai_summary=summary)
                logger.info(f"Saved summary for {conversation_id} from {result.model}")
                return ToolResult.ok("Summary saved.", summary=summary)

        return ToolResult.fail("Summary generation returned no output.")
