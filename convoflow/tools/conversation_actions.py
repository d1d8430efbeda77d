"""Tools that change conversation routing and customer records."""

from pydantic import BaseModel, Field

from convoflow.models.conversation import Message
from convoflow.models.llm import ToolResult
from convoflow.services.notifications import ActionNotifier
from convoflow.services.store import ConversationStore
from convoflow.services.summaries import ConversationSummarizer
from convoflow.tools.base import ToolContext, ToolDefinition
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

REQUEST_HUMAN_SUPPORT = "request_human_support"
END_CONVERSATION = "end_conversation"
SUMMARIZE_CONVERSATION = "summarize_conversation"


class RequestHumanSupportInput(BaseModel):
    """Input schema for escalating to a human operator."""

    reason: str = Field(..., min_length=1, description="Why a human operator is needed")


class EndConversationInput(BaseModel):
    """Input schema for closing a finished conversation."""

    reason: str | None = Field(default=None, description="Short summary of how the conversation ended")


class SummarizeConversationInput(BaseModel):
    """Input schema for summarizing; the history is read from the store."""


class UpdateClientInfoInput(BaseModel):
    """Input schema for saving customer details."""

    preferred_name: str | None = Field(default=None, description="How the customer wants to be called")
    address_text: str | None = Field(default=None, description="Address exactly as the customer wrote it")
    notes: str | None = Field(default=None, description="Any other relevant fact about the customer")


class UpdateConversationTagsInput(BaseModel):
    """Input schema for tagging a conversation."""

    tags: list[str] = Field(default_factory=list, description="Tags to add to the conversation")


async def _add_system_note(store: ConversationStore, context: ToolContext, text: str) -> None:
    await store.add_message(
        context.tenant_id, context.conversation_id, Message(direction="agent", origin="system", text=text)
    )


def create_request_human_support_tool(store: ConversationStore, notifier: ActionNotifier) -> ToolDefinition:
    async def handler(params: RequestHumanSupportInput, context: ToolContext) -> ToolResult:
        await store.update_conversation(
            context.tenant_id,
            context.conversation_id,
            folder="support",
            is_ai_active=False,
            intervention_reason=params.reason,
            follow_up_state=None,
        )
        await store.append_to_list(
            context.tenant_id, context.conversation_id, "system_notes", [f"[Handoff reason]: {params.reason}"]
        )
        await _add_system_note(store, context, f"Conversation transferred to a human operator: {params.reason}")
        notifier.fire(
            context.tenant_id,
            "human_support_requested",
            {"conversation_id": context.conversation_id, "reason": params.reason},
        )
        return ToolResult.ok("The conversation was transferred to a human operator.")

    return ToolDefinition(
        name=REQUEST_HUMAN_SUPPORT,
        description=(
            "Transfer the conversation to a human operator and stop automated replies. Use when the customer "
            "asks for a person, when you cannot help, or after a technical problem you cannot recover from."
        ),
        input_schema_class=RequestHumanSupportInput,
        handler=handler,
    )


def create_end_conversation_tool(
    store: ConversationStore, notifier: ActionNotifier, summarizer: ConversationSummarizer
) -> ToolDefinition:
    async def handler(params: EndConversationInput, context: ToolContext) -> ToolResult:
        # Archiving goes ahead even without a summary
        summary = await summarizer.summarize(context.tenant_id, context.conversation_id)
        if not summary.success:
            logger.warning(f"Archiving {context.conversation_id} without a summary: {summary.error}")

        await store.update_conversation(
            context.tenant_id, context.conversation_id, folder="archived", follow_up_state=None
        )
        if params.reason:
            await store.append_to_list(
                context.tenant_id, context.conversation_id, "system_notes", [f"[AI summary]: {params.reason}"]
            )
        notifier.fire(
            context.tenant_id,
            "conversation_ended_by_ai",
            {"conversation_id": context.conversation_id, "summary": params.reason},
        )
        return ToolResult.ok("The conversation was summarized and archived.")

    return ToolDefinition(
        name=END_CONVERSATION,
        description=(
            "End and archive the conversation once the customer's request is fully resolved and they have "
            "said goodbye. Provide a short summary as the reason."
        ),
        input_schema_class=EndConversationInput,
        handler=handler,
    )


def create_summarize_conversation_tool(summarizer: ConversationSummarizer) -> ToolDefinition:
    async def handler(params: SummarizeConversationInput, context: ToolContext) -> ToolResult:
        return await summarizer.summarize(context.tenant_id, context.conversation_id)

    return ToolDefinition(
        name=SUMMARIZE_CONVERSATION,
        description=(
            "Analyse the conversation history and save a short summary for the human team. "
            "Runs silently; keep talking to the customer normally."
        ),
        input_schema_class=SummarizeConversationInput,
        handler=handler,
        is_silent=True,
    )


def create_update_client_info_tool(store: ConversationStore, notifier: ActionNotifier) -> ToolDefinition:
    async def handler(params: UpdateClientInfoInput, context: ToolContext) -> ToolResult:
        saved: list[str] = []
        notes: list[str] = []

        if params.preferred_name:
            await store.update_conversation(
                context.tenant_id, context.conversation_id, preferred_name=params.preferred_name
            )
            saved.append(f"preferred_name='{params.preferred_name}'")
        if params.address_text:
            notes.append(f"Address provided: {params.address_text}")
            saved.append(f"address='{params.address_text}'")
        if params.notes:
            notes.append(params.notes)
            saved.append(f"notes='{params.notes}'")

        if not saved:
            return ToolResult.fail("No customer information was provided to save.")

        if notes:
            await store.append_to_list(context.tenant_id, context.conversation_id, "operator_notes", notes)

        notifier.fire(
            context.tenant_id,
            "client_info_updated",
            {"conversation_id": context.conversation_id, "updates": params.model_dump(exclude_none=True)},
        )
        return ToolResult.ok(f"Customer information saved: {', '.join(saved)}.")

    return ToolDefinition(
        name="update_client_info",
        description=(
            "Save details the customer shared about themselves: preferred name, address or other notes. "
            "Runs silently; keep talking to the customer normally."
        ),
        input_schema_class=UpdateClientInfoInput,
        handler=handler,
        is_silent=True,
    )


def create_update_conversation_tags_tool(store: ConversationStore, notifier: ActionNotifier) -> ToolDefinition:
    async def handler(params: UpdateConversationTagsInput, context: ToolContext) -> ToolResult:
        tags = [tag.strip() for tag in params.tags if tag.strip()]
        if not tags:
            return ToolResult.ok("No tags to add.")

        await store.append_to_list(context.tenant_id, context.conversation_id, "tags", tags)
        for tag in tags:
            notifier.fire(context.tenant_id, "tag_added", {"conversation_id": context.conversation_id, "tag": tag})

        return ToolResult.ok(f"Tags added: {', '.join(tags)}.")

    return ToolDefinition(
        name="update_conversation_tags",
        description="Add classification tags to the conversation (for example: lead, complaint, vip).",
        input_schema_class=UpdateConversationTagsInput,
        handler=handler,
        is_silent=True,
    )
