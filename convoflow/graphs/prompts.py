"""Context assembly for the reasoning loop."""

import json
from datetime import datetime
from zoneinfo import ZoneInfo

from convoflow.models.conversation import Conversation, Message
from convoflow.models.settings import KnowledgeBaseItem, TenantSettings

CUSTOMER_PREFIX = "Customer:"
ASSISTANT_PREFIX = "AI assistant:"
OPERATOR_PREFIX = "Human operator:"

DEFAULT_PERSONA = "You are a customer service assistant."

OUTPUT_RULES = """--- OUTPUT FORMAT ---
Reply with exactly one JSON object and nothing else:
{
  "reasoning": "step-by-step thinking; say why a tool is or is not needed",
  "response_to_client": "text for the customer; a short holding message when requesting a tool, or null",
  "tool_request": {"name": "tool_name", "args": {"param": "value"}}
}
Use null for "tool_request" when no tool is needed."""


def render_history(messages: list[Message]) -> str:
    """Render stored messages as a speaker-prefixed transcript."""
    lines: list[str] = []
    for message in messages:
        content = message.content
        if not content:
            continue

        if message.direction == "customer":
            lines.append(f"{CUSTOMER_PREFIX} {content}")
        elif message.origin == "ai":
            lines.append(f"{ASSISTANT_PREFIX} {content}")
        elif message.origin == "operator":
            lines.append(f"{OPERATOR_PREFIX} {content}")
        elif message.origin == "tool":
            lines.append(f"TOOL RESULT: {content}")
    return "\n".join(lines)


def render_batch(batch: list[Message]) -> str:
    """Join the customer's batched messages into one turn."""
    return f"{CUSTOMER_PREFIX} " + " \n ".join(m.transcription or m.text for m in batch if m.transcription or m.text)


def render_tool_result(name: str, result_json: str) -> str:
    return (
        f"TOOL RESULT {name}: {result_json}\n"
        "Based on this result, your priority is to answer the customer. Do not ignore it."
    )


def render_knowledge_base(items: list[KnowledgeBaseItem]) -> str:
    if not items:
        return "(empty)"

    lines: list[str] = []
    for item in items:
        if item.type == "faq":
            lines.append(f"Q: {item.question}\nA: {item.answer}")
        else:
            price = f" | price: {item.price:.2f}" if item.price is not None else ""
            media = f" | media: {', '.join(item.image_urls)}" if item.image_urls else ""
            lines.append(f"Product: {item.name} | {item.description or ''}{price}{media}")
    return "\n".join(lines)


def build_system_prompt(
    settings: TenantSettings,
    conversation: Conversation,
    tools_documentation: str,
    now: datetime,
    previous_reasoning: str | None = None,
    failure_context: str | None = None,
) -> str:
    """Assemble the system prompt for one reasoning turn.

    Args:
        settings: Tenant configuration (persona, knowledge base)
        conversation: Conversation metadata
        tools_documentation: Available-actions documentation
        now: Current instant, rendered in the tenant's timezone
        previous_reasoning: Reasoning from the previous turn of this loop
        failure_context: Error from the previous turn's tool call, if any

    Returns:
        System prompt text
    """
    timezone = settings.business_hours.timezone if settings.business_hours else "America/Sao_Paulo"
    local_now = now.astimezone(ZoneInfo(timezone))

    sections = [
        settings.ai_config.full_prompt or DEFAULT_PERSONA,
        f"Address the customer as {conversation.preferred_name or conversation.name or 'customer'}.",
        "--- CURRENT CONTEXT ---",
        f"CURRENT DATE AND TIME: {local_now.strftime('%A, %d/%m/%Y %H:%M')} ({timezone})",
        f"Customer name (WhatsApp): {conversation.name}",
        f"Preferred name: {conversation.preferred_name or ''}",
        f"Tags: {', '.join(conversation.tags) if conversation.tags else '(none)'}",
        "",
        "KNOWLEDGE BASE (FAQ AND PRODUCTS):",
        render_knowledge_base(settings.knowledge_base),
    ]

    if conversation.operator_notes:
        sections += ["--- NOTES ABOUT THIS CUSTOMER ---", *conversation.operator_notes]

    if previous_reasoning:
        sections += [
            "--- YOUR PREVIOUS REASONING (CONTEXT ONLY) ---",
            json.dumps(previous_reasoning, ensure_ascii=False),
        ]

    if failure_context:
        sections += [
            "--- TOOL FAILURE ---",
            f"The tool you used failed: {json.dumps(failure_context, ensure_ascii=False)}",
            "Try a different approach if one exists. If the same tool fails again the conversation is handed to "
            "a human operator.",
        ]

    sections += [
        "--- AVAILABLE TOOLS ---",
        "Silent tools suppress your response_to_client; do not write a holding message for them.",
        tools_documentation,
        "",
        OUTPUT_RULES,
    ]
    return "\n".join(sections)
