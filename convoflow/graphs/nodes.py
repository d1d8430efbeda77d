"""Node implementations for the reasoning graph."""

from collections.abc import Callable
from datetime import datetime
from typing import Any

from convoflow.clients.anthropic import GenerationError, Generator, candidate_models
from convoflow.graphs.prompts import ASSISTANT_PREFIX, build_system_prompt, render_tool_result
from convoflow.graphs.state import ReasoningState
from convoflow.models.conversation import Message, utcnow
from convoflow.models.llm import DecisionParseError, GenerationResult, ToolRequest, parse_decision
from convoflow.services.delivery import DeliveryPipeline
from convoflow.tools.base import ToolContext
from convoflow.tools.conversation_actions import END_CONVERSATION, REQUEST_HUMAN_SUPPORT
from convoflow.tools.media import SEND_MEDIA_MESSAGE
from convoflow.tools.registry import ToolDispatcher
from convoflow.tools.scheduling import SCHEDULE_APPOINTMENT
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)

# Successful calls to these end the loop
TERMINAL_TOOLS = {REQUEST_HUMAN_SUPPORT: "escalated", END_CONVERSATION: "conversation_ended"}

# Successful calls to these end the loop once their post-tool message is sent
FINAL_ANSWER_TOOLS = {SCHEDULE_APPOINTMENT, SEND_MEDIA_MESSAGE}

DEFAULT_HANDOFF_MESSAGE = (
    "Tive um problema técnico por aqui. Vou chamar alguém da equipe para continuar o seu atendimento."
)


class ReasoningNodes:
    """Graph nodes bound to the loop's collaborators."""

    def __init__(
        self,
        generator: Generator,
        dispatcher: ToolDispatcher,
        delivery: DeliveryPipeline,
        clock: Callable[[], datetime] = utcnow,
        handoff_message: str | None = DEFAULT_HANDOFF_MESSAGE,
    ):
        self.generator = generator
        self.dispatcher = dispatcher
        self.delivery = delivery
        self.clock = clock
        self.handoff_message = handoff_message

    async def generate(self, state: ReasoningState) -> dict[str, Any]:
        """Build the turn's context and ask the candidate models for a decision.

        Retryable failures fall through to the next candidate. A terminal failure,
        exhausted candidates or unparseable output end the loop.
        """
        turn = state.turn + 1
        logger.info(f"Turn {turn}/{state.max_turns} for {state.conversation_id} (tenant {state.tenant_id})")

        system_prompt = build_system_prompt(
            state.settings,
            state.conversation,
            self.dispatcher.describe_tools(),
            self.clock(),
            previous_reasoning=state.previous_reasoning,
            failure_context=state.failure_context,
        )
        # Failure context is shown exactly once
        updates: dict[str, Any] = {"turn": turn, "failure_context": None}

        provider = state.settings.ai_provider
        candidates = candidate_models(provider.primary_model, provider.is_fallback_enabled)

        result: GenerationResult | None = None
        for model in candidates:
            try:
                result = await self.generator.generate(
                    model,
                    system_prompt,
                    state.transcript,
                    image_data_uri=state.image_data_uri,
                    temperature=state.settings.automation.ai_temperature,
                    api_key=provider.api_key,
                )
                if result.text.strip():
                    break
                logger.warning(f"Empty output from {model} for {state.conversation_id}")
                result = None
            except GenerationError as e:
                if not e.retryable:
                    logger.error(f"Terminal generation failure on {model} for {state.conversation_id}: {e}")
                    return {**updates, "stop_reason": "generation_failed", "next_step": "end"}
                logger.warning(f"Retryable generation failure on {model} for {state.conversation_id}: {e}")

        if result is None:
            logger.error(f"All {len(candidates)} candidate model(s) failed for {state.conversation_id}")
            return {**updates, "stop_reason": "generation_failed", "next_step": "end"}

        try:
            decision = parse_decision(result.text)
        except DecisionParseError as e:
            logger.error(f"Unusable output from {result.model} for {state.conversation_id}: {e}")
            return {**updates, "model_used": result.model, "stop_reason": "invalid_decision", "next_step": "end"}

        logger.debug(f"Decision from {result.model}: {decision.model_dump_json()}")
        return {
            **updates,
            "decision": decision,
            "previous_reasoning": decision.reasoning or None,
            "model_used": result.model,
            "next_step": "respond",
        }

    async def respond(self, state: ReasoningState) -> dict[str, Any]:
        """Deliver the decision's client text unless the requested tool is silent."""
        decision = state.decision
        tool_name = decision.tool_request.name if decision.tool_request else None
        text = (decision.response_to_client or "").strip()

        updates: dict[str, Any] = {}
        if text and self.dispatcher.is_silent(tool_name):
            logger.info(f"Suppressed reply before silent tool {tool_name} for {state.conversation_id}: {text[:80]}")
        elif text:
            delivered = await self.delivery.deliver(
                state.tenant_id, state.conversation_id, text, quoted=state.quoted_message
            )
            updates["transcript"] = f"{state.transcript}\n{ASSISTANT_PREFIX} {text}"
            updates["replies_sent"] = [*state.replies_sent, text]
            if not delivered:
                return {**updates, "stop_reason": "delivery_failed", "next_step": "end"}

        if tool_name:
            return {**updates, "next_step": "act"}

        return {**updates, "stop_reason": "no_tool", "next_step": "end"}

    async def act(self, state: ReasoningState) -> dict[str, Any]:
        """Execute the requested tool and decide whether the loop continues."""
        request = state.decision.tool_request
        context = ToolContext(tenant_id=state.tenant_id, conversation_id=state.conversation_id)

        result = await self.dispatcher.execute(request, context)
        updates: dict[str, Any] = {
            "tool_result": result,
            "tool_calls": [*state.tool_calls, request.name],
            "transcript": f"{state.transcript}\n{render_tool_result(request.name, result.to_prompt())}",
        }

        if not result.success:
            error = result.error or f"Tool {request.name} failed"
            if state.failed_tool == request.name:
                return {**updates, "failure_context": error, "next_step": "escalate"}
            updates.update(failed_tool=request.name, failure_context=error)

        else:
            updates["failed_tool"] = None

            if request.name in TERMINAL_TOOLS:
                logger.info(f"Tool {request.name} ended the loop for {state.conversation_id}")
                return {**updates, "stop_reason": TERMINAL_TOOLS[request.name], "next_step": "end"}

            follow_up = request.args.get("response_after_tool")
            if request.name in FINAL_ANSWER_TOOLS and isinstance(follow_up, str) and follow_up.strip():
                await self.delivery.deliver(
                    state.tenant_id, state.conversation_id, follow_up, quoted=state.quoted_message
                )
                return {
                    **updates,
                    "replies_sent": [*state.replies_sent, follow_up],
                    "stop_reason": "final_answer",
                    "next_step": "end",
                }

        if state.turn >= state.max_turns:
            logger.warning(f"Turn cap ({state.max_turns}) reached for {state.conversation_id}, stopping")
            return {**updates, "stop_reason": "max_turns", "next_step": "end"}

        return {**updates, "next_step": "generate"}

    async def escalate(self, state: ReasoningState) -> dict[str, Any]:
        """Hand the conversation to a human after the same tool failed twice in a row.

        Raises:
            RuntimeError: If the handoff itself fails
        """
        reason = f"Tool {state.failed_tool} failed repeatedly: {state.failure_context}"
        logger.warning(f"Forcing human handoff for {state.conversation_id}: {reason}")

        replies = list(state.replies_sent)
        if self.handoff_message:
            await self.delivery.deliver(state.tenant_id, state.conversation_id, self.handoff_message)
            replies.append(self.handoff_message)

        context = ToolContext(tenant_id=state.tenant_id, conversation_id=state.conversation_id)
        request = ToolRequest(name=REQUEST_HUMAN_SUPPORT, args={"reason": reason})
        result = await self.dispatcher.execute(request, context)
        if not result.success:
            raise RuntimeError(f"Forced handoff failed for {state.conversation_id}: {result.error}")

        return {
            "tool_result": result,
            "tool_calls": [*state.tool_calls, REQUEST_HUMAN_SUPPORT],
            "replies_sent": replies,
            "stop_reason": "repeated_tool_failure",
            "next_step": "end",
        }


def latest_image(batch: list[Message]) -> str | None:
    """Pick the image attached to the batch, preferring the most recent."""
    for message in reversed(batch):
        if message.image_data_uri:
            return message.image_data_uri
    return None
