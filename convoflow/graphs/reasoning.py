"""Reasoning loop graph and its controller."""

from dataclasses import dataclass, field

from langgraph.graph import END, StateGraph

from convoflow.graphs.edges import route_act_output, route_generate_output, route_respond_output
from convoflow.graphs.nodes import ReasoningNodes, latest_image
from convoflow.graphs.prompts import render_batch, render_history
from convoflow.graphs.state import ReasoningState
from convoflow.models.conversation import Message
from convoflow.services.store import ConversationStore
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)


def create_reasoning_graph(nodes: ReasoningNodes):
    """Create the reasoning loop graph.

    The graph runs one drained batch to a terminal state:
    - generate: build context and ask the models for a decision
    - respond: deliver the decision's client text
    - act: execute the requested tool and decide whether to loop
    - escalate: forced human handoff after a repeated tool failure

    Args:
        nodes: Node implementations bound to their collaborators

    Returns:
        Compiled LangGraph workflow
    """
    workflow = StateGraph(ReasoningState)

    workflow.add_node("generate", nodes.generate)
    workflow.add_node("respond", nodes.respond)
    workflow.add_node("act", nodes.act)
    workflow.add_node("escalate", nodes.escalate)

    workflow.set_entry_point("generate")

    workflow.add_conditional_edges(
        "generate",
        route_generate_output,
        {
            "respond": "respond",
            "end": END,
        },
    )

    workflow.add_conditional_edges(
        "respond",
        route_respond_output,
        {
            "act": "act",
            "end": END,
        },
    )

    workflow.add_conditional_edges(
        "act",
        route_act_output,
        {
            "generate": "generate",
            "escalate": "escalate",
            "end": END,
        },
    )

    workflow.add_edge("escalate", END)

    return workflow.compile()


@dataclass
class LoopOutcome:
    """Summary of one reasoning loop run."""

    started: bool
    stop_reason: str | None = None
    turns: int = 0
    tool_calls: list[str] = field(default_factory=list)
    replies: list[str] = field(default_factory=list)
    model_used: str | None = None
    error: str | None = None


class ReasoningLoopController:
    """Runs the reasoning graph for a batch under the conversation's thinking flag."""

    def __init__(
        self,
        store: ConversationStore,
        nodes: ReasoningNodes,
        history_limit: int = 30,
        max_turns: int = 6,
    ):
        """Initialize the controller.

        Args:
            store: Conversation store
            nodes: Graph node implementations
            history_limit: Number of stored messages rendered into the context
            max_turns: Hard cap on generation turns per loop
        """
        self.store = store
        self.nodes = nodes
        self.history_limit = history_limit
        self.max_turns = max_turns
        self.graph = create_reasoning_graph(nodes)

    async def run(self, tenant_id: str, conversation_id: str, batch: list[Message]) -> LoopOutcome:
        """Process one drained batch.

        Returns ``started=False`` when another loop already holds the thinking
        flag; the caller is expected to requeue the batch. Unexpected errors
        move the conversation to support and never propagate.
        """
        if not batch:
            return LoopOutcome(started=True, stop_reason="empty_batch")

        conversation = await self.store.get_conversation(tenant_id, conversation_id)
        if conversation is None:
            logger.error(f"Conversation {conversation_id} not found for tenant {tenant_id}, dropping batch")
            return LoopOutcome(started=True, stop_reason="missing_conversation")

        if not conversation.is_ai_active:
            logger.info(f"AI inactive for {conversation_id}, skipping batch of {len(batch)}")
            return LoopOutcome(started=True, stop_reason="ai_inactive")

        if not await self.store.try_begin_thinking(tenant_id, conversation_id):
            logger.info(f"Loop already running for {conversation_id}, batch of {len(batch)} deferred")
            return LoopOutcome(started=False)

        try:
            settings = await self.store.get_tenant_settings(tenant_id)
            if settings is None:
                raise RuntimeError(f"Tenant settings missing for {tenant_id}")

            batch_ids = {message.id for message in batch}
            history = [
                message
                for message in await self.store.recent_messages(tenant_id, conversation_id, self.history_limit)
                if message.id not in batch_ids
            ]
            transcript = "\n".join(part for part in (render_history(history), render_batch(batch)) if part)

            state = ReasoningState(
                tenant_id=tenant_id,
                conversation_id=conversation_id,
                settings=settings,
                conversation=conversation,
                image_data_uri=latest_image(batch),
                quoted_message=batch[-1],
                max_turns=self.max_turns,
                transcript=transcript,
            )

            logger.info(f"Starting reasoning loop for {conversation_id} with {len(batch)} message(s)")
            result = await self.graph.ainvoke(
                dict(state),
                config={"recursion_limit": self.max_turns * 4 + 10},  # Each turn visits at most 3 nodes
            )
            final = ReasoningState.model_validate(result) if isinstance(result, dict) else result

            logger.info(
                f"Loop for {conversation_id} finished after {final.turn} turn(s): {final.stop_reason} "
                f"(tools: {final.tool_calls}, model: {final.model_used})"
            )
            return LoopOutcome(
                started=True,
                stop_reason=final.stop_reason,
                turns=final.turn,
                tool_calls=final.tool_calls,
                replies=final.replies_sent,
                model_used=final.model_used,
            )

        except Exception as e:
            logger.error(f"Reasoning loop crashed for {conversation_id} (tenant {tenant_id}): {e}", exc_info=True)
            await self._move_to_support(tenant_id, conversation_id)
            return LoopOutcome(started=True, stop_reason="crashed", error=str(e))

        finally:
            await self.store.end_thinking(tenant_id, conversation_id)

    async def _move_to_support(self, tenant_id: str, conversation_id: str) -> None:
        try:
            await self.store.update_conversation(
                tenant_id,
                conversation_id,
                folder="support",
                is_ai_active=False,
                intervention_reason="technical_failure",
            )
        except Exception as e:
            logger.error(f"Could not move {conversation_id} to support: {e}")
