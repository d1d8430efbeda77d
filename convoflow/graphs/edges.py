"""Edge logic and routing for the reasoning graph."""

from typing import Literal

from convoflow.graphs.state import ReasoningState
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)


def route_generate_output(state: ReasoningState) -> Literal["respond", "end"]:
    """Route from generation: a parsed decision is delivered, anything else ends the loop."""
    if state.next_step == "respond" and state.decision is not None:
        return "respond"

    logger.info(f"Loop for {state.conversation_id} ends after generation: {state.stop_reason}")
    return "end"


def route_respond_output(state: ReasoningState) -> Literal["act", "end"]:
    """Route from reply delivery to tool execution when a tool was requested."""
    if state.next_step == "act":
        return "act"
    return "end"


def route_act_output(state: ReasoningState) -> Literal["generate", "escalate", "end"]:
    """Route from tool execution.

    Returns to generation unless the tool short-circuited the loop, the same
    tool failed twice in a row, or the turn cap was reached.
    """
    if state.next_step == "escalate":
        logger.warning(f"Tool {state.failed_tool} failed twice in a row for {state.conversation_id}")
        return "escalate"

    if state.next_step == "generate" and state.turn < state.max_turns:
        return "generate"

    if state.next_step == "generate":
        logger.warning(f"Turn cap ({state.max_turns}) reached for {state.conversation_id}")
    return "end"
