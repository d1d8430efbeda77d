"""Tool dispatcher: registry of named side-effecting operations."""

from collections.abc import Iterable

from pydantic import ValidationError

from convoflow.models.llm import ToolRequest, ToolResult
from convoflow.services.appointments import AppointmentService
from convoflow.services.notifications import ActionNotifier
from convoflow.services.outbound import OutboundMessenger
from convoflow.services.store import ConversationStore
from convoflow.services.summaries import ConversationSummarizer
from convoflow.tools.base import ToolContext, ToolDefinition
from convoflow.tools.conversation_actions import (
    create_end_conversation_tool,
    create_request_human_support_tool,
    create_summarize_conversation_tool,
    create_update_client_info_tool,
    create_update_conversation_tags_tool,
)
from convoflow.tools.media import create_send_media_message_tool
from convoflow.tools.scheduling import (
    create_cancel_appointment_tool,
    create_get_available_slots_tool,
    create_list_events_tool,
    create_schedule_appointment_tool,
)
from convoflow.utils.logging import get_logger

logger = get_logger(__name__)


class ToolDispatcher:
    """Registry and executor for AI tools.

    ``execute`` never raises: unknown tools, invalid arguments and handler
    exceptions all come back as failed ToolResults.
    """

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        """Initialize the dispatcher with an initial set of tools."""
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry."""
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return list(self._tools.keys())

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools

    def is_silent(self, name: str | None) -> bool:
        """Check whether a tool suppresses the model's accompanying text."""
        tool = self._tools.get(name) if name else None
        return bool(tool and tool.is_silent)

    def describe_tools(self) -> str:
        """Available-actions documentation shown to the model."""
        return "\n".join(tool.describe() for tool in self._tools.values())

    async def execute(self, request: ToolRequest, context: ToolContext) -> ToolResult:
        """Validate arguments and run a tool.

        Args:
            request: Tool name and raw arguments from the model
            context: Tenant and conversation the tool acts on

        Returns:
            Structured result, failed on any error
        """
        tool = self._tools.get(request.name)
        if tool is None:
            logger.warning(f"Unknown tool '{request.name}' requested for {context.conversation_id}")
            return ToolResult.fail(f"Unknown tool: {request.name}")

        logger.info(
            f"Executing tool {request.name} for tenant {context.tenant_id}, "
            f"conversation {context.conversation_id} with args {request.args}"
        )

        try:
            parsed = tool.parse_input(request.args)
        except ValidationError as e:
            errors = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
            result = ToolResult.fail(f"Invalid arguments for {request.name}: {errors}")
            logger.warning(f"Tool {request.name} rejected arguments: {result.error}")
            return result

        try:
            result = await tool.handler(parsed, context)
            if not isinstance(result, ToolResult):
                raise TypeError(f"handler returned {type(result).__name__}, expected ToolResult")
            logger.info(f"Tool {request.name} finished for {context.conversation_id}: {result.to_prompt()}")
        except Exception as e:
            logger.error(f"Tool {request.name} raised for {context.conversation_id}: {e}", exc_info=True)
            return ToolResult.fail(f"{type(e).__name__}: {e}")

        return result


def create_tool_dispatcher(
    store: ConversationStore,
    messenger: OutboundMessenger,
    notifier: ActionNotifier,
    appointment_service: AppointmentService,
    summarizer: ConversationSummarizer,
) -> ToolDispatcher:
    """Build a dispatcher holding the full tool set."""
    return ToolDispatcher(
        [
            create_request_human_support_tool(store, notifier),
            create_end_conversation_tool(store, notifier, summarizer),
            create_summarize_conversation_tool(summarizer),
            create_update_client_info_tool(store, notifier),
            create_update_conversation_tags_tool(store, notifier),
            create_send_media_message_tool(messenger),
            create_get_available_slots_tool(store, appointment_service),
            create_list_events_tool(appointment_service),
            create_schedule_appointment_tool(store, appointment_service, notifier),
            create_cancel_appointment_tool(appointment_service, notifier),
        ]
    )
