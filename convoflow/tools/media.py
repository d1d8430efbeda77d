"""Media sending tool."""

from typing import Literal

from pydantic import BaseModel, Field

from convoflow.models.llm import ToolResult
from convoflow.services.outbound import OutboundMessenger
from convoflow.tools.base import ToolContext, ToolDefinition

SEND_MEDIA_MESSAGE = "send_media_message"


class SendMediaMessageInput(BaseModel):
    """Input schema for sending media from the knowledge base."""

    mediatype: Literal["image", "video", "audio", "document"] = Field(..., description="Kind of media to send")
    media_urls: list[str] = Field(..., min_length=1, description="Public URLs of the files to send, in order")
    caption: str | None = Field(default=None, description="Caption for the first file")
    mimetype: str | None = Field(default=None, description="MIME type, e.g. image/jpeg or application/pdf")
    file_name: str | None = Field(default=None, description="File name shown for documents")
    response_after_tool: str | None = Field(
        default=None, description="Text sent to the customer after the media was delivered"
    )


def create_send_media_message_tool(messenger: OutboundMessenger) -> ToolDefinition:
    async def handler(params: SendMediaMessageInput, context: ToolContext) -> ToolResult:
        sent = 0
        for index, url in enumerate(params.media_urls):
            result = await messenger.send_media(
                context.tenant_id,
                context.conversation_id,
                params.mediatype,
                url,
                caption=params.caption if index == 0 else None,
                mimetype=params.mimetype,
                file_name=params.file_name,
            )
            if not result.success:
                return ToolResult.fail(
                    f"Sent {sent} of {len(params.media_urls)} file(s); failed on {url}: {result.error}"
                )
            sent += 1

        return ToolResult.ok(f"Sent {sent} file(s) to the customer.", sent=sent)

    return ToolDefinition(
        name=SEND_MEDIA_MESSAGE,
        description=(
            "Send images, videos or documents to the customer. Use when the knowledge base lists media URLs for "
            "the product or service being discussed. Put the follow-up text in response_after_tool; it is sent "
            "only if the media was delivered."
        ),
        input_schema_class=SendMediaMessageInput,
        handler=handler,
        is_silent=True,
    )
