"""Calendar tools: availability, listing, booking and cancellation."""

from datetime import date, datetime, timedelta

from pydantic import BaseModel, Field, field_validator

from convoflow.models.llm import ToolResult
from convoflow.services.appointments import DEFAULT_TIMEZONE, AppointmentService
from convoflow.services.notifications import ActionNotifier
from convoflow.services.store import ConversationStore
from convoflow.tools.base import ToolContext, ToolDefinition

SCHEDULE_APPOINTMENT = "schedule_appointment"

DATE_FORMAT = "%d/%m/%Y"


def _parse_date(value: str) -> date:
    return datetime.strptime(value, DATE_FORMAT).date()


class GetAvailableSlotsInput(BaseModel):
    """Input schema for checking calendar availability."""

    start_date: str = Field(..., description="First day to check, DD/MM/YYYY")
    end_date: str = Field(..., description="Last day to check, DD/MM/YYYY")

    @field_validator("start_date", "end_date")
    @classmethod
    def validate_date(cls, value: str) -> str:
        _parse_date(value)
        return value


class ListEventsInput(BaseModel):
    """Input schema for listing the customer's appointments (no arguments)."""


class ScheduleAppointmentInput(BaseModel):
    """Input schema for booking an appointment."""

    service_name: str = Field(..., min_length=1, description="Service being booked")
    appointment_date: str = Field(..., description="Day of the appointment, DD/MM/YYYY")
    appointment_time: str = Field(..., pattern=r"^\d{2}:\d{2}$", description="Start time, HH:MM (24h)")
    client_full_name: str | None = Field(default=None, description="Customer's full name")
    description: str | None = Field(default=None, description="Extra details for the calendar entry")
    duration_minutes: int = Field(default=60, gt=0, le=480, description="Length of the appointment in minutes")
    response_after_tool: str | None = Field(
        default=None, description="Confirmation text sent to the customer if booking succeeds"
    )

    @field_validator("appointment_date")
    @classmethod
    def validate_date(cls, value: str) -> str:
        _parse_date(value)
        return value


class CancelAppointmentInput(BaseModel):
    """Input schema for cancelling an appointment."""

    event_id: str = Field(..., min_length=1, description="Appointment id as returned by list_events")


def create_get_available_slots_tool(store: ConversationStore, service: AppointmentService) -> ToolDefinition:
    async def handler(params: GetAvailableSlotsInput, context: ToolContext) -> ToolResult:
        start, end = _parse_date(params.start_date), _parse_date(params.end_date)
        if end < start:
            return ToolResult.fail("end_date must not be before start_date")
        if (end - start).days > 31:
            return ToolResult.fail("Availability can be checked for at most 31 days at a time")

        settings = await store.get_tenant_settings(context.tenant_id)
        days = await service.check_availability(
            context.tenant_id, start, end, settings.business_hours if settings else None
        )
        availability = {
            day.day.strftime(DATE_FORMAT): (
                "closed" if day.closed else {"opening_hours": day.open_slots, "busy": day.busy}
            )
            for day in days
        }
        return ToolResult.ok("Availability retrieved.", availability=availability)

    return ToolDefinition(
        name="get_available_slots",
        description=(
            "Check the calendar between two dates and return the opening hours and already busy times of each "
            "day. Always check before booking. Convert relative dates (tomorrow, next week) to DD/MM/YYYY using "
            "the current date in the context."
        ),
        input_schema_class=GetAvailableSlotsInput,
        handler=handler,
        is_silent=True,
    )


def create_list_events_tool(service: AppointmentService) -> ToolDefinition:
    async def handler(params: ListEventsInput, context: ToolContext) -> ToolResult:
        events = await service.list_events(context.tenant_id, context.conversation_id)
        return ToolResult.ok(
            f"Found {len(events)} upcoming appointment(s).",
            events=[
                {
                    "event_id": event.id,
                    "service_name": event.service_name,
                    "start": event.start.astimezone(DEFAULT_TIMEZONE).strftime(f"{DATE_FORMAT} %H:%M"),
                }
                for event in events
            ],
        )

    return ToolDefinition(
        name="list_events",
        description="List the customer's upcoming appointments with their ids, for rescheduling or cancelling.",
        input_schema_class=ListEventsInput,
        handler=handler,
        is_silent=True,
    )


def create_schedule_appointment_tool(
    store: ConversationStore, service: AppointmentService, notifier: ActionNotifier
) -> ToolDefinition:
    async def handler(params: ScheduleAppointmentInput, context: ToolContext) -> ToolResult:
        day = _parse_date(params.appointment_date)
        hour, minute = (int(part) for part in params.appointment_time.split(":"))
        start = datetime(day.year, day.month, day.day, hour, minute, tzinfo=DEFAULT_TIMEZONE)

        conversation = await store.get_conversation(context.tenant_id, context.conversation_id)
        client_name = params.client_full_name or (conversation.display_name if conversation else "Cliente")

        try:
            appointment = await service.create_appointment(
                context.tenant_id,
                context.conversation_id,
                params.service_name,
                client_name,
                start,
                timedelta(minutes=params.duration_minutes),
                params.description or "",
            )
        except ValueError as e:
            return ToolResult.fail(str(e))

        notifier.fire(
            context.tenant_id,
            "appointment_scheduled",
            {
                "conversation_id": context.conversation_id,
                "appointment": {
                    "id": appointment.id,
                    "service_name": appointment.service_name,
                    "date": params.appointment_date,
                    "time": params.appointment_time,
                },
            },
        )
        return ToolResult.ok(
            f"Appointment booked for {params.appointment_date} at {params.appointment_time}.",
            event_id=appointment.id,
        )

    return ToolDefinition(
        name=SCHEDULE_APPOINTMENT,
        description=(
            "Book a service for the customer once you know the service, the day and the time. Put the "
            "confirmation message in response_after_tool; it is sent only if booking succeeds. Convert relative "
            "dates to DD/MM/YYYY using the current date in the context."
        ),
        input_schema_class=ScheduleAppointmentInput,
        handler=handler,
        is_silent=True,
    )


def create_cancel_appointment_tool(service: AppointmentService, notifier: ActionNotifier) -> ToolDefinition:
    async def handler(params: CancelAppointmentInput, context: ToolContext) -> ToolResult:
        if not await service.cancel_appointment(context.tenant_id, params.event_id):
            return ToolResult.fail("The appointment was not found or was already cancelled.")

        notifier.fire(
            context.tenant_id,
            "appointment_canceled",
            {"conversation_id": context.conversation_id, "event_id": params.event_id},
        )
        return ToolResult.ok("The appointment was cancelled.")

    return ToolDefinition(
        name="cancel_appointment",
        description="Cancel one of the customer's appointments by its event_id (use list_events to find it).",
        input_schema_class=CancelAppointmentInput,
        handler=handler,
    )
