"""Calendar service interface and in-memory implementation."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

from convoflow.models.conversation import new_id
from convoflow.models.settings import BusinessHours, DaySchedule, WEEKDAYS

DEFAULT_TIMEZONE = ZoneInfo("America/Sao_Paulo")


def _local(moment: datetime) -> datetime:
    return moment.astimezone(DEFAULT_TIMEZONE)


@dataclass
class Appointment:
    """Calendar event data model."""

    id: str
    tenant_id: str
    conversation_id: str
    service_name: str
    client_name: str
    start: datetime
    end: datetime
    description: str = ""
    status: str = "scheduled"  # scheduled, cancelled


@dataclass
class DayAvailability:
    """Opening hours and busy intervals for one day."""

    day: date
    open_slots: list[tuple[str, str]] = field(default_factory=list)
    busy: list[tuple[str, str]] = field(default_factory=list)
    closed: bool = False


class AppointmentService(Protocol):
    """Interface for calendar backends."""

    async def check_availability(
        self, tenant_id: str, start: date, end: date, business_hours: BusinessHours | None
    ) -> list[DayAvailability]:
        """Get opening hours and busy intervals for each day in ``[start, end]``.

        Args:
            tenant_id: Calendar owner
            start: First day
            end: Last day (inclusive)
            business_hours: Tenant weekly schedule

        Returns:
            One entry per day
        """
        ...

    async def list_events(self, tenant_id: str, conversation_id: str) -> list[Appointment]:
        """List upcoming appointments booked from a conversation."""
        ...

    async def create_appointment(
        self,
        tenant_id: str,
        conversation_id: str,
        service_name: str,
        client_name: str,
        start: datetime,
        duration: timedelta,
        description: str = "",
    ) -> Appointment:
        """Book an appointment.

        Raises:
            ValueError: If the interval overlaps an existing appointment
        """
        ...

    async def cancel_appointment(self, tenant_id: str, appointment_id: str) -> bool:
        """Cancel an appointment. Returns False if it does not exist or is already cancelled."""
        ...


class InMemoryAppointmentService:
    """In-memory calendar

    Keeps appointments per tenant in memory.
    """

    def __init__(self):
        self.appointments: list[Appointment] = []

    async def check_availability(
        self, tenant_id: str, start: date, end: date, business_hours: BusinessHours | None
    ) -> list[DayAvailability]:
        days: list[DayAvailability] = []
        current = start
        while current <= end:
            schedule = self._day_schedule(business_hours, current)
            busy = [
                (_local(apt.start).strftime("%H:%M"), _local(apt.end).strftime("%H:%M"))
                for apt in self._active(tenant_id)
                if _local(apt.start).date() == current
            ]
            if schedule is None or not schedule.enabled:
                days.append(DayAvailability(day=current, busy=busy, closed=True))
            else:
                slots = [(slot.start, slot.end) for slot in schedule.slots] or [("00:00", "23:59")]
                days.append(DayAvailability(day=current, open_slots=slots, busy=sorted(busy)))
            current += timedelta(days=1)
        return days

    async def list_events(self, tenant_id: str, conversation_id: str) -> list[Appointment]:
        now = datetime.now(DEFAULT_TIMEZONE)
        return sorted(
            (apt for apt in self._active(tenant_id) if apt.conversation_id == conversation_id and apt.end > now),
            key=lambda apt: apt.start,
        )

    async def create_appointment(
        self,
        tenant_id: str,
        conversation_id: str,
        service_name: str,
        client_name: str,
        start: datetime,
        duration: timedelta,
        description: str = "",
    ) -> Appointment:
        end = start + duration
        for existing in self._active(tenant_id):
            if existing.start < end and start < existing.end:
                raise ValueError(f"Time slot overlaps existing appointment at {existing.start.isoformat()}")

        appointment = Appointment(
            id=new_id(),
            tenant_id=tenant_id,
            conversation_id=conversation_id,
            service_name=service_name,
            client_name=client_name,
            start=start,
            end=end,
            description=description,
        )
        self.appointments.append(appointment)
        return appointment

    async def cancel_appointment(self, tenant_id: str, appointment_id: str) -> bool:
        for appointment in self._active(tenant_id):
            if appointment.id == appointment_id:
                appointment.status = "cancelled"
                return True
        return False

    def _active(self, tenant_id: str) -> list[Appointment]:
        return [apt for apt in self.appointments if apt.tenant_id == tenant_id and apt.status == "scheduled"]

    @staticmethod
    def _day_schedule(business_hours: BusinessHours | None, day: date) -> DaySchedule | None:
        if business_hours is None:
            return DaySchedule(enabled=True)
        return business_hours.days.get(WEEKDAYS[day.weekday()])
