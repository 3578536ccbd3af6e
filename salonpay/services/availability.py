"""
Salon availability

The booking gateway only needs a list of {time, available} candidates for a day. The
default provider lays a fixed 30-minute grid over opening hours and marks slots covered by
pending or confirmed appointments as taken.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from ..domain.payments.repository import PaymentsRepository
from ..models import ACTIVE_APPOINTMENT_STATUSES

OPENING_HOUR = 8
CLOSING_HOUR = 20
SLOT_MINUTES = 30
DEFAULT_DURATION_MINUTES = 30


@dataclass(frozen=True)
class AvailabilitySlot:
    time: str  # "HH:MM"
    available: bool


def slot_key(moment: datetime) -> str:
    return moment.strftime("%H:%M")


class AvailabilityProvider(Protocol):
    def get_slots(
        self,
        salon_id: str,
        day: date,
        stylist_id: Optional[str] = None,
        duration_minutes: int = DEFAULT_DURATION_MINUTES,
    ) -> list[AvailabilitySlot]: ...


class DefaultAvailabilityProvider:
    def __init__(self, db: Session):
        self.db = db

    def get_slots(
        self,
        salon_id: str,
        day: date,
        stylist_id: Optional[str] = None,
        duration_minutes: int = DEFAULT_DURATION_MINUTES,
    ) -> list[AvailabilitySlot]:
        day_start = datetime.combine(day, time.min)
        appointments = PaymentsRepository.get_appointments_between(
            self.db,
            salon_id,
            day_start,
            day_start + timedelta(days=1),
            ACTIVE_APPOINTMENT_STATUSES,
            stylist_id=stylist_id,
        )

        # Every existing booking blocks the grid slots its duration overlaps
        booked: set[str] = set()
        for appointment in appointments:
            cursor = appointment.starts_at
            end = cursor + timedelta(minutes=duration_minutes)
            while cursor < end:
                booked.add(slot_key(cursor))
                cursor += timedelta(minutes=SLOT_MINUTES)

        closing = datetime.combine(day, time(CLOSING_HOUR))
        slots = []
        cursor = datetime.combine(day, time(OPENING_HOUR))
        while cursor + timedelta(minutes=duration_minutes) <= closing:
            key = slot_key(cursor)
            slots.append(AvailabilitySlot(time=key, available=key not in booked))
            cursor += timedelta(minutes=SLOT_MINUTES)
        return slots
