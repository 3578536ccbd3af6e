"""
Public Booking Gateway

Anonymous customers book through a payment link: the link is validated against the salon,
the slot is checked, a pending appointment is created and a Mercado Pago preference is
opened for it. If the preference cannot be created the appointment is deleted again and
the original error is re-raised.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..config import Settings
from ..domain.payments.repository import PaymentsRepository
from ..exceptions import SlotUnavailableError
from ..models import AppointmentStatus
from ..utils.datetime_utils import to_naive_utc
from .availability import AvailabilityProvider, DefaultAvailabilityProvider, slot_key
from .mercadopago_client import MercadoPagoClient
from .payment_link_service import PaymentLinkService
from .preference_service import PreferenceService

logger = logging.getLogger(__name__)

DEFAULT_SERVICE_NAME = "Servicio"


@dataclass
class BookingRequest:
    token: str
    salon_id: str
    client_name: str
    starts_at: datetime
    amount: float
    service_id: Optional[str] = None
    service_name: Optional[str] = None
    stylist_id: Optional[str] = None
    client_phone: Optional[str] = None
    client_email: Optional[str] = None


@dataclass
class BookingResult:
    appointment_id: str
    init_point: str
    sandbox_init_point: Optional[str] = None


class BookingGateway:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        client: MercadoPagoClient,
        availability: Optional[AvailabilityProvider] = None,
        preference_service: Optional[PreferenceService] = None,
    ):
        self.db = db
        self.settings = settings
        self.links = PaymentLinkService(db, settings)
        self.availability = availability or DefaultAvailabilityProvider(db)
        self.preferences = preference_service or PreferenceService(db, settings, client)
        self.repo = PaymentsRepository

    def ensure_slot_available(self, request: BookingRequest) -> None:
        starts_at = to_naive_utc(request.starts_at)
        slots = self.availability.get_slots(
            request.salon_id, starts_at.date(), stylist_id=request.stylist_id
        )
        wanted = slot_key(starts_at)
        if not any(slot.time == wanted and slot.available for slot in slots):
            logger.info(f"⛔ Slot {starts_at.isoformat()} unavailable for salon {request.salon_id}")
            raise SlotUnavailableError(f"Slot {starts_at.isoformat()} is not available")

    async def create_booking(self, request: BookingRequest) -> BookingResult:
        link = self.links.validate(request.token, salon_id=request.salon_id)
        self.ensure_slot_available(request)

        appointment = self.repo.create_appointment(
            self.db,
            org_id=link.org_id,
            salon_id=request.salon_id,
            service_id=request.service_id,
            stylist_id=request.stylist_id,
            client_name=request.client_name,
            client_phone=request.client_phone,
            client_email=request.client_email,
            starts_at=to_naive_utc(request.starts_at),
            status=AppointmentStatus.PENDING.value,
            total_amount=float(request.amount),
            created_by=None,
        )
        logger.info(f"📅 Pending appointment {appointment.id} created from link {link.id}")

        title = f"{request.service_name or DEFAULT_SERVICE_NAME} - {request.client_name}"
        try:
            intent = await self.preferences.create_intent(
                org_id=link.org_id,
                appointment_id=appointment.id,
                title=title,
                amount=request.amount,
            )
        except Exception:
            self._compensate(appointment.id)
            raise

        return BookingResult(
            appointment_id=appointment.id,
            init_point=intent.checkout_url,
            sandbox_init_point=intent.sandbox_url,
        )

    def _compensate(self, appointment_id: str) -> None:
        """Best-effort delete of the appointment and its payment rows; never retried"""
        self.db.rollback()
        try:
            self.repo.delete_appointment(self.db, appointment_id)
            logger.info(f"🧹 Appointment {appointment_id} removed after failed payment intent")
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"❌ Could not remove appointment {appointment_id} after failed payment intent, "
                f"left as orphan for the sweep: {e}"
            )
