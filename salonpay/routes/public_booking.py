"""
Public Booking Routes
Anonymous availability lookup and booking through a payment link
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import get_db
from ..domain.payments.repository import PaymentsRepository
from ..domain.payments.schemas import (
    AvailabilityResponse,
    AvailabilitySlotResponse,
    PublicAppointmentRequest,
    PublicAppointmentResponse,
    StylistResponse,
    StylistsResponse,
)
from ..rate_limiter import create_rate_limiter
from ..services.availability import DefaultAvailabilityProvider
from ..services.booking_gateway import BookingGateway, BookingRequest
from ..services.mercadopago_client import MercadoPagoClient, get_mercadopago_client
from ..services.payment_link_service import PaymentLinkService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/public",
    tags=["Public Booking"],
    dependencies=[Depends(create_rate_limiter(key_prefix="public_booking"))],
)


def get_booking_gateway(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    client: MercadoPagoClient = Depends(get_mercadopago_client),
) -> BookingGateway:
    return BookingGateway(db, settings, client)


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    token: str = Query(...),
    salon_id: str = Query(...),
    day: date = Query(..., alias="date"),
    stylist_id: Optional[str] = None,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Slots for a day; the link must be valid for the salon"""
    PaymentLinkService(db, settings).validate(token, salon_id=salon_id)

    if stylist_id == "any":
        stylist_id = None
    slots = DefaultAvailabilityProvider(db).get_slots(salon_id, day, stylist_id=stylist_id)
    return AvailabilityResponse(
        slots=[AvailabilitySlotResponse(time=slot.time, available=slot.available) for slot in slots]
    )


@router.get("/stylists", response_model=StylistsResponse)
async def get_salon_stylists(
    token: str = Query(...),
    salon_id: str = Query(...),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Active stylists assigned to the salon, for the booking form's stylist picker"""
    PaymentLinkService(db, settings).validate(token, salon_id=salon_id)

    stylists = PaymentsRepository.get_salon_stylists(db, salon_id)
    return StylistsResponse(
        stylists=[StylistResponse(id=stylist.id, full_name=stylist.full_name) for stylist in stylists]
    )


@router.post("/appointments", response_model=PublicAppointmentResponse)
async def create_public_appointment(
    body: PublicAppointmentRequest,
    gateway: BookingGateway = Depends(get_booking_gateway),
):
    """Book a slot and open a Mercado Pago checkout for it"""
    result = await gateway.create_booking(BookingRequest(**body.model_dump()))
    return PublicAppointmentResponse(
        appointment_id=result.appointment_id,
        init_point=result.init_point,
        sandbox_init_point=result.sandbox_init_point,
    )
