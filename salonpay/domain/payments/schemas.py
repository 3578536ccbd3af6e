"""Payments domain schemas - Pydantic models for validation"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, field_validator


def _require_text(value: str, name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{name} is required")
    return value.strip()


def _require_positive(value: float) -> float:
    if value <= 0:
        raise ValueError("amount must be greater than 0")
    return value


# ============================================================================
# CONNECTION
# ============================================================================


class ConnectResponse(BaseModel):
    oauth_url: str
    state: str


class ConnectionStatusResponse(BaseModel):
    connected: bool
    collector_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class DisconnectRequest(BaseModel):
    org_id: str


class SuccessResponse(BaseModel):
    success: bool = True


# ============================================================================
# PREFERENCES
# ============================================================================


class BackUrls(BaseModel):
    success: Optional[str] = None
    failure: Optional[str] = None
    pending: Optional[str] = None


class CreatePreferenceRequest(BaseModel):
    """Schema for creating a checkout preference for an existing appointment"""

    org_id: str
    appointment_id: str
    title: str
    amount: float
    back_urls: Optional[BackUrls] = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        return _require_text(v, "title")

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: float) -> float:
        return _require_positive(v)


class PreferenceResponse(BaseModel):
    url: str
    preference_id: str
    sandbox_url: Optional[str] = None


# ============================================================================
# PAYMENT LINKS
# ============================================================================


class CreatePaymentLinkRequest(BaseModel):
    org_id: str
    salon_id: str
    title: Optional[str] = None
    description: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: Optional[dict[str, Any]] = None


class PaymentLinkResponse(BaseModel):
    id: str
    token: str
    url: str
    expires_at: datetime


class SalonSummary(BaseModel):
    id: str
    name: str
    address: Optional[str] = None
    phone: Optional[str] = None


class OrganizationSummary(BaseModel):
    id: str
    name: str


class PaymentLinkConfigResponse(BaseModel):
    """Public view of a link; never includes the token or its hash"""

    id: str
    org_id: str
    salon_id: str
    title: str
    description: Optional[str] = None
    metadata: dict[str, Any] = {}
    salon: Optional[SalonSummary] = None
    organization: Optional[OrganizationSummary] = None


# ============================================================================
# PUBLIC BOOKING
# ============================================================================


class AvailabilitySlotResponse(BaseModel):
    time: str
    available: bool


class AvailabilityResponse(BaseModel):
    slots: list[AvailabilitySlotResponse]


class StylistResponse(BaseModel):
    id: str
    full_name: str


class StylistsResponse(BaseModel):
    stylists: list[StylistResponse]


class PublicAppointmentRequest(BaseModel):
    """Schema for an anonymous booking made through a payment link"""

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

    @field_validator("token", "salon_id")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v:
            raise ValueError("field is required")
        return v

    @field_validator("client_name")
    @classmethod
    def validate_client_name(cls, v: str) -> str:
        return _require_text(v, "client_name")

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, v: float) -> float:
        return _require_positive(v)


class PublicAppointmentResponse(BaseModel):
    appointment_id: str
    init_point: str
    sandbox_init_point: Optional[str] = None
