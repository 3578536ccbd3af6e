"""
Mercado Pago Integration Models
OAuth credentials, booking links, provider payment records and the webhook outbox
"""

import enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    Text,
)

from .database import Base
from .models import generate_uuid
from .utils.datetime_utils import utcnow


class PaymentStatus(str, enum.Enum):
    """Internal payment state; provider vocabulary is mapped onto this set"""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"
    CHARGEBACK = "chargeback"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"  # not a payment event
    DROPPED = "dropped"  # could not be correlated to an org/appointment
    FAILED = "failed"  # eligible for retry


class MercadoPagoCredential(Base):
    """One connected Mercado Pago account per organization, tokens encrypted"""

    __tablename__ = "mercadopago_credentials"

    org_id = Column(String(36), ForeignKey("organizations.id"), primary_key=True, index=True)
    collector_id = Column(String(64), nullable=True, index=True)
    access_token_ct = Column(LargeBinary, nullable=False)
    access_token_nonce = Column(LargeBinary, nullable=False)
    refresh_token_ct = Column(LargeBinary, nullable=True)
    refresh_token_nonce = Column(LargeBinary, nullable=True)
    scope = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token_ct and self.refresh_token_nonce)


class PaymentLink(Base):
    """Anonymous booking link; only the SHA-256 of the token is kept"""

    __tablename__ = "payment_links"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    salon_id = Column(String(36), ForeignKey("salons.id"), nullable=False, index=True)
    token_hash = Column(String(64), nullable=False, unique=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    link_metadata = Column("metadata", JSON, default=dict)
    expires_at = Column(DateTime, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class MercadoPagoPayment(Base):
    """
    Provider payment record.

    Correlated by mp_preference_id until the provider assigns a payment id,
    then unique by mp_payment_id.
    """

    __tablename__ = "mp_payments"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    appointment_id = Column(String(36), ForeignKey("appointments.id"), nullable=True, index=True)
    mp_payment_id = Column(String(64), nullable=True, unique=True)
    mp_preference_id = Column(String(128), nullable=True, index=True)
    status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False)
    amount = Column(Float, nullable=True)
    currency = Column(String(3), default="ARS")
    raw = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class WebhookEvent(Base):
    """Outbox of received notifications; failures stay here for out-of-band retry"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    provider = Column(String(32), default="mercadopago", nullable=False)
    topic = Column(String(64), nullable=True)
    resource_id = Column(String(64), nullable=True, index=True)
    raw_body = Column(Text, nullable=False)
    status = Column(String(20), default=WebhookEventStatus.RECEIVED.value, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
