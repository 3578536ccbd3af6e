"""
Mercado Pago Webhook Reconciler

Turns payment notifications into payment records, appointment confirmations and
ledger entries. Notifications are stored first (outbox) and processed afterwards, so a
processing failure never changes the acknowledgement and can be retried later.

Replays are harmless: a terminal record matching the notification's status hint is
skipped before any provider call, side effects are skipped when the stored status already
equals the fetched one, and the ledger is unique by payment id.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings
from ..domain.payments.repository import PaymentsRepository
from ..exceptions import UnresolvedCorrelationError
from ..models import AppointmentStatus, Payment
from ..models_mercadopago import (
    MercadoPagoPayment,
    PaymentStatus,
    WebhookEvent,
    WebhookEventStatus,
)
from ..utils.datetime_utils import parse_iso_datetime, utcnow
from ..webhook_security import verify_mercadopago_signature
from .mercadopago_client import MercadoPagoClient
from .token_service import TokenService

logger = logging.getLogger(__name__)

PAYMENT_TOPIC = "payment"
LEDGER_METHOD = "mp"
APPOINTMENT_PAYMENT_METHOD = "mercadopago"

PROVIDER_STATUS_MAP = {
    "approved": PaymentStatus.APPROVED,
    "pending": PaymentStatus.PENDING,
    "in_process": PaymentStatus.PENDING,
    "in_mediation": PaymentStatus.PENDING,
    "authorized": PaymentStatus.PENDING,
    "rejected": PaymentStatus.REJECTED,
    "refunded": PaymentStatus.REFUNDED,
    "cancelled": PaymentStatus.CANCELLED,
    "charged_back": PaymentStatus.CHARGEBACK,
}


def map_provider_status(provider_status: Optional[str]) -> PaymentStatus:
    status = PROVIDER_STATUS_MAP.get((provider_status or "").lower())
    if status is None:
        logger.warning(f"⚠️ Unknown Mercado Pago payment status '{provider_status}', treating as pending")
        return PaymentStatus.PENDING
    return status


@dataclass
class PaymentNotification:
    topic: Optional[str]
    resource_id: Optional[str]
    data: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None  # collector the notification was sent for

    @property
    def is_payment(self) -> bool:
        return self.topic == PAYMENT_TOPIC and bool(self.resource_id)

    @property
    def status_hint(self) -> Optional[str]:
        return self.data.get("status")

    @property
    def appointment_hint(self) -> Optional[str]:
        reference = self.data.get("external_reference")
        if reference:
            return str(reference)
        metadata = self.data.get("metadata")
        if isinstance(metadata, dict) and metadata.get("appointment_id"):
            return str(metadata["appointment_id"])
        return None

    @property
    def preference_hint(self) -> Optional[str]:
        preference_id = self.data.get("preference_id")
        return str(preference_id) if preference_id else None

    @classmethod
    def parse(cls, raw_body: bytes) -> Optional["PaymentNotification"]:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict):
            return None

        data = payload.get("data")
        if not isinstance(data, dict):
            data = {}
        resource_id = data.get("id")
        user_id = payload.get("user_id")
        return cls(
            topic=payload.get("type") or payload.get("topic"),
            resource_id=str(resource_id) if resource_id not in (None, "") else None,
            data=data,
            user_id=str(user_id) if user_id not in (None, "") else None,
        )


class WebhookReconciler:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        client: MercadoPagoClient,
        token_service: Optional[TokenService] = None,
    ):
        self.db = db
        self.settings = settings
        self.client = client
        self.tokens = token_service or TokenService(db, settings, client)
        self.repo = PaymentsRepository

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def verify(self, signature_header: Optional[str], raw_body: bytes) -> bool:
        secret = self.settings.mp_webhook_secret
        if not secret:
            logger.warning("⚠️ MP_WEBHOOK_SECRET not configured, skipping signature verification")
            return True
        return verify_mercadopago_signature(
            signature_header, raw_body, secret, max_age=self.settings.mp_webhook_max_age_seconds
        )

    def record_event(self, raw_body: bytes) -> WebhookEvent:
        notification = PaymentNotification.parse(raw_body)
        event = self.repo.create_webhook_event(
            self.db,
            topic=notification.topic if notification else None,
            resource_id=notification.resource_id if notification else None,
            raw_body=raw_body.decode("utf-8", errors="replace"),
            status=WebhookEventStatus.RECEIVED.value,
        )
        logger.info(
            f"📥 Mercado Pago webhook stored as event {event.id} "
            f"(topic={event.topic}, resource={event.resource_id})"
        )
        return event

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_event(self, event: WebhookEvent) -> str:
        """Run reconciliation for a stored event and record the outcome on it"""
        event.attempts = (event.attempts or 0) + 1
        self.db.commit()

        try:
            outcome = await self.reconcile(event.raw_body.encode("utf-8"))
            event.status = outcome.value
            event.last_error = None
            event.processed_at = utcnow()
        except UnresolvedCorrelationError as e:
            self.db.rollback()
            logger.warning(f"⚠️ Webhook event {event.id} dropped: {e}")
            event.status = WebhookEventStatus.DROPPED.value
            event.last_error = str(e)
            event.processed_at = utcnow()
        except Exception as e:
            self.db.rollback()
            logger.error(f"❌ Webhook event {event.id} failed (attempt {event.attempts}): {e}", exc_info=True)
            event.status = WebhookEventStatus.FAILED.value
            event.last_error = f"{type(e).__name__}: {e}"

        self.db.commit()
        return event.status

    async def reconcile(self, raw_body: bytes) -> WebhookEventStatus:
        notification = PaymentNotification.parse(raw_body)
        if notification is None or not notification.is_payment:
            logger.info("ℹ️ Ignoring non-payment Mercado Pago notification")
            return WebhookEventStatus.IGNORED

        payment_id = notification.resource_id
        record = self.repo.get_mp_payment_by_payment_id(self.db, payment_id)

        if record and notification.status_hint:
            stored = PaymentStatus(record.status)
            if stored.is_terminal and stored is map_provider_status(notification.status_hint):
                logger.info(f"🔁 Payment {payment_id} already {stored.value}, skipping duplicate notification")
                return WebhookEventStatus.PROCESSED

        org_id, expected_appointment_id = self._resolve_org(notification, record)

        access_token = await self.tokens.get_valid_access_token(org_id)
        payment = await self.client.get_payment(access_token, payment_id)

        appointment_id = self._resolve_appointment(payment_id, org_id, expected_appointment_id, payment)

        status = map_provider_status(payment.get("status"))
        logger.info(f"💰 Payment {payment_id} for appointment {appointment_id}: {payment.get('status')} -> {status.value}")

        if record and record.status == status.value:
            logger.info(f"🔁 Payment {payment_id} status unchanged ({status.value}), no side effects")
            record.raw = payment
            self.db.commit()
            return WebhookEventStatus.PROCESSED

        previous_status = record.status if record else None
        if record is None:
            preference_id = notification.preference_hint or payment.get("preference_id")
            record, previous_status = self._claim_or_create_record(
                org_id, appointment_id, payment_id, str(preference_id) if preference_id else None
            )

        record.mp_payment_id = payment_id
        record.status = status.value
        record.amount = self._amount(payment, record.amount)
        record.currency = payment.get("currency_id") or record.currency
        record.raw = payment
        record.updated_at = utcnow()

        if status is PaymentStatus.APPROVED and previous_status != PaymentStatus.APPROVED.value:
            self._apply_approval(record, payment)
        elif status in (PaymentStatus.REFUNDED, PaymentStatus.CHARGEBACK):
            logger.warning(
                f"⚠️ Payment {payment_id} is {status.value}; appointment {appointment_id} "
                f"left unchanged, needs manual review"
            )

        self.db.commit()
        return WebhookEventStatus.PROCESSED

    def _resolve_org(
        self, notification: PaymentNotification, record: Optional[MercadoPagoPayment]
    ) -> tuple[str, Optional[str]]:
        """
        Decide whose token fetches the payment: (org_id, expected appointment or None).

        Order: a stored record for the payment, the notification's collector (user_id)
        mapped to a connected org, then body hints tied to an existing appointment.
        """
        if record:
            return record.org_id, record.appointment_id

        if notification.user_id:
            credential = self.repo.get_credential_by_collector_id(self.db, notification.user_id)
            if credential:
                return credential.org_id, None
            logger.warning(f"⚠️ No connected org for Mercado Pago collector {notification.user_id}")

        appointment_id = notification.appointment_hint
        if not appointment_id and notification.preference_hint:
            pending = self.repo.get_mp_payment_by_preference_id(
                self.db, notification.preference_hint, unclaimed_only=True
            )
            if pending:
                appointment_id = pending.appointment_id

        if not appointment_id:
            raise UnresolvedCorrelationError(
                f"Payment {notification.resource_id} has no stored record, known collector or correlation hints"
            )

        appointment = self.repo.get_appointment(self.db, appointment_id)
        if not appointment:
            raise UnresolvedCorrelationError(
                f"Payment {notification.resource_id} references unknown appointment {appointment_id}"
            )
        return appointment.org_id, appointment.id

    def _resolve_appointment(
        self,
        payment_id: str,
        org_id: str,
        expected_appointment_id: Optional[str],
        payment: dict[str, Any],
    ) -> Optional[str]:
        """The fetched payment's external_reference is authoritative and must belong to the org"""
        reference = payment.get("external_reference")
        reference = str(reference) if reference else None

        if expected_appointment_id:
            if reference and reference != expected_appointment_id:
                raise UnresolvedCorrelationError(
                    f"Payment {payment_id} references {reference}, expected appointment {expected_appointment_id}"
                )
            return expected_appointment_id

        if not reference:
            raise UnresolvedCorrelationError(f"Payment {payment_id} carries no external_reference")

        appointment = self.repo.get_appointment(self.db, reference)
        if not appointment or appointment.org_id != org_id:
            raise UnresolvedCorrelationError(
                f"Payment {payment_id} references appointment {reference} outside org {org_id}"
            )
        return appointment.id

    def _claim_or_create_record(
        self,
        org_id: str,
        appointment_id: Optional[str],
        payment_id: str,
        preference_hint: Optional[str],
    ) -> tuple[MercadoPagoPayment, Optional[str]]:
        """Attach the payment id to the pending preference row, or start a new record"""
        pending = None
        if preference_hint:
            pending = self.repo.get_mp_payment_by_preference_id(
                self.db, preference_hint, unclaimed_only=True
            )
        if pending is None and appointment_id:
            pending = self.repo.get_unclaimed_mp_payment_for_appointment(self.db, appointment_id)

        if pending is not None:
            logger.info(f"🔗 Payment {payment_id} claimed preference {pending.mp_preference_id}")
            return pending, pending.status

        record = MercadoPagoPayment(
            org_id=org_id,
            appointment_id=appointment_id,
            mp_payment_id=payment_id,
            mp_preference_id=preference_hint,
            status=PaymentStatus.PENDING.value,
            currency=self.settings.mp_currency,
        )
        self.db.add(record)
        return record, None

    def _apply_approval(self, record: MercadoPagoPayment, payment: dict[str, Any]) -> None:
        amount = self._amount(payment, record.amount) or 0.0

        if record.appointment_id:
            appointment = self.repo.get_appointment(self.db, record.appointment_id)
            if appointment:
                appointment.status = AppointmentStatus.CONFIRMED.value
                appointment.total_collected = amount
                appointment.payment_method = APPOINTMENT_PAYMENT_METHOD
                appointment.updated_at = utcnow()
                logger.info(f"✅ Appointment {appointment.id} confirmed by payment {record.mp_payment_id}")
            else:
                logger.warning(f"⚠️ Approved payment {record.mp_payment_id} points at missing appointment {record.appointment_id}")

        if self.repo.has_ledger_entry(self.db, record.mp_payment_id):
            logger.info(f"🔁 Ledger entry for payment {record.mp_payment_id} already exists")
            return

        self.db.add(
            Payment(
                org_id=record.org_id,
                appointment_id=record.appointment_id,
                amount=amount,
                method=LEDGER_METHOD,
                mp_payment_id=record.mp_payment_id,
                mp_preference_id=record.mp_preference_id,
                mp_status=PaymentStatus.APPROVED.value,
                received_at=parse_iso_datetime(payment.get("date_approved")) or utcnow(),
                notes=f"Pago aprobado por Mercado Pago - Payment ID: {record.mp_payment_id}",
            )
        )

    @staticmethod
    def _amount(payment: dict[str, Any], fallback: Optional[float]) -> Optional[float]:
        amount = payment.get("transaction_amount")
        try:
            return float(amount) if amount is not None else fallback
        except (TypeError, ValueError):
            return fallback


async def process_stored_webhook_event(
    session_factory: sessionmaker,
    event_id: int,
    settings: Settings,
    client: MercadoPagoClient,
) -> Optional[str]:
    """Process one outbox event in its own session; used by background tasks and the worker"""
    db = session_factory()
    try:
        event = PaymentsRepository.get_webhook_event(db, event_id)
        if not event:
            logger.warning(f"⚠️ Webhook event {event_id} not found")
            return None
        if event.status in (WebhookEventStatus.PROCESSED.value, WebhookEventStatus.IGNORED.value):
            return event.status
        return await WebhookReconciler(db, settings, client).process_event(event)
    finally:
        db.close()
