"""Payments repository - Database operations for the Mercado Pago integration"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, exists, or_
from sqlalchemy.orm import Session

from ...models import (
    Appointment,
    AppointmentStatus,
    Employee,
    Organization,
    Payment,
    Salon,
    SalonEmployee,
)
from ...models_mercadopago import (
    MercadoPagoCredential,
    MercadoPagoPayment,
    PaymentLink,
    WebhookEvent,
    WebhookEventStatus,
)


class PaymentsRepository:
    """Repository for payment integration database operations"""

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @staticmethod
    def get_credential(
        db: Session, org_id: str, for_update: bool = False
    ) -> Optional[MercadoPagoCredential]:
        """Get the credential row for an org; for_update takes a row lock and reloads it"""
        query = db.query(MercadoPagoCredential).filter(MercadoPagoCredential.org_id == org_id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return query.first()

    @staticmethod
    def get_credential_by_collector_id(db: Session, collector_id: str) -> Optional[MercadoPagoCredential]:
        """Credential of the org whose Mercado Pago account is the given collector (user_id)"""
        return (
            db.query(MercadoPagoCredential)
            .filter(MercadoPagoCredential.collector_id == collector_id)
            .order_by(MercadoPagoCredential.updated_at.desc())
            .first()
        )

    @staticmethod
    def upsert_credential(db: Session, org_id: str, **fields) -> MercadoPagoCredential:
        """Create or replace the single credential row for an org"""
        credential = db.query(MercadoPagoCredential).filter(
            MercadoPagoCredential.org_id == org_id
        ).first()

        if credential:
            for key, value in fields.items():
                setattr(credential, key, value)
        else:
            credential = MercadoPagoCredential(org_id=org_id, **fields)
            db.add(credential)

        db.commit()
        db.refresh(credential)
        return credential

    @staticmethod
    def delete_credential(db: Session, org_id: str) -> bool:
        deleted = (
            db.query(MercadoPagoCredential)
            .filter(MercadoPagoCredential.org_id == org_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted > 0

    # ------------------------------------------------------------------
    # Payment links
    # ------------------------------------------------------------------

    @staticmethod
    def create_payment_link(db: Session, **link_data) -> PaymentLink:
        link = PaymentLink(**link_data)
        db.add(link)
        db.commit()
        db.refresh(link)
        return link

    @staticmethod
    def get_payment_link_by_hash(db: Session, token_hash: str) -> Optional[PaymentLink]:
        return db.query(PaymentLink).filter(PaymentLink.token_hash == token_hash).first()

    @staticmethod
    def get_payment_link(db: Session, link_id: str, org_id: str) -> Optional[PaymentLink]:
        return (
            db.query(PaymentLink)
            .filter(PaymentLink.id == link_id, PaymentLink.org_id == org_id)
            .first()
        )

    @staticmethod
    def deactivate_payment_link(db: Session, link: PaymentLink) -> PaymentLink:
        link.active = False
        db.commit()
        db.refresh(link)
        return link

    # ------------------------------------------------------------------
    # Organizations, salons, appointments
    # ------------------------------------------------------------------

    @staticmethod
    def get_organization(db: Session, org_id: str) -> Optional[Organization]:
        return db.query(Organization).filter(Organization.id == org_id).first()

    @staticmethod
    def get_salon(db: Session, salon_id: str) -> Optional[Salon]:
        return db.query(Salon).filter(Salon.id == salon_id).first()

    @staticmethod
    def get_salon_stylists(db: Session, salon_id: str) -> list[Employee]:
        """Active, not deleted employees with an active assignment to the salon"""
        return (
            db.query(Employee)
            .join(SalonEmployee, SalonEmployee.employee_id == Employee.id)
            .filter(
                SalonEmployee.salon_id == salon_id,
                SalonEmployee.active.is_(True),
                Employee.active.is_(True),
                Employee.deleted_at.is_(None),
            )
            .order_by(Employee.full_name)
            .all()
        )

    @staticmethod
    def get_appointment(db: Session, appointment_id: str) -> Optional[Appointment]:
        return db.query(Appointment).filter(Appointment.id == appointment_id).first()

    @staticmethod
    def create_appointment(db: Session, **appointment_data) -> Appointment:
        appointment = Appointment(**appointment_data)
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    @staticmethod
    def delete_appointment(db: Session, appointment_id: str) -> None:
        """Delete an appointment together with any provider payment rows pointing at it"""
        db.query(MercadoPagoPayment).filter(
            MercadoPagoPayment.appointment_id == appointment_id
        ).delete(synchronize_session=False)
        db.query(Appointment).filter(Appointment.id == appointment_id).delete(
            synchronize_session=False
        )
        db.commit()

    @staticmethod
    def get_appointments_between(
        db: Session,
        salon_id: str,
        start: datetime,
        end: datetime,
        statuses: tuple[str, ...],
        stylist_id: Optional[str] = None,
    ) -> list[Appointment]:
        query = db.query(Appointment).filter(
            Appointment.salon_id == salon_id,
            Appointment.starts_at >= start,
            Appointment.starts_at < end,
            Appointment.status.in_(statuses),
        )
        if stylist_id:
            query = query.filter(Appointment.stylist_id == stylist_id)
        return query.all()

    @staticmethod
    def find_orphaned_pending_appointments(db: Session, created_before: datetime) -> list[Appointment]:
        """Pending appointments older than the cutoff with no provider payment record"""
        has_payment = exists().where(MercadoPagoPayment.appointment_id == Appointment.id)
        return (
            db.query(Appointment)
            .filter(
                Appointment.status == AppointmentStatus.PENDING.value,
                Appointment.created_at < created_before,
                ~has_payment,
            )
            .order_by(Appointment.created_at)
            .all()
        )

    # ------------------------------------------------------------------
    # Provider payment records and ledger
    # ------------------------------------------------------------------

    @staticmethod
    def get_mp_payment_by_payment_id(db: Session, mp_payment_id: str) -> Optional[MercadoPagoPayment]:
        return (
            db.query(MercadoPagoPayment)
            .filter(MercadoPagoPayment.mp_payment_id == mp_payment_id)
            .first()
        )

    @staticmethod
    def get_mp_payment_by_preference_id(
        db: Session, mp_preference_id: str, unclaimed_only: bool = False
    ) -> Optional[MercadoPagoPayment]:
        query = db.query(MercadoPagoPayment).filter(
            MercadoPagoPayment.mp_preference_id == mp_preference_id
        )
        if unclaimed_only:
            query = query.filter(MercadoPagoPayment.mp_payment_id.is_(None))
        return query.order_by(MercadoPagoPayment.id).first()

    @staticmethod
    def get_unclaimed_mp_payment_for_appointment(
        db: Session, appointment_id: str
    ) -> Optional[MercadoPagoPayment]:
        return (
            db.query(MercadoPagoPayment)
            .filter(
                MercadoPagoPayment.appointment_id == appointment_id,
                MercadoPagoPayment.mp_payment_id.is_(None),
            )
            .order_by(MercadoPagoPayment.id.desc())
            .first()
        )

    @staticmethod
    def add_mp_payment(db: Session, **record_data) -> MercadoPagoPayment:
        record = MercadoPagoPayment(**record_data)
        db.add(record)
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def update_mp_payment(db: Session, record: MercadoPagoPayment, **fields) -> MercadoPagoPayment:
        for key, value in fields.items():
            setattr(record, key, value)
        db.commit()
        db.refresh(record)
        return record

    @staticmethod
    def has_ledger_entry(db: Session, mp_payment_id: str) -> bool:
        return (
            db.query(Payment.id).filter(Payment.mp_payment_id == mp_payment_id).first() is not None
        )

    # ------------------------------------------------------------------
    # Webhook outbox
    # ------------------------------------------------------------------

    @staticmethod
    def create_webhook_event(db: Session, **event_data: Any) -> WebhookEvent:
        event = WebhookEvent(**event_data)
        db.add(event)
        db.commit()
        db.refresh(event)
        return event

    @staticmethod
    def get_webhook_event(db: Session, event_id: int) -> Optional[WebhookEvent]:
        return db.query(WebhookEvent).filter(WebhookEvent.id == event_id).first()

    @staticmethod
    def get_retryable_webhook_events(
        db: Session, max_attempts: int, stale_before: datetime, limit: int = 50
    ) -> list[WebhookEvent]:
        """Failed events plus received events that were never picked up"""
        return (
            db.query(WebhookEvent)
            .filter(
                or_(
                    WebhookEvent.status == WebhookEventStatus.FAILED.value,
                    and_(
                        WebhookEvent.status == WebhookEventStatus.RECEIVED.value,
                        WebhookEvent.created_at < stale_before,
                    ),
                ),
                WebhookEvent.attempts < max_attempts,
            )
            .order_by(WebhookEvent.created_at)
            .limit(limit)
            .all()
        )
