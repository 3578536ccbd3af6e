import enum
import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from .database import Base
from .utils.datetime_utils import utcnow


def generate_uuid():
    """Generate a unique ID for rows exposed outside the backend"""
    return str(uuid.uuid4())


class AppointmentStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Appointments that hold their slot
ACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    salons = relationship("Salon", back_populates="organization")


class Salon(Base):
    __tablename__ = "salons"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(500), nullable=True)
    phone = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utcnow)

    organization = relationship("Organization", back_populates="salons")
    employees = relationship("SalonEmployee", back_populates="salon")


class Employee(Base):
    """Stylist or other staff member of an organization"""

    __tablename__ = "employees"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime, nullable=True)  # soft delete
    created_at = Column(DateTime, default=utcnow)


class SalonEmployee(Base):
    """Assignment of an employee to a salon"""

    __tablename__ = "salon_employees"

    id = Column(Integer, primary_key=True, index=True)
    salon_id = Column(String(36), ForeignKey("salons.id"), nullable=False, index=True)
    employee_id = Column(String(36), ForeignKey("employees.id"), nullable=False, index=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    salon = relationship("Salon", back_populates="employees")
    employee = relationship("Employee")


class Appointment(Base):
    """Booking row; status moves pending -> confirmed only through payment reconciliation"""

    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    salon_id = Column(String(36), ForeignKey("salons.id"), nullable=False, index=True)
    service_id = Column(String(36), nullable=True)
    stylist_id = Column(String(36), nullable=True)
    client_name = Column(String(255), nullable=False)
    client_phone = Column(String(50), nullable=True)
    client_email = Column(String(255), nullable=True)
    starts_at = Column(DateTime, nullable=False, index=True)
    status = Column(String(20), default=AppointmentStatus.PENDING.value, nullable=False, index=True)
    total_amount = Column(Float, nullable=True)
    total_collected = Column(Float, nullable=True)
    payment_method = Column(String(50), nullable=True)  # mercadopago, cash, ...
    created_by = Column(String(255), nullable=True)  # null for public bookings
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Payment(Base):
    """Completed payment ledger entry"""

    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    org_id = Column(String(36), ForeignKey("organizations.id"), nullable=False, index=True)
    appointment_id = Column(String(36), ForeignKey("appointments.id"), nullable=True, index=True)
    amount = Column(Float, nullable=False)
    method = Column(String(20), nullable=False)  # mp, cash, card
    mp_payment_id = Column(String(64), nullable=True, unique=True)
    mp_preference_id = Column(String(128), nullable=True)
    mp_status = Column(String(20), nullable=True)
    received_at = Column(DateTime, default=utcnow)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow)
