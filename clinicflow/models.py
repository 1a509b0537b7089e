# clinicflow/models.py
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Text, Boolean, JSON, Numeric, Index,
    Enum as SQLAlchemyEnum,
)
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func
from .database import Base
from .exceptions import ValidationError
import enum


def _enum_column(enum_cls, name, default):
    # Persist the verbatim values ("checked-in"), not the Python member names
    return Column(
        SQLAlchemyEnum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members]),
        default=default,
        nullable=False,
        index=True,
    )


class UserRole(str, enum.Enum):
    admin = "admin"
    receptionist = "receptionist"
    doctor = "doctor"
    pharmacy = "pharmacy"
    patient = "patient"


class AppointmentStatus(str, enum.Enum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    checked_in = "checked-in"
    in_progress = "in-progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no-show"


class AppointmentType(str, enum.Enum):
    consultation = "consultation"
    follow_up = "follow-up"
    emergency = "emergency"
    telemedicine = "telemedicine"


class PaymentStatus(str, enum.Enum):
    pending = "pending"
    paid = "paid"
    partial = "partial"
    waived = "waived"


class PrescriptionStatus(str, enum.Enum):
    draft = "draft"
    submitted = "submitted"
    sent_to_pharmacy = "sent-to-pharmacy"
    fulfilled = "fulfilled"
    cancelled = "cancelled"


class PharmacyOrderStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    ready = "ready"
    dispensed = "dispensed"
    rejected = "rejected"
    cancelled = "cancelled"


class CustomerStatus(str, enum.Enum):
    waiting = "waiting"
    notified = "notified"
    collected = "collected"
    rejected = "rejected"
    expired = "expired"


class MedicationUnit(str, enum.Enum):
    tablets = "tablets"
    capsules = "capsules"
    ml = "ml"
    mg = "mg"
    g = "g"


class TestType(str, enum.Enum):
    blood = "blood"
    urine = "urine"
    imaging = "imaging"
    other = "other"


class TestPriority(str, enum.Enum):
    routine = "routine"
    urgent = "urgent"
    stat = "stat"


class _ImmutableIdentifierMixin:
    """Business identifiers may be assigned once and never changed afterwards."""

    def _guard_identifier(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise ValidationError(f"{key} is immutable once assigned")
        return value


# User Management Models
class User(Base):
    """Staff or patient account. Role-specific data lives in `profile`, selected by `role`."""
    __tablename__ = "users"
    __table_args__ = (
        Index('idx_users_role_active', 'role', 'is_active'),
    )

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(50), nullable=False)
    last_name = Column(String(50), nullable=False, default="")
    phone = Column(String(30), nullable=False)
    role = Column(SQLAlchemyEnum(UserRole, name='user_role'), nullable=False, index=True)
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime(timezone=True), nullable=True)

    # Exactly one variant payload, validated by schemas.RoleProfile
    profile = Column(JSON, nullable=True)
    preferences = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @validates("email")
    def _validate_email(self, key, value):
        if value is None:
            raise ValidationError("email is required")
        normalized = value.strip().lower()
        current = getattr(self, key)
        if current is not None and current != normalized:
            raise ValidationError("email cannot be changed after the account is created")
        return normalized

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class Appointment(_ImmutableIdentifierMixin, Base):
    """Scheduling record; status changes go through services.status_service."""
    __tablename__ = "appointments"
    __table_args__ = (
        Index('idx_appointments_patient_date', 'patient_id', 'scheduled_at'),
        Index('idx_appointments_doctor_date', 'doctor_id', 'scheduled_at'),
        Index('idx_appointments_status_date', 'status', 'scheduled_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_id = Column(String(40), unique=True, index=True, nullable=False)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)

    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    duration = Column(Integer, nullable=False, default=30)  # minutes
    type = Column(SQLAlchemyEnum(AppointmentType, name='appointment_type',
                                 values_callable=lambda members: [m.value for m in members]),
                  default=AppointmentType.consultation, nullable=False)
    reason = Column(Text, nullable=False)
    notes = Column(Text, nullable=True)

    status = _enum_column(AppointmentStatus, 'appointment_status', AppointmentStatus.scheduled)

    # Timing
    checked_in_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Billing
    consultation_fee = Column(Numeric(10, 2), default=0)
    payment_status = Column(SQLAlchemyEnum(PaymentStatus, name='payment_status'), default=PaymentStatus.pending)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    version_id = Column(Integer, nullable=False)

    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    prescriptions = relationship("Prescription", back_populates="appointment")

    __mapper_args__ = {"version_id_col": version_id}

    @validates("appointment_id")
    def _validate_appointment_id(self, key, value):
        return self._guard_identifier(key, value)

    @property
    def duration_minutes(self) -> int:
        """Actual consultation length once started and completed, else the planned duration."""
        if self.started_at and self.completed_at:
            return round((self.completed_at - self.started_at).total_seconds() / 60)
        return self.duration


class Prescription(_ImmutableIdentifierMixin, Base):
    __tablename__ = "prescriptions"
    __table_args__ = (
        Index('idx_prescriptions_patient_created', 'patient_id', 'created_at'),
        Index('idx_prescriptions_doctor_created', 'doctor_id', 'created_at'),
        Index('idx_prescriptions_pharmacy_status', 'pharmacy_id', 'status'),
    )

    id = Column(Integer, primary_key=True, index=True)
    prescription_id = Column(String(40), unique=True, index=True, nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Clinical content
    diagnosis = Column(String(500), nullable=False)
    symptoms = Column(JSON, nullable=False, default=list)
    medications = Column(JSON, nullable=False, default=list)
    tests = Column(JSON, nullable=False, default=list)

    # Digital prescription
    whiteboard_data = Column(Text, nullable=True)  # base64 drawing
    prescription_image = Column(String(500), nullable=True)  # artifact URL
    prescription_pdf = Column(String(500), nullable=True)  # artifact URL

    status = _enum_column(PrescriptionStatus, 'prescription_status', PrescriptionStatus.draft)

    # Pharmacy handoff
    pharmacy_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    sent_to_pharmacy_at = Column(DateTime(timezone=True), nullable=True)
    fulfilled_at = Column(DateTime(timezone=True), nullable=True)

    # Follow-up
    follow_up_required = Column(Boolean, default=False)
    follow_up_date = Column(DateTime(timezone=True), nullable=True)
    follow_up_notes = Column(Text, nullable=True)

    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    version_id = Column(Integer, nullable=False)

    appointment = relationship("Appointment", back_populates="prescriptions")
    patient = relationship("User", foreign_keys=[patient_id])
    doctor = relationship("User", foreign_keys=[doctor_id])
    orders = relationship("PharmacyOrder", back_populates="prescription")

    __mapper_args__ = {"version_id_col": version_id}

    @validates("prescription_id")
    def _validate_prescription_id(self, key, value):
        return self._guard_identifier(key, value)


class PharmacyOrder(_ImmutableIdentifierMixin, Base):
    """Dispensing workflow. `status` and `customer_status` are coupled; see status_service."""
    __tablename__ = "pharmacy_orders"
    __table_args__ = (
        Index('idx_orders_patient_created', 'patient_id', 'created_at'),
        Index('idx_orders_pharmacy_status', 'pharmacy_id', 'status'),
        Index('idx_orders_customer_status', 'customer_status', 'created_at'),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(40), unique=True, index=True, nullable=False)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    prescription_id = Column(Integer, ForeignKey("prescriptions.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    doctor_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    pharmacy_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    # Prescription lines plus supplied / supplied_quantity / supplied_at / notes
    medications = Column(JSON, nullable=False, default=list)

    status = _enum_column(PharmacyOrderStatus, 'pharmacy_order_status', PharmacyOrderStatus.pending)
    received_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    dispensed_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(String(500), nullable=True)

    customer_status = _enum_column(CustomerStatus, 'customer_status', CustomerStatus.waiting)
    customer_notified_at = Column(DateTime(timezone=True), nullable=True)
    customer_collected_at = Column(DateTime(timezone=True), nullable=True)
    customer_rejected_at = Column(DateTime(timezone=True), nullable=True)
    customer_rejection_reason = Column(String(500), nullable=True)

    pharmacy_notes = Column(Text, nullable=True)
    customer_notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    version_id = Column(Integer, nullable=False)

    prescription = relationship("Prescription", back_populates="orders")
    patient = relationship("User", foreign_keys=[patient_id])

    __mapper_args__ = {"version_id_col": version_id}

    @validates("order_id")
    def _validate_order_id(self, key, value):
        return self._guard_identifier(key, value)
