# clinicflow/crud.py - Entity store: point lookups, upserts, filtered finds and the record operations built on them
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
import logging
import secrets
import time

from . import models, schemas
from .exceptions import ClinicError, ConflictError, NotFoundError, ValidationError
from .services import status_service

logger = logging.getLogger(__name__)


class CRUDError(ClinicError):
    pass


# Business identifiers callers use to address each entity
_LOOKUP_KEYS = {
    models.Appointment: "appointment_id",
    models.Prescription: "prescription_id",
    models.PharmacyOrder: "order_id",
}

_ORDERABLE_PRESCRIPTION_STATUSES = {
    models.PrescriptionStatus.submitted,
    models.PrescriptionStatus.sent_to_pharmacy,
    models.PrescriptionStatus.fulfilled,
}


def _generate_identifier(prefix: str) -> str:
    return f"{prefix}{int(time.time() * 1000)}{secrets.token_hex(2).upper()}"


def _commit(db: Session, obj=None):
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.warning(f"Concurrent update detected: {str(e)}")
        raise ConflictError("The record was modified by another request; reload and try again.") from e
    except IntegrityError as e:
        db.rollback()
        logger.error(f"Integrity error on commit: {str(e)}")
        raise CRUDError("Could not save the record due to a database integrity issue.") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error on commit: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}") from e
    if obj is not None:
        db.refresh(obj)
    return obj


# ==================== GENERIC ENTITY STORE ====================

def get_entity(db: Session, model, identifier):
    """Point lookup by business identifier (or primary key for models without one)."""
    key = _LOOKUP_KEYS.get(model, "id")
    try:
        obj = db.query(model).filter(getattr(model, key) == identifier).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching {model.__name__} {identifier}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}") from e
    if obj is None:
        raise NotFoundError(model.__name__, identifier)
    return obj


def upsert_entity(db: Session, obj):
    """Insert a new row or persist changes made to a loaded one."""
    db.add(obj)
    return _commit(db, obj)


def find_entities(db: Session, model, order_by=None, limit: Optional[int] = None, **filters) -> List:
    """Filtered find. `None` filters are ignored; list values match any of the given values."""
    query = db.query(model)
    for field, value in filters.items():
        if value is None:
            continue
        column = getattr(model, field, None)
        if column is None:
            raise ValidationError(f"{model.__name__} has no field '{field}'")
        if isinstance(value, (list, tuple, set, frozenset)):
            query = query.filter(column.in_(list(value)))
        else:
            query = query.filter(column == value)
    if order_by is not None:
        query = query.order_by(order_by)
    if limit:
        query = query.limit(limit)
    try:
        return query.all()
    except SQLAlchemyError as e:
        logger.error(f"Error querying {model.__name__}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}") from e


def _coerce_enum(enum_cls, value, label: str):
    if value is None or isinstance(value, enum_cls):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_coerce_enum(enum_cls, v, label) for v in value]
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"'{value}' is not a valid {label}")


# ==================== USER OPERATIONS ====================

def get_user(db: Session, user_id: int) -> models.User:
    return get_entity(db, models.User, user_id)


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    try:
        return db.query(models.User).filter(models.User.email == email.strip().lower()).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching user by email '{email}': {str(e)}")
        raise CRUDError(f"Database error: {str(e)}") from e


def find_users_by_role(db: Session, role, active_only: bool = True) -> List[models.User]:
    role = _coerce_enum(models.UserRole, role, "user role")
    return find_entities(db, models.User, order_by=models.User.first_name, role=role,
                         is_active=True if active_only else None)


def create_user(db: Session, user: schemas.UserCreate) -> models.User:
    """Create a user; the role comes from the profile variant."""
    if get_user_by_email(db, user.email):
        raise ValidationError("A user with this email already exists")

    db_user = models.User(
        email=user.email,
        first_name=user.first_name.strip(),
        last_name=user.last_name.strip(),
        phone=user.phone,
        role=user.role,
        is_active=True,
        profile=user.profile.model_dump(mode="json", exclude={"role"}),
        preferences=user.preferences.model_dump(mode="json"),
    )
    upsert_entity(db, db_user)
    logger.info(f"Created {db_user.role.value} user {db_user.id}")
    return db_user


def update_user(db: Session, user_id: int, update: schemas.UserUpdate) -> models.User:
    db_user = get_user(db, user_id)
    data = update.model_dump(exclude_unset=True)
    new_email = data.pop("email", None)
    if new_email is not None and new_email.strip().lower() != db_user.email:
        raise ValidationError("email cannot be changed after the account is created")
    if "preferences" in data and data["preferences"] is not None:
        data["preferences"] = update.preferences.model_dump(mode="json")
    for field, value in data.items():
        setattr(db_user, field, value)
    return _commit(db, db_user)


def record_login(db: Session, user_id: int) -> models.User:
    db_user = get_user(db, user_id)
    db_user.last_login = datetime.now(timezone.utc)
    return _commit(db, db_user)


def get_role_profile(db_user: models.User):
    return schemas.parse_role_profile(db_user.role, db_user.profile)


def _require_role(db: Session, user_id: int, role: models.UserRole, label: str) -> models.User:
    db_user = get_user(db, user_id)
    if db_user.role != role:
        raise ValidationError(f"User {user_id} is not a {label}")
    return db_user


# ==================== APPOINTMENT OPERATIONS ====================

def create_appointment(db: Session, appointment: schemas.AppointmentCreate,
                       created_by: Optional[int] = None) -> models.Appointment:
    _require_role(db, appointment.patient_id, models.UserRole.patient, "patient")
    _require_role(db, appointment.doctor_id, models.UserRole.doctor, "doctor")

    db_appointment = models.Appointment(
        appointment_id=_generate_identifier("APT"),
        patient_id=appointment.patient_id,
        doctor_id=appointment.doctor_id,
        created_by=created_by,
        scheduled_at=appointment.scheduled_at,
        duration=appointment.duration,
        type=appointment.type,
        reason=appointment.reason.strip(),
        notes=appointment.notes,
        consultation_fee=appointment.consultation_fee,
        payment_status=models.PaymentStatus.pending,
        status=models.AppointmentStatus.scheduled,
    )
    upsert_entity(db, db_appointment)
    logger.info(f"Created appointment {db_appointment.appointment_id}")
    return db_appointment


def book_public_appointment(db: Session, booking: schemas.PublicBookingCreate) -> models.Appointment:
    """Book on behalf of a walk-in or online visitor, registering them as a patient if new."""
    _require_role(db, booking.doctor_id, models.UserRole.doctor, "doctor")

    patient = get_user_by_email(db, booking.email)
    if patient is None:
        first_name, _, last_name = booking.patient_name.strip().partition(" ")
        if not first_name:
            raise ValidationError("Patient name is required")
        patient = create_user(db, schemas.UserCreate(
            email=booking.email,
            first_name=first_name,
            last_name=last_name.strip(),
            phone=booking.phone,
            profile=schemas.PatientProfile(),
        ))
    elif patient.role != models.UserRole.patient:
        raise ValidationError(f"{booking.email} belongs to a {patient.role.value} account")

    return create_appointment(db, schemas.AppointmentCreate(
        patient_id=patient.id,
        doctor_id=booking.doctor_id,
        scheduled_at=booking.scheduled_at,
        duration=booking.duration,
        type=booking.type,
        reason=booking.reason,
        notes=booking.notes,
    ))


def get_appointment(db: Session, appointment_id: str) -> models.Appointment:
    return get_entity(db, models.Appointment, appointment_id)


def find_appointments(db: Session, patient_id: Optional[int] = None, doctor_id: Optional[int] = None,
                      status=None, start: Optional[datetime] = None,
                      end: Optional[datetime] = None) -> List[models.Appointment]:
    status = _coerce_enum(models.AppointmentStatus, status, "appointment status")
    query = db.query(models.Appointment)
    if patient_id is not None:
        query = query.filter(models.Appointment.patient_id == patient_id)
    if doctor_id is not None:
        query = query.filter(models.Appointment.doctor_id == doctor_id)
    if status is not None:
        statuses = status if isinstance(status, list) else [status]
        query = query.filter(models.Appointment.status.in_(statuses))
    if start is not None:
        query = query.filter(models.Appointment.scheduled_at >= start)
    if end is not None:
        query = query.filter(models.Appointment.scheduled_at <= end)
    try:
        return query.order_by(models.Appointment.scheduled_at).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching appointments: {str(e)}")
        raise CRUDError("A database error occurred while fetching appointments.") from e


def update_appointment_status(db: Session, appointment_id: str, new_status) -> models.Appointment:
    db_appointment = get_appointment(db, appointment_id)
    status_service.apply_status(db_appointment, new_status)
    return _commit(db, db_appointment)


# ==================== PRESCRIPTION OPERATIONS ====================

def _line_dicts(lines) -> List[Dict[str, Any]]:
    return [line.model_dump(mode="json") for line in lines]


def create_prescription(db: Session, prescription: schemas.PrescriptionCreate,
                        doctor_id: int) -> models.Prescription:
    """Create a draft prescription against an existing appointment."""
    db_appointment = get_appointment(db, prescription.appointment_id)
    _require_role(db, doctor_id, models.UserRole.doctor, "doctor")

    db_prescription = models.Prescription(
        prescription_id=_generate_identifier("RX"),
        appointment_id=db_appointment.id,
        patient_id=db_appointment.patient_id,
        doctor_id=doctor_id,
        diagnosis=prescription.diagnosis.strip(),
        symptoms=list(prescription.symptoms),
        medications=_line_dicts(prescription.medications),
        tests=_line_dicts(prescription.tests),
        whiteboard_data=prescription.whiteboard_data,
        follow_up_required=prescription.follow_up_required,
        follow_up_date=prescription.follow_up_date,
        follow_up_notes=prescription.follow_up_notes,
        notes=prescription.notes,
        status=models.PrescriptionStatus.draft,
    )
    upsert_entity(db, db_prescription)
    logger.info(f"Created prescription {db_prescription.prescription_id} for appointment {db_appointment.appointment_id}")
    return db_prescription


def get_prescription(db: Session, prescription_id: str) -> models.Prescription:
    return get_entity(db, models.Prescription, prescription_id)


def find_prescriptions(db: Session, patient_id: Optional[int] = None, doctor_id: Optional[int] = None,
                       status=None, pharmacy_id: Optional[int] = None) -> List[models.Prescription]:
    status = _coerce_enum(models.PrescriptionStatus, status, "prescription status")
    return find_entities(db, models.Prescription, order_by=models.Prescription.created_at.desc(),
                         patient_id=patient_id, doctor_id=doctor_id, status=status, pharmacy_id=pharmacy_id)


def _require_draft(db_prescription: models.Prescription) -> None:
    if db_prescription.status != models.PrescriptionStatus.draft:
        raise ValidationError(
            f"Prescription {db_prescription.prescription_id} is {db_prescription.status.value} and can no longer be edited"
        )


def update_prescription(db: Session, prescription_id: str,
                        update: schemas.PrescriptionUpdate) -> models.Prescription:
    db_prescription = get_prescription(db, prescription_id)
    _require_draft(db_prescription)

    data = update.model_dump(exclude_unset=True)
    if "diagnosis" in data and data["diagnosis"] is None:
        raise ValidationError("diagnosis cannot be removed")
    if update.medications is not None:
        data["medications"] = _line_dicts(update.medications)
    if update.tests is not None:
        data["tests"] = _line_dicts(update.tests)
    if "symptoms" in data:
        data["symptoms"] = [s.strip() for s in (update.symptoms or []) if s and s.strip()]
    for field, value in data.items():
        setattr(db_prescription, field, value)
    db_prescription.updated_at = datetime.now(timezone.utc)
    return _commit(db, db_prescription)


def add_medication(db: Session, prescription_id: str, medication: schemas.MedicationLine) -> models.Prescription:
    db_prescription = get_prescription(db, prescription_id)
    _require_draft(db_prescription)
    db_prescription.medications = list(db_prescription.medications or []) + [medication.model_dump(mode="json")]
    db_prescription.updated_at = datetime.now(timezone.utc)
    return _commit(db, db_prescription)


def add_test(db: Session, prescription_id: str, test: schemas.TestLine) -> models.Prescription:
    db_prescription = get_prescription(db, prescription_id)
    _require_draft(db_prescription)
    db_prescription.tests = list(db_prescription.tests or []) + [test.model_dump(mode="json")]
    db_prescription.updated_at = datetime.now(timezone.utc)
    return _commit(db, db_prescription)


def update_prescription_status(db: Session, prescription_id: str, new_status) -> models.Prescription:
    db_prescription = get_prescription(db, prescription_id)
    status_service.apply_status(db_prescription, new_status)
    return _commit(db, db_prescription)


def set_prescription_artifact(db: Session, db_prescription: models.Prescription, field: str,
                              url: str) -> models.Prescription:
    """Record where an artifact of this prescription can be fetched."""
    if field not in ("prescription_pdf", "prescription_image"):
        raise ValidationError(f"'{field}' is not an artifact field")
    setattr(db_prescription, field, url)
    db_prescription.updated_at = datetime.now(timezone.utc)
    return _commit(db, db_prescription)


# ==================== PHARMACY ORDER OPERATIONS ====================

def create_pharmacy_order(db: Session, prescription_id: str,
                          pharmacy_id: Optional[int] = None) -> models.PharmacyOrder:
    """Open a dispensing order for a submitted (or later) prescription."""
    db_prescription = get_prescription(db, prescription_id)
    if db_prescription.status not in _ORDERABLE_PRESCRIPTION_STATUSES:
        raise ValidationError(
            f"Prescription {prescription_id} is {db_prescription.status.value}; only submitted prescriptions can be ordered"
        )
    if not db_prescription.medications:
        raise ValidationError(f"Prescription {prescription_id} has no medications to dispense")
    if pharmacy_id is not None:
        _require_role(db, pharmacy_id, models.UserRole.pharmacy, "pharmacy user")

    lines = [
        schemas.OrderMedicationLine.model_validate(line).model_dump(mode="json")
        for line in db_prescription.medications
    ]
    db_order = models.PharmacyOrder(
        order_id=_generate_identifier("ORD"),
        appointment_id=db_prescription.appointment_id,
        prescription_id=db_prescription.id,
        patient_id=db_prescription.patient_id,
        doctor_id=db_prescription.doctor_id,
        pharmacy_id=pharmacy_id,
        medications=lines,
        status=models.PharmacyOrderStatus.pending,
        customer_status=models.CustomerStatus.waiting,
        received_at=datetime.now(timezone.utc),
    )
    if pharmacy_id is not None and db_prescription.pharmacy_id is None:
        db_prescription.pharmacy_id = pharmacy_id
    upsert_entity(db, db_order)
    logger.info(f"Created pharmacy order {db_order.order_id} from prescription {prescription_id}")
    return db_order


def get_pharmacy_order(db: Session, order_id: str) -> models.PharmacyOrder:
    return get_entity(db, models.PharmacyOrder, order_id)


def find_pharmacy_orders(db: Session, status=None, customer_status=None, pharmacy_id: Optional[int] = None,
                         patient_id: Optional[int] = None) -> List[models.PharmacyOrder]:
    status = _coerce_enum(models.PharmacyOrderStatus, status, "pharmacy order status")
    customer_status = _coerce_enum(models.CustomerStatus, customer_status, "customer status")
    return find_entities(db, models.PharmacyOrder, order_by=models.PharmacyOrder.created_at.desc(),
                         status=status, customer_status=customer_status, pharmacy_id=pharmacy_id,
                         patient_id=patient_id)


def find_pending_orders(db: Session) -> List[models.PharmacyOrder]:
    return find_pharmacy_orders(db, status=models.PharmacyOrderStatus.pending)


def update_order_status(db: Session, order_id: str, new_status,
                        rejection_reason: Optional[str] = None) -> models.PharmacyOrder:
    db_order = get_pharmacy_order(db, order_id)
    status_service.apply_status(db_order, new_status)
    if rejection_reason and db_order.status == models.PharmacyOrderStatus.rejected:
        db_order.rejection_reason = rejection_reason.strip()
    return _commit(db, db_order)


def update_customer_status(db: Session, order_id: str, new_status,
                           reason: Optional[str] = None) -> models.PharmacyOrder:
    db_order = get_pharmacy_order(db, order_id)
    status_service.apply_customer_status(db_order, new_status, reason)
    return _commit(db, db_order)


def supply_order_medication(db: Session, order_id: str, line_index: int, supplied_quantity: int,
                            notes: Optional[str] = None) -> models.PharmacyOrder:
    db_order = get_pharmacy_order(db, order_id)
    status_service.supply_medication(db_order, line_index, supplied_quantity, notes)
    return _commit(db, db_order)


# ==================== ADMIN ====================

def delete_patient(db: Session, user_id: int, storage=None) -> Dict[str, int]:
    """Hard-delete a patient and every record that belongs to them.

    Artifact removal runs after the records are gone and reports partial
    completion instead of failing the call.
    """
    patient = _require_role(db, user_id, models.UserRole.patient, "patient")

    orders = find_entities(db, models.PharmacyOrder, patient_id=user_id)
    prescriptions = find_entities(db, models.Prescription, patient_id=user_id)
    appointments = find_entities(db, models.Appointment, patient_id=user_id)
    prescription_ids = [p.prescription_id for p in prescriptions]

    try:
        # Children first so foreign keys never dangle mid-way
        for group in (orders, prescriptions, appointments, [patient]):
            for obj in group:
                db.delete(obj)
            db.flush()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error deleting patient {user_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}") from e

    report = {
        "appointments": len(appointments),
        "prescriptions": len(prescriptions),
        "orders": len(orders),
        "artifacts_deleted": 0,
        "artifact_failures": 0,
    }
    if storage is not None:
        for prescription_id in prescription_ids:
            result = storage.delete(prescription_id)
            if result.success:
                report["artifacts_deleted"] += result.deleted_count
                report["artifact_failures"] += result.failed_count
            else:
                logger.warning(f"Artifact cleanup failed for prescription {prescription_id}: {result.error}")
                report["artifact_failures"] += 1
    logger.info(f"Deleted patient {user_id}: {report}")
    return report
