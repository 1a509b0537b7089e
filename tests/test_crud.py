# tests/test_crud.py
import pydantic
import pytest
from sqlalchemy import create_engine

from clinicflow import crud, database, models, schemas
from clinicflow.exceptions import ConflictError, InvalidTransitionError, NotFoundError, ValidationError
from clinicflow.services import status_service


# --- Users ---

def test_create_user_stores_role_profile(doctor):
    assert doctor.email == "asha.rao@cityclinic.in"
    assert doctor.role == models.UserRole.doctor
    assert "role" not in doctor.profile

    profile = crud.get_role_profile(doctor)
    assert isinstance(profile, schemas.DoctorProfile)
    assert profile.qualification == "MBBS, MD"


def test_duplicate_email_rejected(db, doctor):
    with pytest.raises(ValidationError):
        crud.create_user(db, schemas.UserCreate(
            email="asha.rao@cityclinic.in", first_name="Other", phone="+91 1", profile={"role": "admin"},
        ))


def test_email_is_immutable(db, doctor):
    with pytest.raises(ValidationError):
        crud.update_user(db, doctor.id, schemas.UserUpdate(email="new.address@cityclinic.in"))
    with pytest.raises(ValidationError):
        doctor.email = "new.address@cityclinic.in"

    updated = crud.update_user(db, doctor.id, schemas.UserUpdate(email="ASHA.RAO@cityclinic.in", first_name="Asha M"))
    assert updated.first_name == "Asha M"
    assert updated.email == "asha.rao@cityclinic.in"


def test_role_profile_rejects_mismatched_payload():
    with pytest.raises(pydantic.ValidationError):
        schemas.UserCreate(email="x@cityclinic.in", first_name="X", phone="123",
                           profile={"role": "surgeon"})


def test_find_users_by_role(db, doctor, patient):
    assert [u.id for u in crud.find_users_by_role(db, "doctor")] == [doctor.id]
    crud.update_user(db, patient.id, schemas.UserUpdate(is_active=False))
    assert crud.find_users_by_role(db, models.UserRole.patient) == []
    assert len(crud.find_users_by_role(db, "patient", active_only=False)) == 1


def test_record_login(db, patient):
    assert crud.record_login(db, patient.id).last_login is not None


def test_get_user_by_email_is_case_insensitive(db, patient):
    assert crud.get_user_by_email(db, " Ravi.Kumar@Mailbox.in ").id == patient.id
    assert crud.get_user_by_email(db, "nobody@mailbox.in") is None


# --- Appointments ---

def test_create_appointment_defaults(appointment):
    assert appointment.appointment_id.startswith("APT")
    assert appointment.status == models.AppointmentStatus.scheduled
    assert appointment.payment_status == models.PaymentStatus.pending
    assert appointment.version_id == 1


def test_appointment_requires_real_roles(db, doctor, patient):
    with pytest.raises(ValidationError):
        crud.create_appointment(db, schemas.AppointmentCreate(
            patient_id=doctor.id, doctor_id=doctor.id, scheduled_at="2026-10-21T09:00:00+00:00", reason="Check"))
    with pytest.raises(NotFoundError):
        crud.create_appointment(db, schemas.AppointmentCreate(
            patient_id=patient.id, doctor_id=999, scheduled_at="2026-10-21T09:00:00+00:00", reason="Check"))


def test_appointment_status_flow(db, appointment):
    updated = crud.update_appointment_status(db, appointment.appointment_id, "checked-in")
    assert updated.status == models.AppointmentStatus.checked_in
    assert updated.checked_in_at is not None
    assert updated.version_id == 2

    with pytest.raises(InvalidTransitionError):
        crud.update_appointment_status(db, appointment.appointment_id, "scheduled")
    assert crud.get_appointment(db, appointment.appointment_id).status == models.AppointmentStatus.checked_in


def test_find_appointments_filters(db, appointment, patient):
    assert crud.find_appointments(db, patient_id=patient.id, status="scheduled") == [appointment]
    assert crud.find_appointments(db, status=["cancelled", "no-show"]) == []
    with pytest.raises(ValidationError):
        crud.find_appointments(db, status="finished")


def test_appointment_identifier_is_immutable(appointment):
    with pytest.raises(ValidationError):
        appointment.appointment_id = "APT-OTHER"


def _booking(doctor_id, **overrides):
    data = dict(
        patient_name="Priya Sharma",
        email="Priya.Sharma@Mailbox.in",
        phone="+91 99887 76655",
        doctor_id=doctor_id,
        scheduled_at="2026-10-22T11:00:00+00:00",
    )
    data.update(overrides)
    return schemas.PublicBookingCreate(**data)


def test_public_booking_registers_new_patient(db, doctor):
    booked = crud.book_public_appointment(db, _booking(doctor.id))

    patient = crud.get_user_by_email(db, "priya.sharma@mailbox.in")
    assert patient.role == models.UserRole.patient
    assert (patient.first_name, patient.last_name) == ("Priya", "Sharma")
    assert patient.phone == "+91 99887 76655"
    assert booked.patient_id == patient.id
    assert booked.doctor_id == doctor.id
    assert booked.reason == "General consultation"
    assert booked.status == models.AppointmentStatus.scheduled


def test_public_booking_reuses_existing_patient(db, doctor, patient):
    booked = crud.book_public_appointment(db, _booking(
        doctor.id, patient_name="Ravi K", email="RAVI.KUMAR@mailbox.in", reason="Follow-up on fever"))

    assert booked.patient_id == patient.id
    assert booked.reason == "Follow-up on fever"
    assert len(crud.find_users_by_role(db, "patient")) == 1
    assert crud.get_user(db, patient.id).first_name == "Ravi"


def test_public_booking_unknown_doctor_creates_nothing(db):
    with pytest.raises(NotFoundError):
        crud.book_public_appointment(db, _booking(999))
    assert crud.get_user_by_email(db, "priya.sharma@mailbox.in") is None


def test_public_booking_rejects_staff_email(db, doctor):
    with pytest.raises(ValidationError):
        crud.book_public_appointment(db, _booking(doctor.id, email="asha.rao@cityclinic.in"))
    assert crud.find_appointments(db, doctor_id=doctor.id) == []


def test_stale_write_raises_conflict(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'conflict.db'}")
    database.create_tables(bind=engine)
    Session = database.make_session_factory(engine)
    first, second = Session(), Session()
    try:
        doctor = crud.create_user(first, schemas.UserCreate(
            email="dr@cityclinic.in", first_name="Dr", phone="1", profile={"role": "doctor"}))
        patient = crud.create_user(first, schemas.UserCreate(
            email="pt@cityclinic.in", first_name="Pt", phone="2", profile={"role": "patient"}))
        appointment = crud.create_appointment(first, schemas.AppointmentCreate(
            patient_id=patient.id, doctor_id=doctor.id, scheduled_at="2026-10-21T09:00:00+00:00", reason="Cough"))
        appointment_id = appointment.appointment_id

        stale = crud.get_appointment(second, appointment_id)
        assert stale.version_id == 1
        crud.update_appointment_status(first, appointment_id, "confirmed")

        # `stale` still carries version 1 while the row is at version 2
        status_service.apply_status(stale, "checked-in")
        with pytest.raises(ConflictError):
            crud.upsert_entity(second, stale)

        current = crud.get_appointment(second, appointment_id)
        assert current.status == models.AppointmentStatus.confirmed
        assert current.version_id == 2
    finally:
        first.close()
        second.close()
        engine.dispose()


# --- Generic store ---

def test_get_entity_not_found(db):
    with pytest.raises(NotFoundError) as excinfo:
        crud.get_prescription(db, "RX-MISSING")
    assert excinfo.value.entity_type == "Prescription"


def test_find_entities_unknown_field(db):
    with pytest.raises(ValidationError):
        crud.find_entities(db, models.Prescription, colour="blue")


# --- Prescriptions ---

def test_create_prescription(prescription, appointment):
    assert prescription.prescription_id.startswith("RX")
    assert prescription.status == models.PrescriptionStatus.draft
    assert prescription.appointment_id == appointment.id
    assert prescription.patient_id == appointment.patient_id
    assert prescription.symptoms == ["fever", "headache"]
    assert prescription.medications[0]["unit"] == "tablets"
    assert prescription.tests[0]["priority"] == "routine"


def test_prescription_requires_appointment(db, doctor):
    with pytest.raises(NotFoundError):
        crud.create_prescription(db, schemas.PrescriptionCreate(appointment_id="APT-NONE", diagnosis="Flu"), doctor.id)


def test_draft_edits(db, prescription):
    rx_id = prescription.prescription_id
    crud.update_prescription(db, rx_id, schemas.PrescriptionUpdate(diagnosis="Influenza", notes="Rest"))
    crud.add_medication(db, rx_id, schemas.MedicationLine(
        name="ORS", dosage="1 sachet", frequency="TDS", duration="3 days", quantity=9))
    crud.add_test(db, rx_id, schemas.TestLine(name="Dengue NS1", priority="urgent"))

    rx = crud.get_prescription(db, rx_id)
    assert rx.diagnosis == "Influenza"
    assert [m["name"] for m in rx.medications] == ["Paracetamol", "Cetirizine", "ORS"]
    assert rx.tests[-1]["priority"] == "urgent"


def test_submitted_prescription_is_read_only(db, prescription):
    rx_id = prescription.prescription_id
    crud.update_prescription_status(db, rx_id, "submitted")

    with pytest.raises(ValidationError):
        crud.update_prescription(db, rx_id, schemas.PrescriptionUpdate(diagnosis="Changed"))
    with pytest.raises(ValidationError):
        crud.add_medication(db, rx_id, schemas.MedicationLine(
            name="ORS", dosage="1", frequency="TDS", duration="3 days"))
    assert crud.get_prescription(db, rx_id).diagnosis == "Viral fever"


def test_find_prescriptions(db, prescription, patient, doctor):
    assert crud.find_prescriptions(db, patient_id=patient.id) == [prescription]
    assert crud.find_prescriptions(db, doctor_id=doctor.id, status="submitted") == []


# --- Pharmacy orders ---

def test_draft_prescription_cannot_be_ordered(db, prescription):
    with pytest.raises(ValidationError):
        crud.create_pharmacy_order(db, prescription.prescription_id)


def test_order_copies_lines(db, order, prescription, pharmacist):
    assert order.order_id.startswith("ORD")
    assert order.status == models.PharmacyOrderStatus.pending
    assert order.customer_status == models.CustomerStatus.waiting
    assert order.received_at is not None
    assert [line["supplied"] for line in order.medications] == [False, False]
    assert order.medications[0]["name"] == "Paracetamol"
    assert prescription.pharmacy_id == pharmacist.id
    assert crud.find_pending_orders(db) == [order]


def test_order_pharmacy_must_be_pharmacy_user(db, prescription, doctor):
    crud.update_prescription_status(db, prescription.prescription_id, "submitted")
    with pytest.raises(ValidationError):
        crud.create_pharmacy_order(db, prescription.prescription_id, pharmacy_id=doctor.id)


def test_customer_collection_persists_dispense(db, order):
    crud.update_order_status(db, order.order_id, "ready")
    crud.update_customer_status(db, order.order_id, "collected")
    db.expire_all()

    stored = crud.get_pharmacy_order(db, order.order_id)
    assert stored.status == models.PharmacyOrderStatus.dispensed
    assert stored.customer_status == models.CustomerStatus.collected
    assert stored.dispensed_at is not None
    assert stored.customer_collected_at is not None
    assert crud.find_pharmacy_orders(db, customer_status="collected") == [stored]


def test_rejected_order_keeps_reason(db, order):
    crud.update_order_status(db, order.order_id, "rejected", rejection_reason=" Out of stock ")
    assert crud.get_pharmacy_order(db, order.order_id).rejection_reason == "Out of stock"


def test_supply_persists_line_change(db, order):
    crud.supply_order_medication(db, order.order_id, 0, 10, "full strip")
    db.expire_all()

    lines = crud.get_pharmacy_order(db, order.order_id).medications
    assert lines[0]["supplied"] is True
    assert lines[0]["supplied_quantity"] == 10
    assert lines[1]["supplied"] is False


# --- Admin ---

def test_delete_patient_removes_records_and_artifacts(db, order, prescription, patient, storage):
    rx_id = prescription.prescription_id
    storage.save(b"%PDF-1.4", rx_id, "pdfs")
    storage.save(b"\x89PNG", rx_id, "images")

    report = crud.delete_patient(db, patient.id, storage=storage)

    assert report == {
        "appointments": 1,
        "prescriptions": 1,
        "orders": 1,
        "artifacts_deleted": 2,
        "artifact_failures": 0,
    }
    with pytest.raises(NotFoundError):
        crud.get_user(db, patient.id)
    with pytest.raises(NotFoundError):
        crud.get_prescription(db, rx_id)
    assert storage.list(rx_id).count == 0


def test_delete_patient_only_for_patients(db, doctor):
    with pytest.raises(ValidationError):
        crud.delete_patient(db, doctor.id)
