# tests/conftest.py
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from clinicflow import crud, database, models, schemas
from clinicflow.services.storage_service import ArtifactStorageManager


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    database.create_tables(bind=engine)
    yield engine
    database.drop_tables(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine):
    session = database.make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage(tmp_path):
    return ArtifactStorageManager(tmp_path / "prescriptions")


@pytest.fixture
def doctor(db):
    return crud.create_user(db, schemas.UserCreate(
        email="Asha.Rao@CityClinic.in",
        first_name="Asha",
        last_name="Rao",
        phone="+91 98765 43210",
        profile={"role": "doctor", "qualification": "MBBS, MD", "specialization": ["General Medicine"]},
    ))


@pytest.fixture
def patient(db):
    return crud.create_user(db, schemas.UserCreate(
        email="ravi.kumar@mailbox.in",
        first_name="Ravi",
        last_name="Kumar",
        phone="+91 91234 56789",
        profile={"role": "patient", "gender": "male", "date_of_birth": "1990-05-14T00:00:00"},
    ))


@pytest.fixture
def pharmacist(db):
    return crud.create_user(db, schemas.UserCreate(
        email="counter@cityclinic.in",
        first_name="Meena",
        last_name="Iyer",
        phone="+91 90000 11111",
        profile={"role": "pharmacy", "license_number": "PH-2231"},
    ))


@pytest.fixture
def appointment(db, doctor, patient):
    return crud.create_appointment(db, schemas.AppointmentCreate(
        patient_id=patient.id,
        doctor_id=doctor.id,
        scheduled_at=datetime(2026, 10, 20, 10, 30, tzinfo=timezone.utc),
        reason="Fever for three days",
    ))


@pytest.fixture
def prescription(db, appointment, doctor):
    return crud.create_prescription(db, schemas.PrescriptionCreate(
        appointment_id=appointment.appointment_id,
        diagnosis="Viral fever",
        symptoms=["fever", " headache ", ""],
        medications=[
            {"name": "Paracetamol", "dosage": "500 mg", "frequency": "1-0-1", "duration": "5 days", "quantity": 10},
            {"name": "Cetirizine", "dosage": "10 mg", "frequency": "0-0-1", "duration": "3 days", "quantity": 3},
        ],
        tests=[{"name": "CBC", "type": "blood"}],
    ), doctor.id)


@pytest.fixture
def order(db, prescription, pharmacist):
    crud.update_prescription_status(db, prescription.prescription_id, models.PrescriptionStatus.submitted)
    return crud.create_pharmacy_order(db, prescription.prescription_id, pharmacy_id=pharmacist.id)
