# tests/test_prescription_service.py
import base64
from pathlib import Path

import pytest

from clinicflow import crud, models, schemas
from clinicflow.exceptions import NotFoundError, RenderError, ValidationError
from clinicflow.services import prescription_service
from clinicflow.services.pdf_service import PdfRenderEngine

WHITEBOARD_PNG = b"\x89PNG\r\n\x1a\n handwritten notes"


def fake_converter(html, dest):
    dest.write(b"%PDF-1.4 test document")
    return True


@pytest.fixture
def pdf_engine():
    engine = PdfRenderEngine(timeout_seconds=5, converter=fake_converter)
    yield engine
    engine.shutdown()


def test_view_is_fully_denormalized(db, prescription):
    view = prescription_service.build_prescription_view(db, prescription, "City Care Clinic")

    assert view.clinic_name == "City Care Clinic"
    assert view.prescription_id == prescription.prescription_id
    assert view.doctor_name == "Dr. Asha Rao"
    assert view.doctor_qualification == "MBBS, MD"
    assert view.patient_name == "Ravi Kumar"
    assert "Male" in view.patient_details
    assert "yrs" in view.patient_details
    assert [m.quantity for m in view.medications] == ["10 tablets", "3 tablets"]
    assert view.tests[0].name == "CBC"
    assert view.follow_up == ""


def test_view_describes_follow_up(db, prescription):
    crud.update_prescription(db, prescription.prescription_id, schemas.PrescriptionUpdate(
        follow_up_required=True, follow_up_date="2026-11-02T10:00:00+00:00", follow_up_notes="Repeat CBC"))
    view = prescription_service.build_prescription_view(db, prescription, "Clinic")
    assert view.follow_up == "Follow-up required on 02 Nov 2026: Repeat CBC"


def test_generate_pdf_records_url(db, prescription, pdf_engine, storage):
    outcome = prescription_service.generate_prescription_pdf(
        db, prescription.prescription_id, pdf_engine, storage, clinic_name="City Care Clinic")

    assert outcome.success
    assert outcome.artifact.artifact_class == "pdfs"
    assert Path(outcome.artifact.absolute_path).read_bytes() == b"%PDF-1.4 test document"
    db.expire_all()
    assert crud.get_prescription(db, prescription.prescription_id).prescription_pdf == outcome.artifact.url


def test_storage_failure_keeps_record(db, prescription, pdf_engine, storage, monkeypatch):
    monkeypatch.setattr(storage, "save",
                        lambda *args, **kwargs: schemas.ArtifactSaveResult(success=False, error="disk full"))

    outcome = prescription_service.generate_prescription_pdf(db, prescription.prescription_id, pdf_engine, storage)

    assert not outcome.success
    assert outcome.error == "disk full"
    db.expire_all()
    stored = crud.get_prescription(db, prescription.prescription_id)
    assert stored.prescription_pdf is None
    assert stored.diagnosis == "Viral fever"


def test_render_failure_surfaces(db, prescription, storage):
    def broken(html, dest):
        return False

    with PdfRenderEngine(timeout_seconds=5, converter=broken) as engine:
        with pytest.raises(RenderError):
            prescription_service.generate_prescription_pdf(db, prescription.prescription_id, engine, storage)
    assert storage.list(prescription.prescription_id).count == 0


def test_unknown_prescription(db, pdf_engine, storage):
    with pytest.raises(NotFoundError):
        prescription_service.generate_prescription_pdf(db, "RX-NONE", pdf_engine, storage)


def test_attach_image(db, prescription, storage):
    outcome = prescription_service.attach_prescription_image(
        db, prescription.prescription_id, b"\xff\xd8\xff scan", storage,
        original_name="paper.jpg", mime_type="image/jpeg")

    assert outcome.success
    assert outcome.artifact.filename.endswith(".jpg")
    assert crud.get_prescription(db, prescription.prescription_id).prescription_image == outcome.artifact.url


def test_store_whiteboard(db, prescription, storage):
    with pytest.raises(ValidationError):
        prescription_service.store_whiteboard(db, prescription.prescription_id, storage)

    encoded = "data:image/png;base64," + base64.b64encode(WHITEBOARD_PNG).decode()
    crud.update_prescription(db, prescription.prescription_id, schemas.PrescriptionUpdate(whiteboard_data=encoded))
    outcome = prescription_service.store_whiteboard(db, prescription.prescription_id, storage)

    assert outcome.success
    assert outcome.artifact.artifact_class == "whiteboards"
    assert Path(outcome.artifact.absolute_path).read_bytes() == WHITEBOARD_PNG


def test_remove_artifacts(db, prescription, pdf_engine, storage):
    rx_id = prescription.prescription_id
    prescription_service.generate_prescription_pdf(db, rx_id, pdf_engine, storage)
    prescription_service.attach_prescription_image(db, rx_id, b"img", storage, mime_type="image/png")

    result = prescription_service.remove_prescription_artifacts(storage, rx_id)

    assert result.deleted_count == 2
    assert storage.list(rx_id).count == 0
    assert crud.get_prescription(db, rx_id).status == models.PrescriptionStatus.draft
