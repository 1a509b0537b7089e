# clinicflow/services/prescription_service.py
"""Prescription artifacts: PDF generation, scanned images and whiteboard drawings.

The prescription row is always committed before any file is written. When an
artifact step fails the record stays as it was and the failure is reported on
the returned ``ArtifactOutcome``.
"""
import base64
import binascii
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..exceptions import ConflictError, ValidationError
from .pdf_service import PdfRenderEngine, render_prescription_pdf
from .storage_service import ArtifactClass, ArtifactStorageManager

logger = logging.getLogger(__name__)


def _age_on(date_of_birth: Optional[datetime], today: datetime) -> Optional[int]:
    if date_of_birth is None:
        return None
    years = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


def _patient_details(patient: models.User, today: datetime) -> str:
    if patient.role != models.UserRole.patient:
        return ""
    profile = crud.get_role_profile(patient)
    parts = []
    age = _age_on(profile.date_of_birth, today)
    if age is not None:
        parts.append(f"{age} yrs")
    if profile.gender:
        parts.append(profile.gender.capitalize())
    if patient.phone:
        parts.append(patient.phone)
    return ", ".join(parts)


def _doctor_qualification(doctor: models.User) -> str:
    if doctor.role != models.UserRole.doctor:
        return ""
    profile = crud.get_role_profile(doctor)
    return profile.qualification or ""


def build_prescription_view(db: Session, prescription: models.Prescription,
                            clinic_name: str) -> schemas.PrescriptionView:
    """Resolve everything the PDF template prints so rendering needs no lookups."""
    doctor = crud.get_user(db, prescription.doctor_id)
    patient = crud.get_user(db, prescription.patient_id)
    issued = prescription.created_at or datetime.now(timezone.utc)

    medications = []
    for line in prescription.medications or []:
        med = schemas.MedicationLine.model_validate(line)
        medications.append(schemas.MedicationRow(
            name=med.name if not med.generic_name else f"{med.name} ({med.generic_name})",
            dosage=med.dosage,
            frequency=med.frequency,
            duration=med.duration,
            quantity=f"{med.quantity} {med.unit.value}",
            instructions=med.instructions or "",
        ))

    tests = []
    for line in prescription.tests or []:
        test = schemas.TestLine.model_validate(line)
        tests.append(schemas.TestRow(
            name=test.name,
            type=test.type.value,
            priority=test.priority.value,
            instructions=test.instructions or "",
        ))

    follow_up = ""
    if prescription.follow_up_required:
        follow_up = "Follow-up required"
        if prescription.follow_up_date:
            follow_up += f" on {prescription.follow_up_date.strftime('%d %b %Y')}"
        if prescription.follow_up_notes:
            follow_up += f": {prescription.follow_up_notes}"

    return schemas.PrescriptionView(
        clinic_name=clinic_name,
        prescription_id=prescription.prescription_id,
        issued_on=issued.strftime("%d %b %Y"),
        doctor_name=f"Dr. {doctor.full_name}",
        doctor_qualification=_doctor_qualification(doctor),
        patient_name=patient.full_name,
        patient_details=_patient_details(patient, issued),
        diagnosis=prescription.diagnosis,
        symptoms=list(prescription.symptoms or []),
        medications=medications,
        tests=tests,
        follow_up=follow_up,
        notes=prescription.notes or "",
        whiteboard_png_base64=prescription.whiteboard_data,
    )


def _link_artifact(db: Session, prescription: models.Prescription, field: str,
                   result: schemas.ArtifactSaveResult) -> schemas.ArtifactOutcome:
    if not result.success:
        logger.warning(f"{field} of {prescription.prescription_id} not stored: {result.error}")
        return schemas.ArtifactOutcome(prescription_id=prescription.prescription_id, error=result.error)
    try:
        crud.set_prescription_artifact(db, prescription, field, result.artifact.url)
    except (crud.CRUDError, ConflictError) as e:
        logger.error(f"Could not record {field} on {prescription.prescription_id}: {str(e)}")
        return schemas.ArtifactOutcome(prescription_id=prescription.prescription_id,
                                       artifact=result.artifact, error=str(e))
    return schemas.ArtifactOutcome(prescription_id=prescription.prescription_id, artifact=result.artifact)


def generate_prescription_pdf(db: Session, prescription_id: str, engine: PdfRenderEngine,
                              storage: ArtifactStorageManager,
                              clinic_name: str = "Clinic") -> schemas.ArtifactOutcome:
    """Render the prescription, store the PDF and record its URL on the prescription.

    Raises ``NotFoundError`` for an unknown prescription and ``RenderError``
    when the converter fails; storage problems are reported on the outcome.
    """
    prescription = crud.get_prescription(db, prescription_id)
    view = build_prescription_view(db, prescription, clinic_name)
    pdf_bytes = render_prescription_pdf(engine, view)
    result = storage.save(pdf_bytes, prescription.prescription_id, ArtifactClass.pdfs,
                          original_name=f"{prescription.prescription_id}.pdf", mime_type="application/pdf")
    return _link_artifact(db, prescription, "prescription_pdf", result)


def attach_prescription_image(db: Session, prescription_id: str, data: bytes,
                              storage: ArtifactStorageManager, original_name: Optional[str] = None,
                              mime_type: Optional[str] = None) -> schemas.ArtifactOutcome:
    """Store an uploaded scan or photo of a paper prescription."""
    prescription = crud.get_prescription(db, prescription_id)
    result = storage.save(data, prescription.prescription_id, ArtifactClass.images,
                          original_name=original_name, mime_type=mime_type)
    return _link_artifact(db, prescription, "prescription_image", result)


def store_whiteboard(db: Session, prescription_id: str,
                     storage: ArtifactStorageManager) -> schemas.ArtifactOutcome:
    prescription = crud.get_prescription(db, prescription_id)
    payload = prescription.whiteboard_data
    if not payload:
        raise ValidationError(f"Prescription {prescription_id} has no whiteboard drawing")
    if payload.startswith("data:"):
        payload = payload.split(",", 1)[-1]
    try:
        image = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"Whiteboard drawing of {prescription_id} is not valid base64") from e

    result = storage.save(image, prescription.prescription_id, ArtifactClass.whiteboards, mime_type="image/png")
    if not result.success:
        logger.warning(f"Whiteboard of {prescription_id} not stored: {result.error}")
        return schemas.ArtifactOutcome(prescription_id=prescription_id, error=result.error)
    return schemas.ArtifactOutcome(prescription_id=prescription_id, artifact=result.artifact)


def remove_prescription_artifacts(storage: ArtifactStorageManager,
                                  prescription_id: str) -> schemas.ArtifactDeleteResult:
    return storage.delete(prescription_id)
