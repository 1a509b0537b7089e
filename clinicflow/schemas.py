# clinicflow/schemas.py
from datetime import datetime
from typing import List, Optional, Literal, Union, Annotated
from pydantic import BaseModel, ConfigDict, Field, EmailStr, TypeAdapter, field_validator

from .models import (
    UserRole, AppointmentType, MedicationUnit, TestType, TestPriority,
)


# --- Base Schemas ---
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# --- Role profiles (tagged union on `role`) ---
class AvailableSlot(BaseSchema):
    day_of_week: int = Field(..., ge=0, le=6)
    start_time: str
    end_time: str
    is_active: bool = True


class DoctorProfile(BaseSchema):
    role: Literal["doctor"] = "doctor"
    qualification: Optional[str] = None
    specialization: List[str] = Field(default_factory=list)
    license_number: Optional[str] = None
    experience: int = Field(0, ge=0)
    consultation_fee: float = Field(0, ge=0)
    available_slots: List[AvailableSlot] = Field(default_factory=list)


class PharmacistProfile(BaseSchema):
    role: Literal["pharmacy"] = "pharmacy"
    license_number: Optional[str] = None
    specialization: List[str] = Field(default_factory=list)


class Address(BaseSchema):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = "India"


class EmergencyContact(BaseSchema):
    name: Optional[str] = None
    relationship: Optional[str] = None
    phone: Optional[str] = None


class MedicalCondition(BaseSchema):
    condition: str
    diagnosis_date: Optional[datetime] = None
    status: Literal["active", "resolved", "chronic"] = "active"
    notes: Optional[str] = None


class Allergy(BaseSchema):
    allergen: str
    severity: Optional[Literal["mild", "moderate", "severe"]] = None
    reaction: Optional[str] = None
    notes: Optional[str] = None


class Insurance(BaseSchema):
    provider: Optional[str] = None
    policy_number: Optional[str] = None
    expiry_date: Optional[datetime] = None
    coverage: Optional[float] = Field(None, ge=0, le=100)


class PatientProfile(BaseSchema):
    role: Literal["patient"] = "patient"
    date_of_birth: Optional[datetime] = None
    gender: Optional[Literal["male", "female", "other"]] = None
    address: Address = Field(default_factory=Address)
    emergency_contact: Optional[EmergencyContact] = None
    medical_history: List[MedicalCondition] = Field(default_factory=list)
    allergies: List[Allergy] = Field(default_factory=list)
    insurance: Optional[Insurance] = None


class StaffProfile(BaseSchema):
    role: Literal["admin", "receptionist"]


RoleProfile = Annotated[
    Union[DoctorProfile, PharmacistProfile, PatientProfile, StaffProfile],
    Field(discriminator="role"),
]

_role_profile_adapter = TypeAdapter(RoleProfile)


def parse_role_profile(role: Union[UserRole, str], payload: Optional[dict]):
    """Rebuild the typed profile stored on a User row."""
    data = dict(payload or {})
    data["role"] = UserRole(role).value
    return _role_profile_adapter.validate_python(data)


# --- User Schemas ---
class NotificationPreferences(BaseSchema):
    email: bool = True
    sms: bool = True
    push: bool = True


class UserPreferences(BaseSchema):
    language: str = "en"
    timezone: str = "Asia/Kolkata"
    notifications: NotificationPreferences = Field(default_factory=NotificationPreferences)


class UserCreate(BaseSchema):
    email: EmailStr
    first_name: str = Field(..., min_length=1, max_length=50)
    last_name: str = Field("", max_length=50)
    phone: str = Field(..., pattern=r"^\+?[\d\s\-\(\)]+$")
    profile: RoleProfile
    preferences: UserPreferences = Field(default_factory=UserPreferences)

    @property
    def role(self) -> UserRole:
        return UserRole(self.profile.role)


class UserUpdate(BaseSchema):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = Field(None, min_length=1, max_length=50)
    last_name: Optional[str] = Field(None, max_length=50)
    phone: Optional[str] = Field(None, pattern=r"^\+?[\d\s\-\(\)]+$")
    is_active: Optional[bool] = None
    preferences: Optional[UserPreferences] = None


# --- Clinical line items ---
class MedicationLine(BaseSchema):
    name: str = Field(..., min_length=1, max_length=200)
    generic_name: Optional[str] = Field(None, max_length=200)
    dosage: str = Field(..., min_length=1, max_length=100)
    frequency: str = Field(..., min_length=1, max_length=100)
    duration: str = Field(..., min_length=1, max_length=100)
    instructions: Optional[str] = Field(None, max_length=500)
    quantity: int = Field(1, ge=1)
    unit: MedicationUnit = MedicationUnit.tablets


class OrderMedicationLine(MedicationLine):
    supplied: bool = False
    supplied_quantity: int = 0
    supplied_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)


class TestLine(BaseSchema):
    name: str = Field(..., min_length=1, max_length=200)
    type: TestType = TestType.blood
    instructions: Optional[str] = Field(None, max_length=500)
    priority: TestPriority = TestPriority.routine


# --- Appointment Schemas ---
class AppointmentCreate(BaseSchema):
    patient_id: int
    doctor_id: int
    scheduled_at: datetime
    duration: int = Field(30, ge=15, le=480)
    type: AppointmentType = AppointmentType.consultation
    reason: str = Field(..., min_length=1, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)
    consultation_fee: float = Field(0, ge=0)


class PublicBookingCreate(BaseSchema):
    """Self-service booking: the patient is matched or registered by email."""
    patient_name: str = Field(..., min_length=1, max_length=101)
    email: EmailStr
    phone: str = Field(..., pattern=r"^\+?[\d\s\-\(\)]+$")
    doctor_id: int
    scheduled_at: datetime
    duration: int = Field(30, ge=15, le=480)
    type: AppointmentType = AppointmentType.consultation
    reason: str = Field("General consultation", min_length=1, max_length=500)
    notes: Optional[str] = Field(None, max_length=1000)


# --- Prescription Schemas ---
class PrescriptionCreate(BaseSchema):
    appointment_id: str
    diagnosis: str = Field(..., min_length=1, max_length=500)
    symptoms: List[str] = Field(default_factory=list)
    medications: List[MedicationLine] = Field(default_factory=list)
    tests: List[TestLine] = Field(default_factory=list)
    whiteboard_data: Optional[str] = Field(None, max_length=1_000_000)
    follow_up_required: bool = False
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("symptoms")
    @classmethod
    def strip_symptoms(cls, v):
        cleaned = [s.strip() for s in v if s and s.strip()]
        if any(len(s) > 100 for s in cleaned):
            raise ValueError("each symptom must be at most 100 characters")
        return cleaned


class PrescriptionUpdate(BaseSchema):
    """Editable while the prescription is still a draft."""
    diagnosis: Optional[str] = Field(None, min_length=1, max_length=500)
    symptoms: Optional[List[str]] = None
    medications: Optional[List[MedicationLine]] = None
    tests: Optional[List[TestLine]] = None
    whiteboard_data: Optional[str] = Field(None, max_length=1_000_000)
    follow_up_required: Optional[bool] = None
    follow_up_date: Optional[datetime] = None
    follow_up_notes: Optional[str] = Field(None, max_length=1000)
    notes: Optional[str] = Field(None, max_length=1000)


# --- Artifact storage results ---
class ArtifactRecord(BaseSchema):
    filename: str
    absolute_path: str
    relative_path: str
    url: str
    size: int
    mime_type: str
    prescription_id: str
    artifact_class: str
    uploaded_at: datetime
    original_name: Optional[str] = None


class ArtifactSaveResult(BaseSchema):
    success: bool
    artifact: Optional[ArtifactRecord] = None
    error: Optional[str] = None


class ArtifactListResult(BaseSchema):
    success: bool
    files: List[ArtifactRecord] = Field(default_factory=list)
    count: int = 0
    error: Optional[str] = None


class ArtifactDeleteResult(BaseSchema):
    success: bool
    deleted_count: int = 0
    failed_count: int = 0
    message: Optional[str] = None
    error: Optional[str] = None


class ArtifactOutcome(BaseSchema):
    """A clinical record write followed by an independent artifact write."""
    prescription_id: str
    artifact: Optional[ArtifactRecord] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.artifact is not None and self.error is None


# --- PDF render view (denormalized, no lookups needed) ---
class MedicationRow(BaseSchema):
    name: str
    dosage: str
    frequency: str
    duration: str
    quantity: str
    instructions: str = ""


class TestRow(BaseSchema):
    name: str
    type: str
    priority: str
    instructions: str = ""


class PrescriptionView(BaseSchema):
    clinic_name: str
    prescription_id: str
    issued_on: str
    doctor_name: str
    doctor_qualification: str = ""
    patient_name: str
    patient_details: str = ""
    diagnosis: str
    symptoms: List[str] = Field(default_factory=list)
    medications: List[MedicationRow] = Field(default_factory=list)
    tests: List[TestRow] = Field(default_factory=list)
    follow_up: str = ""
    notes: str = ""
    advice_html: str = ""
    whiteboard_png_base64: Optional[str] = None
