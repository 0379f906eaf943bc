from pydantic import BaseModel, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from errors import FieldError, MalformedInputError


class CamelModel(BaseModel):
    """
    Base for every stored entity. Fields are snake_case in Python and camelCase
    in storage and over the wire (registrationNumber, patientData, qrCode, ...).
    """

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        from_attributes = True


class DoctorProfile(CamelModel):
    """
    The issuing doctor. One per installation, overwritten on every save.
    """
    name: str = Field(..., min_length=1, description="Doctor's full name")
    degree: str = Field(..., min_length=1)
    registration_number: str = Field(..., min_length=1, description="Medical council registration number")
    phone: str = Field(..., min_length=10)
    hospital: str = Field(..., min_length=1, description="Hospital or clinic name")
    address: str = Field(..., min_length=1)
    signature: Optional[str] = Field(None, description="Base64 encoded signature image (data URL)")


class Medication(CamelModel):
    id: str = Field("", description="med_<timestamp>; assigned at assembly time when blank")
    name: str = Field(..., min_length=1)
    strength: str = Field(..., min_length=1)
    dose: str = Field(..., min_length=1)
    route: str = Field(..., min_length=1)
    frequency: str = Field(..., min_length=1)
    duration: str = Field(..., min_length=1)
    quantity: Optional[str] = None
    instructions: Optional[str] = None

    class Config:
        frozen = True


class Patient(CamelModel):
    name: str = Field(..., min_length=1, description="Patient's full name")
    dob: str = Field(..., min_length=1, description="Date of birth (ISO date)")
    gender: Literal["male", "female", "other"]
    mobile: str = Field(..., min_length=10)
    address: Optional[str] = None
    height: Optional[str] = None
    height_unit: Literal["cm", "ft"] = "cm"
    weight: Optional[str] = None
    weight_unit: Literal["kg", "lbs"] = "kg"
    chief_complaint: str = Field(..., min_length=1)
    diagnosis: str = Field(..., min_length=1)
    notes: Optional[str] = None
    followup_date: Optional[str] = None
    followup_time: Optional[str] = None


class Prescription(CamelModel):
    """
    An issued prescription. Never updated after it is saved; doctor_data is a
    snapshot of the profile at the time of issue.
    """
    id: str = Field(..., description="RX<timestamp>")
    patient_data: Patient
    medications: List[Medication]
    doctor_data: DoctorProfile
    created_at: str = Field(..., description="ISO 8601 creation timestamp")
    qr_code: str = Field(..., description="Verification code, equal to the id")

    @field_validator("medications")
    @classmethod
    def medication_ids_unique(cls, medications: List[Medication]) -> List[Medication]:
        ids = [m.id for m in medications]
        if any(not i for i in ids):
            raise ValueError("Every medication needs an id")
        if len(set(ids)) != len(ids):
            raise ValueError("Medication ids must be unique within a prescription")
        return medications

    class Config:
        frozen = True
        json_schema_extra = {
            "example": {
                "id": "RX1719830400000",
                "patientData": {
                    "name": "Jane Doe",
                    "dob": "1990-04-12",
                    "gender": "female",
                    "mobile": "9876543210",
                    "heightUnit": "cm",
                    "weightUnit": "kg",
                    "chiefComplaint": "Fever for 3 days",
                    "diagnosis": "Viral fever",
                },
                "medications": [
                    {
                        "id": "med_1719830390000",
                        "name": "Paracetamol",
                        "strength": "500mg",
                        "dose": "1 tablet",
                        "route": "oral",
                        "frequency": "once-daily",
                        "duration": "5 days",
                    }
                ],
                "doctorData": {
                    "name": "A. Sharma",
                    "degree": "MBBS",
                    "registrationNumber": "MCI-12345",
                    "phone": "9123456780",
                    "hospital": "City Clinic",
                    "address": "12 Main Road",
                },
                "createdAt": "2024-07-01T10:40:00.000Z",
                "qrCode": "RX1719830400000",
            }
        }


class AppSettings(CamelModel):
    auto_save: bool = True
    dark_mode: bool = False
    include_qr: bool = Field(True, alias="includeQR")


# --- Validation ---

SCHEMAS = {
    "doctor_profile": DoctorProfile,
    "medication": Medication,
    "patient": Patient,
    "prescription": Prescription,
    "app_settings": AppSettings,
}

# Messages shown inline on the forms, keyed by the external (camelCase) field name.
FIELD_MESSAGES: Dict[str, Dict[str, str]] = {
    "doctor_profile": {
        "name": "Name is required",
        "degree": "Degree is required",
        "registrationNumber": "Registration number is required",
        "phone": "Valid phone number is required",
        "hospital": "Hospital/Clinic name is required",
        "address": "Address is required",
    },
    "medication": {
        "name": "Drug name is required",
        "strength": "Strength is required",
        "dose": "Dose is required",
        "route": "Route is required",
        "frequency": "Frequency is required",
        "duration": "Duration is required",
    },
    "patient": {
        "name": "Patient name is required",
        "dob": "Date of birth is required",
        "gender": "Gender must be one of: male, female, other",
        "mobile": "Valid mobile number is required",
        "heightUnit": "Height unit must be one of: cm, ft",
        "weightUnit": "Weight unit must be one of: kg, lbs",
        "chiefComplaint": "Chief complaint is required",
        "diagnosis": "Diagnosis is required",
    },
}


def _field_errors(kind: str, exc: PydanticValidationError) -> List[FieldError]:
    messages = FIELD_MESSAGES.get(kind, {})
    errors: List[FieldError] = []
    seen = set()
    for err in exc.errors():
        loc = err.get("loc") or ("__root__",)
        field = ".".join(str(part) for part in loc)
        if field in seen:
            continue
        seen.add(field)
        if err.get("type") == "value_error":
            message = str(err["ctx"]["error"])
        else:
            message = messages.get(field, err.get("msg", "Invalid value"))
        errors.append(FieldError(field=field, message=message))
    return errors


def validate(kind: str, candidate: Any) -> Tuple[Optional[CamelModel], List[FieldError]]:
    """
    Checks a candidate entity against its schema.

    Args:
        kind: One of "doctor_profile", "medication", "patient", "prescription", "app_settings".
        candidate: A mapping (camelCase or snake_case keys) or an instance of the model.

    Returns:
        (entity, []) when the candidate is valid, (None, [FieldError, ...]) otherwise,
        with one error per invalid field. Declared defaults are filled in.

    Raises:
        MalformedInputError: the candidate is not a mapping.
    """
    model = SCHEMAS.get(kind)
    if model is None:
        raise ValueError(f"Unknown entity kind: {kind}")

    if isinstance(candidate, model):
        candidate = candidate.model_dump(by_alias=True)
    if not isinstance(candidate, Mapping):
        raise MalformedInputError(f"Expected an object for {kind}, got {type(candidate).__name__}")

    try:
        return model.model_validate(dict(candidate)), []
    except PydanticValidationError as exc:
        return None, _field_errors(kind, exc)


# --- API request/response models ---

class PrescriptionCreateRequest(BaseModel):
    """
    Raw form data for a new prescription. Kept untyped here so that field errors
    come back with the same messages the forms show.
    """
    patient_data: Any = Field(..., alias="patientData")
    medications: List[Any] = Field(default_factory=list)

    class Config:
        populate_by_name = True


class PrescriptionListResponse(BaseModel):
    total: int
    prescriptions: List[Prescription]


class VerificationRequest(BaseModel):
    code: str = ""


class VerificationResponse(BaseModel):
    message: str
    prescription: Prescription


class SettingsUpdate(CamelModel):
    auto_save: Optional[bool] = None
    dark_mode: Optional[bool] = None
    include_qr: Optional[bool] = Field(None, alias="includeQR")
