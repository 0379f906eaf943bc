import pytest

from errors import MalformedInputError
from models import AppSettings, DoctorProfile, Patient, validate


def test_valid_doctor_profile(doctor_data):
    profile, errors = validate("doctor_profile", doctor_data)
    assert errors == []
    assert isinstance(profile, DoctorProfile)
    assert profile.registration_number == "MCI-12345"
    assert profile.signature is None


def test_short_phone_is_rejected(doctor_data):
    doctor_data["phone"] = "12345"
    profile, errors = validate("doctor_profile", doctor_data)
    assert profile is None
    assert [(e.field, e.message) for e in errors] == [("phone", "Valid phone number is required")]


def test_one_error_per_invalid_field(doctor_data):
    del doctor_data["name"]
    doctor_data["hospital"] = ""
    doctor_data["phone"] = "123"
    _, errors = validate("doctor_profile", doctor_data)
    assert sorted(e.field for e in errors) == ["hospital", "name", "phone"]
    messages = {e.field: e.message for e in errors}
    assert messages["name"] == "Name is required"
    assert messages["hospital"] == "Hospital/Clinic name is required"


def test_patient_unit_defaults(patient_data):
    patient, errors = validate("patient", patient_data)
    assert errors == []
    assert patient.height_unit == "cm"
    assert patient.weight_unit == "kg"


@pytest.mark.parametrize("field,value,message", [
    ("gender", "unknown", "Gender must be one of: male, female, other"),
    ("heightUnit", "m", "Height unit must be one of: cm, ft"),
    ("weightUnit", "stone", "Weight unit must be one of: kg, lbs"),
    ("mobile", "98765", "Valid mobile number is required"),
    ("diagnosis", "", "Diagnosis is required"),
])
def test_patient_field_rules(patient_data, field, value, message):
    patient_data[field] = value
    patient, errors = validate("patient", patient_data)
    assert patient is None
    assert [(e.field, e.message) for e in errors] == [(field, message)]


def test_followup_time_without_date_is_allowed(patient_data):
    patient_data["followupTime"] = "10:30"
    patient, errors = validate("patient", patient_data)
    assert errors == []
    assert patient.followup_time == "10:30"
    assert patient.followup_date is None


def test_snake_case_keys_are_accepted(patient_data):
    patient_data["chief_complaint"] = patient_data.pop("chiefComplaint")
    patient, errors = validate("patient", patient_data)
    assert errors == []
    assert patient.chief_complaint == "Fever for 3 days"


def test_medication_requires_core_fields(paracetamol):
    del paracetamol["route"]
    medication, errors = validate("medication", paracetamol)
    assert medication is None
    assert [(e.field, e.message) for e in errors] == [("route", "Route is required")]


def test_medication_optional_fields(paracetamol):
    paracetamol.update(quantity="10", instructions="After food")
    medication, errors = validate("medication", paracetamol)
    assert errors == []
    assert medication.id == ""
    assert medication.instructions == "After food"


def test_app_settings_defaults():
    settings, errors = validate("app_settings", {})
    assert errors == []
    assert settings == AppSettings(auto_save=True, dark_mode=False, include_qr=True)
    assert settings.model_dump(by_alias=True) == {"autoSave": True, "darkMode": False, "includeQR": True}


def test_app_settings_rejects_non_boolean():
    settings, errors = validate("app_settings", {"darkMode": "sometimes"})
    assert settings is None
    assert [e.field for e in errors] == ["darkMode"]


def test_model_instance_is_revalidated(patient_data):
    patient = Patient.model_validate(patient_data)
    again, errors = validate("patient", patient)
    assert errors == []
    assert again == patient


@pytest.mark.parametrize("candidate", [None, "Jane Doe", 42, ["name"]])
def test_malformed_input_raises(candidate):
    with pytest.raises(MalformedInputError):
        validate("patient", candidate)


def test_unknown_kind():
    with pytest.raises(ValueError):
        validate("invoice", {})


def test_serialization_uses_camel_case(doctor_data):
    profile = DoctorProfile.model_validate(doctor_data)
    dumped = profile.model_dump(by_alias=True)
    assert "registrationNumber" in dumped
    assert "registration_number" not in dumped


@pytest.fixture
def prescription_data(doctor_data, patient_data, paracetamol):
    return {
        "id": "RX1",
        "patientData": patient_data,
        "medications": [dict(paracetamol, id="med_1"), dict(paracetamol, id="med_2")],
        "doctorData": doctor_data,
        "createdAt": "2024-07-01T10:40:00.000Z",
        "qrCode": "RX1",
    }


def test_valid_prescription(prescription_data):
    prescription, errors = validate("prescription", prescription_data)
    assert errors == []
    assert [m.id for m in prescription.medications] == ["med_1", "med_2"]


@pytest.mark.parametrize("ids, message", [
    (["", "med_2"], "Every medication needs an id"),
    (["med_1", "med_1"], "Medication ids must be unique within a prescription"),
])
def test_prescription_medication_ids(prescription_data, ids, message):
    for medication, med_id in zip(prescription_data["medications"], ids):
        medication["id"] = med_id
    prescription, errors = validate("prescription", prescription_data)
    assert prescription is None
    assert [(e.field, e.message) for e in errors] == [("medications", message)]
