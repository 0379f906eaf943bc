import io
import itertools

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from dependencies import get_id_generator, get_store
from local_store import MemoryBackend, PrescriptionStore
from main import app
from models import DoctorProfile
from prescription_service import PrescriptionAssembler

API_KEY = "test-key"


def counter_ids(prefix, start=1000):
    """Deterministic id generator: RX1000, RX1001, ..."""
    counter = itertools.count(start)
    return lambda: f"{prefix}{next(counter)}"


def png_bytes(color="white", size=(20, 20)):
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def store():
    store = PrescriptionStore(MemoryBackend()).open()
    yield store
    store.close()


@pytest.fixture
def doctor_data():
    return {
        "name": "Asha Sharma",
        "degree": "MBBS, MD",
        "registrationNumber": "MCI-12345",
        "phone": "9123456780",
        "hospital": "City Clinic",
        "address": "12 Main Road, Pune",
    }


@pytest.fixture
def patient_data():
    return {
        "name": "Jane Doe",
        "dob": "1990-04-12",
        "gender": "female",
        "mobile": "9876543210",
        "chiefComplaint": "Fever for 3 days",
        "diagnosis": "Viral fever",
    }


@pytest.fixture
def paracetamol():
    return {
        "name": "Paracetamol",
        "strength": "500mg",
        "dose": "1 tablet",
        "route": "oral",
        "frequency": "once-daily",
        "duration": "5 days",
    }


@pytest.fixture
def store_with_profile(store, doctor_data):
    store.set_doctor_profile(DoctorProfile.model_validate(doctor_data))
    return store


@pytest.fixture
def assembler(store_with_profile):
    return PrescriptionAssembler(
        store_with_profile,
        id_generator=counter_ids("RX"),
        medication_id_generator=counter_ids("med_"),
        clock=lambda: "2024-07-01T10:40:00.000Z",
    )


@pytest.fixture
def client(store, monkeypatch):
    monkeypatch.setenv("API_KEY", API_KEY)
    ids = counter_ids("RX")
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_id_generator] = lambda: ids
    client = TestClient(app, headers={"X-API-KEY": API_KEY})
    yield client
    app.dependency_overrides.clear()
