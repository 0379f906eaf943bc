import pytest

import code_capture
from conftest import png_bytes


@pytest.fixture
def profile(client, doctor_data):
    response = client.put("/profile", json=doctor_data)
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def created(client, profile, patient_data, paracetamol):
    response = client.post("/prescriptions", json={"patientData": patient_data, "medications": [paracetamol]})
    assert response.status_code == 201
    return response.json()


def test_requires_api_key(client):
    response = client.get("/settings", headers={"X-API-KEY": "wrong"})
    assert response.status_code == 403


def test_unconfigured_api_key(client, monkeypatch):
    monkeypatch.delenv("API_KEY")
    assert client.get("/settings").status_code == 500


def test_profile_lifecycle(client, doctor_data):
    assert client.get("/profile").status_code == 404

    response = client.put("/profile", json=doctor_data)
    assert response.status_code == 200
    assert response.json()["registrationNumber"] == "MCI-12345"

    assert client.get("/profile").json()["name"] == "Asha Sharma"


def test_invalid_profile(client, doctor_data):
    doctor_data["phone"] = "123"
    response = client.put("/profile", json=doctor_data)
    assert response.status_code == 422
    assert response.json()["detail"] == [{"field": "phone", "message": "Valid phone number is required"}]


@pytest.mark.parametrize("path", ["/profile", "/settings"])
def test_non_object_body_is_rejected(client, path):
    response = client.put(path, json=["not", "an", "object"])
    assert response.status_code == 422
    assert "Expected an object" in response.json()["detail"]


def test_signature_upload_and_clear(client, profile):
    response = client.post("/profile/signature", files={"file": ("sig.png", png_bytes(), "image/png")})
    assert response.status_code == 200
    assert response.json()["signature"].startswith("data:image/png;base64,")

    response = client.delete("/profile/signature")
    assert response.status_code == 200
    assert response.json()["signature"] == ""


def test_signature_upload_rejects_non_image(client, profile):
    response = client.post("/profile/signature", files={"file": ("sig.txt", b"hello", "text/plain")})
    assert response.status_code == 422


def test_signature_upload_needs_profile(client):
    response = client.post("/profile/signature", files={"file": ("sig.png", png_bytes(), "image/png")})
    assert response.status_code == 409


def test_settings(client):
    assert client.get("/settings").json() == {"autoSave": True, "darkMode": False, "includeQR": True}

    response = client.patch("/settings", json={"includeQR": False})
    assert response.json() == {"autoSave": True, "darkMode": False, "includeQR": False}

    response = client.put("/settings", json={"darkMode": True})
    assert response.json() == {"autoSave": True, "darkMode": True, "includeQR": True}
    assert client.get("/settings").json()["darkMode"] is True


def test_create_prescription_without_profile(client, patient_data, paracetamol):
    response = client.post("/prescriptions", json={"patientData": patient_data, "medications": [paracetamol]})
    assert response.status_code == 409
    assert client.get("/prescriptions").json()["total"] == 0


def test_create_prescription(created, client):
    assert created["id"] == "RX1000"
    assert created["qrCode"] == created["id"]
    assert created["doctorData"]["hospital"] == "City Clinic"
    assert created["patientData"]["heightUnit"] == "cm"
    assert created["medications"][0]["id"].startswith("med_")

    listing = client.get("/prescriptions").json()
    assert listing["total"] == 1
    assert listing["prescriptions"][0] == created


def test_create_prescription_without_medications(client, profile, patient_data):
    response = client.post("/prescriptions", json={"patientData": patient_data, "medications": []})
    assert response.status_code == 422


def test_create_prescription_with_invalid_patient(client, profile, patient_data, paracetamol):
    patient_data["gender"] = "unknown"
    response = client.post("/prescriptions", json={"patientData": patient_data, "medications": [paracetamol]})
    assert response.status_code == 422
    assert response.json()["detail"][0]["field"] == "gender"


@pytest.mark.parametrize("body", [
    {"patientData": "Jane Doe", "medications": [{"name": "Paracetamol"}]},
    {"medications": ["Paracetamol 500mg"]},
])
def test_create_prescription_with_malformed_drafts(client, profile, patient_data, body):
    body.setdefault("patientData", patient_data)
    response = client.post("/prescriptions", json=body)
    assert response.status_code == 422
    assert "Expected an object" in response.json()["detail"]
    assert client.get("/prescriptions").json()["total"] == 0


def test_unreadable_history_is_not_overwritten(client, store, profile, patient_data, paracetamol):
    store.backend.set_items({"prescriptions": "not json"})
    response = client.post("/prescriptions", json={"patientData": patient_data, "medications": [paracetamol]})
    assert response.status_code == 507
    assert store.backend.get_item("prescriptions") == "not json"


def test_history_search(client, created, patient_data, paracetamol):
    other = dict(patient_data, name="John Roe", diagnosis="Migraine")
    client.post("/prescriptions", json={"patientData": other, "medications": [paracetamol]})

    listing = client.get("/prescriptions").json()
    assert [p["id"] for p in listing["prescriptions"]] == ["RX1001", "RX1000"]

    found = client.get("/prescriptions", params={"search": "migraine"}).json()
    assert [p["id"] for p in found["prescriptions"]] == ["RX1001"]

    assert client.get("/prescriptions", params={"date_filter": "decade"}).status_code == 400


def test_get_and_delete_prescription(client, created):
    assert client.get(f"/prescriptions/{created['id']}").json() == created
    assert client.get("/prescriptions/RX404").status_code == 404

    assert client.delete(f"/prescriptions/{created['id']}").status_code == 204
    assert client.get(f"/prescriptions/{created['id']}").status_code == 404
    assert client.delete(f"/prescriptions/{created['id']}").status_code == 404

    assert client.get(f"/verify/{created['id']}").status_code == 404
    assert client.get("/qr-index").json() == {created["qrCode"]: created["id"]}


def test_download_pdf(client, created):
    response = client.get(f"/prescriptions/{created['id']}/pdf")
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert "prescription_Jane_Doe_RX1000.pdf" in response.headers["content-disposition"]
    assert response.content.startswith(b"%PDF")


def test_verify(client, created):
    response = client.get(f"/verify/{created['id']}")
    assert response.status_code == 200
    assert response.json()["prescription"] == created

    response = client.post("/verify", json={"code": f"  {created['id']} "})
    assert response.status_code == 200

    assert client.post("/verify", json={"code": "   "}).status_code == 400
    assert client.get("/verify/nonexistent").status_code == 404


def test_verify_scan(client, created, monkeypatch):
    monkeypatch.setattr(code_capture.pytesseract, "image_to_string",
                        lambda image: f"Prescription ID: {created['id']}")
    response = client.post("/verify/scan", files={"file": ("rx.png", png_bytes(), "image/png")})
    assert response.status_code == 200
    assert response.json()["prescription"]["id"] == created["id"]


def test_verify_scan_without_code(client, created, monkeypatch):
    monkeypatch.setattr(code_capture.pytesseract, "image_to_string", lambda image: "illegible")
    response = client.post("/verify/scan", files={"file": ("rx.png", png_bytes(), "image/png")})
    assert response.status_code == 404


def test_clear_all_data(client, created):
    client.patch("/settings", json={"darkMode": True})

    assert client.delete("/data").status_code == 204

    assert client.get("/profile").status_code == 404
    assert client.get("/prescriptions").json()["total"] == 0
    assert client.get("/settings").json() == {"autoSave": True, "darkMode": False, "includeQR": True}
    assert client.get("/qr-index").json() == {}
