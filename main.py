import logging
from typing import Any, Optional

import uvicorn
from fastapi import Body, Depends, FastAPI, File, HTTPException, Query, Response, UploadFile, status

import config
from code_capture import detect_code_from_input, extract_code_from_image
from dependencies import get_api_key, get_assembler, get_store
from errors import (
    CodeCaptureError,
    DocumentExportError,
    DuplicatePrescriptionError,
    EmptyCodeError,
    EmptyMedicationListError,
    MalformedInputError,
    MissingProfileError,
    PersistenceError,
    PrescriptionNotFoundError,
    ValidationError,
)
from local_store import JsonFileBackend, PrescriptionStore
from models import (
    AppSettings,
    DoctorProfile,
    Prescription,
    PrescriptionCreateRequest,
    PrescriptionListResponse,
    SettingsUpdate,
    VerificationRequest,
    VerificationResponse,
    validate,
)
from pdf_generator import generate_pdf, pdf_filename, signature_data_url
from prescription_service import DATE_FILTERS, PrescriptionAssembler, search_prescriptions
from verification import verify

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# --- FastAPI App Initialization ---
app = FastAPI(
    title="Prescription Writer",
    description="Write prescriptions, keep them in local storage, export them as PDF and verify them by code.",
    version="0.1.0",
)


# --- Lifecycle ---
@app.on_event("startup")
async def startup_event():
    backend = JsonFileBackend(config.STORAGE_PATH, quota_bytes=config.STORAGE_QUOTA_BYTES)
    app.state.store = PrescriptionStore(backend).open()
    logger.info(f"FastAPI application started. Prescription store opened at '{config.STORAGE_PATH}'.")


@app.on_event("shutdown")
async def shutdown_event():
    store = getattr(app.state, "store", None)
    if store is not None:
        store.close()
        logger.info("Prescription store closed.")


def _validation_detail(errors):
    return [{"field": e.field, "message": e.message} for e in errors]


def _persistence_exception(exc: PersistenceError) -> HTTPException:
    logger.error(f"Storage operation failed: {exc}")
    if isinstance(exc, DuplicatePrescriptionError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(exc))


# --- Doctor profile ---

@app.get("/profile",
         response_model=DoctorProfile,
         summary="Get Doctor Profile",
         tags=["Profile"])
async def get_profile(store: PrescriptionStore = Depends(get_store), api_key: str = Depends(get_api_key)):
    profile = store.get_doctor_profile()
    if profile is None:
        logger.warning("Doctor profile requested but not set")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Doctor profile not set")
    return profile


@app.put("/profile",
         response_model=DoctorProfile,
         summary="Save Doctor Profile",
         description="Creates or overwrites the single doctor profile of this installation.",
         tags=["Profile"])
async def put_profile(
    payload: Any = Body(...),
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    try:
        profile, errors = validate("doctor_profile", payload)
    except MalformedInputError as e:
        logger.warning(f"Doctor profile rejected: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if errors:
        logger.info(f"Doctor profile rejected: {[e.field for e in errors]}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                            detail=_validation_detail(errors))
    try:
        store.set_doctor_profile(profile)
    except PersistenceError as e:
        raise _persistence_exception(e)
    return profile


@app.post("/profile/signature",
          response_model=DoctorProfile,
          summary="Upload Signature",
          description="Attaches a signature image to the doctor profile. It is printed on exported prescriptions.",
          tags=["Profile"])
async def upload_signature(
    file: UploadFile = File(..., description="Signature image (PNG, JPG)."),
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    profile = store.get_doctor_profile()
    if profile is None:
        logger.warning("Signature upload rejected: no doctor profile")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(MissingProfileError()))

    try:
        image_bytes = await file.read()
    finally:
        await file.close()

    try:
        signature = signature_data_url(image_bytes)
    except ValidationError as e:
        logger.warning(f"Signature image rejected: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=_validation_detail(e.errors))

    updated = profile.model_copy(update={"signature": signature})
    try:
        store.set_doctor_profile(updated)
    except PersistenceError as e:
        raise _persistence_exception(e)
    logger.info("Signature uploaded.")
    return updated


@app.delete("/profile/signature",
            response_model=DoctorProfile,
            summary="Clear Signature",
            tags=["Profile"])
async def clear_signature(store: PrescriptionStore = Depends(get_store), api_key: str = Depends(get_api_key)):
    profile = store.get_doctor_profile()
    if profile is None:
        logger.warning("Signature clear requested but no doctor profile is set")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Doctor profile not set")
    updated = profile.model_copy(update={"signature": ""})
    try:
        store.set_doctor_profile(updated)
    except PersistenceError as e:
        raise _persistence_exception(e)
    logger.info("Signature cleared.")
    return updated


# --- Settings ---

@app.get("/settings", response_model=AppSettings, summary="Get App Settings", tags=["Settings"])
async def get_settings(store: PrescriptionStore = Depends(get_store), api_key: str = Depends(get_api_key)):
    return store.get_settings()


@app.put("/settings", response_model=AppSettings, summary="Replace App Settings", tags=["Settings"])
async def put_settings(
    payload: Any = Body(...),
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    try:
        settings, errors = validate("app_settings", payload)
    except MalformedInputError as e:
        logger.warning(f"App settings rejected: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    if errors:
        logger.info(f"App settings rejected: {[err.field for err in errors]}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                            detail=_validation_detail(errors))
    try:
        store.set_settings(settings)
    except PersistenceError as e:
        raise _persistence_exception(e)
    return settings


@app.patch("/settings",
           response_model=AppSettings,
           summary="Toggle App Settings",
           description="Updates only the settings present in the body.",
           tags=["Settings"])
async def patch_settings(
    update: SettingsUpdate,
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    changes = update.model_dump(exclude_none=True)
    settings = store.get_settings().model_copy(update=changes)
    try:
        store.set_settings(settings)
    except PersistenceError as e:
        raise _persistence_exception(e)
    for key, value in changes.items():
        logger.info(f"Setting {key} has been {'enabled' if value else 'disabled'}.")
    return settings


# --- Prescriptions ---

@app.post("/prescriptions",
          response_model=Prescription,
          summary="Generate Prescription",
          description="Validates the patient and medications, snapshots the doctor profile and saves the prescription.",
          status_code=status.HTTP_201_CREATED,
          tags=["Prescriptions"])
async def create_prescription(
    request: PrescriptionCreateRequest,
    assembler: PrescriptionAssembler = Depends(get_assembler),
    api_key: str = Depends(get_api_key),
):
    """
    Endpoint to generate a prescription.
    - Requires a saved doctor profile.
    - Requires at least one medication.
    - The stored prescription is returned; download the PDF separately.
    """
    try:
        return assembler.assemble(request.patient_data, request.medications)
    except MissingProfileError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValidationError as e:
        logger.info(f"Prescription rejected: {[err.field for err in e.errors]}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=_validation_detail(e.errors))
    except (EmptyMedicationListError, MalformedInputError) as e:
        logger.warning(f"Prescription rejected: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except PersistenceError as e:
        raise _persistence_exception(e)


@app.get("/prescriptions",
         response_model=PrescriptionListResponse,
         summary="Prescription History",
         description="Stored prescriptions, newest first, optionally filtered by text and date range.",
         tags=["Prescriptions"])
async def list_prescriptions(
    search: str = Query("", description="Matches patient name, diagnosis or prescription id"),
    date_filter: str = Query("all", description=f"One of: {', '.join(DATE_FILTERS)}"),
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    try:
        results = search_prescriptions(store.list_prescriptions(), term=search, date_filter=date_filter)
    except ValueError as e:
        logger.warning(f"Bad history filter: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return PrescriptionListResponse(total=len(results), prescriptions=results)


@app.get("/prescriptions/{prescription_id}",
         response_model=Prescription,
         summary="Get Prescription",
         tags=["Prescriptions"])
async def get_prescription(
    prescription_id: str,
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    prescription = store.get_prescription_by_id(prescription_id)
    if prescription is None:
        logger.warning(f"Prescription not found: {prescription_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Prescription not found")
    return prescription


@app.delete("/prescriptions/{prescription_id}",
            status_code=status.HTTP_204_NO_CONTENT,
            summary="Delete Prescription",
            tags=["Prescriptions"])
async def delete_prescription(
    prescription_id: str,
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    try:
        deleted = store.delete_prescription(prescription_id)
    except PersistenceError as e:
        raise _persistence_exception(e)
    if not deleted:
        logger.warning(f"Prescription not found for deletion: {prescription_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Prescription not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/prescriptions/{prescription_id}/pdf",
         summary="Download Prescription PDF",
         response_class=Response,
         tags=["Prescriptions"])
async def download_prescription_pdf(
    prescription_id: str,
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    prescription = store.get_prescription_by_id(prescription_id)
    if prescription is None:
        logger.warning(f"Prescription not found for export: {prescription_id}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Prescription not found")

    include_qr = store.get_settings().include_qr
    try:
        content = generate_pdf(prescription, include_qr=include_qr)
    except DocumentExportError as e:
        logger.error(f"PDF export failed for {prescription_id}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    filename = pdf_filename(prescription)
    return Response(
        content=content,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# --- Verification ---

def _verify_or_raise(store: PrescriptionStore, code: Optional[str]) -> VerificationResponse:
    try:
        prescription = verify(store, code)
    except EmptyCodeError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PrescriptionNotFoundError as e:
        logger.warning(str(e))
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return VerificationResponse(message="The prescription is authentic and valid.", prescription=prescription)


@app.get("/verify/{code}",
         response_model=VerificationResponse,
         summary="Verify Prescription Code",
         tags=["Verification"])
async def verify_code(code: str, store: PrescriptionStore = Depends(get_store), api_key: str = Depends(get_api_key)):
    return _verify_or_raise(store, code)


@app.post("/verify",
          response_model=VerificationResponse,
          summary="Verify Typed Code",
          tags=["Verification"])
async def verify_typed_code(
    request: VerificationRequest,
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    return _verify_or_raise(store, request.code)


@app.post("/verify/scan",
          response_model=VerificationResponse,
          summary="Verify From Image",
          description="Reads the printed prescription id from a photo of the prescription and verifies it.",
          tags=["Verification"])
async def verify_scanned_code(
    file: UploadFile = File(..., description="Photo or scan of a printed prescription."),
    store: PrescriptionStore = Depends(get_store),
    api_key: str = Depends(get_api_key),
):
    logger.info(f"Received verification scan: {file.filename}")
    try:
        image_bytes = await file.read()
        if not image_bytes:
            logger.warning("Empty verification scan received.")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file content received.")
    finally:
        await file.close()

    try:
        code = extract_code_from_image(image_bytes)
    except CodeCaptureError as e:
        logger.warning(f"Could not read verification scan: {e}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    if not detect_code_from_input(code or ""):
        logger.warning(f"No verification code found in {file.filename}")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No verification code found in image.")
    return _verify_or_raise(store, code)


@app.get("/qr-index", summary="QR Verification Index", tags=["Verification"])
async def get_qr_index(store: PrescriptionStore = Depends(get_store), api_key: str = Depends(get_api_key)):
    return store.get_qr_index()


# --- Reset ---

@app.delete("/data",
            status_code=status.HTTP_204_NO_CONTENT,
            summary="Clear All Data",
            description="Removes the profile, settings, prescriptions and verification index. Cannot be undone.",
            tags=["Settings"])
async def clear_all_data(store: PrescriptionStore = Depends(get_store), api_key: str = Depends(get_api_key)):
    try:
        store.clear_all()
    except PersistenceError as e:
        raise _persistence_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Run the application (for local development) ---
if __name__ == "__main__":
    logger.info(f"Starting Uvicorn server on {config.HOST}:{config.PORT}")
    # Ensure a .env file exists with API_KEY (and optionally RX_STORAGE_PATH).
    uvicorn.run(app, host=config.HOST, port=config.PORT)
