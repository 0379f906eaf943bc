import logging

from errors import EmptyCodeError, PrescriptionNotFoundError
from local_store import PrescriptionStore
from models import Prescription

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def generate_qr_code(prescription_id: str) -> str:
    """The verification code printed on a prescription. It is the prescription id itself."""
    return prescription_id


def verify_qr_code(qr_code: str, prescription_id: str) -> bool:
    return qr_code == prescription_id


def verify(store: PrescriptionStore, code: str) -> Prescription:
    """
    Looks up the stored prescription for a typed or scanned verification code.

    Surrounding whitespace is ignored; matching is exact and case-sensitive
    against the stored prescription ids. The QR index is not consulted, so a
    deleted prescription no longer verifies.

    Raises:
        EmptyCodeError: the code is empty or only whitespace.
        PrescriptionNotFoundError: no stored prescription has this code.
    """
    code = (code or "").strip()
    if not code:
        raise EmptyCodeError()

    for prescription in store.list_prescriptions():
        if verify_qr_code(code, prescription.id):
            logger.info(f"Verification code {code} matched prescription for {prescription.patient_data.name}")
            return prescription

    logger.warning(f"Verification code {code} did not match any stored prescription")
    raise PrescriptionNotFoundError(code)
