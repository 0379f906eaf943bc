import calendar
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional, Sequence

from errors import EmptyMedicationListError, FieldError, MissingProfileError, ValidationError
from local_store import PrescriptionStore
from models import Medication, Prescription, validate
from verification import generate_qr_code

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# --- Identifiers and timestamps ---

def current_millis() -> int:
    return int(time.time() * 1000)


def prescription_id_generator() -> str:
    return f"RX{current_millis()}"


def medication_id_generator() -> str:
    return f"med_{current_millis()}"


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with millisecond precision, e.g. 2024-07-01T10:40:00.000Z"""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# --- Assembly ---

class PrescriptionAssembler:
    """
    Turns a patient draft, a list of medications and the current doctor profile
    into a Prescription and commits it to the store.

    The id generator and clock are injectable so callers can supply
    deterministic values.
    """

    def __init__(
        self,
        store: PrescriptionStore,
        id_generator: Callable[[], str] = prescription_id_generator,
        medication_id_generator: Callable[[], str] = medication_id_generator,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.store = store
        self.id_generator = id_generator
        self.medication_id_generator = medication_id_generator
        self.clock = clock

    def assemble(self, patient_data: Any, medications: Sequence[Any]) -> Prescription:
        """
        Builds and saves a new prescription.

        Args:
            patient_data: Patient draft (mapping or Patient).
            medications: Medication drafts (mappings or Medication), in print order.

        Returns:
            The saved Prescription.

        Raises:
            MissingProfileError: no doctor profile has been saved yet.
            MalformedInputError: the patient or a medication is not a mapping.
            ValidationError: the patient or a medication is invalid.
            EmptyMedicationListError: no medications were given.
            PersistenceError: the store could not save the prescription.
        """
        profile = self.store.get_doctor_profile()
        if profile is None:
            logger.warning("Prescription requested before a doctor profile exists.")
            raise MissingProfileError()

        patient, errors = validate("patient", patient_data)
        if errors:
            logger.info(f"Patient data failed validation: {[e.field for e in errors]}")
            raise ValidationError(errors, kind="patient")

        if not medications:
            raise EmptyMedicationListError()

        prepared = self._prepare_medications(medications)

        prescription_id = self.id_generator()
        prescription = Prescription(
            id=prescription_id,
            patient_data=patient,
            medications=prepared,
            doctor_data=profile.model_copy(deep=True),
            created_at=self.clock(),
            qr_code=generate_qr_code(prescription_id),
        )

        self.store.save_prescription(prescription)
        logger.info(f"Prescription {prescription.id} generated for {patient.name} "
                    f"with {len(prepared)} medication(s)")
        return prescription

    def _prepare_medications(self, medications: Iterable[Any]) -> List[Medication]:
        validated: List[Medication] = []
        errors: List[FieldError] = []
        for index, candidate in enumerate(medications):
            medication, med_errors = validate("medication", candidate)
            if med_errors:
                errors.extend(
                    FieldError(field=f"medications.{index}.{e.field}", message=e.message) for e in med_errors
                )
            else:
                validated.append(medication)
        if errors:
            raise ValidationError(errors, kind="medication")

        used = set()
        for medication in validated:
            if not medication.id:
                continue
            if medication.id in used:
                raise ValidationError(
                    [FieldError(field="medications", message=f"Duplicate medication id: {medication.id}")],
                    kind="medication",
                )
            used.add(medication.id)

        prepared = []
        for medication in validated:
            if not medication.id:
                base = self.medication_id_generator()
                new_id = base
                suffix = 1
                while new_id in used:
                    new_id = f"{base}_{suffix}"
                    suffix += 1
                used.add(new_id)
                medication = medication.model_copy(update={"id": new_id})
            prepared.append(medication)
        return prepared


# --- History search ---

DATE_FILTERS = ("all", "today", "week", "month")


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _one_month_before(moment: datetime) -> datetime:
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def search_prescriptions(
    prescriptions: Iterable[Prescription],
    term: str = "",
    date_filter: str = "all",
    now: Optional[datetime] = None,
) -> List[Prescription]:
    """
    Filters prescription history the way the history screen does.

    term matches (case-insensitively, as a substring) the patient name, the
    diagnosis or the prescription id. date_filter is one of "all", "today",
    "week" (last 7 days) or "month" (since the same day last month).
    Input order is kept.
    """
    if date_filter not in DATE_FILTERS:
        raise ValueError(f"Unknown date filter '{date_filter}', expected one of {', '.join(DATE_FILTERS)}")

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    needle = (term or "").lower()

    if date_filter == "week":
        cutoff = now - timedelta(days=7)
    elif date_filter == "month":
        cutoff = _one_month_before(now)
    else:
        cutoff = None

    results = []
    for prescription in prescriptions:
        haystacks = (prescription.patient_data.name, prescription.patient_data.diagnosis, prescription.id)
        if needle and not any(needle in h.lower() for h in haystacks):
            continue

        if date_filter != "all":
            created = _parse_timestamp(prescription.created_at)
            if created is None:
                logger.warning(f"Prescription {prescription.id} has an unreadable createdAt '{prescription.created_at}'")
                continue
            if date_filter == "today":
                if created.astimezone(now.tzinfo).date() != now.date():
                    continue
            elif created < cutoff:
                continue

        results.append(prescription)
    return results
