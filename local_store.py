import json
import logging
import os
import tempfile
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError as PydanticValidationError

from errors import (
    DuplicatePrescriptionError,
    MalformedStorageError,
    PersistenceError,
    StoreClosedError,
    ValidationError,
)
from models import AppSettings, DoctorProfile, Prescription, validate

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Keys owned by the store, one JSON-encoded value each
DOCTOR_PROFILE_KEY = "doctorProfile"
APP_SETTINGS_KEY = "appSettings"
PRESCRIPTIONS_KEY = "prescriptions"
QR_VERIFICATION_KEY = "qrVerification"
OWNED_KEYS = (DOCTOR_PROFILE_KEY, APP_SETTINGS_KEY, PRESCRIPTIONS_KEY, QR_VERIFICATION_KEY)


class QuotaExceededError(Exception):
    """The backend refused a write because it would exceed its byte quota."""


def _record_id(record) -> Optional[str]:
    return record.get("id") if isinstance(record, dict) else None


# --- Backends ---

class StorageBackend:
    """
    String key-value storage. Writes of several keys happen in one operation:
    either every key is written or none is.
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        self.quota_bytes = quota_bytes or None
        self._data: Dict[str, str] = {}

    def open(self) -> None:
        pass

    def close(self) -> None:
        pass

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_items(self, items: Dict[str, str]) -> None:
        updated = dict(self._data)
        updated.update(items)
        self._check_quota(updated)
        self._commit(updated)

    def remove_items(self, keys: Iterable[str]) -> None:
        keys = set(keys)
        updated = {k: v for k, v in self._data.items() if k not in keys}
        self._commit(updated)

    def _check_quota(self, data: Dict[str, str]) -> None:
        if self.quota_bytes is None:
            return
        size = sum(len(k.encode("utf-8")) + len(v.encode("utf-8")) for k, v in data.items())
        if size > self.quota_bytes:
            raise QuotaExceededError(f"Storage quota of {self.quota_bytes} bytes exceeded ({size} bytes)")

    def _commit(self, data: Dict[str, str]) -> None:
        raise NotImplementedError


class MemoryBackend(StorageBackend):
    """Keeps everything in process memory. Used by tests and throwaway sessions."""

    def _commit(self, data: Dict[str, str]) -> None:
        self._data = data


class JsonFileBackend(StorageBackend):
    """
    Persists all keys as a single JSON document. Each write replaces the file
    through a temporary file and os.replace, so readers never see a half-written document.
    """

    def __init__(self, path: str, quota_bytes: Optional[int] = None):
        super().__init__(quota_bytes)
        self.path = path

    def open(self) -> None:
        if not os.path.exists(self.path):
            logger.info(f"No storage file at '{self.path}', starting empty.")
            self._data = {}
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
            if not isinstance(document, dict):
                raise ValueError(f"expected an object, got {type(document).__name__}")
            self._data = {str(k): v for k, v in document.items() if isinstance(v, str)}
            logger.info(f"Loaded {len(self._data)} keys from '{self.path}'.")
        except (OSError, ValueError) as e:
            logger.error(f"Storage file '{self.path}' is unreadable, starting empty: {e}")
            self._data = {}

    def _commit(self, data: Dict[str, str]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".rxstore-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        self._data = data


# --- Store ---

class PrescriptionStore:
    """
    Durable storage for prescriptions, the QR verification index, the doctor
    profile and the app settings. Reads of missing or corrupt values fall back
    to their defaults; failed writes raise PersistenceError.
    """

    def __init__(self, backend: StorageBackend):
        self.backend = backend
        self.is_open = False

    def open(self) -> "PrescriptionStore":
        self.backend.open()
        self.is_open = True
        return self

    def close(self) -> None:
        if self.is_open:
            self.backend.close()
            self.is_open = False

    def __enter__(self) -> "PrescriptionStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_open(self) -> None:
        if not self.is_open:
            raise StoreClosedError("Store is not open")

    # --- low level ---

    def _decode(self, key: str):
        """Returns the decoded JSON value for key, or None when absent. Raises MalformedStorageError."""
        raw = self.backend.get_item(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise MalformedStorageError(key, str(e))

    def _write(self, items: Dict[str, object]) -> None:
        try:
            encoded = {key: json.dumps(value) for key, value in items.items()}
            self.backend.set_items(encoded)
        except (QuotaExceededError, OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write {', '.join(items)} to storage: {e}")
            raise PersistenceError(f"Failed to save {', '.join(items)}: {e}") from e

    # --- prescriptions ---

    def _read_records(self) -> list:
        """The raw stored prescription list. Raises MalformedStorageError."""
        stored = self._decode(PRESCRIPTIONS_KEY)
        if stored is None:
            return []
        if not isinstance(stored, list):
            raise MalformedStorageError(PRESCRIPTIONS_KEY, "expected a list")
        return stored

    def _parse_records(self, records: list) -> List[Prescription]:
        prescriptions = []
        for position, record in enumerate(records):
            try:
                prescriptions.append(Prescription.model_validate(record))
            except PydanticValidationError as e:
                logger.error(f"Skipping unreadable prescription at position {position}: {e}")
        return prescriptions

    def _read_prescriptions(self) -> List[Prescription]:
        try:
            records = self._read_records()
        except MalformedStorageError as e:
            logger.error(f"Error loading prescriptions, treating as empty: {e}")
            return []
        return self._parse_records(records)

    def _records_for_update(self) -> list:
        """
        The raw list a write starts from. Unreadable records stay in it, so a
        rewrite never drops them. A list that cannot be decoded at all is left
        untouched and the write is refused.
        """
        try:
            return self._read_records()
        except MalformedStorageError as e:
            logger.error(f"Refusing to overwrite unreadable prescription list: {e}")
            raise PersistenceError(f"Stored prescriptions are unreadable, not overwriting them: {e}") from e

    def list_prescriptions(self) -> List[Prescription]:
        """All stored prescriptions, most recently created first."""
        self._require_open()
        return self._read_prescriptions()

    def save_prescription(self, prescription: Prescription) -> None:
        """
        Prepends the prescription to the stored list and records its code in the
        QR index. Both keys are written in one backend operation.

        Raises:
            ValidationError: the prescription does not satisfy the schema.
            DuplicatePrescriptionError: a prescription with the same id is already stored.
            PersistenceError: the stored list is unreadable, or the write failed
                (e.g. quota exceeded); nothing is stored.
        """
        self._require_open()
        _, errors = validate("prescription", prescription)
        if errors:
            logger.error(f"Refusing to save prescription {prescription.id}: {errors}")
            raise ValidationError(errors, kind="prescription")

        records = self._records_for_update()
        if any(_record_id(record) == prescription.id for record in records):
            logger.error(f"Refusing to save prescription {prescription.id}: id already stored")
            raise DuplicatePrescriptionError(prescription.id)

        updated = [prescription.model_dump(by_alias=True)] + records
        qr_index = self._read_qr_index()
        qr_index[prescription.qr_code] = prescription.id

        self._write({
            PRESCRIPTIONS_KEY: updated,
            QR_VERIFICATION_KEY: qr_index,
        })
        logger.info(f"Saved prescription {prescription.id} ({len(updated)} stored)")

    def get_prescription_by_id(self, prescription_id: str) -> Optional[Prescription]:
        self._require_open()
        for prescription in self._read_prescriptions():
            if prescription.id == prescription_id:
                return prescription
        return None

    def delete_prescription(self, prescription_id: str) -> bool:
        """
        Removes the prescription with the given id. The QR index is left as is.

        Returns:
            True if a prescription was removed, False if none matched.

        Raises:
            PersistenceError: the stored list is unreadable, or the write failed.
        """
        self._require_open()
        records = self._records_for_update()
        remaining = [record for record in records if _record_id(record) != prescription_id]
        if len(remaining) == len(records):
            logger.warning(f"No prescription with id {prescription_id} to delete")
            return False
        self._write({PRESCRIPTIONS_KEY: remaining})
        logger.info(f"Deleted prescription {prescription_id}")
        return True

    # --- QR index ---

    def _read_qr_index(self) -> Dict[str, str]:
        try:
            stored = self._decode(QR_VERIFICATION_KEY)
            if stored is None:
                return {}
            if not isinstance(stored, dict):
                raise MalformedStorageError(QR_VERIFICATION_KEY, "expected an object")
            return {str(code): str(pid) for code, pid in stored.items()}
        except MalformedStorageError as e:
            logger.error(f"Error loading QR verification data, treating as empty: {e}")
            return {}

    def get_qr_index(self) -> Dict[str, str]:
        self._require_open()
        return self._read_qr_index()

    # --- singletons ---

    def get_doctor_profile(self) -> Optional[DoctorProfile]:
        self._require_open()
        try:
            stored = self._decode(DOCTOR_PROFILE_KEY)
            if stored is None:
                return None
            return DoctorProfile.model_validate(stored)
        except (MalformedStorageError, PydanticValidationError) as e:
            logger.error(f"Error loading doctor profile, treating as absent: {e}")
            return None

    def set_doctor_profile(self, profile: DoctorProfile) -> None:
        self._require_open()
        self._write({DOCTOR_PROFILE_KEY: profile.model_dump(by_alias=True)})
        logger.info(f"Saved doctor profile for {profile.name}")

    def get_settings(self) -> AppSettings:
        self._require_open()
        try:
            stored = self._decode(APP_SETTINGS_KEY)
            if stored is None:
                return AppSettings()
            return AppSettings.model_validate(stored)
        except (MalformedStorageError, PydanticValidationError) as e:
            logger.error(f"Error loading app settings, using defaults: {e}")
            return AppSettings()

    def set_settings(self, settings: AppSettings) -> None:
        self._require_open()
        self._write({APP_SETTINGS_KEY: settings.model_dump(by_alias=True)})
        logger.info(f"Saved app settings: {settings.model_dump(by_alias=True)}")

    def clear_all(self) -> None:
        """Removes every key owned by the store in one backend operation."""
        self._require_open()
        try:
            self.backend.remove_items(OWNED_KEYS)
        except OSError as e:
            logger.error(f"Failed to clear storage: {e}")
            raise PersistenceError(f"Failed to clear data: {e}") from e
        logger.info("All application data cleared.")
