from dataclasses import dataclass
from typing import List


@dataclass(frozen=True)
class FieldError:
    """A single invalid field and the message shown next to it on the form."""
    field: str
    message: str


class PrescriptionAppError(Exception):
    """Base class for every error raised by the prescription service."""


class MalformedInputError(PrescriptionAppError):
    """The candidate handed to validation is not a mapping at all."""


class ValidationError(PrescriptionAppError):
    """One or more fields failed validation."""

    def __init__(self, errors: List[FieldError], kind: str = ""):
        self.errors = list(errors)
        self.kind = kind
        fields = ", ".join(e.field for e in self.errors)
        super().__init__(f"Invalid {kind or 'input'}: {fields}")


class MissingProfileError(PrescriptionAppError):
    def __init__(self):
        super().__init__("Please complete your doctor profile before generating prescriptions.")


class EmptyMedicationListError(PrescriptionAppError):
    def __init__(self):
        super().__init__("Please add at least one medication to the prescription.")


class EmptyCodeError(PrescriptionAppError):
    def __init__(self):
        super().__init__("Please enter a verification code")


class PrescriptionNotFoundError(PrescriptionAppError):
    def __init__(self, code: str):
        self.code = code
        super().__init__("Invalid verification code. Prescription not found.")


class PersistenceError(PrescriptionAppError):
    """A storage write failed; nothing was committed."""


class StoreClosedError(PersistenceError):
    pass


class DuplicatePrescriptionError(PersistenceError):
    def __init__(self, prescription_id: str):
        self.prescription_id = prescription_id
        super().__init__(f"Prescription {prescription_id} already exists")


class MalformedStorageError(PrescriptionAppError):
    """A stored value could not be decoded. Recovered by treating the key as absent."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Stored value for '{key}' is malformed: {reason}")


class DocumentExportError(PrescriptionAppError):
    pass


class CodeCaptureError(PrescriptionAppError):
    """An image could not be read for a verification code."""
