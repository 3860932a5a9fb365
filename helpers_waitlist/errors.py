"""
Error taxonomy for registration reconciliation.

Per-patient errors (missing dates, empty episodes) are collected into the run
report and never stop other patients. RegistrationInputError is fatal.
"""

from typing import Any, Optional


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""

    kind = "ReconciliationError"

    def __init__(self, message: str, patient_id: Any = None, registration_ids: Optional[list] = None):
        super().__init__(message)
        self.patient_id = patient_id
        self.registration_ids = list(registration_ids or [])

    def to_dict(self):
        return {
            "patient_id": self.patient_id,
            "kind": self.kind,
            "message": str(self),
            "registration_ids": self.registration_ids,
        }


class MissingDateError(ReconciliationError):
    """A registration has no resolvable waitlist end date."""

    kind = "MissingDateError"


class EmptyEpisodeError(ReconciliationError):
    """An episode is empty or none of its rows has an end date."""

    kind = "EmptyEpisodeError"


class InconsistentOutcomeError(ReconciliationError):
    """Transplant outcome with a negative wait time (reported as a warning)."""

    kind = "InconsistentOutcomeError"


class RegistrationInputError(ReconciliationError):
    """The input collection cannot be resolved; aborts the run."""

    kind = "RegistrationInputError"
