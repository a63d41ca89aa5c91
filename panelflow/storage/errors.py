from __future__ import annotations

from typing import Any, Dict


class ConstraintViolation(Exception):
    """A store write that would break id uniqueness for a record kind.

    ``record`` names the kind of record, such as ``definition``,
    and ``record_id`` the offending id; both are repeated in ``detail`` so
    callers can hand it straight to an API error.
    """

    reason = "violates a store constraint"

    def __init__(self, record: str, record_id: str):
        self.record = record
        self.record_id = record_id
        self.message = f"{record} {record_id} {self.reason}"
        super().__init__(self.message)

    @property
    def detail(self) -> Dict[str, Any]:
        return {"record": self.record, f"{self.record}_id": self.record_id}


class DuplicateRecord(ConstraintViolation):
    reason = "already exists"


class MissingRecord(ConstraintViolation):
    reason = "does not exist"


__all__ = ["ConstraintViolation", "DuplicateRecord", "MissingRecord"]
