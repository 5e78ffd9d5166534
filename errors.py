"""Error taxonomy shared by the ledger engines and the HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for per-request failures. None of them is fatal to the process."""

    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, *, message_ar: Optional[str] = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.message_ar = message_ar
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "detail": self.message}
        if self.message_ar:
            payload["message_ar"] = self.message_ar
        if self.details:
            payload["context"] = self.details
        return payload


class ValidationError(LedgerError):
    """Malformed input; surfaced immediately and never retried."""

    code = "validation_error"
    status_code = 422


class NotFoundError(LedgerError):
    """Referenced entity is absent or not visible to the learner."""

    code = "not_found"
    status_code = 404


class ConflictError(LedgerError):
    """The requested transition is not allowed from the current state."""

    code = "conflict"
    status_code = 409


class TransientStoreError(LedgerError):
    """The store was busy or unavailable; the whole logical call may be retried."""

    code = "store_unavailable"
    status_code = 503
