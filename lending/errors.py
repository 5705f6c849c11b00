"""Typed failures raised by the lending core.

Each error carries a stable ``code`` and ``status_code`` so the HTTP layer and
the CLI can translate it without inspecting messages.
"""

from __future__ import annotations


class LendingError(Exception):
    code = "lending_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFound(LendingError, LookupError):
    """A title, loan or borrower reference does not exist."""
    code = "not_found"
    status_code = 404


class OutOfStock(LendingError):
    """No copy of the title is available."""
    code = "out_of_stock"
    status_code = 409


class AlreadyClosed(LendingError):
    """The loan has already been returned."""
    code = "already_closed"
    status_code = 409


class InvalidRequest(LendingError, ValueError):
    code = "invalid"
    status_code = 400


class Unauthorized(LendingError):
    """The caller (or borrower) lacks the role or status the operation needs."""
    code = "forbidden"
    status_code = 403


class StorageFailure(LendingError):
    """The transactional scope could not complete; nothing was written.

    Safe to retry because the scope either commits fully or not at all.
    """
    code = "storage_failure"
    status_code = 503
    retryable = True
