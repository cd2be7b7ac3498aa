"""
Service error types.

Every error raised by the business layer is a ServiceError carrying a
machine-readable code, a human message, an HTTP status and a details dict.
The subclasses name the error kind; the code names the specific failure.
"""

from __future__ import annotations

from typing import Any, ClassVar


class ServiceError(Exception):
    """Base error with a stable error code and HTTP status."""

    def __init__(
        self,
        error: str,
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.message = message
        self.status_code = status_code
        self.details: dict[str, Any] = details if details is not None else {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error!r}, {self.message!r}, {self.status_code})"


class _KindError(ServiceError):
    """ServiceError whose HTTP status is fixed by its kind."""

    STATUS_CODE: ClassVar[int] = 500

    def __init__(self, error: str, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(error, message, self.STATUS_CODE, details)


class InvalidInput(_KindError):
    """Malformed or out-of-range input (zero reward, past deadline, empty field)."""

    STATUS_CODE = 400


class InsufficientFunds(_KindError):
    """Payer balance or allowance does not cover the requested amount."""

    STATUS_CODE = 402


class NotAuthorized(_KindError):
    """Caller does not hold the role the operation requires."""

    STATUS_CODE = 403


class NotFound(_KindError):
    """Unknown task, milestone, dispute or escrow."""

    STATUS_CODE = 404


class InvalidState(_KindError):
    """Operation is not allowed from the record's current state."""

    STATUS_CODE = 409


class TransferFailed(_KindError):
    """A fund movement could not be committed."""

    STATUS_CODE = 502


__all__ = [
    "InsufficientFunds",
    "InvalidInput",
    "InvalidState",
    "NotAuthorized",
    "NotFound",
    "ServiceError",
    "TransferFailed",
]
