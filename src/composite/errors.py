"""
Error types and aggregation for composite reconciliation.

Errors fall into two classes. Permanent errors (malformed state, unresolvable
kinds, invalid ownership) must not be retried blindly. Everything else,
notably storage I/O failures, is transient and expected to be retried by
re-invoking reconciliation later.
"""

from enum import Enum
from typing import Callable, List, Optional, Tuple


class ErrorClass(Enum):
    """Retry classification of a reconciliation error."""

    PERMANENT = "permanent"
    TRANSIENT = "transient"


class PermanentError(Exception):
    """Wraps an error that should not result in a retry."""

    def __init__(self, cause: Exception):
        self.cause = cause
        super().__init__(str(cause))


class CompositeError(Exception):
    """Several independent failures reported as one error."""

    def __init__(self, errors: Optional[List[Exception]] = None):
        self.errors: List[Exception] = list(errors or [])
        super().__init__()

    def __str__(self) -> str:
        if not self.errors:
            return "no errors occurred"
        if len(self.errors) == 1:
            return str(self.errors[0])
        return "multiple errors occurred: " + ", ".join(str(e) for e in self.errors)

    def __repr__(self) -> str:
        return f"CompositeError({self.errors!r})"

    def __len__(self) -> int:
        return len(self.errors)


def append(existing: Optional[Exception], *errors: Optional[Exception]):
    """
    Combine errors, preserving each individual failure.

    Args:
        existing: Previously accumulated error, or None.
        errors: Errors to add. None entries are ignored.

    Returns:
        None when there is nothing to report, the single error object
        unchanged when only one was ever added, otherwise a CompositeError
        holding every cause in order.
    """
    result = existing
    for err in errors:
        if err is None:
            continue

        if result is None:
            result = err
            continue

        if not isinstance(result, CompositeError):
            result = CompositeError([result])

        if isinstance(err, CompositeError):
            result.errors.extend(err.errors)
        else:
            result.errors.append(err)

    return result


def _causes(err: Optional[Exception]) -> List[Exception]:
    if err is None:
        return []
    if isinstance(err, CompositeError):
        return list(err.errors)
    return [err]


def is_permanent(err: Optional[Exception]) -> bool:
    """Return True if the error should not result in a retry."""
    if isinstance(err, CompositeError) and len(err.errors) == 1:
        err = err.errors[0]
    return isinstance(err, PermanentError)


def classify(err: Exception) -> ErrorClass:
    """Classify an error for the caller's retry policy."""
    if is_permanent(err):
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT


# ==================== Storage Errors ====================


class StorageError(Exception):
    """An error status returned by the storage collaborator."""

    status = 500
    reason = "InternalError"

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        self.message = message
        if status is not None:
            self.status = status
        if reason is not None:
            self.reason = reason
        super().__init__(message)


class BadRequestError(StorageError):
    status = 400
    reason = "BadRequest"


class NotFoundError(StorageError):
    status = 404
    reason = "NotFound"


class ConflictError(StorageError):
    status = 409
    reason = "Conflict"


class InvalidError(StorageError):
    status = 422
    reason = "Invalid"


class ServiceUnavailableError(StorageError):
    status = 503
    reason = "ServiceUnavailable"


_ERRORS_BY_STATUS = {
    cls.status: cls
    for cls in (
        BadRequestError,
        NotFoundError,
        ConflictError,
        InvalidError,
        ServiceUnavailableError,
    )
}


def error_for_status(status: int, message: str, reason: Optional[str] = None):
    """Build the storage error matching an HTTP-style status code."""
    cls = _ERRORS_BY_STATUS.get(status, StorageError)
    return cls(message, status=status, reason=reason)


def is_not_found(err: Optional[Exception]) -> bool:
    return isinstance(err, NotFoundError)


def is_conflict(err: Optional[Exception]) -> bool:
    return isinstance(err, ConflictError)


def api_statuses(err: Optional[Exception]) -> Tuple[List[StorageError], bool]:
    """
    Extract storage statuses from an error.

    Args:
        err: A single error or a CompositeError.

    Returns:
        The storage errors found, and whether every cause was one.
    """
    statuses: List[StorageError] = []
    only_statuses = True
    for cause in _causes(err):
        if isinstance(cause, StorageError):
            statuses.append(cause)
        else:
            only_statuses = False
    return statuses, only_statuses


def all_errors(
    err: Optional[Exception], predicate: Callable[[Exception], bool]
) -> bool:
    """Return True if every cause of err satisfies predicate."""
    return all(predicate(cause) for cause in _causes(err))
