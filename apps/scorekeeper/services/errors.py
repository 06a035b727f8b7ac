"""
Error taxonomy for sharing and shared-access operations.

All errors subclass ValueError so callers that only know about ValueError
(the convention used across services) still treat them as client errors.
Routes map each subclass to its own HTTP status.
"""

from typing import Optional, TypeVar

T = TypeVar("T")


class ShareError(ValueError):
    """Base class for sharing errors."""

    status_code = 400


class NotFoundError(ShareError):
    """Target, share or mirror is missing, or the caller may not know it exists."""

    status_code = 404


class ForbiddenError(ShareError):
    """Chosen link target does not belong to the caller, or the recipient refuses the item type."""

    status_code = 403


class UnauthorizedError(ShareError):
    """Caller's permission on the item is below what the operation requires."""

    status_code = 401


class ConflictError(ShareError):
    """Duplicate share, or an action on a share that has already been decided."""

    status_code = 409


class InternalError(ShareError):
    """An invariant was violated (e.g. an insert produced no row)."""

    status_code = 500


def assert_found(row: Optional[T], message: str) -> T:
    """Return ``row`` or raise NotFoundError."""
    if row is None:
        raise NotFoundError(message)
    return row


def assert_inserted(row: Optional[T], message: str) -> T:
    """Return ``row`` or raise InternalError."""
    if row is None:
        raise InternalError(message)
    return row
