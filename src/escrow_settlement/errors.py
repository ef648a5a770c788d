"""Error taxonomy shared by every settlement operation.

Each error carries the ``status_code`` the HTTP boundary should answer with,
so callers can tell "retry later" (409/202/502) from "this is done" without
string matching.
"""

from __future__ import annotations

from typing import Any


class SettlementError(Exception):
    """Base exception for settlement engine errors."""

    status_code = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the caller-facing contract."""
        payload: dict[str, Any] = {"error": self.message}
        payload.update(self.details)
        return payload


class ValidationError(SettlementError):
    """Malformed input or an out-of-range amount/timestamp."""

    status_code = 400


class NotFoundError(SettlementError):
    """A referenced commitment, milestone, distribution or allocation does not exist."""

    status_code = 404


class AuthorizationError(SettlementError):
    """Bad or stale signature, or the wrong signer."""

    status_code = 401


class ForbiddenError(SettlementError):
    """Signer is valid but not eligible (not a holder, not an allocation recipient)."""

    status_code = 403


class ConflictError(SettlementError):
    """The requested state change collides with existing state."""

    status_code = 409


class LockHeldError(ConflictError):
    """The commitment is already being resolved or was resolved."""


class ParameterMismatchError(ConflictError):
    """An existing record was created with different parameters."""

    def __init__(self, message: str, *, existing: Any, expected: Any) -> None:
        super().__init__(message, existing=existing, expected=expected)
        self.existing = existing
        self.expected = expected


class ClaimInProgressError(ConflictError):
    """An unsigned claim younger than the TTL already exists."""


class AlreadyReleasedError(ConflictError):
    """The payout has already been made."""


class FeatureDisabledError(SettlementError):
    """The operation is switched off by configuration."""

    status_code = 503


class ConfigurationError(SettlementError):
    """A required setting is missing or invalid."""

    status_code = 500


class DependencyError(SettlementError):
    """An external dependency (RPC node, custodial signer, fee router) failed."""

    status_code = 502


class DependencyTimeoutError(DependencyError):
    """An external dependency did not answer in time."""

    status_code = 504


class TransferTimeoutError(DependencyError):
    """A transfer was submitted but not confirmed before the deadline.

    The transfer may still land; callers should look up its status instead of
    resubmitting.
    """

    status_code = 202

    def __init__(self, message: str, *, signature: str | None = None, **details: Any) -> None:
        super().__init__(message, signature=signature, **details)
        self.signature = signature


class InvariantViolation(SettlementError):
    """A computation produced an impossible result. Never auto-corrected."""

    status_code = 500
