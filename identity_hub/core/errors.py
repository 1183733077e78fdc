"""Identity engine exceptions.

Every failure the engine can report is one subclass of ``IdentityError``. Callers
branch on the exception type (or ``kind``), never on message text.
"""
from __future__ import annotations
import enum
from typing import Any


GENERIC_LOGIN_MESSAGE = "Invalid credentials"


class ErrorKind(str, enum.Enum):
    CONNECTION_UNAVAILABLE = "connection_unavailable"
    TIMEOUT = "timeout"
    AUTH_FAILED = "auth_failed"
    POLICY_REJECTED = "policy_rejected"
    IDENTITY_NOT_PROVISIONED = "identity_not_provisioned"
    CHANGE_UNVERIFIED = "change_unverified"
    PARTIAL_BATCH_FAILURE = "partial_batch_failure"
    ACCOUNT_NOT_FOUND = "account_not_found"
    WRONG_AUTH_MODE = "wrong_auth_mode"
    NO_LOCAL_SECRET = "no_local_secret"
    BAD_SECRET = "bad_secret"
    ACCOUNT_DISABLED = "account_disabled"


class IdentityError(Exception):
    """Base exception for all identity engine operations.

    Attributes:
        message: Internal diagnostic message (safe to log, never contains secrets)
        kind: Closed error category
        status: HTTP status used by the API layer
        public_message: Message safe to show to the end user
    """

    kind: ErrorKind = ErrorKind.CONNECTION_UNAVAILABLE
    status: int = 500
    public_message: str = "The identity service could not complete the request"
    # Category shown to clients when it must not reveal the exact kind
    public_kind: ErrorKind | None = None

    def __init__(self, message: str = ""):
        self.message = message or self.public_message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the user-safe JSON error body."""
        return {"error": (self.public_kind or self.kind).value, "message": self.public_message}


# ─────────────────────────────────────────────────────────────────────────────
# Directory transport
# ─────────────────────────────────────────────────────────────────────────────

class ConnectionUnavailable(IdentityError):
    """Transport-level failure; the next fallback strategy may succeed.

    Attributes:
        attempts: Strategy attempts made before giving up (when raised by the runner)
    """

    kind = ErrorKind.CONNECTION_UNAVAILABLE
    status = 503
    public_message = "The directory service is currently unavailable"

    def __init__(self, message: str = "", attempts: list | None = None):
        self.attempts = list(attempts or [])
        super().__init__(message)


class DirectoryTimeout(ConnectionUnavailable):
    """A strategy exceeded its wall-clock budget."""

    kind = ErrorKind.TIMEOUT
    status = 504


# ─────────────────────────────────────────────────────────────────────────────
# Credentials and policy
# ─────────────────────────────────────────────────────────────────────────────

class AuthFailed(IdentityError):
    """Credentials were rejected."""

    kind = ErrorKind.AUTH_FAILED
    public_kind = ErrorKind.AUTH_FAILED
    status = 401
    public_message = GENERIC_LOGIN_MESSAGE


class PolicyRejected(IdentityError):
    """Candidate password (or change request) failed validation.

    Attributes:
        violations: Human-readable violations the user can act on
    """

    kind = ErrorKind.POLICY_REJECTED
    status = 400
    public_message = "The new password does not meet the password policy"

    def __init__(self, violations: list[str], message: str = ""):
        self.violations = list(violations)
        super().__init__(message or "; ".join(self.violations) or self.public_message)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["violations"] = self.violations
        return body


class IdentityNotProvisioned(IdentityError):
    """Directory credentials were valid but no ERP-backed account exists."""

    kind = ErrorKind.IDENTITY_NOT_PROVISIONED
    public_kind = ErrorKind.AUTH_FAILED
    status = 401
    public_message = GENERIC_LOGIN_MESSAGE


class ChangeUnverified(IdentityError):
    """A password write could not be confirmed by re-authenticating."""

    kind = ErrorKind.CHANGE_UNVERIFIED
    status = 502
    public_message = "The password change could not be confirmed; please try again or contact support"


class PartialBatchFailure(IdentityError):
    """Some records in a batch failed. Collected, never raised by a batch run.

    Attributes:
        errors: Per-record error entries
    """

    kind = ErrorKind.PARTIAL_BATCH_FAILURE
    status = 207
    public_message = "Some records could not be processed"

    def __init__(self, errors: list, message: str = ""):
        self.errors = list(errors)
        super().__init__(message or f"{len(self.errors)} record(s) failed")


# ─────────────────────────────────────────────────────────────────────────────
# Local login path (all share the generic public message)
# ─────────────────────────────────────────────────────────────────────────────

class LocalLoginError(AuthFailed):
    """Base for local credential failures."""


class AccountNotFound(LocalLoginError):
    kind = ErrorKind.ACCOUNT_NOT_FOUND


class WrongAuthMode(LocalLoginError):
    """Account is directory-only and cannot use a local secret."""

    kind = ErrorKind.WRONG_AUTH_MODE


class NoLocalSecret(LocalLoginError):
    kind = ErrorKind.NO_LOCAL_SECRET


class BadSecret(LocalLoginError):
    kind = ErrorKind.BAD_SECRET


class AccountDisabled(LocalLoginError):
    """Account was deactivated by reconciliation."""

    kind = ErrorKind.ACCOUNT_DISABLED
