"""Hybrid login: directory bind first, local bcrypt credentials as fallback.

    START -> DIRECTORY_ATTEMPT -> SUCCESS
                               -> LOCAL_FALLBACK -> LOCAL_ATTEMPT -> SUCCESS | REJECTED

A valid directory login is only accepted when it resolves to an existing,
ERP-backed local account. Login never creates accounts.
"""
from __future__ import annotations
import datetime
import enum
import logging
from typing import Any, Callable, Optional

import bcrypt

from identity_hub.config.settings import MatchingSettings
from identity_hub.core.errors import (
    AccountDisabled,
    AccountNotFound,
    BadSecret,
    IdentityError,
    IdentityNotProvisioned,
    NoLocalSecret,
    WrongAuthMode,
)
from identity_hub.core.matching import IdentityMatcher
from identity_hub.core.models import AuthMode, DirectoryIdentity, LocalAccount, LoginResult
from identity_hub.core.ports import AccountStore, PermissionResolver
from identity_hub.core.tokens import TokenService

logger = logging.getLogger(__name__)

# Compared against when the account does not exist, so both paths cost one bcrypt check
_DUMMY_HASH = bcrypt.hashpw(b"identity-hub-dummy", bcrypt.gensalt(rounds=4))


class LoginState(str, enum.Enum):
    START = "start"
    DIRECTORY_ATTEMPT = "directory_attempt"
    LOCAL_FALLBACK = "local_fallback"
    LOCAL_ATTEMPT = "local_attempt"
    SUCCESS = "success"
    REJECTED = "rejected"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def hash_secret(secret: str, rounds: int = 10) -> str:
    """bcrypt hash of ``secret`` as text."""
    return bcrypt.hashpw(secret.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_secret(secret: str, secret_hash: Optional[str]) -> bool:
    if not secret_hash:
        return False
    try:
        return bcrypt.checkpw(secret.encode("utf-8"), secret_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored local secret hash is malformed")
        return False


class HybridAuthenticator:
    """Login state machine.

    Args:
        directory: Object with ``authenticate(username, secret)`` (a ``DirectoryClient``)
        store: Local account store
        permissions: Position -> role -> permission resolver
        matcher: Links a directory identity to an ERP-backed account
        settings: Login-time matching policy
        tokens: Optional access token issuer
        clock: Aware UTC ``now``
        audit: Optional ``safe_log_identity_event``-compatible callable
    """

    def __init__(
        self,
        directory: Any,
        store: AccountStore,
        permissions: PermissionResolver,
        matcher: Optional[IdentityMatcher] = None,
        *,
        settings: Optional[MatchingSettings] = None,
        tokens: Optional[TokenService] = None,
        clock: Callable[[], datetime.datetime] = _utcnow,
        audit: Optional[Callable[..., Any]] = None,
    ):
        self.directory = directory
        self.store = store
        self.permissions = permissions
        self.settings = settings or MatchingSettings()
        self.matcher = matcher or IdentityMatcher(settings=self.settings)
        self.tokens = tokens
        self._clock = clock
        self._audit = audit

    def authenticate(self, username: str, password: str) -> LoginResult:
        """Authenticate and return the account with its permissions.

        Raises:
            IdentityNotProvisioned: Directory credentials valid but no ERP-backed account
            AccountNotFound, WrongAuthMode, NoLocalSecret, BadSecret, AccountDisabled:
                Local path failures (all shown to users as "Invalid credentials")
        """
        username = (username or "").strip()
        trace = [LoginState.START]

        trace.append(LoginState.DIRECTORY_ATTEMPT)
        try:
            identity = self.directory.authenticate(username, password)
        except IdentityError as exc:
            logger.info("Directory login for %s failed (%s); trying local credentials", username, type(exc).__name__)
            trace.append(LoginState.LOCAL_FALLBACK)
            return self._local_attempt(username, password, trace)
        except Exception:
            # Any directory fault must still leave local accounts able to log in
            logger.error("Unexpected directory error during login for %s; trying local credentials",
                         username, exc_info=True)
            trace.append(LoginState.LOCAL_FALLBACK)
            return self._local_attempt(username, password, trace)

        try:
            account = self._link_directory_identity(identity)
        except IdentityError as exc:
            self._reject(username, trace, exc, path="directory")
            raise
        return self._succeed(account, AuthMode.DIRECTORY, trace)

    # ─────────────────────────────────────────────────────────────────────────
    # Directory path
    # ─────────────────────────────────────────────────────────────────────────

    def _link_directory_identity(self, identity: DirectoryIdentity) -> LocalAccount:
        account = self.store.get_by_username(identity.username)
        if account is not None:
            if not account.active:
                raise AccountDisabled(f"account {account.username} is deactivated")
            return account

        candidates = [
            candidate for candidate in self.store.list_accounts()
            if candidate.linked_erp_id is not None
            and candidate.auth_mode is AuthMode.LOCAL
            and candidate.active
        ]
        match = self.matcher.match_identity_to_accounts(
            identity, candidates, threshold=self.settings.login_threshold
        )
        if not match.matched or (self.settings.login_requires_confidence and not match.confidence.is_sufficient):
            logger.warning(
                "Directory user %s has no ERP-backed account (%s)", identity.username, match.rationale
            )
            raise IdentityNotProvisioned(f"no ERP-backed account for directory user {identity.username}")

        account = match.record
        logger.info(
            "Linking directory user %s to account %s (%s confidence)",
            identity.username, account.username, match.confidence.value,
        )
        account.username = identity.username
        account.auth_mode = AuthMode.DIRECTORY
        if identity.email:
            account.email = identity.email.lower()
        account.given_name = identity.given_name or account.given_name
        account.surname = identity.surname or account.surname
        return self.store.update(account)

    # ─────────────────────────────────────────────────────────────────────────
    # Local path
    # ─────────────────────────────────────────────────────────────────────────

    def _local_attempt(self, username: str, password: str, trace: list[LoginState]) -> LoginResult:
        trace.append(LoginState.LOCAL_ATTEMPT)
        try:
            account = self._verify_local(username, password)
        except IdentityError as exc:
            self._reject(username, trace, exc, path="local")
            raise
        return self._succeed(account, AuthMode.LOCAL, trace)

    def _verify_local(self, username: str, password: str) -> LocalAccount:
        account = self.store.get_by_username(username) if username else None
        if account is None:
            verify_secret(password or "", _DUMMY_HASH.decode("utf-8"))
            raise AccountNotFound(f"no local account named {username!r}")
        if account.auth_mode is AuthMode.DIRECTORY:
            raise WrongAuthMode(f"account {account.username} authenticates against the directory only")
        if not account.local_secret_hash:
            raise NoLocalSecret(f"account {account.username} has no local secret")
        if not verify_secret(password or "", account.local_secret_hash):
            raise BadSecret(f"wrong local secret for {account.username}")
        if not account.active:
            raise AccountDisabled(f"account {account.username} is deactivated")
        return account

    # ─────────────────────────────────────────────────────────────────────────
    # Outcomes
    # ─────────────────────────────────────────────────────────────────────────

    def _succeed(self, account: LocalAccount, method: AuthMode, trace: list[LoginState]) -> LoginResult:
        trace.append(LoginState.SUCCESS)
        account.last_login = self._clock()
        account = self.store.update(account)
        permissions = self.permissions.resolve_permissions(account)
        token = self.tokens.issue(account, permissions) if self.tokens else ""

        logger.info("Login succeeded for %s via %s", account.username, method.value)
        self._emit("login_success", account.username, details={"method": method.value, "role": permissions.role})
        return LoginResult(
            account=account,
            permissions=permissions,
            auth_method=method,
            access_token=token,
            trace=[state.value for state in trace],
        )

    def _reject(self, username: str, trace: list[LoginState], exc: IdentityError, *, path: str) -> None:
        trace.append(LoginState.REJECTED)
        logger.info("Login rejected for %s on %s path: %s", username, path, exc.kind.value)
        self._emit("login_failure", username, details={"path": path, "reason": exc.kind.value}, success=False)

    def _emit(self, event_type: str, username: str, **kwargs: Any) -> None:
        if self._audit is not None:
            self._audit(event_type, username, operator=username or "anonymous", **kwargs)
