"""
Identity Service Layer: the operations exposed to the HTTP API and the CLI.

Architecture:
    Flask API (/api/*) ──┐
                         ├──> IdentityService ──> HybridAuthenticator ──> DirectoryClient / AccountStore
    CLI (reconcile.py) ──┘                    ──> ReconciliationOrchestrator
                                              ──> PasswordPolicyEngine

Features:
    - Hybrid login with JWT issuance
    - Password change routed to the directory or the local store by auth mode
    - Policy validation with strength scoring and suggestions
    - Single-flight batch reconciliation
    - Signed audit events for every security-relevant outcome
"""

from __future__ import annotations
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from identity_hub.config.settings import AppConfig
from identity_hub.core.authenticator import HybridAuthenticator, hash_secret, verify_secret
from identity_hub.core.directory import DirectoryClient
from identity_hub.core.errors import (
    AccountDisabled,
    AccountNotFound,
    BadSecret,
    IdentityError,
    NoLocalSecret,
    PolicyRejected,
)
from identity_hub.core.matching import DuplicatePair, IdentityMatcher
from identity_hub.core.models import AuthMode, LocalAccount, LoginResult
from identity_hub.core.password_policy import PasswordPolicy, PasswordPolicyEngine, ValidationResult
from identity_hub.core.permissions import RolePermissionResolver
from identity_hub.core.ports import AccountStore, ErpRosterSource, PermissionResolver
from identity_hub.core.reconciliation import ReconciliationOptions, ReconciliationOrchestrator, ReconciliationResult
from identity_hub.core.roster_cache import RosterCache
from identity_hub.core.similarity import StringSimilarityEngine
from identity_hub.core.store import JsonAccountStore, JsonErpRoster
from identity_hub.core.tokens import TokenService
from scripts import audit

logger = logging.getLogger(__name__)


@dataclass
class PasswordChangeOutcome:
    username: str
    auth_mode: AuthMode
    strategy: str

    def to_dict(self) -> dict[str, Any]:
        return {"username": self.username, "auth_mode": self.auth_mode.value, "strategy": self.strategy}


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class IdentityService:
    """Facade over the identity engine.

    Args:
        cfg: Application configuration
        directory: Directory client (``authenticate``, ``fetch_all_identities``, ``change_secret``,
            ``check_connection``)
        store: Local account store
        erp_source: ERP roster source
        permissions: Permission resolver
        audit_event: ``safe_log_identity_event``-compatible callable
        clock: Aware UTC ``now``
    """

    def __init__(
        self,
        cfg: AppConfig,
        *,
        directory: Any,
        store: AccountStore,
        erp_source: ErpRosterSource,
        permissions: Optional[PermissionResolver] = None,
        policy_engine: Optional[PasswordPolicyEngine] = None,
        audit_event: Optional[Callable[..., Any]] = audit.safe_log_identity_event,
        clock: Callable[[], datetime.datetime] = _utcnow,
    ):
        self.cfg = cfg
        self.directory = directory
        self.store = store
        self.erp_source = erp_source
        self.permissions = permissions or RolePermissionResolver()
        self.policy_engine = policy_engine or PasswordPolicyEngine(PasswordPolicy.from_preset(cfg.password_policy_preset))
        self._audit = audit_event
        self._clock = clock

        engine = StringSimilarityEngine(cfg.matching)
        self.matcher = IdentityMatcher(engine, cfg.matching)
        self.tokens = TokenService(cfg.jwt_secret, cfg.jwt_algorithm, cfg.jwt_expiry_minutes)
        self.authenticator = HybridAuthenticator(
            directory,
            store,
            self.permissions,
            self.matcher,
            settings=cfg.matching,
            tokens=self.tokens,
            clock=clock,
            audit=audit_event,
        )
        self.orchestrator = ReconciliationOrchestrator(
            erp_source,
            store,
            directory,
            self.matcher,
            local_email_domain=cfg.local_email_domain,
            roster_cache=RosterCache(cfg.roster_cache_ttl),
            clock=clock,
            audit=audit_event,
        )

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "IdentityService":
        """Wire the default ldap3 directory client and JSON-file stores."""
        policy_engine = PasswordPolicyEngine(PasswordPolicy.from_preset(cfg.password_policy_preset))
        permissions = (
            RolePermissionResolver.from_yaml(cfg.permission_matrix_path)
            if cfg.permission_matrix_path
            else RolePermissionResolver()
        )
        return cls(
            cfg,
            directory=DirectoryClient(cfg.directory, policy_engine=policy_engine),
            store=JsonAccountStore(cfg.account_store_path),
            erp_source=JsonErpRoster(cfg.erp_roster_path),
            permissions=permissions,
            policy_engine=policy_engine,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Authentication
    # ─────────────────────────────────────────────────────────────────────────

    def authenticate(self, username: str, password: str) -> LoginResult:
        return self.authenticator.authenticate(username, password)

    # ─────────────────────────────────────────────────────────────────────────
    # Passwords
    # ─────────────────────────────────────────────────────────────────────────

    def validate_password_policy(
        self,
        password: str,
        hints: Optional[Mapping[str, str]] = None,
    ) -> tuple[ValidationResult, list[str]]:
        """Validation result plus improvement suggestions."""
        result = self.policy_engine.validate(password, hints)
        return result, self.policy_engine.suggest(result)

    def change_password(self, username: str, current: str, new: str, confirm: str) -> PasswordChangeOutcome:
        """Change a user's password where their credentials live.

        Policy problems are reported before the directory is contacted.

        Raises:
            PolicyRejected: Confirmation mismatch or policy violations
            AccountNotFound / AccountDisabled / NoLocalSecret / BadSecret: Local-path failures
            AuthFailed, ConnectionUnavailable, ChangeUnverified: Directory-path failures
        """
        username = (username or "").strip()
        try:
            if new != confirm:
                raise PolicyRejected(["New password and confirmation do not match"])
            if current and new == current:
                raise PolicyRejected(["New password must differ from the current password"])

            account = self.store.get_by_username(username)
            if account is None:
                raise AccountNotFound(f"no account named {username!r}")
            if not account.active:
                raise AccountDisabled(f"account {account.username} is deactivated")

            hints = _owner_hints(account)
            validation = self.policy_engine.validate(new, hints)
            if not validation.is_valid:
                raise PolicyRejected(validation.messages)

            if account.auth_mode is AuthMode.DIRECTORY:
                report = self.directory.change_secret(account.username, current, new, owner_hints=hints)
                outcome = PasswordChangeOutcome(account.username, AuthMode.DIRECTORY, report.strategy)
            else:
                outcome = self._change_local_secret(account, current, new)
        except IdentityError as exc:
            logger.info("Password change rejected for %s: %s", username, exc.kind.value)
            self._emit("password_change", username, details={"reason": exc.kind.value}, success=False)
            raise

        self._emit("password_change", outcome.username, details={
            "auth_mode": outcome.auth_mode.value,
            "strategy": outcome.strategy,
        })
        return outcome

    def _change_local_secret(self, account: LocalAccount, current: str, new: str) -> PasswordChangeOutcome:
        if not account.local_secret_hash:
            raise NoLocalSecret(f"account {account.username} has no local secret")
        if not verify_secret(current or "", account.local_secret_hash):
            raise BadSecret(f"wrong current secret for {account.username}")
        account.local_secret_hash = hash_secret(new, self.cfg.bcrypt_rounds)
        self.store.update(account)
        logger.info("Local password changed for %s", account.username)
        return PasswordChangeOutcome(account.username, AuthMode.LOCAL, "local")

    def set_local_password(self, username: str, new: str, *, operator: str = "cli") -> LocalAccount:
        """Administrative reset of a local account's password (policy still applies).

        Raises:
            AccountNotFound: No such account
            PolicyRejected: Directory accounts, or the password fails policy
        """
        account = self.store.get_by_username(username)
        if account is None:
            raise AccountNotFound(f"no account named {username!r}")
        if account.auth_mode is AuthMode.DIRECTORY:
            raise PolicyRejected(["Directory accounts change their password in the directory"])
        validation = self.policy_engine.validate(new, _owner_hints(account))
        if not validation.is_valid:
            raise PolicyRejected(validation.messages)
        account.local_secret_hash = hash_secret(new, self.cfg.bcrypt_rounds)
        account = self.store.update(account)
        self._emit("password_set", account.username, operator=operator)
        return account

    # ─────────────────────────────────────────────────────────────────────────
    # Reconciliation
    # ─────────────────────────────────────────────────────────────────────────

    def run_reconciliation(self, only_active: bool = False, force_full: bool = False) -> ReconciliationResult:
        return self.orchestrator.run(ReconciliationOptions(only_active=only_active, force_full=force_full))

    def sync_status(self, *, check_directory: bool = True) -> dict[str, Any]:
        """Snapshot for operators: ERP roster size, account counts, last run in this process.

        An unreadable ERP roster is reported as ``erp_available: False`` rather than raised.
        """
        try:
            erp_records = list(self.erp_source.fetch_erp_roster())
        except Exception:
            logger.warning("ERP roster unreadable while building sync status", exc_info=True)
            erp_records = None

        accounts = self.store.list_accounts()
        active = sum(1 for account in accounts if account.active)
        last = self.orchestrator.last_result

        status: dict[str, Any] = {
            "erp_available": erp_records is not None,
            "erp_roster_size": len(erp_records) if erp_records is not None else None,
            "accounts": {"active": active, "inactive": len(accounts) - active},
            "last_run": last.to_dict() if last is not None else None,
        }
        if check_directory:
            status["directory"] = self.directory.check_connection()
        return status

    def find_duplicates(self) -> list[DuplicatePair]:
        return self.matcher.find_duplicates(self.store.list_accounts())

    def _emit(self, event_type: str, username: str, **kwargs: Any) -> None:
        if self._audit is not None:
            kwargs.setdefault("operator", username or "anonymous")
            self._audit(event_type, username, **kwargs)


def _owner_hints(account: LocalAccount) -> dict[str, str]:
    return {
        "username": account.username,
        "given_name": account.given_name,
        "surname": account.surname,
        "email": account.email,
    }
