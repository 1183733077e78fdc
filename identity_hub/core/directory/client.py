"""Directory client: authenticate, enumerate, check reachability and change credentials.

Every operation runs through ordered fallback strategies
(see ``strategies.run_fallback``) so an unreliable link or a transport the
server refuses degrades to the next option instead of failing outright.
"""
from __future__ import annotations
import functools
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, TypeVar

from identity_hub.config.settings import DirectorySettings
from identity_hub.core.directory.connection import DirectoryConnector
from identity_hub.core.directory.entries import down_level_logon_name
from identity_hub.core.directory.password_change import PasswordChangeRequest, build_change_strategies
from identity_hub.core.directory.strategies import AttemptRecord, Strategy, run_fallback
from identity_hub.core.errors import AuthFailed, ChangeUnverified, ConnectionUnavailable, PolicyRejected
from identity_hub.core.models import DirectoryIdentity
from identity_hub.core.password_policy import PasswordPolicyEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ChangeReport:
    """Outcome of a verified directory password change."""
    username: str
    strategy: str
    attempts: list[AttemptRecord] = field(default_factory=list)


class DirectoryClient:
    """Talk to the enterprise directory over fallback transports.

    Args:
        settings: Directory connection settings
        connector: Connection factory (defaults to an ldap3-backed connector)
        policy_engine: Validates new passwords before any network call
        http: ``requests``-compatible module/session for the change API
        run_process: ``subprocess.run``-compatible callable for the helper
    """

    def __init__(
        self,
        settings: DirectorySettings,
        *,
        connector: Optional[DirectoryConnector] = None,
        policy_engine: Optional[PasswordPolicyEngine] = None,
        http: Any = None,
        run_process: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.settings = settings
        self.connector = connector or DirectoryConnector(settings)
        self.policy_engine = policy_engine or PasswordPolicyEngine()
        self._http = http
        self._run_process = run_process

    # ─────────────────────────────────────────────────────────────────────────
    # Authentication
    # ─────────────────────────────────────────────────────────────────────────

    def authenticate(self, username: str, secret: str) -> DirectoryIdentity:
        """Bind as the user and return their directory identity.

        Raises:
            AuthFailed: Credentials rejected (or empty; an empty simple bind
                would be an unauthenticated bind)
            ConnectionUnavailable: No transport could reach the directory
        """
        username = (username or "").strip()
        if not username or not secret:
            raise AuthFailed("empty username or secret")

        strategies = [
            Strategy(
                transport,
                functools.partial(self._bind_and_lookup, transport, username, secret),
                timeout=self.settings.auth_timeout,
            )
            for transport in self.settings.transports
        ]
        outcome = run_fallback(strategies, operation="authenticate")
        logger.info("Directory authentication succeeded for %s via %s", username, outcome.strategy)
        return outcome.value

    def _bind_and_lookup(self, transport: str, username: str, secret: str) -> DirectoryIdentity:
        with self.connector.session(
            transport,
            user=down_level_logon_name(username, self.settings.domain),
            password=secret,
            timeout=self.settings.auth_timeout,
        ) as session:
            identity = session.find_identity(username)
        if identity is None:
            raise AuthFailed("bind succeeded but the directory entry was not found")
        return identity

    # ─────────────────────────────────────────────────────────────────────────
    # Roster enumeration
    # ─────────────────────────────────────────────────────────────────────────

    def _roster_strategies(
        self,
        work: Callable[[str, Optional[str], Optional[str]], T],
        timeout: float,
    ) -> list[Strategy[T]]:
        """Service-account binds over every transport, then anonymous binds."""
        strategies: list[Strategy[T]] = []
        if self.settings.service_bind_dn and self.settings.service_bind_password:
            strategies.extend(
                Strategy(
                    f"service/{transport}",
                    functools.partial(
                        work,
                        transport,
                        self.settings.service_bind_dn,
                        self.settings.service_bind_password,
                    ),
                    timeout=timeout,
                )
                for transport in self.settings.transports
            )
        strategies.extend(
            Strategy(
                f"anonymous/{transport}",
                functools.partial(work, transport, None, None),
                timeout=timeout,
            )
            for transport in self.settings.transports
        )
        return strategies

    def fetch_all_identities(self) -> list[DirectoryIdentity]:
        """Every enabled person in the directory; ``[]`` when the directory is unreachable.

        Service-account search is tried over every transport first, then
        anonymous search. Never raises.
        """
        try:
            outcome = run_fallback(
                self._roster_strategies(self._search_people, self.settings.search_timeout),
                operation="fetch_all_identities",
                retry_on=(ConnectionUnavailable, AuthFailed),
            )
        except ConnectionUnavailable as exc:
            logger.warning("Directory roster unavailable, continuing without it: %s", exc)
            return []
        except Exception:
            logger.error("Unexpected error while reading the directory roster", exc_info=True)
            return []

        identities = outcome.value
        logger.info("Directory roster loaded: %d identities via %s", len(identities), outcome.strategy)
        return identities

    def _search_people(self, transport: str, user: Optional[str], password: Optional[str]) -> list[DirectoryIdentity]:
        with self.connector.session(
            transport,
            user=user,
            password=password,
            timeout=self.settings.search_timeout,
        ) as session:
            return session.search_people()

    def check_connection(self) -> dict[str, Any]:
        """Whether a roster bind (service account or anonymous) currently succeeds.

        Returns ``{"reachable", "strategy", "attempts"}``. Never raises.
        """
        attempts: list[AttemptRecord] = []
        strategy = None
        try:
            outcome = run_fallback(
                self._roster_strategies(self._bind_only, self.settings.auth_timeout),
                operation="check_connection",
                retry_on=(ConnectionUnavailable, AuthFailed),
            )
            strategy, attempts = outcome.strategy, outcome.attempts
        except ConnectionUnavailable as exc:
            logger.warning("Directory connection check failed: %s", exc)
            attempts = list(exc.attempts or [])
        except Exception:
            logger.error("Unexpected error during directory connection check", exc_info=True)

        return {
            "reachable": strategy is not None,
            "strategy": strategy,
            "attempts": [
                {"strategy": a.strategy, "outcome": a.outcome, "elapsed_ms": a.elapsed_ms} for a in attempts
            ],
        }

    def _bind_only(self, transport: str, user: Optional[str], password: Optional[str]) -> bool:
        with self.connector.session(transport, user=user, password=password, timeout=self.settings.auth_timeout):
            return True

    # ─────────────────────────────────────────────────────────────────────────
    # Credential change
    # ─────────────────────────────────────────────────────────────────────────

    def change_secret(
        self,
        username: str,
        old_secret: str,
        new_secret: str,
        *,
        owner_hints: Optional[Mapping[str, str]] = None,
    ) -> ChangeReport:
        """Change a directory password and verify it by logging in with it.

        Steps: policy check (no network), bind with the old secret, resolve
        the user's DN, try each write mechanism in order, re-authenticate
        with the new secret.

        Raises:
            PolicyRejected: New secret fails policy (before any network call)
                or the directory refused it
            AuthFailed: Old secret is wrong
            ConnectionUnavailable: Directory unreachable or no write mechanism worked
            ChangeUnverified: A write reported success but the new secret does not work
        """
        username = (username or "").strip()
        hints = {"username": username, **(owner_hints or {})}
        validation = self.policy_engine.validate(new_secret, hints)
        if not validation.is_valid:
            raise PolicyRejected(validation.messages)
        if not old_secret:
            raise AuthFailed("empty current secret")

        user_dn = self._resolve_dn_as_user(username, old_secret)
        change = PasswordChangeRequest(
            username=username,
            user_dn=user_dn,
            old_password=old_secret,
            new_password=new_secret,
        )
        strategies = build_change_strategies(
            self.settings,
            self.connector,
            change,
            http=self._http,
            run_process=self._run_process,
        )
        outcome = run_fallback(strategies, operation="change_secret")

        try:
            self.authenticate(username, new_secret)
        except (AuthFailed, ConnectionUnavailable) as exc:
            logger.error(
                "Password change for %s via %s could not be verified (%s)",
                username, outcome.strategy, type(exc).__name__,
            )
            raise ChangeUnverified(f"write via {outcome.strategy} not confirmed by re-authentication") from exc

        logger.info("Password changed and verified for %s via %s", username, outcome.strategy)
        return ChangeReport(username=username, strategy=outcome.strategy, attempts=outcome.attempts)

    def _resolve_dn_as_user(self, username: str, secret: str) -> str:
        strategies = [
            Strategy(
                transport,
                functools.partial(self._bind_and_find_dn, transport, username, secret),
                timeout=self.settings.auth_timeout,
            )
            for transport in self.settings.transports
        ]
        return run_fallback(strategies, operation="resolve_dn").value

    def _bind_and_find_dn(self, transport: str, username: str, secret: str) -> str:
        with self.connector.session(
            transport,
            user=down_level_logon_name(username, self.settings.domain),
            password=secret,
            timeout=self.settings.auth_timeout,
        ) as session:
            user_dn = session.find_dn(username)
        if not user_dn:
            raise AuthFailed("directory entry not found for password change")
        return user_dn
