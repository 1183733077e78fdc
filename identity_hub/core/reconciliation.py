"""Batch reconciliation of the ERP roster, local accounts and the directory roster.

Per ERP record:
    linked account exists  -> UPDATE (refresh names/active, maybe flip to directory)
    no linked account      -> CREATE (directory-backed if matched confidently, local otherwise)
Afterwards every active account linked to an ERP id absent from the roster is
deactivated, never deleted.

A failure on one record is recorded and the batch carries on. Runs are
serialized by a lock so two concurrent runs cannot create the same account twice.
"""
from __future__ import annotations
import datetime
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from identity_hub.core.errors import PartialBatchFailure
from identity_hub.core.matching import IdentityMatcher
from identity_hub.core.models import AuthMode, Confidence, DirectoryIdentity, ErpPersonRecord, LocalAccount
from identity_hub.core.ports import AccountStore, DirectoryRoster, ErpRosterSource
from identity_hub.core.roster_cache import RosterCache
from identity_hub.core.validators import generate_username, split_full_name, validate_email, validate_name

logger = logging.getLogger(__name__)

ROSTER_ERROR_ID = "*roster*"

AuditHook = Callable[..., Any]


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class ReconciliationOptions:
    only_active: bool = False
    force_full: bool = False


@dataclass(frozen=True)
class RecordError:
    external_id: str
    kind: str
    message: str


@dataclass
class ReconciliationResult:
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    deactivated: int = 0
    skipped: int = 0
    errors: list[RecordError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: list[dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime.datetime] = None
    finished_at: Optional[datetime.datetime] = None

    @property
    def ok(self) -> bool:
        return not self.errors

    def partial_failure(self) -> Optional[PartialBatchFailure]:
        """Errors as a PartialBatchFailure value (for callers that report it)."""
        return PartialBatchFailure(self.errors) if self.errors else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "deactivated": self.deactivated,
            "skipped": self.skipped,
            "errors": [error.__dict__ for error in self.errors],
            "warnings": list(self.warnings),
            "details": list(self.details),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


# Fields whose change counts as a material update
_MATERIAL_FIELDS = (
    "username", "email", "given_name", "surname", "full_name_source_erp",
    "auth_mode", "active", "position", "org_unit_id",
)


def _material(account: LocalAccount) -> tuple:
    return tuple(getattr(account, name) for name in _MATERIAL_FIELDS)


class ReconciliationOrchestrator:
    """Drive a reconciliation pass through the external collaborators.

    Args:
        erp_source: Authoritative ERP roster
        store: Local account store (written per record)
        directory: Best-effort directory roster (``fetch_all_identities`` never raises)
        matcher: Fuzzy identity matcher (batch threshold)
        local_email_domain: Domain for generated local emails
        roster_cache: Optional TTL cache for the directory roster
        clock: Aware UTC ``now`` (injectable for tests)
        audit: Optional ``safe_log_identity_event``-compatible callable
    """

    def __init__(
        self,
        erp_source: ErpRosterSource,
        store: AccountStore,
        directory: DirectoryRoster,
        matcher: Optional[IdentityMatcher] = None,
        *,
        local_email_domain: str = "example.local",
        roster_cache: Optional[RosterCache] = None,
        clock: Callable[[], datetime.datetime] = _utcnow,
        audit: Optional[AuditHook] = None,
    ):
        self.erp_source = erp_source
        self.store = store
        self.directory = directory
        self.matcher = matcher or IdentityMatcher()
        self.local_email_domain = local_email_domain
        self.roster_cache = roster_cache
        self._clock = clock
        self._audit = audit
        self._lock = threading.Lock()
        self.last_result: Optional[ReconciliationResult] = None

    # ─────────────────────────────────────────────────────────────────────────
    # Entry points
    # ─────────────────────────────────────────────────────────────────────────

    def run(self, options: Optional[ReconciliationOptions] = None) -> ReconciliationResult:
        """Pull all three rosters and reconcile them. Never raises for data errors.

        If the ERP roster itself cannot be read the run stops before touching
        any account; an unreadable roster must never look like an empty one.
        """
        options = options or ReconciliationOptions()
        with self._lock:
            try:
                erp_records = list(self.erp_source.fetch_erp_roster())
            except Exception as exc:
                logger.error("ERP roster could not be read; reconciliation aborted", exc_info=True)
                result = ReconciliationResult(started_at=self._clock(), finished_at=self._clock())
                result.errors.append(RecordError(ROSTER_ERROR_ID, type(exc).__name__, "ERP roster could not be read"))
                self.last_result = result
                return result

            if options.force_full and self.roster_cache is not None:
                self.roster_cache.invalidate()
            directory_identities = self._load_directory_roster()
            self.last_result = self._reconcile(erp_records, directory_identities, options)
            return self.last_result

    def reconcile(
        self,
        erp_records: Iterable[ErpPersonRecord],
        directory_identities: Iterable[DirectoryIdentity],
        options: Optional[ReconciliationOptions] = None,
    ) -> ReconciliationResult:
        """Reconcile explicit rosters against the account store."""
        with self._lock:
            self.last_result = self._reconcile(
                list(erp_records), list(directory_identities), options or ReconciliationOptions()
            )
            return self.last_result

    # ─────────────────────────────────────────────────────────────────────────
    # Core pass (lock held)
    # ─────────────────────────────────────────────────────────────────────────

    def _reconcile(
        self,
        erp_records: list[ErpPersonRecord],
        directory_identities: list[DirectoryIdentity],
        options: ReconciliationOptions,
    ) -> ReconciliationResult:
        now = self._clock()
        result = ReconciliationResult(started_at=now)
        if options.only_active:
            erp_records = [record for record in erp_records if record.active]

        if not erp_records:
            result.warnings.append("ERP roster is empty; every linked account will be deactivated")
        if not directory_identities:
            result.warnings.append("Directory roster is empty or unavailable; new accounts will be local")

        usernames = {account.username.lower() for account in self.store.list_accounts()}
        directory_by_username = {identity.username.lower(): identity for identity in directory_identities}
        present_ids: set[str] = set()

        for record in erp_records:
            erp_id = record.external_person_id
            try:
                if erp_id in present_ids:
                    raise ValueError(f"ERP id {erp_id} appears more than once in the roster")
                present_ids.add(erp_id)

                existing = self.store.get_by_linked_erp_id(erp_id)
                if existing is not None:
                    self._update(existing, record, directory_identities, directory_by_username, usernames, result, now)
                elif not record.active:
                    result.skipped += 1
                    result.details.append({"external_id": erp_id, "action": "skipped", "reason": "inactive in ERP"})
                else:
                    self._create(record, directory_identities, usernames, result, now)
            except Exception as exc:
                logger.warning("Reconciliation failed for ERP record %s: %s", erp_id, exc)
                result.errors.append(RecordError(erp_id, type(exc).__name__, str(exc)))

        self._deactivate_missing(present_ids, result, now)

        result.finished_at = self._clock()
        logger.info(
            "Reconciliation finished: created=%d updated=%d unchanged=%d deactivated=%d skipped=%d errors=%d",
            result.created, result.updated, result.unchanged, result.deactivated, result.skipped, len(result.errors),
        )
        self._emit("reconcile_run", "*", details={
            "created": result.created,
            "updated": result.updated,
            "deactivated": result.deactivated,
            "errors": len(result.errors),
        }, success=result.ok)
        return result

    def _create(
        self,
        record: ErpPersonRecord,
        directory_identities: list[DirectoryIdentity],
        usernames: set[str],
        result: ReconciliationResult,
        now: datetime.datetime,
    ) -> None:
        full_name = validate_name(record.full_name, "Full name")
        available = [identity for identity in directory_identities if identity.username.lower() not in usernames]
        match = self.matcher.match_record_to_identities(record, available)

        if match.matched and match.confidence.is_sufficient:
            identity = match.record
            given, surname = split_full_name(full_name)
            account = LocalAccount(
                username=identity.username,
                email=validate_email(identity.email or f"{identity.username}@{self.local_email_domain}"),
                given_name=identity.given_name or given,
                surname=identity.surname or surname,
                full_name_source_erp=full_name,
                auth_mode=AuthMode.DIRECTORY,
                linked_erp_id=record.external_person_id,
                position=record.job_title,
                org_unit_id=record.org_unit_id,
                last_sync_at=now,
            )
        else:
            if match.matched:
                result.warnings.append(
                    f"ERP {record.external_person_id} ({full_name}): {match.confidence.value}-confidence "
                    f"directory match ignored: {match.rationale}"
                )
            username = generate_username(
                full_name, lambda name: name.lower() in usernames, discriminator=record.external_person_id
            )
            given, surname = split_full_name(full_name)
            account = LocalAccount(
                username=username,
                email=validate_email(f"{username}@{self.local_email_domain}"),
                given_name=given,
                surname=surname,
                full_name_source_erp=full_name,
                auth_mode=AuthMode.LOCAL,
                linked_erp_id=record.external_person_id,
                position=record.job_title,
                org_unit_id=record.org_unit_id,
                last_sync_at=now,
            )

        created = self.store.create(account)
        usernames.add(created.username.lower())
        result.created += 1
        result.details.append({
            "external_id": record.external_person_id,
            "action": "created",
            "username": created.username,
            "auth_mode": created.auth_mode.value,
            "match": match.rationale if created.auth_mode is AuthMode.DIRECTORY else None,
        })
        self._emit("reconcile_create", created.username, details={
            "external_id": record.external_person_id,
            "auth_mode": created.auth_mode.value,
        })

    def _update(
        self,
        account: LocalAccount,
        record: ErpPersonRecord,
        directory_identities: list[DirectoryIdentity],
        directory_by_username: dict[str, DirectoryIdentity],
        usernames: set[str],
        result: ReconciliationResult,
        now: datetime.datetime,
    ) -> None:
        before = _material(account)
        previous_username = account.username
        full_name = validate_name(record.full_name, "Full name")

        account.full_name_source_erp = full_name
        account.position = record.job_title
        account.org_unit_id = record.org_unit_id
        account.active = record.active

        if account.auth_mode is AuthMode.DIRECTORY:
            identity = directory_by_username.get(account.username.lower())
            if identity is not None:
                _adopt_directory_fields(account, identity)
        else:
            account.given_name, account.surname = split_full_name(full_name)
            taken = usernames - {account.username.lower()}
            available = [identity for identity in directory_identities if identity.username.lower() not in taken]
            match = self.matcher.match_record_to_identities(record, available)
            if match.matched and match.confidence.is_sufficient:
                account.username = match.record.username
                _adopt_directory_fields(account, match.record)
                account.auth_mode = AuthMode.DIRECTORY
            elif match.matched and match.confidence is Confidence.LOW:
                result.warnings.append(
                    f"ERP {record.external_person_id} ({full_name}): low-confidence directory match ignored: {match.rationale}"
                )

        changed = _material(account) != before
        account.last_sync_at = now
        self.store.update(account)

        if account.username.lower() != previous_username.lower():
            usernames.discard(previous_username.lower())
            usernames.add(account.username.lower())

        if not changed:
            result.unchanged += 1
            return
        result.updated += 1
        result.details.append({
            "external_id": record.external_person_id,
            "action": "updated",
            "username": account.username,
            "auth_mode": account.auth_mode.value,
        })
        self._emit("reconcile_update", account.username, details={
            "external_id": record.external_person_id,
            "previous_username": previous_username,
            "auth_mode": account.auth_mode.value,
            "active": account.active,
        })

    def _deactivate_missing(self, present_ids: set[str], result: ReconciliationResult, now: datetime.datetime) -> None:
        for account in self.store.list_accounts():
            if account.linked_erp_id is None or account.linked_erp_id in present_ids or not account.active:
                continue
            try:
                account.active = False
                account.last_sync_at = now
                self.store.update(account)
            except Exception as exc:
                logger.warning("Could not deactivate %s: %s", account.username, exc)
                result.errors.append(RecordError(account.linked_erp_id, type(exc).__name__, str(exc)))
                continue
            result.deactivated += 1
            result.details.append({
                "external_id": account.linked_erp_id,
                "action": "deactivated",
                "username": account.username,
            })
            self._emit("reconcile_deactivate", account.username, details={"external_id": account.linked_erp_id})

    def _load_directory_roster(self) -> list[DirectoryIdentity]:
        if self.roster_cache is None:
            return list(self.directory.fetch_all_identities())
        return list(self.roster_cache.get_or_load(self.directory.fetch_all_identities))

    def _emit(self, event_type: str, username: str, **kwargs: Any) -> None:
        if self._audit is not None:
            self._audit(event_type, username, operator="reconciliation", **kwargs)


def _adopt_directory_fields(account: LocalAccount, identity: DirectoryIdentity) -> None:
    if identity.email:
        account.email = identity.email.lower()
    if identity.given_name:
        account.given_name = identity.given_name
    if identity.surname:
        account.surname = identity.surname
