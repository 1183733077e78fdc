"""Domain records shared by the matcher, orchestrator and authenticator."""
from __future__ import annotations
import datetime
import enum
from dataclasses import dataclass, field, asdict
from typing import Any, Generic, Optional, TypeVar


T = TypeVar("T")


class AuthMode(str, enum.Enum):
    DIRECTORY = "directory"
    LOCAL = "local"


class Confidence(str, enum.Enum):
    EXACT = "exact"
    HIGH = "high"
    LOW = "low"
    NONE = "none"

    @property
    def is_sufficient(self) -> bool:
        """True for buckets trusted enough to link accounts automatically."""
        return self in (Confidence.EXACT, Confidence.HIGH)


@dataclass(frozen=True)
class DirectoryIdentity:
    """A person as the directory sees them. Never persisted as-is."""
    username: str
    email: str
    given_name: str = ""
    surname: str = ""
    display_name: str = ""
    department: str = ""
    office: str = ""
    title: str = ""
    groups: tuple[str, ...] = ()

    @property
    def full_name(self) -> str:
        joined = f"{self.given_name} {self.surname}".strip()
        return joined or self.display_name or self.username


@dataclass(frozen=True)
class ErpPersonRecord:
    """One row of the authoritative ERP personnel roster."""
    external_person_id: str
    full_name: str
    job_title: str = ""
    org_unit_id: Optional[str] = None
    manager_id: Optional[str] = None
    active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErpPersonRecord":
        return cls(
            external_person_id=str(data["external_person_id"]),
            full_name=str(data.get("full_name", "")).strip(),
            job_title=str(data.get("job_title") or ""),
            org_unit_id=_optional_str(data.get("org_unit_id")),
            manager_id=_optional_str(data.get("manager_id")),
            active=bool(data.get("active", True)),
        )


@dataclass
class LocalAccount:
    """Application account; the system of record once created."""
    username: str
    email: str
    given_name: str = ""
    surname: str = ""
    full_name_source_erp: str = ""
    auth_mode: AuthMode = AuthMode.LOCAL
    active: bool = True
    id: Optional[int] = None
    last_login: Optional[datetime.datetime] = None
    last_sync_at: Optional[datetime.datetime] = None
    linked_erp_id: Optional[str] = None
    local_secret_hash: Optional[str] = None
    position: str = ""
    org_unit_id: Optional[str] = None

    @property
    def full_name(self) -> str:
        return self.full_name_source_erp or f"{self.given_name} {self.surname}".strip()

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON storage (timestamps as ISO strings)."""
        data = asdict(self)
        data["auth_mode"] = self.auth_mode.value
        for key in ("last_login", "last_sync_at"):
            value = data[key]
            data[key] = value.isoformat() if value else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LocalAccount":
        values = dict(data)
        values["auth_mode"] = AuthMode(values.get("auth_mode", AuthMode.LOCAL.value))
        for key in ("last_login", "last_sync_at"):
            raw = values.get(key)
            values[key] = datetime.datetime.fromisoformat(raw) if raw else None
        linked = values.get("linked_erp_id")
        values["linked_erp_id"] = str(linked) if linked is not None else None
        return cls(**values)

    def public_view(self) -> dict[str, Any]:
        """Account fields safe to return over the API (no secret hash)."""
        data = self.to_dict()
        data.pop("local_secret_hash", None)
        return data


@dataclass(frozen=True)
class MatchCandidate(Generic[T]):
    record: T
    similarity_score: int
    strategy_label: str


@dataclass(frozen=True)
class MatchResult(Generic[T]):
    chosen_candidate: Optional[MatchCandidate[T]]
    confidence: Confidence
    rationale: str

    @property
    def matched(self) -> bool:
        return self.chosen_candidate is not None

    @property
    def record(self) -> Optional[T]:
        return self.chosen_candidate.record if self.chosen_candidate else None


@dataclass(frozen=True)
class ModulePermission:
    """CRUD grants for one application module."""
    module: str
    can_create: bool = False
    can_read: bool = False
    can_update: bool = False
    can_delete: bool = False


@dataclass(frozen=True)
class PermissionSet:
    role: str
    modules: tuple[ModulePermission, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "modules": [asdict(module) for module in self.modules]}


@dataclass
class LoginResult:
    """Composed identity plus permissions returned by a successful login."""
    account: LocalAccount
    permissions: PermissionSet
    auth_method: AuthMode
    access_token: str = ""
    trace: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account": self.account.public_view(),
            "permissions": self.permissions.to_dict(),
            "auth_method": self.auth_method.value,
            "access_token": self.access_token,
        }


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
