"""Interfaces of the external collaborators the engine depends on."""
from __future__ import annotations
from typing import Iterable, Optional, Protocol

from identity_hub.core.models import DirectoryIdentity, ErpPersonRecord, LocalAccount, PermissionSet


class ErpRosterSource(Protocol):
    def fetch_erp_roster(self) -> Iterable[ErpPersonRecord]:
        ...


class AccountStore(Protocol):
    def list_accounts(self) -> list[LocalAccount]:
        ...

    def get_by_id(self, account_id: int) -> Optional[LocalAccount]:
        ...

    def get_by_username(self, username: str) -> Optional[LocalAccount]:
        ...

    def get_by_linked_erp_id(self, erp_id: str) -> Optional[LocalAccount]:
        ...

    def create(self, account: LocalAccount) -> LocalAccount:
        ...

    def update(self, account: LocalAccount) -> LocalAccount:
        ...


class PermissionResolver(Protocol):
    def resolve_permissions(self, account: LocalAccount) -> PermissionSet:
        ...


class DirectoryRoster(Protocol):
    def fetch_all_identities(self) -> list[DirectoryIdentity]:
        ...
