"""Local account store and ERP roster adapters.

``InMemoryAccountStore`` enforces the store invariants (unique username,
unique linked ERP id). ``JsonAccountStore`` persists the same data to a file
so the CLI and the web app can share it.
"""
from __future__ import annotations
import copy
import json
import os
import threading
from pathlib import Path
from typing import Iterable, Optional

from identity_hub.core.models import ErpPersonRecord, LocalAccount


class DuplicateAccountError(ValueError):
    """Username or linked ERP id already belongs to another account."""


class InMemoryAccountStore:
    """Thread-safe account store returning copies so callers never share state."""

    def __init__(self, accounts: Iterable[LocalAccount] = ()):
        self._lock = threading.RLock()
        self._accounts: dict[int, LocalAccount] = {}
        self._next_id = 1
        for account in accounts:
            self.create(account)

    def list_accounts(self) -> list[LocalAccount]:
        with self._lock:
            return [copy.deepcopy(account) for account in self._accounts.values()]

    def get_by_id(self, account_id: int) -> Optional[LocalAccount]:
        with self._lock:
            account = self._accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_by_username(self, username: str) -> Optional[LocalAccount]:
        wanted = (username or "").strip().lower()
        with self._lock:
            for account in self._accounts.values():
                if account.username.lower() == wanted:
                    return copy.deepcopy(account)
        return None

    def get_by_linked_erp_id(self, erp_id: str) -> Optional[LocalAccount]:
        with self._lock:
            for account in self._accounts.values():
                if account.linked_erp_id is not None and account.linked_erp_id == str(erp_id):
                    return copy.deepcopy(account)
        return None

    def create(self, account: LocalAccount) -> LocalAccount:
        with self._lock:
            stored = copy.deepcopy(account)
            if stored.id is None:
                stored.id = self._next_id
            elif stored.id in self._accounts:
                raise DuplicateAccountError(f"Account id {stored.id} already exists")
            self._check_unique(stored)
            self._accounts[stored.id] = stored
            self._next_id = max(self._next_id, stored.id + 1)
            self._persist()
            return copy.deepcopy(stored)

    def update(self, account: LocalAccount) -> LocalAccount:
        with self._lock:
            if account.id is None or account.id not in self._accounts:
                raise KeyError(f"Account {account.id} does not exist")
            stored = copy.deepcopy(account)
            self._check_unique(stored)
            self._accounts[stored.id] = stored
            self._persist()
            return copy.deepcopy(stored)

    def _check_unique(self, candidate: LocalAccount) -> None:
        for existing in self._accounts.values():
            if existing.id == candidate.id:
                continue
            if existing.username.lower() == candidate.username.lower():
                raise DuplicateAccountError(f"Username {candidate.username} already exists")
            if candidate.linked_erp_id is not None and existing.linked_erp_id == candidate.linked_erp_id:
                raise DuplicateAccountError(f"ERP record {candidate.linked_erp_id} is already linked")

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""


class JsonAccountStore(InMemoryAccountStore):
    """Account store persisted to a JSON file (written atomically on every change)."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._loading = True
        super().__init__()
        if self.path.exists():
            raw = json.loads(self.path.read_text(encoding="utf-8") or "[]")
            for item in raw:
                self.create(LocalAccount.from_dict(item))
        self._loading = False

    def _persist(self) -> None:
        if self._loading:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        payload = [account.to_dict() for account in self._accounts.values()]
        # Owner-only from creation; the file holds bcrypt hashes
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(json.dumps(payload, indent=2, ensure_ascii=False))
        tmp_path.replace(self.path)


class StaticErpRoster:
    """ERP roster held in memory (tests, fixtures)."""

    def __init__(self, records: Iterable[ErpPersonRecord] = ()):
        self.records = list(records)

    def fetch_erp_roster(self) -> list[ErpPersonRecord]:
        return list(self.records)


class JsonErpRoster:
    """ERP roster read from a JSON export (a list of person objects).

    Raises:
        FileNotFoundError: Export missing (the run must not treat this as an empty roster)
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def fetch_erp_roster(self) -> list[ErpPersonRecord]:
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = raw.get("records", [])
        return [ErpPersonRecord.from_dict(item) for item in raw]
