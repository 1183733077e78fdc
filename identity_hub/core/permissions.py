"""Position -> role -> module permission resolution.

The matrix is a YAML document::

    default_role: employee
    positions:
      IT Manager: admin
    roles:
      admin:
        accounts: [create, read, update, delete]
        reconciliation: [read, update]
      employee:
        profile: [read, update]
"""
from __future__ import annotations
import logging
from pathlib import Path
from typing import Any, Mapping

import yaml

from identity_hub.core.models import LocalAccount, ModulePermission, PermissionSet
from identity_hub.core.similarity import normalize

logger = logging.getLogger(__name__)

ACTIONS = ("create", "read", "update", "delete")

DEFAULT_MATRIX: dict[str, Any] = {
    "default_role": "employee",
    "positions": {},
    "roles": {
        "employee": {"profile": ["read", "update"]},
    },
}


class RolePermissionResolver:
    """Resolve an account's permissions from its ERP position.

    Positions are compared after normalization, so "Jefe de Área" and
    "jefe de area" map to the same role. Unknown positions get the default role.
    """

    def __init__(self, matrix: Mapping[str, Any] | None = None):
        matrix = matrix or DEFAULT_MATRIX
        self.default_role = str(matrix.get("default_role", "employee"))
        self._positions = {
            normalize(position): str(role)
            for position, role in (matrix.get("positions") or {}).items()
        }
        self._roles: dict[str, tuple[ModulePermission, ...]] = {
            str(role): _parse_modules(role, modules or {})
            for role, modules in (matrix.get("roles") or {}).items()
        }
        if self.default_role not in self._roles:
            raise ValueError(f"Default role '{self.default_role}' is not defined in the permission matrix")

    @classmethod
    def from_yaml(cls, path: str | Path) -> "RolePermissionResolver":
        with Path(path).open("r", encoding="utf-8") as handle:
            return cls(yaml.safe_load(handle) or {})

    def role_for(self, account: LocalAccount) -> str:
        role = self._positions.get(normalize(account.position))
        if role and role in self._roles:
            return role
        if role:
            logger.warning("Position '%s' maps to undefined role '%s'; using default", account.position, role)
        return self.default_role

    def resolve_permissions(self, account: LocalAccount) -> PermissionSet:
        role = self.role_for(account)
        return PermissionSet(role=role, modules=self._roles[role])


def _parse_modules(role: str, modules: Mapping[str, Any]) -> tuple[ModulePermission, ...]:
    parsed = []
    for module, actions in modules.items():
        actions = [str(action).lower() for action in (actions or [])]
        unknown = [action for action in actions if action not in ACTIONS]
        if unknown:
            raise ValueError(f"Role '{role}' grants unknown action(s) on {module}: {', '.join(unknown)}")
        parsed.append(ModulePermission(
            module=str(module),
            can_create="create" in actions,
            can_read="read" in actions,
            can_update="update" in actions,
            can_delete="delete" in actions,
        ))
    return tuple(parsed)
