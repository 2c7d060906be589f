"""Permission Gate - role based admission.

The gate is a pure function of an immutable role table: no state changes,
no I/O. It may be read from any task or thread.

Usage:
    gate = PermissionGate(default_permission_table())

    if not gate.admit("viewer", "consulta", "calculation"):
        ...  # deny with reason "forbidden"
"""

from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from ipc_protocols import ACTION_TYPES, PROCESS_TYPES, ActionType, ProcessType

from ipc_control_tower.types import Permission


def default_permission_table(
    admin_max: int = 10,
    operator_max: int = 5,
    viewer_max: int = 2,
) -> Dict[str, Permission]:
    """Built-in role table with overridable concurrency caps."""
    return {
        "admin": Permission(
            role="admin",
            allowed_actions=ACTION_TYPES,
            allowed_process_types=PROCESS_TYPES,
            max_concurrent_processes=admin_max,
            can_interrupt=True,
            can_prioritize=True,
        ),
        "operator": Permission(
            role="operator",
            allowed_actions=frozenset({
                ActionType.SOLICITUD.value,
                ActionType.ACTUALIZACION.value,
                ActionType.CONSULTA.value,
            }),
            allowed_process_types=frozenset({
                ProcessType.CALCULATION.value,
                ProcessType.DATABASE.value,
                ProcessType.FILE_OPERATION.value,
            }),
            max_concurrent_processes=operator_max,
            can_interrupt=False,
            can_prioritize=True,
        ),
        "viewer": Permission(
            role="viewer",
            allowed_actions=frozenset({
                ActionType.CONSULTA.value,
                ActionType.REPORTE.value,
            }),
            allowed_process_types=frozenset({ProcessType.ANALYSIS.value}),
            max_concurrent_processes=viewer_max,
            can_interrupt=False,
            can_prioritize=False,
        ),
    }


class PermissionGate:
    """Evaluates admission rules against a role table."""

    def __init__(self, permissions: Mapping[str, Permission]) -> None:
        for role, permission in permissions.items():
            if role != permission.role:
                raise ValueError(
                    f"role table key {role!r} does not match permission role "
                    f"{permission.role!r}"
                )
        self._permissions = MappingProxyType(dict(permissions))

    @classmethod
    def from_permissions(cls, permissions: Iterable[Permission]) -> "PermissionGate":
        return cls({p.role: p for p in permissions})

    def admit(self, role: str, action_type: str, process_type: str) -> bool:
        permission = self._permissions.get(role)
        if permission is None:
            return False
        return permission.allows(action_type, process_type)

    def get_permission(self, role: str) -> Optional[Permission]:
        return self._permissions.get(role)

    def max_concurrent(self, role: str) -> int:
        permission = self._permissions.get(role)
        return permission.max_concurrent_processes if permission else 0

    def can_interrupt(self, role: str) -> bool:
        permission = self._permissions.get(role)
        return bool(permission and permission.can_interrupt)

    def roles(self) -> List[str]:
        return sorted(self._permissions)

    def has_role(self, role: str) -> bool:
        return role in self._permissions
