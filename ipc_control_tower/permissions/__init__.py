"""Role based admission control."""

from ipc_control_tower.permissions.gate import (
    PermissionGate,
    default_permission_table,
)

__all__ = ["PermissionGate", "default_permission_table"]
