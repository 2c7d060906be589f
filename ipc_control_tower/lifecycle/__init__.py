"""Lifecycle management - process table and state machine.

This module implements the kernel's process lifecycle management:
- Process table with the active set (ProcessRegistry)
- State machine transitions with cooperative cancellation (ProcessLifecycle)
"""

from ipc_control_tower.lifecycle.manager import ProcessLifecycle, random_failure
from ipc_control_tower.lifecycle.registry import ProcessRegistry

__all__ = ["ProcessLifecycle", "ProcessRegistry", "random_failure"]
