"""Control Tower - the admission-controlled process scheduler.

This package provides the kernel that manages:
- Role based admission (PermissionGate)
- Per-owner backlogs (BoundedQueue)
- Process lifecycle with cooperative cancellation (ProcessLifecycle)
- Queue drain on completion (Dispatcher)
- Event fan-out to observers (EventAggregator)

Exports:
    Dispatcher: Admission controller and scheduler
    PermissionGate: Role table evaluator
    ProcessRegistry / ProcessLifecycle: Process table and state machine
    BoundedQueue / RateLimiter: Demand limits
    EventAggregator: Kernel event bus
    ProcessState, Permission, Process, KernelEvent, SchedulerConfig: Types
"""

from ipc_control_tower.dispatcher import Dispatcher
from ipc_control_tower.errors import (
    ControlTowerError,
    DuplicateProcessError,
    InvalidTransitionError,
    ProcessInterrupted,
    ProcessNotFoundError,
    SimulatedFailure,
)
from ipc_control_tower.events import EventAggregator
from ipc_control_tower.lifecycle import ProcessLifecycle, ProcessRegistry
from ipc_control_tower.permissions import PermissionGate, default_permission_table
from ipc_control_tower.resources import (
    BoundedQueue,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
)
from ipc_control_tower.types import (
    Action,
    Admission,
    AdmissionStatus,
    DenialReason,
    InterruptResult,
    KernelEvent,
    Outcome,
    Permission,
    Process,
    ProcessState,
    QueueEntry,
    QueueStats,
    SchedulerConfig,
)

__all__ = [
    # Components
    "BoundedQueue",
    "Dispatcher",
    "EventAggregator",
    "PermissionGate",
    "ProcessLifecycle",
    "ProcessRegistry",
    "RateLimitConfig",
    "RateLimiter",
    "RateLimitResult",
    "default_permission_table",
    # Types
    "Action",
    "Admission",
    "AdmissionStatus",
    "DenialReason",
    "InterruptResult",
    "KernelEvent",
    "Outcome",
    "Permission",
    "Process",
    "ProcessState",
    "QueueEntry",
    "QueueStats",
    "SchedulerConfig",
    # Errors
    "ControlTowerError",
    "DuplicateProcessError",
    "InvalidTransitionError",
    "ProcessInterrupted",
    "ProcessNotFoundError",
    "SimulatedFailure",
]
