"""Control Tower protocols - kernel interface definitions.

These protocols define the interface the kernel exposes to higher layers
(connection sessions, the HTTP gateway, metrics).

Layering rules:
- ipc_control_tower ONLY imports from ipc_protocols and ipc_shared
- Higher layers import these protocols, not concrete implementations
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from ipc_control_tower.types import (
    Action,
    KernelEvent,
    Permission,
    Process,
    ProcessState,
    QueueEntry,
    QueueStats,
)


# Work outcome hook: called after each attempt's timer elapses. Raising
# signals a failed attempt.
WorkOutcome = Callable[[Process], None]

EventHandler = Callable[[KernelEvent], None]


# =============================================================================
# PERMISSION GATE PROTOCOL
# =============================================================================

@runtime_checkable
class PermissionGateProtocol(Protocol):
    """Pure admission-rule evaluator."""

    def admit(self, role: str, action_type: str, process_type: str) -> bool:
        """True iff the role exists and allows both the action and the process type."""
        ...

    def get_permission(self, role: str) -> Optional[Permission]:
        ...

    def max_concurrent(self, role: str) -> int:
        """Concurrency cap for the role; 0 for unknown roles."""
        ...

    def can_interrupt(self, role: str) -> bool:
        ...


# =============================================================================
# QUEUE PROTOCOL
# =============================================================================

@runtime_checkable
class BoundedQueueProtocol(Protocol):
    """FIFO holding admitted actions that are not running yet."""

    def enqueue(self, action: Action) -> bool:
        """Append the action. False when full or structurally invalid."""
        ...

    def push(self, action: Action) -> Optional[QueueEntry]:
        """Like enqueue, returning the created entry (None on rejection)."""
        ...

    def dequeue(self) -> Optional[QueueEntry]:
        ...

    def prune(self, max_age: float) -> int:
        """Remove entries older than ``max_age`` seconds; returns the count."""
        ...

    def prune_entries(self, max_age: float) -> List[QueueEntry]:
        ...

    def stats(self) -> QueueStats:
        ...

    def __len__(self) -> int:
        ...


# =============================================================================
# REGISTRY PROTOCOL
# =============================================================================

@runtime_checkable
class ProcessRegistryProtocol(Protocol):
    """Process table plus the active set."""

    def create(self, pid: str, action: Action) -> Process:
        ...

    def get(self, pid: str) -> Optional[Process]:
        ...

    def active_processes(self) -> List[Process]:
        ...

    def by_owner(self, owner: str) -> List[Process]:
        ...

    def by_state(self, state: ProcessState) -> List[Process]:
        ...

    def count_active(self, owner: Optional[str] = None) -> int:
        ...

    def cleanup(self, retention: float, now: Optional[datetime] = None) -> int:
        ...


# =============================================================================
# LIFECYCLE PROTOCOL
# =============================================================================

@runtime_checkable
class ProcessLifecycleProtocol(Protocol):
    """Per-process state machine.

    State machine:
        start()     -> PENDING -> RUNNING
        run()       -> RUNNING -> COMPLETED | FAILED | INTERRUPTED
        interrupt() -> request cooperative cancellation
    """

    def start(self, pid: str) -> Process:
        ...

    async def run(self, pid: str) -> Process:
        ...

    async def execute(self, pid: str) -> Process:
        ...

    def interrupt(self, pid: str) -> bool:
        ...


# =============================================================================
# EVENT AGGREGATOR PROTOCOL
# =============================================================================

@runtime_checkable
class EventAggregatorProtocol(Protocol):
    """Fan-out of kernel events to observers."""

    def emit_event(self, event: KernelEvent) -> None:
        ...

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to one event type, or "*" for all events."""
        ...

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        ...

    def get_event_counts(self) -> Dict[str, int]:
        ...

    def cleanup_process(self, pid: str) -> None:
        ...


# =============================================================================
# RATE LIMITER PROTOCOL
# =============================================================================

@runtime_checkable
class RateLimiterProtocol(Protocol):
    """Per-key sliding window limiter."""

    def check_rate_limit(self, key: str, record: bool = True) -> Any:
        ...

    def reset(self, key: str) -> int:
        ...

    def cleanup_expired(self) -> int:
        ...
