"""Control Tower types - scheduler abstractions.

These types describe what the kernel schedules:
- Permission: per-role admission rules and concurrency cap
- Process: the kernel's record of one accepted request
- Action / QueueEntry: demand that has been admitted but is not running yet
- KernelEvent: notifications fanned out to observers (metrics, logs)
- SchedulerConfig: timing, retry and capacity knobs

Layering: This module ONLY imports from ipc_protocols and ipc_shared.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional

from ipc_shared.serialization import serialize_datetime, utc_now


# =============================================================================
# PROCESS STATES
# =============================================================================

class ProcessState(str, Enum):
    """Process states.

    State transitions:
        PENDING -> RUNNING -> (COMPLETED | FAILED | INTERRUPTED)

    A failed attempt with retries left stays RUNNING; only the final
    failure is visible as FAILED.
    """
    PENDING = "pending"            # Created, not yet started
    RUNNING = "running"            # In the active set
    COMPLETED = "completed"
    FAILED = "failed"              # Retries exhausted
    INTERRUPTED = "interrupted"    # Cancellation observed

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {ProcessState.COMPLETED, ProcessState.FAILED, ProcessState.INTERRUPTED}
)


# =============================================================================
# PERMISSIONS
# =============================================================================

@dataclass(frozen=True)
class Permission:
    """Admission rules for one role. Immutable once loaded."""
    role: str
    allowed_actions: FrozenSet[str]
    allowed_process_types: FrozenSet[str]
    max_concurrent_processes: int
    can_interrupt: bool = False
    can_prioritize: bool = False

    def __post_init__(self) -> None:
        if self.max_concurrent_processes < 0:
            raise ValueError(
                f"max_concurrent_processes must be >= 0 for role {self.role}"
            )

    def allows(self, action_type: str, process_type: str) -> bool:
        return (
            action_type in self.allowed_actions
            and process_type in self.allowed_process_types
        )

    def to_dict(self) -> Dict[str, Any]:
        """Wire representation echoed in ``auth_response.permissions``."""
        return {
            "role": self.role,
            "actions": sorted(self.allowed_actions),
            "processTypes": sorted(self.allowed_process_types),
            "maxConcurrentProcesses": self.max_concurrent_processes,
            "canInterrupt": self.can_interrupt,
            "canPrioritize": self.can_prioritize,
        }


# =============================================================================
# ACTIONS AND QUEUE ENTRIES
# =============================================================================

@dataclass(frozen=True)
class Action:
    """A validated request to run a process, bound to its requester."""
    type: str
    process_type: str
    data: Mapping[str, Any]
    owner: str
    role: str
    priority: int = 1


@dataclass(frozen=True)
class QueueEntry:
    """An action waiting in a BoundedQueue."""
    id: str
    action: Action
    enqueued_at: float
    queue_position: int

    def age(self, now: float) -> float:
        return now - self.enqueued_at


@dataclass(frozen=True)
class QueueStats:
    """Point-in-time view of a BoundedQueue."""
    current_size: int
    max_size: int
    utilization_percent: float
    total_processed: int
    discarded_actions: int
    average_wait_seconds: float
    oldest_wait_seconds: float
    queue_age_seconds: float
    throughput_rate: float
    discard_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentSize": self.current_size,
            "maxSize": self.max_size,
            "utilizationPercent": self.utilization_percent,
            "totalProcessed": self.total_processed,
            "discardedActions": self.discarded_actions,
            "averageWaitTime": self.average_wait_seconds,
            "oldestAction": self.oldest_wait_seconds,
            "queueAge": self.queue_age_seconds,
            "throughputRate": self.throughput_rate,
            "discardRate": self.discard_rate,
        }


# =============================================================================
# PROCESS RECORD
# =============================================================================

@dataclass
class Process:
    """Kernel record of one accepted request.

    Created by the dispatcher through the registry, mutated only through
    lifecycle transitions, removed by the registry's retention sweep.
    """
    # Identity
    id: str
    type: str
    owner: str
    role: str                      # Frozen at admission
    action_type: str = ""
    priority: int = 1
    data: Mapping[str, Any] = field(default_factory=dict)

    # State
    state: ProcessState = ProcessState.PENDING
    created_at: datetime = field(default_factory=utc_now)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    # Execution
    retries: int = 0
    cancel_requested: bool = False
    error: Optional[str] = None

    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def is_active(self) -> bool:
        return self.state == ProcessState.RUNNING

    @property
    def duration_seconds(self) -> Optional[float]:
        """Wall time between start and end (or now, while running)."""
        if self.start_time is None:
            return None
        end = self.end_time or utc_now()
        return (end - self.start_time).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "actionType": self.action_type,
            "priority": self.priority,
            "owner": self.owner,
            "role": self.role,
            "state": self.state.value,
            "createdAt": serialize_datetime(self.created_at),
            "startTime": serialize_datetime(self.start_time),
            "endTime": serialize_datetime(self.end_time),
            "retries": self.retries,
            "cancelRequested": self.cancel_requested,
            "error": self.error,
            "durationSeconds": self.duration_seconds,
        }


# =============================================================================
# SCHEDULER CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class SchedulerConfig:
    """Timing, retry and capacity knobs for the kernel.

    Durations are seconds.
    """
    min_duration: float = 1.0
    max_duration: float = 10.0
    check_interval: float = 0.1
    max_retries: int = 3
    failure_rate: float = 0.0
    max_queue_size: int = 100
    queue_max_age: float = 300.0
    process_retention: float = 3600.0

    def __post_init__(self) -> None:
        if self.min_duration < 0 or self.max_duration < 0:
            raise ValueError("durations must be non-negative")
        if self.min_duration > self.max_duration:
            raise ValueError("min_duration must not exceed max_duration")
        if self.check_interval <= 0:
            raise ValueError("check_interval must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 0.0 <= self.failure_rate <= 1.0:
            raise ValueError("failure_rate must be within [0, 1]")
        if self.max_queue_size < 0:
            raise ValueError("max_queue_size must be >= 0")


# =============================================================================
# KERNEL EVENTS
# =============================================================================

@dataclass
class KernelEvent:
    """Event emitted by the kernel.

    Used for monitoring only; no kernel decision depends on whether an
    event was delivered.
    """
    event_type: str
    timestamp: datetime
    pid: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def process_created(cls, process: Process) -> "KernelEvent":
        return cls(
            event_type="process.created",
            timestamp=utc_now(),
            pid=process.id,
            data={
                "owner": process.owner,
                "role": process.role,
                "process_type": process.type,
                "action_type": process.action_type,
                "priority": process.priority,
            },
        )

    @classmethod
    def process_started(cls, process: Process) -> "KernelEvent":
        return cls(
            event_type="process.started",
            timestamp=utc_now(),
            pid=process.id,
            data={
                "owner": process.owner,
                "role": process.role,
                "process_type": process.type,
            },
        )

    @classmethod
    def process_retry(cls, process: Process, error: str) -> "KernelEvent":
        return cls(
            event_type="process.retry",
            timestamp=utc_now(),
            pid=process.id,
            data={
                "retries": process.retries,
                "error": error,
                "process_type": process.type,
                "role": process.role,
            },
        )

    @classmethod
    def process_ended(cls, process: Process) -> "KernelEvent":
        return cls(
            event_type="process.ended",
            timestamp=utc_now(),
            pid=process.id,
            data={
                "owner": process.owner,
                "role": process.role,
                "process_type": process.type,
                "state": process.state.value,
                "duration_seconds": process.duration_seconds or 0.0,
                "retries": process.retries,
                "error": process.error,
            },
        )

    @classmethod
    def action_denied(
        cls,
        owner: str,
        role: str,
        action_type: str,
        process_type: str,
        reason: str,
    ) -> "KernelEvent":
        return cls(
            event_type="action.denied",
            timestamp=utc_now(),
            data={
                "owner": owner,
                "role": role,
                "action_type": action_type,
                "process_type": process_type,
                "reason": reason,
            },
        )

    @classmethod
    def action_enqueued(cls, entry: QueueEntry, queue_size: int) -> "KernelEvent":
        return cls(
            event_type="action.enqueued",
            timestamp=utc_now(),
            data={
                "entry_id": entry.id,
                "owner": entry.action.owner,
                "role": entry.action.role,
                "action_type": entry.action.type,
                "process_type": entry.action.process_type,
                "queue_size": queue_size,
            },
        )

    @classmethod
    def action_dequeued(
        cls,
        entry: QueueEntry,
        wait_seconds: float,
        pid: Optional[str] = None,
    ) -> "KernelEvent":
        return cls(
            event_type="action.dequeued",
            timestamp=utc_now(),
            pid=pid,
            data={
                "entry_id": entry.id,
                "owner": entry.action.owner,
                "process_type": entry.action.process_type,
                "priority": entry.action.priority,
                "wait_seconds": wait_seconds,
            },
        )

    @classmethod
    def queue_sampled(cls, owner: str, size: int) -> "KernelEvent":
        return cls(
            event_type="queue.sampled",
            timestamp=utc_now(),
            data={"owner": owner, "size": size},
        )


# =============================================================================
# DISPATCH RESULTS
# =============================================================================

class AdmissionStatus(str, Enum):
    STARTED = "started"
    QUEUED = "queued"
    DENIED = "denied"


class DenialReason(str, Enum):
    """Why an action never ran."""
    FORBIDDEN = "forbidden"
    QUEUE_FULL = "queue full"
    EXPIRED = "expired"          # Pruned from the queue by age
    CANCELLED = "cancelled"      # Owner disconnected or kernel shut down


class InterruptResult(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class Outcome:
    """Final result of an admitted action.

    Either the terminal process, or the reason it never ran.
    """
    process: Optional[Process] = None
    reason: Optional[str] = None

    @property
    def ran(self) -> bool:
        return self.process is not None

    @property
    def state(self) -> Optional[ProcessState]:
        return self.process.state if self.process else None


@dataclass
class Admission:
    """Dispatcher decision for one submitted action.

    ``wait()`` resolves once the action reaches its final outcome: the
    process terminated, or a queued entry was dropped.
    """
    status: AdmissionStatus
    reason: Optional[str] = None
    process_id: Optional[str] = None
    entry_id: Optional[str] = None
    _future: Optional["asyncio.Future[Outcome]"] = field(
        default=None, repr=False, compare=False
    )

    @property
    def accepted(self) -> bool:
        return self.status != AdmissionStatus.DENIED

    async def wait(self) -> Outcome:
        if self._future is None:
            return Outcome(reason=self.reason)
        return await asyncio.shield(self._future)
