"""Process Registry - process table plus active set.

The registry owns every Process the kernel knows about. It keeps two
invariants under a single lock:
- a process is in the active set iff its state is RUNNING
- ``end_time`` is set iff the state is terminal, and only once

State changes go through ``mark_running`` / ``mark_terminal``; callers never
assign ``Process.state`` directly.
"""

import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from ipc_protocols import LoggerProtocol
from ipc_shared.serialization import utc_now

from ipc_control_tower.errors import (
    DuplicateProcessError,
    InvalidTransitionError,
    ProcessNotFoundError,
)
from ipc_control_tower.types import Action, Process, ProcessState


class ProcessRegistry:
    """Thread-safe process table."""

    def __init__(self, logger: LoggerProtocol) -> None:
        self._logger = logger.bind(component="process_registry")

        self._processes: Dict[str, Process] = {}
        self._active: Dict[str, Process] = {}

        self._lock = threading.RLock()

    # =========================================================================
    # Creation
    # =========================================================================

    def create(self, pid: str, action: Action) -> Process:
        """Register a new PENDING process for an admitted action."""
        with self._lock:
            if pid in self._processes:
                raise DuplicateProcessError(pid)

            process = Process(
                id=pid,
                type=action.process_type,
                owner=action.owner,
                role=action.role,
                action_type=action.type,
                priority=action.priority,
                data=dict(action.data),
            )
            self._processes[pid] = process

        self._logger.debug(
            "process_registered",
            pid=pid,
            owner=action.owner,
            process_type=action.process_type,
        )
        return process

    # =========================================================================
    # Transitions
    # =========================================================================

    def mark_running(self, pid: str) -> Process:
        """PENDING -> RUNNING. Adds the process to the active set."""
        with self._lock:
            process = self._require(pid)
            if process.state != ProcessState.PENDING:
                raise InvalidTransitionError(pid, process.state.value, "start")

            process.state = ProcessState.RUNNING
            process.start_time = utc_now()
            self._active[pid] = process
            return process

    def mark_terminal(
        self,
        pid: str,
        state: ProcessState,
        error: Optional[str] = None,
    ) -> Process:
        """RUNNING -> terminal state. Removes the process from the active set."""
        if not state.is_terminal:
            raise ValueError(f"{state.value} is not a terminal state")

        with self._lock:
            process = self._require(pid)
            if process.state != ProcessState.RUNNING:
                raise InvalidTransitionError(pid, process.state.value, state.value)

            process.state = state
            process.end_time = utc_now()
            process.error = error
            self._active.pop(pid, None)
            return process

    def record_retry(self, pid: str) -> Process:
        """Count a failed attempt on a RUNNING process."""
        with self._lock:
            process = self._require(pid)
            if process.state != ProcessState.RUNNING:
                raise InvalidTransitionError(pid, process.state.value, "retry")
            process.retries += 1
            process.error = None
            return process

    def request_cancel(self, pid: str) -> bool:
        """Flag an active process for cancellation. False if not active."""
        with self._lock:
            process = self._active.get(pid)
            if process is None:
                return False
            process.cancel_requested = True
            return True

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, pid: str) -> Optional[Process]:
        with self._lock:
            return self._processes.get(pid)

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._processes

    def __len__(self) -> int:
        with self._lock:
            return len(self._processes)

    def active_processes(self) -> List[Process]:
        with self._lock:
            return list(self._active.values())

    def all_processes(self) -> List[Process]:
        with self._lock:
            return list(self._processes.values())

    def by_owner(self, owner: str) -> List[Process]:
        with self._lock:
            return [p for p in self._processes.values() if p.owner == owner]

    def active_by_owner(self, owner: str) -> List[Process]:
        with self._lock:
            return [p for p in self._active.values() if p.owner == owner]

    def by_state(self, state: ProcessState) -> List[Process]:
        with self._lock:
            return [p for p in self._processes.values() if p.state == state]

    def count_active(self, owner: Optional[str] = None) -> int:
        """Active process count, for one owner or overall."""
        with self._lock:
            if owner is None:
                return len(self._active)
            return sum(1 for p in self._active.values() if p.owner == owner)

    def state_counts(self) -> Dict[str, int]:
        with self._lock:
            counts = Counter(p.state.value for p in self._processes.values())
        return {state.value: counts.get(state.value, 0) for state in ProcessState}

    def active_type_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(Counter(p.type for p in self._active.values()))

    # =========================================================================
    # Retention
    # =========================================================================

    def cleanup(self, retention: float, now: Optional[datetime] = None) -> int:
        """Remove terminal processes that ended more than ``retention`` seconds ago.

        PENDING and RUNNING processes are never removed.
        """
        return len(self.purge(retention, now))

    def purge(self, retention: float, now: Optional[datetime] = None) -> List[str]:
        """Like cleanup, returning the removed pids."""
        cutoff = (now or utc_now()) - timedelta(seconds=retention)

        with self._lock:
            expired = [
                pid for pid, p in self._processes.items()
                if p.is_terminal() and p.end_time is not None and p.end_time < cutoff
            ]
            for pid in expired:
                del self._processes[pid]

        if expired:
            self._logger.info(
                "processes_cleaned_up",
                removed=len(expired),
                remaining=len(self),
            )
        return expired

    def _require(self, pid: str) -> Process:
        process = self._processes.get(pid)
        if process is None:
            raise ProcessNotFoundError(pid)
        return process
