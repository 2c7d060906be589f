"""Dispatcher - admission control and queue drain.

The dispatcher ties the kernel together:

    submit()        gate -> capacity check -> start now | enqueue | deny
    on_completion() owner's slot freed -> promote queued entries
    interrupt()     ownership / role check -> lifecycle.interrupt
    release_owner() connection closed -> interrupt + drop backlog

Admission, queue mutation and the PENDING -> RUNNING slot claim all happen
synchronously under one lock with no suspension point between the capacity
check and the claim, so a free slot is never handed out twice. Only the
simulated work itself runs as an asyncio task.
"""

import asyncio
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from ipc_protocols import ActionRequest, LoggerProtocol
from ipc_shared.id_generator import IdGenerator, TimestampIdGenerator

from ipc_control_tower.lifecycle.manager import ProcessLifecycle
from ipc_control_tower.lifecycle.registry import ProcessRegistry
from ipc_control_tower.permissions.gate import PermissionGate
from ipc_control_tower.protocols import EventAggregatorProtocol, RateLimiterProtocol
from ipc_control_tower.resources.queue import BoundedQueue
from ipc_control_tower.types import (
    Action,
    Admission,
    AdmissionStatus,
    DenialReason,
    InterruptResult,
    KernelEvent,
    Outcome,
    Process,
    ProcessState,
    QueueEntry,
    SchedulerConfig,
)


class Dispatcher:
    """Admission controller and per-owner scheduler.

    Usage:
        dispatcher = Dispatcher(gate, registry, lifecycle, events, logger, config)

        admission = dispatcher.submit(connection_id, "operator", request)
        if admission.accepted:
            outcome = await admission.wait()
    """

    def __init__(
        self,
        gate: PermissionGate,
        registry: ProcessRegistry,
        lifecycle: ProcessLifecycle,
        events: EventAggregatorProtocol,
        logger: LoggerProtocol,
        config: Optional[SchedulerConfig] = None,
        id_generator: Optional[IdGenerator] = None,
        queue_clock: Optional[Callable[[], float]] = None,
        rate_limiter: Optional[RateLimiterProtocol] = None,
    ) -> None:
        self._gate = gate
        self._registry = registry
        self._lifecycle = lifecycle
        self._events = events
        self._base_logger = logger
        self._logger = logger.bind(component="dispatcher")
        self._config = config or lifecycle.config
        self._ids = id_generator or TimestampIdGenerator()
        self._queue_clock = queue_clock or time.monotonic
        self._rate_limiter = rate_limiter

        # owner -> backlog
        self._queues: Dict[str, BoundedQueue] = {}

        # process id or queue entry id -> pending outcome
        self._waiters: Dict[str, "asyncio.Future[Outcome]"] = {}

        # process id -> task running lifecycle.run
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

        self._lock = threading.RLock()

    @property
    def gate(self) -> PermissionGate:
        return self._gate

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    def update_permissions(self, gate: PermissionGate) -> int:
        """Swap the role table and drain every backlog against it.

        Raised limits start queued entries now, and entries whose role lost
        the permission resolve as forbidden. Must be called from within the
        running event loop. Returns the number of entries started.
        """
        with self._lock:
            self._gate = gate
            promoted = sum(self._drain(owner) for owner in list(self._queues))
        self._logger.info("permissions_updated", roles=gate.roles(), promoted=promoted)
        return promoted

    # =========================================================================
    # Admission
    # =========================================================================

    def submit(self, owner: str, role: str, request: ActionRequest) -> Admission:
        """Admit, queue or deny one action.

        Must be called from within the running event loop.
        """
        action = Action(
            type=request.type,
            process_type=request.process_type,
            data=dict(request.data),
            owner=owner,
            role=role,
            priority=request.priority,
        )

        with self._lock:
            if not self._gate.admit(role, action.type, action.process_type):
                return self._deny(action, DenialReason.FORBIDDEN)

            # An existing backlog runs first: arrivals never overtake it
            queue = self._queues.get(owner)
            backlog = queue is not None and not queue.is_empty

            if not backlog and self._registry.count_active(owner) < self._gate.max_concurrent(role):
                process, future = self._start_action(action)
                self._logger.info(
                    "action_started",
                    owner=owner,
                    role=role,
                    pid=process.id,
                    process_type=action.process_type,
                )
                return Admission(
                    status=AdmissionStatus.STARTED,
                    process_id=process.id,
                    _future=future,
                )

            queue = self._queue_for(owner)
            entry = queue.push(action)
            if entry is None:
                return self._deny(action, DenialReason.QUEUE_FULL)

            future = asyncio.get_running_loop().create_future()
            self._waiters[entry.id] = future
            queue_size = len(queue)

        self._logger.info(
            "action_queued",
            owner=owner,
            role=role,
            entry_id=entry.id,
            queue_size=queue_size,
        )
        self._events.emit_event(KernelEvent.action_enqueued(entry, queue_size))
        self._events.emit_event(KernelEvent.queue_sampled(owner, queue_size))

        if backlog:
            with self._lock:
                self._drain(owner)

        return Admission(
            status=AdmissionStatus.QUEUED,
            entry_id=entry.id,
            _future=future,
        )

    def on_completion(self, process: Process) -> int:
        """Promote queued entries into the slots freed for ``process.owner``.

        Returns the number of entries started.
        """
        with self._lock:
            return self._drain(process.owner)

    # =========================================================================
    # Interrupts and ownership
    # =========================================================================

    def interrupt(self, requester: str, role: str, pid: str) -> InterruptResult:
        """Interrupt a process on behalf of a connection.

        Allowed for the process owner or any role with ``can_interrupt``.
        """
        process = self._registry.get(pid)
        if process is None or process.is_terminal():
            return InterruptResult.NOT_FOUND

        if process.owner != requester and not self._gate.can_interrupt(role):
            self._logger.warning(
                "interrupt_forbidden",
                requester=requester,
                role=role,
                pid=pid,
                owner=process.owner,
            )
            return InterruptResult.FORBIDDEN

        if not self._lifecycle.interrupt(pid):
            return InterruptResult.NOT_FOUND
        return InterruptResult.OK

    def release_owner(self, owner: str) -> int:
        """Interrupt every active process of ``owner`` and drop its backlog.

        Returns the number of processes interrupted plus entries cancelled.
        """
        with self._lock:
            queue = self._queues.pop(owner, None)
            cancelled = queue.clear_entries() if queue else []
            for entry in cancelled:
                self._resolve(entry.id, Outcome(reason=DenialReason.CANCELLED.value))

        interrupted = sum(
            1 for p in self._registry.active_by_owner(owner)
            if self._lifecycle.interrupt(p.id)
        )

        if queue is not None:
            self._events.emit_event(KernelEvent.queue_sampled(owner, 0))

        self._logger.info(
            "owner_released",
            owner=owner,
            interrupted=interrupted,
            cancelled_entries=len(cancelled),
        )
        return interrupted + len(cancelled)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def run_maintenance(self) -> Dict[str, int]:
        """Periodic housekeeping.

        Prunes stale queue entries, drops terminal processes past retention,
        samples queue sizes and forgets idle rate-limit windows.
        """
        expired: List[QueueEntry] = []
        samples: List[Tuple[str, int]] = []

        with self._lock:
            for owner, queue in list(self._queues.items()):
                stale = queue.prune_entries(self._config.queue_max_age)
                for entry in stale:
                    self._resolve(entry.id, Outcome(reason=DenialReason.EXPIRED.value))
                expired.extend(stale)
                samples.append((owner, len(queue)))

                # Forget idle scopes
                if queue.is_empty and self._registry.count_active(owner) == 0:
                    del self._queues[owner]

        for entry in expired:
            self._emit_denied(entry.action, DenialReason.EXPIRED)
        for owner, size in samples:
            self._events.emit_event(KernelEvent.queue_sampled(owner, size))

        removed = self._registry.purge(self._config.process_retention)
        for pid in removed:
            self._events.cleanup_process(pid)

        rate_windows = self._rate_limiter.cleanup_expired() if self._rate_limiter else 0

        summary = {
            "expired_entries": len(expired),
            "removed_processes": len(removed),
            "rate_windows_cleaned": rate_windows,
        }
        self._logger.debug("maintenance_completed", **summary)
        return summary

    # =========================================================================
    # Status
    # =========================================================================

    def queued_count(self, owner: Optional[str] = None) -> int:
        with self._lock:
            if owner is not None:
                queue = self._queues.get(owner)
                return len(queue) if queue else 0
            return sum(len(q) for q in self._queues.values())

    def queue_for(self, owner: str) -> Optional[BoundedQueue]:
        with self._lock:
            return self._queues.get(owner)

    def status(self) -> Dict[str, Any]:
        return {
            "activeProcesses": self._registry.count_active(),
            "processTypes": self._registry.active_type_counts(),
            "queuedActions": self.queued_count(),
            "states": self._registry.state_counts(),
        }

    def detailed_status(self) -> Dict[str, Any]:
        with self._lock:
            queues = {owner: q.stats().to_dict() for owner, q in self._queues.items()}

        status = self.status()
        status.update({
            "active": [p.to_dict() for p in self._registry.active_processes()],
            "queues": queues,
            "roles": {
                role: self._gate.get_permission(role).to_dict()
                for role in self._gate.roles()
            },
            "events": self._events.get_event_counts(),
        })
        return status

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> None:
        """Cancel all backlog, interrupt all processes and wait for them."""
        with self._lock:
            owners = list(self._queues)
        for owner in owners:
            self.release_owner(owner)

        for process in self._registry.active_processes():
            self._lifecycle.interrupt(process.id)

        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._logger.info("dispatcher_shutdown", drained_tasks=len(tasks))

    # =========================================================================
    # Internals
    # =========================================================================

    def _queue_for(self, owner: str) -> BoundedQueue:
        queue = self._queues.get(owner)
        if queue is None:
            queue = BoundedQueue(
                max_size=self._config.max_queue_size,
                logger=self._base_logger,
                clock=self._queue_clock,
                id_generator=self._ids,
                scope=owner,
            )
            self._queues[owner] = queue
        return queue

    def _start_action(
        self,
        action: Action,
        future: Optional["asyncio.Future[Outcome]"] = None,
    ) -> Tuple[Process, "asyncio.Future[Outcome]"]:
        """Create, claim and schedule a process. Caller holds the lock."""
        loop = asyncio.get_running_loop()

        pid = self._ids.generate_prefixed(action.owner)
        process = self._registry.create(pid, action)
        self._events.emit_event(KernelEvent.process_created(process))
        self._lifecycle.start(pid)

        future = future or loop.create_future()
        self._waiters[pid] = future
        self._tasks[pid] = loop.create_task(self._run(pid), name=f"process-{pid}")
        return process, future

    async def _run(self, pid: str) -> None:
        try:
            process = await self._lifecycle.run(pid)
        except asyncio.CancelledError:
            self._complete(pid)
            raise
        except Exception as e:
            self._logger.error("process_task_error", pid=pid, error=str(e))
            self._fail_if_running(pid, str(e))
        self._complete(pid)

    def _complete(self, pid: str) -> None:
        self._tasks.pop(pid, None)
        process = self._registry.get(pid)
        self._resolve(pid, Outcome(process=process))
        if process is not None:
            self.on_completion(process)

    def _fail_if_running(self, pid: str, error: str) -> None:
        process = self._registry.get(pid)
        if process is not None and process.state == ProcessState.RUNNING:
            self._registry.mark_terminal(pid, ProcessState.FAILED, error)
            self._events.emit_event(KernelEvent.process_ended(process))

    def _drain(self, owner: str) -> int:
        """Start queued entries while the owner has free slots. Caller holds the lock.

        The head entry is re-checked against the current role table before
        its capacity check, so a revoked role never blocks the backlog.
        """
        queue = self._queues.get(owner)
        if queue is None:
            return 0

        promoted = 0
        dropped = 0
        while not queue.is_empty:
            head = queue.peek()
            action = head.action
            role = action.role

            if not self._gate.admit(role, action.type, action.process_type):
                queue.dequeue()
                self._resolve(head.id, Outcome(reason=DenialReason.FORBIDDEN.value))
                self._emit_denied(action, DenialReason.FORBIDDEN)
                dropped += 1
                continue

            if self._registry.count_active(owner) >= self._gate.max_concurrent(role):
                break

            entry = queue.dequeue()
            wait_seconds = entry.age(self._queue_clock())

            future = self._waiters.pop(entry.id, None)
            process, _ = self._start_action(action, future)
            self._events.emit_event(
                KernelEvent.action_dequeued(entry, wait_seconds, pid=process.id)
            )
            self._logger.info(
                "queued_action_promoted",
                owner=owner,
                entry_id=entry.id,
                pid=process.id,
                wait_seconds=wait_seconds,
            )
            promoted += 1

        if promoted or dropped:
            self._events.emit_event(KernelEvent.queue_sampled(owner, len(queue)))
        return promoted

    def _deny(self, action: Action, reason: DenialReason) -> Admission:
        self._emit_denied(action, reason)
        return Admission(status=AdmissionStatus.DENIED, reason=reason.value)

    def _emit_denied(self, action: Action, reason: DenialReason) -> None:
        self._logger.warning(
            "action_denied",
            owner=action.owner,
            role=action.role,
            action_type=action.type,
            process_type=action.process_type,
            reason=reason.value,
        )
        self._events.emit_event(
            KernelEvent.action_denied(
                owner=action.owner,
                role=action.role,
                action_type=action.type,
                process_type=action.process_type,
                reason=reason.value,
            )
        )

    def _resolve(self, key: str, outcome: Outcome) -> None:
        future = self._waiters.pop(key, None)
        if future is not None and not future.done():
            future.set_result(outcome)
