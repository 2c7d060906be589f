"""Process Lifecycle - per-process state machine.

State machine:
    start()     PENDING -> RUNNING           (synchronous slot claim)
    run()       RUNNING -> COMPLETED | FAILED | INTERRUPTED
    interrupt() sets cancel_requested on an active process

Each attempt waits a random duration in [min_duration, max_duration],
suspending in steps of at most ``check_interval`` and checking the
cancellation flag after every resumption. When the timer elapses the work
outcome hook runs; raising from it fails the attempt. Failed attempts are
retried up to ``max_retries`` times. Cancellation always wins over a
coinciding completion or failure.

Layering: ONLY imports from ipc_protocols and ipc_shared.
"""

import asyncio
import random
import threading
from typing import Awaitable, Callable, Optional, Set

from ipc_protocols import LoggerProtocol

from ipc_control_tower.errors import (
    InvalidTransitionError,
    ProcessInterrupted,
    ProcessNotFoundError,
    SimulatedFailure,
)
from ipc_control_tower.lifecycle.registry import ProcessRegistry
from ipc_control_tower.protocols import EventAggregatorProtocol, WorkOutcome
from ipc_control_tower.types import KernelEvent, Process, ProcessState, SchedulerConfig


Sleep = Callable[[float], Awaitable[None]]


def random_failure(failure_rate: float, rng: random.Random) -> WorkOutcome:
    """Work outcome that fails each attempt with probability ``failure_rate``."""

    def outcome(process: Process) -> None:
        if failure_rate > 0 and rng.random() < failure_rate:
            raise SimulatedFailure(f"simulated {process.type} failure")

    return outcome


class ProcessLifecycle:
    """Drives processes through their lifecycle.

    Usage:
        lifecycle = ProcessLifecycle(registry, events, logger, config)

        process = lifecycle.start(pid)      # claims the slot now
        process = await lifecycle.run(pid)  # terminal when this returns
    """

    def __init__(
        self,
        registry: ProcessRegistry,
        events: EventAggregatorProtocol,
        logger: LoggerProtocol,
        config: Optional[SchedulerConfig] = None,
        work_outcome: Optional[WorkOutcome] = None,
        rng: Optional[random.Random] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self._registry = registry
        self._events = events
        self._logger = logger.bind(component="process_lifecycle")
        self._config = config or SchedulerConfig()
        self._rng = rng or random.Random()
        self._work_outcome = work_outcome or random_failure(
            self._config.failure_rate, self._rng
        )
        self._sleep = sleep or asyncio.sleep

        # Pids with a run() in progress
        self._running: Set[str] = set()
        self._lock = threading.RLock()

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    # =========================================================================
    # Transitions
    # =========================================================================

    def start(self, pid: str) -> Process:
        """PENDING -> RUNNING.

        Raises:
            ProcessNotFoundError: unknown pid
            InvalidTransitionError: process is not PENDING
        """
        process = self._registry.mark_running(pid)

        self._logger.info(
            "process_started",
            pid=pid,
            owner=process.owner,
            process_type=process.type,
        )
        self._events.emit_event(KernelEvent.process_started(process))
        return process

    async def run(self, pid: str) -> Process:
        """Drive a RUNNING process to a terminal state and return it."""
        process = self._registry.get(pid)
        if process is None:
            raise ProcessNotFoundError(pid)

        with self._lock:
            if pid in self._running or process.state != ProcessState.RUNNING:
                raise InvalidTransitionError(pid, process.state.value, "run")
            self._running.add(pid)

        try:
            process = await self._run_attempts(process)
        except asyncio.CancelledError:
            # Task cancelled from outside (shutdown); never leave it RUNNING
            if process.state == ProcessState.RUNNING:
                self._finish(process, ProcessState.INTERRUPTED, "cancelled")
            raise
        finally:
            with self._lock:
                self._running.discard(pid)

        return process

    async def execute(self, pid: str) -> Process:
        """start() followed by run()."""
        self.start(pid)
        return await self.run(pid)

    def interrupt(self, pid: str) -> bool:
        """Request cooperative cancellation.

        Returns False for unknown or non-active processes; never raises.
        """
        if not self._registry.request_cancel(pid):
            self._logger.debug("interrupt_ignored", pid=pid)
            return False

        self._logger.info("interrupt_requested", pid=pid)
        return True

    def is_running(self, pid: str) -> bool:
        with self._lock:
            return pid in self._running

    # =========================================================================
    # Execution
    # =========================================================================

    async def _run_attempts(self, process: Process) -> Process:
        while True:
            try:
                await self._wait(process, self._draw_duration())
                self._work_outcome(process)
            except ProcessInterrupted:
                return self._finish(process, ProcessState.INTERRUPTED, "interrupted")
            except Exception as e:
                if process.cancel_requested:
                    return self._finish(process, ProcessState.INTERRUPTED, "interrupted")

                detail = str(e) or type(e).__name__
                if process.retries < self._config.max_retries:
                    self._registry.record_retry(process.id)
                    self._logger.warning(
                        "process_retry",
                        pid=process.id,
                        retries=process.retries,
                        max_retries=self._config.max_retries,
                        error=detail,
                    )
                    self._events.emit_event(KernelEvent.process_retry(process, detail))
                    continue

                return self._finish(process, ProcessState.FAILED, detail)

            if process.cancel_requested:
                return self._finish(process, ProcessState.INTERRUPTED, "interrupted")
            return self._finish(process, ProcessState.COMPLETED)

    async def _wait(self, process: Process, duration: float) -> None:
        """Sleep ``duration`` seconds in steps, observing cancellation."""
        remaining = duration
        while remaining > 0:
            if process.cancel_requested:
                raise ProcessInterrupted(process.id)
            step = min(self._config.check_interval, remaining)
            await self._sleep(step)
            remaining -= step
            if process.cancel_requested:
                raise ProcessInterrupted(process.id)

    def _draw_duration(self) -> float:
        return self._rng.uniform(self._config.min_duration, self._config.max_duration)

    def _finish(
        self,
        process: Process,
        state: ProcessState,
        error: Optional[str] = None,
    ) -> Process:
        process = self._registry.mark_terminal(process.id, state, error)

        log = self._logger.warning if state == ProcessState.FAILED else self._logger.info
        log(
            "process_ended",
            pid=process.id,
            state=state.value,
            retries=process.retries,
            duration_seconds=process.duration_seconds,
            error=error,
        )
        self._events.emit_event(KernelEvent.process_ended(process))
        return process
