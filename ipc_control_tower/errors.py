"""Kernel exceptions.

Lookups that may legitimately miss (``get``, ``interrupt``) return None or
False instead of raising; these exceptions are for programming errors and
for internal control flow inside the lifecycle.
"""


class ControlTowerError(Exception):
    """Base class for kernel errors."""


class ProcessNotFoundError(ControlTowerError, KeyError):
    """No process with the given id is registered."""

    def __init__(self, pid: str):
        super().__init__(pid)
        self.pid = pid

    def __str__(self) -> str:
        return f"process {self.pid} not found"


class DuplicateProcessError(ControlTowerError, ValueError):
    """A process with the given id already exists."""

    def __init__(self, pid: str):
        super().__init__(f"process {pid} already exists")
        self.pid = pid


class InvalidTransitionError(ControlTowerError):
    """A lifecycle step was requested from the wrong state."""

    def __init__(self, pid: str, current: str, requested: str):
        super().__init__(
            f"process {pid}: cannot {requested} from state {current}"
        )
        self.pid = pid
        self.current = current
        self.requested = requested


class ProcessInterrupted(ControlTowerError):
    """Raised inside an attempt when cancellation is observed."""


class SimulatedFailure(ControlTowerError):
    """Failure produced by the default simulated work outcome."""
