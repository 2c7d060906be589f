"""ID Generator Implementation.

Process and queue-entry identifiers are built from a scope, a millisecond
timestamp and a short random base36 suffix, so they sort roughly by
creation time and are never reused within a server's lifetime.

Usage:
    from ipc_shared.id_generator import TimestampIdGenerator

    generator = TimestampIdGenerator()
    pid = generator.generate_prefixed("conn-42")   # "conn-42-1718000000000-k3j9x0a1b"
    eid = generator.generate()                     # "1718000000000-0c8zq1m4e"

For testing, use SequentialIdGenerator which generates predictable IDs.
"""

from __future__ import annotations

import random
import string
import threading
import time
from typing import Callable, Optional, Protocol, Set

_ALPHABET = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH = 9


class IdGenerator(Protocol):
    def generate(self) -> str: ...
    def generate_prefixed(self, prefix: str) -> str: ...


def _base36_suffix(rng: random.Random, length: int = _SUFFIX_LENGTH) -> str:
    return "".join(rng.choice(_ALPHABET) for _ in range(length))


class TimestampIdGenerator:
    """Timestamp + random suffix ID generator.

    Thread-safe; ids generated within the same millisecond are told apart
    by the random suffix and, as a last resort, by an explicit uniqueness
    check against the ids already handed out in that millisecond.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], float]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._clock = clock or time.time
        self._rng = rng or random.SystemRandom()
        self._lock = threading.Lock()
        self._last_millis = -1
        self._issued_this_millis: Set[str] = set()

    def generate(self) -> str:
        with self._lock:
            millis = int(self._clock() * 1000)
            if millis != self._last_millis:
                self._last_millis = millis
                self._issued_this_millis.clear()

            while True:
                candidate = f"{millis}-{_base36_suffix(self._rng)}"
                if candidate not in self._issued_this_millis:
                    self._issued_this_millis.add(candidate)
                    return candidate

    def generate_prefixed(self, prefix: str) -> str:
        return f"{prefix}-{self.generate()}"


class SequentialIdGenerator:
    """Sequential ID generator for tests and debugging.

    Format: "{counter:06d}" or "{prefix}-{counter:06d}".
    """

    def __init__(self, start: int = 0):
        self._counter = start
        self._lock = threading.Lock()

    def generate(self) -> str:
        with self._lock:
            self._counter += 1
            return f"{self._counter:06d}"

    def generate_prefixed(self, prefix: str) -> str:
        return f"{prefix}-{self.generate()}"
