"""Bounded Queue - backpressured FIFO of admitted actions.

Holds actions that passed the permission gate but could not start because
their owner was at its concurrency limit. One queue exists per owner scope.

Guarantees:
- Length never exceeds ``max_size``; a full queue rejects and counts a discard
- Entries leave only through dequeue (oldest first) or prune (by age)
- Entries are never reordered; ``priority`` is informational

Usage:
    queue = BoundedQueue(max_size=100, logger=logger)

    if not queue.enqueue(action):
        ...  # deny with reason "queue full"

    entry = queue.dequeue()
"""

import threading
import time
from collections import deque
from typing import Any, Callable, Deque, List, Mapping, Optional

from ipc_protocols import ACTION_TYPES, LoggerProtocol
from ipc_shared.id_generator import IdGenerator, TimestampIdGenerator

from ipc_control_tower.types import Action, QueueEntry, QueueStats


class BoundedQueue:
    """Thread-safe bounded FIFO with age-based pruning.

    Times are float seconds read from an injectable clock (``time.monotonic``
    by default) so tests can drive ageing deterministically.
    """

    def __init__(
        self,
        max_size: int = 100,
        logger: Optional[LoggerProtocol] = None,
        clock: Optional[Callable[[], float]] = None,
        id_generator: Optional[IdGenerator] = None,
        scope: str = "",
    ) -> None:
        if max_size < 0:
            raise ValueError("max_size must be >= 0")

        self._max_size = max_size
        self._clock = clock or time.monotonic
        self._ids = id_generator or TimestampIdGenerator()
        self._scope = scope
        self._logger = logger.bind(component="bounded_queue", scope=scope) if logger else None

        self._entries: Deque[QueueEntry] = deque()
        self._total_processed = 0
        self._discarded = 0
        self._created_at = self._clock()

        self._lock = threading.RLock()

    # =========================================================================
    # Mutation
    # =========================================================================

    def enqueue(self, action: Action) -> bool:
        """Append an action. Returns False (and counts a discard) on rejection."""
        return self.push(action) is not None

    def push(self, action: Action) -> Optional[QueueEntry]:
        """Append an action and return the created entry, or None on rejection."""
        with self._lock:
            if len(self._entries) >= self._max_size:
                self._discarded += 1
                if self._logger:
                    self._logger.warning(
                        "queue_full_action_discarded",
                        queue_size=len(self._entries),
                        max_size=self._max_size,
                        discarded_total=self._discarded,
                    )
                return None

            if not self._is_valid(action):
                self._discarded += 1
                if self._logger:
                    self._logger.warning(
                        "invalid_action_discarded",
                        action_type=getattr(action, "type", None),
                    )
                return None

            entry = QueueEntry(
                id=self._ids.generate(),
                action=action,
                enqueued_at=self._clock(),
                queue_position=len(self._entries) + 1,
            )
            self._entries.append(entry)

            if self._logger:
                self._logger.info(
                    "action_enqueued",
                    entry_id=entry.id,
                    queue_size=len(self._entries),
                    action_type=action.type,
                )
            return entry

    def dequeue(self) -> Optional[QueueEntry]:
        """Remove and return the oldest entry; None when empty."""
        with self._lock:
            if not self._entries:
                if self._logger:
                    self._logger.debug("dequeue_on_empty_queue")
                return None

            entry = self._entries.popleft()
            self._total_processed += 1

            if self._logger:
                self._logger.info(
                    "action_dequeued",
                    entry_id=entry.id,
                    wait_seconds=entry.age(self._clock()),
                    remaining=len(self._entries),
                )
            return entry

    def prune(self, max_age: float) -> int:
        """Remove entries older than ``max_age`` seconds. Returns the count."""
        return len(self.prune_entries(max_age))

    def prune_entries(self, max_age: float) -> List[QueueEntry]:
        """Remove entries older than ``max_age`` seconds and return them."""
        with self._lock:
            now = self._clock()
            kept: Deque[QueueEntry] = deque()
            pruned: List[QueueEntry] = []
            for entry in self._entries:
                if entry.age(now) > max_age:
                    pruned.append(entry)
                else:
                    kept.append(entry)
            self._entries = kept

            if pruned and self._logger:
                self._logger.info(
                    "stale_actions_pruned",
                    pruned_count=len(pruned),
                    remaining=len(self._entries),
                )
            return pruned

    def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        return len(self.clear_entries())

    def clear_entries(self) -> List[QueueEntry]:
        """Remove every entry and return them (oldest first)."""
        with self._lock:
            cleared = list(self._entries)
            self._entries.clear()
            if self._logger:
                self._logger.info("queue_cleared", cleared_actions=len(cleared))
            return cleared

    # =========================================================================
    # Queries
    # =========================================================================

    def peek(self) -> Optional[QueueEntry]:
        with self._lock:
            return self._entries[0] if self._entries else None

    def entry_ids(self) -> List[str]:
        with self._lock:
            return [e.id for e in self._entries]

    @property
    def is_empty(self) -> bool:
        with self._lock:
            return not self._entries

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def discarded(self) -> int:
        with self._lock:
            return self._discarded

    @property
    def total_processed(self) -> int:
        with self._lock:
            return self._total_processed

    @property
    def utilization_percent(self) -> float:
        with self._lock:
            if self._max_size == 0:
                return 100.0
            return len(self._entries) / self._max_size * 100

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> QueueStats:
        with self._lock:
            now = self._clock()
            size = len(self._entries)
            age = now - self._created_at
            waits = [e.age(now) for e in self._entries]

            return QueueStats(
                current_size=size,
                max_size=self._max_size,
                utilization_percent=self.utilization_percent,
                total_processed=self._total_processed,
                discarded_actions=self._discarded,
                average_wait_seconds=sum(waits) / size if size else 0.0,
                oldest_wait_seconds=waits[0] if waits else 0.0,
                queue_age_seconds=age,
                throughput_rate=self._total_processed / age if age > 0 else 0.0,
                discard_rate=self._discarded / age if age > 0 else 0.0,
            )

    @staticmethod
    def _is_valid(action: Any) -> bool:
        return (
            isinstance(action, Action)
            and action.type in ACTION_TYPES
            and isinstance(action.data, Mapping)
        )
