"""Event Aggregator - kernel event fan-out.

Kernel components emit KernelEvents here; observers (metrics, audit logs)
subscribe by event type. Handler failures are logged and never reach the
emitter, so no kernel decision depends on an observer.

Layering: ONLY imports from ipc_protocols and ipc_shared.
"""

import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from ipc_protocols import LoggerProtocol
from ipc_shared.serialization import utc_now

from ipc_control_tower.protocols import EventAggregatorProtocol, EventHandler
from ipc_control_tower.types import KernelEvent


class EventAggregator(EventAggregatorProtocol):
    """Event aggregator with per-type and wildcard subscribers.

    Usage:
        aggregator = EventAggregator(logger)

        # Subscribe to kernel events
        aggregator.subscribe("process.ended", my_handler)
        aggregator.subscribe("*", audit_handler)

        # Emit a kernel event
        aggregator.emit_event(KernelEvent.process_created(process))
    """

    def __init__(
        self,
        logger: LoggerProtocol,
        history_size: int = 1000,
    ) -> None:
        """Initialize event aggregator.

        Args:
            logger: Logger instance
            history_size: Max events to keep in history
        """
        self._logger = logger.bind(component="event_aggregator")

        # Event subscribers (event_type -> list of handlers)
        self._subscribers: Dict[str, List[EventHandler]] = {}

        # Wildcard subscribers (receive all events)
        self._wildcard_subscribers: List[EventHandler] = []

        # Event history (ring buffer)
        self._history: Deque[KernelEvent] = deque(maxlen=history_size)

        # Per-process event history (for debugging)
        self._process_history: Dict[str, Deque[KernelEvent]] = {}
        self._process_history_size = 50

        self._lock = threading.RLock()
        self._event_counts: Dict[str, int] = {}

    def emit_event(self, event: KernelEvent) -> None:
        """Emit a kernel event to every matching subscriber."""
        with self._lock:
            self._history.append(event)

            if event.pid:
                if event.pid not in self._process_history:
                    self._process_history[event.pid] = deque(
                        maxlen=self._process_history_size
                    )
                self._process_history[event.pid].append(event)

            self._event_counts[event.event_type] = (
                self._event_counts.get(event.event_type, 0) + 1
            )

            # Copy so handlers run outside the lock
            handlers = list(self._subscribers.get(event.event_type, []))
            wildcard_handlers = list(self._wildcard_subscribers)

        for handler in handlers + wildcard_handlers:
            try:
                handler(event)
            except Exception as e:
                self._logger.error(
                    "event_handler_error",
                    event_type=event.event_type,
                    pid=event.pid,
                    error=str(e),
                )

        self._logger.debug(
            "event_emitted",
            event_type=event.event_type,
            pid=event.pid,
            handler_count=len(handlers) + len(wildcard_handlers),
        )

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe to kernel events.

        Args:
            event_type: Event type to subscribe to, or "*" for all events
            handler: Handler function
        """
        with self._lock:
            if event_type == "*":
                self._wildcard_subscribers.append(handler)
            else:
                self._subscribers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = (
                self._wildcard_subscribers
                if event_type == "*"
                else self._subscribers.get(event_type, [])
            )
            if handler in handlers:
                handlers.remove(handler)

    def get_event_history(
        self,
        pid: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[KernelEvent]:
        """Get event history, newest first.

        Args:
            pid: Filter by process (None for all)
            event_type: Filter by event type (None for all)
            limit: Max events to return
        """
        with self._lock:
            if pid:
                source = list(self._process_history.get(pid, []))
            else:
                source = list(self._history)

        if event_type:
            source = [e for e in source if e.event_type == event_type]
        return list(reversed(source))[:limit]

    def get_recent_events(self, seconds: float = 60.0) -> List[KernelEvent]:
        cutoff = utc_now().timestamp() - seconds
        with self._lock:
            return [e for e in self._history if e.timestamp.timestamp() > cutoff]

    def get_event_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._event_counts)

    def get_subscriber_count(self, event_type: str) -> int:
        with self._lock:
            if event_type == "*":
                return len(self._wildcard_subscribers)
            return len(self._subscribers.get(event_type, []))

    def cleanup_process(self, pid: str) -> None:
        """Drop per-process history once the process leaves the registry."""
        with self._lock:
            self._process_history.pop(pid, None)
