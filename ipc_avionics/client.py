"""Websocket client for the control tower.

Speaks the ``auth`` / ``accion`` / ``interrumpir`` protocol, keeps a local
backlog so it never has more actions in flight than the role allows, and
records per-action latency for load testing.

Usage:
    client = IPCClient("ws://localhost:3000/ws", role="operator", token=token)
    await client.connect()              # opens the socket and authenticates
    await client.submit("consulta", "database")
    await client.wait_idle()
    await client.close()

Latency is measured from each ``accion`` send to the next
``accion_respuesta`` in arrival order. Responses for a role limited to one
process at a time pair exactly; for higher limits the figure approximates
the completion latency of the connection as a whole.
"""

import asyncio
import json
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from ipc_protocols import EventName, LoggerProtocol
from ipc_shared.logging import create_logger


ConnectFn = Callable[[str], Awaitable[Any]]


class ClientError(Exception):
    """Client used out of sequence or the connection was lost."""


class AuthenticationError(ClientError):
    """The server rejected the ``auth`` event."""


@dataclass
class ClientStats:
    """Counters for one client connection."""
    role: str
    connected: bool = False
    authenticated: bool = False
    sent: int = 0
    completed: int = 0
    failed: int = 0
    denied: int = 0
    errors: int = 0
    interrupts_sent: int = 0
    locally_queued: int = 0
    locally_dropped: int = 0
    latencies: List[float] = field(default_factory=list)

    @property
    def responses(self) -> int:
        return self.completed + self.failed + self.denied

    @property
    def average_latency(self) -> float:
        return sum(self.latencies) / len(self.latencies) if self.latencies else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "connected": self.connected,
            "authenticated": self.authenticated,
            "sent": self.sent,
            "completed": self.completed,
            "failed": self.failed,
            "denied": self.denied,
            "errors": self.errors,
            "interruptsSent": self.interrupts_sent,
            "locallyQueued": self.locally_queued,
            "locallyDropped": self.locally_dropped,
            "averageLatency": round(self.average_latency, 4),
        }


class IPCClient:
    """One authenticated websocket connection."""

    def __init__(
        self,
        url: str,
        role: str,
        token: str,
        logger: Optional[LoggerProtocol] = None,
        connect: Optional[ConnectFn] = None,
        rng: Optional[random.Random] = None,
        max_local_queue: int = 100,
        response_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.role = role
        self._token = token
        self._connect = connect or websockets.connect
        self._rng = rng or random.Random()
        self._response_timeout = response_timeout
        self._logger = (logger or create_logger("ipc_client")).bind(
            component="ipc_client", role=role
        )

        self.permissions: Optional[Dict[str, Any]] = None
        self.stats = ClientStats(role=role)

        self._ws: Any = None
        self._reader: Optional["asyncio.Task[None]"] = None
        self._auth_waiter: Optional["asyncio.Future[Dict[str, Any]]"] = None
        self._interrupt_waiters: Deque["asyncio.Future[Dict[str, Any]]"] = deque()

        self._sent_at: Deque[float] = deque()
        self._backlog: Deque[Dict[str, Any]] = deque()
        self._max_local_queue = max_local_queue
        self._idle = asyncio.Event()
        self._idle.set()

    # =========================================================================
    # Connection
    # =========================================================================

    @property
    def in_flight(self) -> int:
        return len(self._sent_at)

    @property
    def max_concurrent(self) -> int:
        return int((self.permissions or {}).get("maxConcurrentProcesses", 0))

    async def connect(self) -> Dict[str, Any]:
        """Open the socket and authenticate. Returns the granted permissions."""
        self._ws = await self._connect(self.url)
        self.stats.connected = True
        self._reader = asyncio.create_task(self._read_loop(), name=f"ipc-client-{self.role}")
        self._logger.info("client_connected", url=self.url)
        return await self.authenticate()

    async def authenticate(self) -> Dict[str, Any]:
        self._auth_waiter = asyncio.get_running_loop().create_future()
        await self._send(EventName.AUTH, {"role": self.role, "token": self._token})
        response = await asyncio.wait_for(self._auth_waiter, self._response_timeout)

        if response.get("status") != "success":
            raise AuthenticationError(response.get("mensaje") or "authentication failed")

        self.permissions = response.get("permissions") or {}
        self.stats.authenticated = True
        self._logger.info(
            "client_authenticated",
            max_concurrent=self.max_concurrent,
            can_interrupt=self.permissions.get("canInterrupt", False),
        )
        return self.permissions

    async def close(self) -> None:
        if self._ws is not None:
            await self._ws.close()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None
        self.stats.connected = False
        self.stats.authenticated = False

    # =========================================================================
    # Actions
    # =========================================================================

    async def submit(
        self,
        action_type: str,
        process_type: str,
        priority: int = 1,
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Send an action, or hold it locally while the role's slots are full.

        Returns True when the action was sent now.
        """
        if not self.stats.authenticated:
            raise ClientError("not authenticated")

        action = {
            "type": action_type,
            "processType": process_type,
            "priority": priority,
            "data": data if data is not None else {},
        }
        self._idle.clear()

        if self.in_flight >= self.max_concurrent:
            if len(self._backlog) >= self._max_local_queue:
                self.stats.locally_dropped += 1
                self._check_idle()
                return False
            self._backlog.append(action)
            self.stats.locally_queued += 1
            return False

        await self._send_action(action)
        return True

    async def random_action(self) -> bool:
        """Submit a random action the granted permissions allow."""
        permissions = self.permissions or {}
        actions = permissions.get("actions") or []
        process_types = permissions.get("processTypes") or []
        if not actions or not process_types:
            self._logger.warning("no_permitted_actions")
            return False

        return await self.submit(
            self._rng.choice(actions),
            self._rng.choice(process_types),
            priority=self._rng.randint(1, 5),
            data={
                "timestamp": time.time(),
                "parameters": {
                    "iterations": self._rng.randint(1, 1000),
                    "complexity": self._rng.choice(["low", "medium", "high"]),
                },
            },
        )

    async def interrupt(self, process_id: str) -> Dict[str, Any]:
        """Request an interrupt and wait for ``interrupcion_respuesta``."""
        if not self.stats.authenticated:
            raise ClientError("not authenticated")

        waiter = asyncio.get_running_loop().create_future()
        self._interrupt_waiters.append(waiter)
        self.stats.interrupts_sent += 1
        await self._send(EventName.INTERRUMPIR, {"processId": process_id})
        return await asyncio.wait_for(waiter, self._response_timeout)

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until nothing is in flight or held locally."""
        await asyncio.wait_for(self._idle.wait(), timeout)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _send_action(self, action: Dict[str, Any]) -> None:
        self._sent_at.append(time.monotonic())
        self.stats.sent += 1
        await self._send(EventName.ACCION, action)

    async def _send(self, event: EventName, payload: Dict[str, Any]) -> None:
        if self._ws is None:
            raise ClientError("not connected")
        await self._ws.send(json.dumps({"type": event.value, "payload": payload}))

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    message = json.loads(raw)
                except (TypeError, ValueError):
                    self._logger.warning("invalid_server_message")
                    continue
                await self._on_message(message)
        except ConnectionClosed as e:
            self._logger.warning("client_connection_closed", code=e.rcvd.code if e.rcvd else None)
        finally:
            self.stats.connected = False
            self.stats.authenticated = False
            self._fail_waiters(ClientError("connection closed"))
            # Nothing more will be answered
            self._idle.set()

    async def _on_message(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        payload = message.get("payload") or {}

        if event == EventName.AUTH_RESPONSE.value:
            if self._auth_waiter is not None and not self._auth_waiter.done():
                self._auth_waiter.set_result(payload)
        elif event == EventName.ACCION_RESPUESTA.value:
            await self._on_action_response(payload)
        elif event == EventName.INTERRUPCION_RESPUESTA.value:
            if self._interrupt_waiters:
                waiter = self._interrupt_waiters.popleft()
                if not waiter.done():
                    waiter.set_result(payload)
        else:
            self.stats.errors += 1
            self._logger.warning("server_error", event=event, mensaje=payload.get("mensaje"))

    async def _on_action_response(self, payload: Dict[str, Any]) -> None:
        if self._sent_at:
            self.stats.latencies.append(time.monotonic() - self._sent_at.popleft())

        process_id = payload.get("processId")
        if payload.get("status") == "success":
            self.stats.completed += 1
            self._logger.debug("action_completed", process_id=process_id)
        elif process_id:
            self.stats.failed += 1
            self._logger.info("action_failed", process_id=process_id, mensaje=payload.get("mensaje"))
        else:
            self.stats.denied += 1
            self._logger.info("action_denied", mensaje=payload.get("mensaje"))

        while self._backlog and self.in_flight < self.max_concurrent:
            await self._send_action(self._backlog.popleft())
        self._check_idle()

    def _check_idle(self) -> None:
        if not self._sent_at and not self._backlog:
            self._idle.set()

    def _fail_waiters(self, error: Exception) -> None:
        waiters = list(self._interrupt_waiters)
        self._interrupt_waiters.clear()
        if self._auth_waiter is not None:
            waiters.append(self._auth_waiter)
        for waiter in waiters:
            if not waiter.done():
                waiter.set_exception(error)
