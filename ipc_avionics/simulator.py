"""Traffic simulator - N authenticated clients against a running server.

Each client submits a random permitted action every ``action_interval``
seconds. Clients whose role can interrupt also pick a running process from
``/status/detailed`` every ``interrupt_interval`` seconds and interrupt it.
Aggregate counters and latency are logged every ``report_interval``.
"""

import asyncio
import random
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from ipc_protocols import LoggerProtocol
from ipc_shared.logging import create_logger

from ipc_avionics.client import ClientError, ConnectFn, IPCClient
from ipc_avionics.security.tokens import TokenSigner


class TrafficSimulator:
    """Drives a fleet of IPCClients."""

    def __init__(
        self,
        base_url: str,
        signer: TokenSigner,
        num_clients: int = 10,
        roles: Sequence[str] = ("admin", "operator", "viewer"),
        action_interval: Tuple[float, float] = (1.0, 3.0),
        interrupt_interval: Tuple[float, float] = (5.0, 15.0),
        logger: Optional[LoggerProtocol] = None,
        connect: Optional[ConnectFn] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        if num_clients < 1:
            raise ValueError("num_clients must be >= 1")
        if not roles:
            raise ValueError("at least one role is required")

        self.base_url = base_url.rstrip("/")
        self.ws_url = _websocket_url(self.base_url)
        self._signer = signer
        self._num_clients = num_clients
        self._roles = list(roles)
        self._action_interval = action_interval
        self._interrupt_interval = interrupt_interval
        self._connect = connect
        self._http = http_client
        self._owns_http = http_client is None
        self._rng = rng or random.Random()
        self._logger = (logger or create_logger("traffic_simulator")).bind(
            component="traffic_simulator"
        )

        self.clients: List[IPCClient] = []
        self.failed_connections = 0
        self._stop = asyncio.Event()
        self._tasks: List["asyncio.Task[None]"] = []

    async def start(self) -> int:
        """Connect and authenticate every client. Returns how many succeeded."""
        if self._http is None:
            self._http = httpx.AsyncClient(base_url=self.base_url, timeout=5.0)

        candidates = [
            IPCClient(
                self.ws_url,
                role=role,
                token=self._signer.issue(role, f"simulator-{index}"),
                logger=self._logger,
                connect=self._connect,
                rng=random.Random(self._rng.random()),
            )
            for index, role in enumerate(self._assign_roles())
        ]
        results = await asyncio.gather(
            *(client.connect() for client in candidates), return_exceptions=True
        )

        for client, result in zip(candidates, results):
            if isinstance(result, BaseException):
                self.failed_connections += 1
                self._logger.error("client_connect_failed", role=client.role, error=str(result))
                await client.close()
                continue
            self.clients.append(client)
            self._tasks.append(asyncio.create_task(self._action_loop(client)))
            if result.get("canInterrupt"):
                self._tasks.append(asyncio.create_task(self._interrupt_loop(client)))

        self._logger.info(
            "simulation_started",
            url=self.ws_url,
            clients=len(self.clients),
            failed=self.failed_connections,
        )
        return len(self.clients)

    async def run(self, duration: Optional[float] = None, report_interval: float = 10.0) -> Dict[str, Any]:
        """Start, report periodically, and stop after ``duration`` (or on stop())."""
        await self.start()
        reporter = asyncio.create_task(self._report_loop(report_interval))
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=duration)
        except asyncio.TimeoutError:
            pass
        finally:
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)
            await self.stop()
        return self.snapshot()

    async def stop(self) -> None:
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        for client in self.clients:
            await client.close()
        if self._owns_http and self._http is not None:
            await self._http.aclose()
            self._http = None

        self._logger.info("simulation_stopped", **self.snapshot(per_client=True))

    def snapshot(self, per_client: bool = False) -> Dict[str, Any]:
        """Aggregate counters over all clients."""
        stats = [c.stats for c in self.clients]
        latencies = [value for s in stats for value in s.latencies]
        summary: Dict[str, Any] = {
            "clients": len(stats),
            "connectedClients": sum(1 for s in stats if s.connected),
            "failedConnections": self.failed_connections,
            "sent": sum(s.sent for s in stats),
            "completed": sum(s.completed for s in stats),
            "failed": sum(s.failed for s in stats),
            "denied": sum(s.denied for s in stats),
            "interruptsSent": sum(s.interrupts_sent for s in stats),
            "averageLatency": round(sum(latencies) / len(latencies), 4) if latencies else 0.0,
        }
        if per_client:
            summary["perClient"] = [s.to_dict() for s in stats]
        return summary

    # =========================================================================
    # Loops
    # =========================================================================

    def _assign_roles(self) -> List[str]:
        return [self._roles[i % len(self._roles)] for i in range(self._num_clients)]

    async def _action_loop(self, client: IPCClient) -> None:
        while not self._stop.is_set():
            try:
                await client.random_action()
            except ClientError as e:
                self._logger.warning("client_stopped", role=client.role, error=str(e))
                return
            await self._pause(self._action_interval)

    async def _interrupt_loop(self, client: IPCClient) -> None:
        while not self._stop.is_set():
            await self._pause(self._interrupt_interval)
            if self._stop.is_set():
                return

            active = await self.active_process_ids()
            if not active:
                continue
            target = self._rng.choice(active)
            try:
                response = await client.interrupt(target)
            except (ClientError, asyncio.TimeoutError) as e:
                self._logger.warning("interrupt_failed", pid=target, error=str(e))
                continue
            self._logger.info("interrupt_sent", pid=target, status=response.get("status"))

    async def _report_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self._logger.info("stats_report", **self.snapshot())

    async def _pause(self, bounds: Tuple[float, float]) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=self._rng.uniform(*bounds))
        except asyncio.TimeoutError:
            pass

    async def active_process_ids(self) -> List[str]:
        """Ids of running processes, read from ``/status/detailed``."""
        if self._http is None:
            return []
        try:
            response = await self._http.get("/status/detailed")
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._logger.warning("status_fetch_failed", error=str(e))
            return []
        return [p["id"] for p in response.json().get("processes", {}).get("active", [])]


def _websocket_url(base_url: str) -> str:
    if base_url.startswith("https://"):
        return "wss://" + base_url[len("https://"):] + "/ws"
    if base_url.startswith("http://"):
        return "ws://" + base_url[len("http://"):] + "/ws"
    return base_url + "/ws"
