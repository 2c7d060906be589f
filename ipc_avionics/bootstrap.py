"""Composition root.

Builds the kernel and its infrastructure from Settings in one place, so
the gateway, scripts and tests share the same wiring.

Usage:
    runtime = create_runtime(get_settings())
    task = asyncio.create_task(maintenance_loop(runtime, stop_event))
    ...
    await runtime.shutdown()
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Optional

from ipc_control_tower.dispatcher import Dispatcher
from ipc_control_tower.events.aggregator import EventAggregator
from ipc_control_tower.lifecycle.manager import ProcessLifecycle
from ipc_control_tower.lifecycle.registry import ProcessRegistry
from ipc_control_tower.permissions.gate import PermissionGate
from ipc_control_tower.protocols import WorkOutcome
from ipc_control_tower.resources.rate_limiter import RateLimiter
from ipc_protocols import LoggerProtocol
from ipc_shared.logging import create_logger

from ipc_avionics.gateway.connections import ConnectionRegistry
from ipc_avionics.gateway.health import HealthThresholds
from ipc_avionics.observability.metrics import MetricsCollector
from ipc_avionics.security.tokens import TokenSigner
from ipc_avionics.settings import Settings


@dataclass
class Runtime:
    """Every long-lived component of a running server."""
    settings: Settings
    logger: LoggerProtocol
    events: EventAggregator
    gate: PermissionGate
    registry: ProcessRegistry
    lifecycle: ProcessLifecycle
    dispatcher: Dispatcher
    rate_limiter: RateLimiter
    signer: TokenSigner
    metrics: MetricsCollector
    connections: ConnectionRegistry

    def health_thresholds(self) -> HealthThresholds:
        return HealthThresholds(
            max_connections=self.settings.max_connections,
            connection_warning_percent=self.settings.alert_connection_warning_percent,
            max_active_processes=self.settings.alert_max_active_processes,
        )

    async def shutdown(self) -> None:
        await self.dispatcher.shutdown()
        self.metrics.detach(self.events)


def create_runtime(
    settings: Settings,
    logger: Optional[LoggerProtocol] = None,
    metrics: Optional[MetricsCollector] = None,
    work_outcome: Optional[WorkOutcome] = None,
    rng: Optional[random.Random] = None,
) -> Runtime:
    """Wire the kernel and infrastructure from settings."""
    logger = logger or create_logger("ipc_server")
    config = settings.scheduler_config()

    events = EventAggregator(logger)
    gate = PermissionGate(settings.permission_table())
    registry = ProcessRegistry(logger)
    lifecycle = ProcessLifecycle(
        registry,
        events,
        logger,
        config=config,
        work_outcome=work_outcome,
        rng=rng,
    )
    rate_limiter = RateLimiter(logger, settings.rate_limit_config())
    dispatcher = Dispatcher(
        gate,
        registry,
        lifecycle,
        events,
        logger,
        config=config,
        rate_limiter=rate_limiter,
    )

    metrics = metrics or MetricsCollector(logger=logger)
    metrics.attach(events)

    signer = TokenSigner(
        secret=settings.token_secret,
        ttl_seconds=settings.token_ttl_seconds,
        logger=logger,
    )

    settings.log_config(logger)

    return Runtime(
        settings=settings,
        logger=logger,
        events=events,
        gate=gate,
        registry=registry,
        lifecycle=lifecycle,
        dispatcher=dispatcher,
        rate_limiter=rate_limiter,
        signer=signer,
        metrics=metrics,
        connections=ConnectionRegistry(settings.max_connections),
    )


async def maintenance_loop(runtime: Runtime, stop: asyncio.Event) -> None:
    """Run dispatcher maintenance every ``cleanup_interval`` seconds until stopped."""
    interval = runtime.settings.cleanup_interval
    logger = runtime.logger.bind(component="maintenance")

    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
        if stop.is_set():
            break

        try:
            runtime.dispatcher.run_maintenance()
        except Exception as e:
            logger.error("maintenance_failed", error=str(e))

    logger.info("maintenance_stopped")
