"""
IPC Gateway - Main FastAPI Application.

Endpoints:
- WebSocket: /ws (auth / accion / interrumpir protocol)
- Status: /, /status, /status/detailed
- Health: /health (429 when degraded)
- Metrics: /metrics (Prometheus)

Run a single worker: all kernel state lives in this process.
"""

from __future__ import annotations

import asyncio
import json
import platform
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ipc_protocols import PROCESS_TYPES, EventName
from ipc_shared.logging import configure_logging, create_connection_logger
from ipc_shared.serialization import utc_now_iso

from ipc_avionics.bootstrap import Runtime, create_runtime, maintenance_loop
from ipc_avionics.gateway.health import check_system_health
from ipc_avionics.gateway.session import ConnectionSession
from ipc_avionics.settings import Settings, get_settings


VERSION = "1.0.0"

# Close code for "try again later"
WS_CLOSE_TRY_AGAIN_LATER = 1013


def create_app(
    settings: Optional[Settings] = None,
    runtime: Optional[Runtime] = None,
) -> FastAPI:
    """Build the gateway around a runtime (created from settings if not given)."""
    settings = settings or (runtime.settings if runtime else get_settings())
    configure_logging(level=settings.log_level, json_output=settings.log_json)
    runtime = runtime or create_runtime(settings)

    # =========================================================================
    # Application Lifecycle
    # =========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger = runtime.logger.bind(component="gateway")
        logger.info(
            "gateway_startup",
            host=settings.api_host,
            port=settings.api_port,
            max_connections=settings.max_connections,
        )

        stop = asyncio.Event()
        maintenance = asyncio.create_task(maintenance_loop(runtime, stop))
        try:
            yield
        finally:
            logger.info("gateway_shutdown_initiated")
            stop.set()
            await maintenance
            await runtime.shutdown()
            logger.info("gateway_shutdown_complete")

    app = FastAPI(
        title="IPC Control Tower",
        description="Admission-controlled process scheduler over websockets",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.started_at = time.monotonic()

    # Browsers refuse credentialed responses for a wildcard origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # Status Endpoints
    # =========================================================================

    @app.get("/")
    async def root() -> Dict[str, Any]:
        return {
            "service": "IPC Control Tower",
            "version": VERSION,
            "websocket": "/ws",
            "health": "/health",
            "status": "/status",
            "metrics": "/metrics",
        }

    @app.get("/status")
    async def status() -> Dict[str, Any]:
        return {
            "activeProcesses": runtime.registry.count_active(),
            "processTypes": _active_by_type(runtime),
            "connectedClients": runtime.connections.connection_count,
        }

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        report = check_system_health(
            active_process_count=runtime.registry.count_active(),
            connection_count=runtime.connections.connection_count,
            thresholds=runtime.health_thresholds(),
        )
        body: Dict[str, Any] = {
            "status": report.status,
            "timestamp": utc_now_iso(),
            "version": VERSION,
            "uptime": time.monotonic() - request.app.state.started_at,
            "connections": {
                "total": runtime.connections.connection_count,
                "byRole": runtime.connections.by_role(),
            },
            "processes": {
                "active": runtime.registry.count_active(),
                "total": len(runtime.registry),
                "byState": runtime.registry.state_counts(),
                "byType": _active_by_type(runtime),
            },
        }
        if not report.healthy:
            body["issues"] = report.issues
            return JSONResponse(status_code=429, content=body)
        return JSONResponse(content=body)

    @app.get("/status/detailed")
    async def detailed_status(request: Request) -> Dict[str, Any]:
        report = check_system_health(
            active_process_count=runtime.registry.count_active(),
            connection_count=runtime.connections.connection_count,
            thresholds=runtime.health_thresholds(),
        )
        return {
            "system": {
                "version": VERSION,
                "pythonVersion": platform.python_version(),
                "platform": platform.system().lower(),
                "arch": platform.machine(),
                "uptime": time.monotonic() - request.app.state.started_at,
                "health": report.to_dict(),
            },
            "processes": runtime.dispatcher.detailed_status(),
            "connections": {
                "total": runtime.connections.connection_count,
                "byRole": runtime.connections.by_role(),
            },
        }

    # =========================================================================
    # Metrics Endpoint
    # =========================================================================

    app.mount("/metrics", runtime.metrics.asgi_app())

    # =========================================================================
    # WebSocket
    # =========================================================================

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """
        Client connection.

        Inbound messages are JSON ``{"type": ..., "payload": {...}}``;
        outbound ``{"event": ..., "payload": {...}}``.
        """
        connection_id = uuid.uuid4().hex
        logger = create_connection_logger(connection_id)

        await websocket.accept()
        if not runtime.connections.try_register(connection_id):
            logger.warning(
                "connection_rejected",
                reason="max_connections",
                limit=runtime.connections.max_connections,
            )
            await websocket.close(code=WS_CLOSE_TRY_AGAIN_LATER, reason="server at connection limit")
            return

        async def send(event: str, payload: Dict[str, Any]) -> None:
            await websocket.send_json({"event": event, "payload": payload})

        session = ConnectionSession(
            connection_id=connection_id,
            send=send,
            dispatcher=runtime.dispatcher,
            verifier=runtime.signer,
            rate_limiter=runtime.rate_limiter,
            logger=logger,
            connections=runtime.connections,
            metrics=runtime.metrics,
        )
        logger.info("websocket_connected", client_count=runtime.connections.connection_count)

        try:
            while True:
                try:
                    message = await websocket.receive_json()
                except (json.JSONDecodeError, UnicodeDecodeError):
                    await send(EventName.ERROR.value, {"mensaje": "invalid JSON"})
                    continue
                await session.handle(message)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("websocket_error", error=str(e))
        finally:
            await session.close()
            logger.info(
                "websocket_disconnected",
                client_count=runtime.connections.connection_count,
            )

    return app


def _active_by_type(runtime: Runtime) -> Dict[str, int]:
    counts = runtime.registry.active_type_counts()
    return {ptype: counts.get(ptype, 0) for ptype in sorted(PROCESS_TYPES)}


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        create_app(_settings),
        host=_settings.api_host,
        port=_settings.api_port,
        log_level=_settings.log_level.lower(),
    )
