"""Connection session - the per-client event protocol.

Transport agnostic: the session receives decoded ``{"type", "payload"}``
messages and replies through an async ``send(event, payload)`` callable,
so the websocket endpoint and the tests drive it the same way.

Events:
    auth         -> auth_response
    accion       -> accion_respuesta (sent when the process is terminal)
    interrumpir  -> interrupcion_respuesta
    anything else -> error
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from pydantic import BaseModel, ValidationError

from ipc_control_tower.dispatcher import Dispatcher
from ipc_control_tower.protocols import RateLimiterProtocol
from ipc_control_tower.types import Admission, InterruptResult, Outcome, ProcessState
from ipc_protocols import (
    ActionRequest,
    AuthRequest,
    EventName,
    InterruptRequest,
    LoggerProtocol,
    ResponsePayload,
    TokenClaims,
    TokenVerifierProtocol,
)

from ipc_avionics.gateway.connections import ConnectionRegistry
from ipc_avionics.observability.metrics import MetricsCollector


SendFn = Callable[[str, Dict[str, Any]], Awaitable[None]]


def validation_message(error: ValidationError) -> str:
    """Flatten a pydantic error into one readable line."""
    parts = []
    for err in error.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


class ConnectionSession:
    """Protocol state for one client connection.

    The connection id is the owner of every process the session submits,
    so concurrency limits and queues are scoped per connection.
    """

    def __init__(
        self,
        connection_id: str,
        send: SendFn,
        dispatcher: Dispatcher,
        verifier: TokenVerifierProtocol,
        rate_limiter: RateLimiterProtocol,
        logger: LoggerProtocol,
        connections: Optional[ConnectionRegistry] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.connection_id = connection_id
        self._send_fn = send
        self._dispatcher = dispatcher
        self._verifier = verifier
        self._rate_limiter = rate_limiter
        self._connections = connections
        self._metrics = metrics
        self._logger = logger.bind(component="connection_session", connection_id=connection_id)

        self.role: Optional[str] = None
        self.claims: Optional[TokenClaims] = None

        # Tasks waiting for action outcomes
        self._tasks: Set["asyncio.Task[None]"] = set()
        self._closed = False

    @property
    def authenticated(self) -> bool:
        return self.role is not None

    @property
    def pending_actions(self) -> int:
        return len(self._tasks)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def handle(self, message: Any) -> None:
        """Handle one inbound message."""
        if not isinstance(message, dict):
            await self._send(EventName.ERROR, {"mensaje": "invalid message"})
            return

        event = message.get("type")
        payload = message.get("payload")

        handlers = {
            EventName.AUTH.value: self._on_auth,
            EventName.ACCION.value: self._on_action,
            EventName.INTERRUMPIR.value: self._on_interrupt,
        }
        handler = handlers.get(event) if isinstance(event, str) else None
        if handler is None:
            self._logger.debug("unknown_event", event=event)
            await self._send(EventName.ERROR, {"mensaje": f"unknown event: {event}"})
            return

        try:
            await handler(payload)
        except Exception as e:
            self._logger.error("event_handler_failed", event=event, error=str(e))
            await self._send(_reply_event(event), ResponsePayload.failure(str(e)).to_wire())

    async def close(self) -> None:
        """Connection closed: release processes, queue and bookkeeping."""
        if self._closed:
            return
        self._closed = True

        released = self._dispatcher.release_owner(self.connection_id)
        self._rate_limiter.reset(self.connection_id)

        for task in list(self._tasks):
            task.cancel()

        if self._connections is not None:
            self._connections.unregister(self.connection_id)
        if self._metrics is not None and self.role is not None:
            self._metrics.record_disconnection(self.role)

        self._logger.info("session_closed", role=self.role, released=released)

    # =========================================================================
    # auth
    # =========================================================================

    async def _on_auth(self, payload: Any) -> None:
        request = await self._parse(AuthRequest, payload, EventName.AUTH_RESPONSE)
        if request is None:
            return

        claims = self._verifier.verify(request.token)
        if claims is None:
            await self._reply(EventName.AUTH_RESPONSE, ResponsePayload.failure("invalid or expired token"))
            return
        if claims.role != request.role:
            await self._reply(EventName.AUTH_RESPONSE, ResponsePayload.failure("role does not match token"))
            return

        permission = self._dispatcher.gate.get_permission(request.role)
        if permission is None:
            await self._reply(EventName.AUTH_RESPONSE, ResponsePayload.failure(f"unknown role: {request.role}"))
            return

        previous = self.role
        self.role = request.role
        self.claims = claims

        if self._connections is not None:
            self._connections.set_role(self.connection_id, self.role)
        if self._metrics is not None and previous != self.role:
            if previous is not None:
                self._metrics.record_disconnection(previous)
            self._metrics.record_connection(self.role)

        self._logger.info("client_authenticated", role=self.role, user_id=claims.subject)
        await self._reply(
            EventName.AUTH_RESPONSE,
            ResponsePayload.success(permissions=permission.to_dict()),
        )

    # =========================================================================
    # accion
    # =========================================================================

    async def _on_action(self, payload: Any) -> None:
        if not self.authenticated:
            await self._reply(EventName.ACCION_RESPUESTA, ResponsePayload.failure("not authenticated"))
            return

        if self._rate_limiter.check_rate_limit(self.connection_id).exceeded:
            if self._metrics is not None:
                self._metrics.record_error("rate_limit_exceeded", role=self.role)
            await self._reply(EventName.ACCION_RESPUESTA, ResponsePayload.failure("rate limit exceeded"))
            return

        request = await self._parse(ActionRequest, payload, EventName.ACCION_RESPUESTA)
        if request is None:
            return

        admission = self._dispatcher.submit(self.connection_id, self.role, request)
        if not admission.accepted:
            await self._reply(
                EventName.ACCION_RESPUESTA,
                ResponsePayload.failure(admission.reason or "denied"),
            )
            return

        task = asyncio.create_task(self._report_outcome(admission))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _report_outcome(self, admission: Admission) -> None:
        outcome = await admission.wait()
        await self._reply(EventName.ACCION_RESPUESTA, outcome_payload(outcome))

    # =========================================================================
    # interrumpir
    # =========================================================================

    async def _on_interrupt(self, payload: Any) -> None:
        if not self.authenticated:
            await self._reply(EventName.INTERRUPCION_RESPUESTA, ResponsePayload.failure("not authenticated"))
            return

        # Bare process id is accepted as shorthand
        if isinstance(payload, str):
            payload = {"processId": payload}

        request = await self._parse(InterruptRequest, payload, EventName.INTERRUPCION_RESPUESTA)
        if request is None:
            return

        result = self._dispatcher.interrupt(self.connection_id, self.role, request.process_id)
        if result == InterruptResult.OK:
            response = ResponsePayload.success(
                mensaje="interrupt requested",
                process_id=request.process_id,
            )
        elif result == InterruptResult.FORBIDDEN:
            response = ResponsePayload.failure(
                "not allowed to interrupt this process",
                process_id=request.process_id,
            )
        else:
            response = ResponsePayload.failure(
                "process not found",
                process_id=request.process_id,
            )
        await self._reply(EventName.INTERRUPCION_RESPUESTA, response)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _parse(self, model: type, payload: Any, reply_event: EventName) -> Optional[BaseModel]:
        try:
            return model.model_validate(payload if payload is not None else {})
        except ValidationError as e:
            message = validation_message(e)
            self._logger.debug("invalid_payload", event=reply_event.value, error=message)
            await self._reply(reply_event, ResponsePayload.failure(message))
            return None

    async def _reply(self, event: EventName, payload: ResponsePayload) -> None:
        await self._send(event, payload.to_wire())

    async def _send(self, event: Any, payload: Dict[str, Any]) -> None:
        if self._closed:
            return
        name = event.value if isinstance(event, EventName) else str(event)
        try:
            await self._send_fn(name, payload)
        except Exception as e:
            self._logger.warning("send_failed", event=name, error=str(e))


def outcome_payload(outcome: Outcome) -> ResponsePayload:
    """Map an action's final outcome to its ``accion_respuesta`` body."""
    process = outcome.process
    if process is None:
        return ResponsePayload.failure(outcome.reason or "denied")

    if process.state == ProcessState.COMPLETED:
        return ResponsePayload.success(
            mensaje="process completed",
            process_id=process.id,
            resultado={
                "processType": process.type,
                "state": process.state.value,
                "retries": process.retries,
                "durationSeconds": process.duration_seconds,
            },
        )
    if process.state == ProcessState.INTERRUPTED:
        return ResponsePayload.failure("process interrupted", process_id=process.id)
    return ResponsePayload.failure(process.error or "process failed", process_id=process.id)


def _reply_event(event: str) -> str:
    return {
        EventName.AUTH.value: EventName.AUTH_RESPONSE.value,
        EventName.ACCION.value: EventName.ACCION_RESPUESTA.value,
        EventName.INTERRUMPIR.value: EventName.INTERRUPCION_RESPUESTA.value,
    }.get(event, EventName.ERROR.value)
