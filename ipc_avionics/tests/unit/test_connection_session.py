"""Unit tests for ConnectionSession.

The session is driven directly with decoded messages; replies are
captured by a recording ``send`` callable.
"""

import asyncio

import pytest

from ipc_avionics.bootstrap import create_runtime
from ipc_avionics.gateway.session import ConnectionSession, outcome_payload
from ipc_avionics.observability.metrics import MetricsCollector
from ipc_control_tower.resources.rate_limiter import RateLimitConfig, RateLimiter
from ipc_control_tower.types import Outcome, Process, ProcessState


class Recorder:
    """Collects ``(event, payload)`` replies."""

    def __init__(self):
        self.messages = []

    async def __call__(self, event, payload):
        self.messages.append((event, payload))

    def of(self, event):
        return [p for e, p in self.messages if e == event]

    async def wait_for(self, event, count=1, timeout=2.0):
        async def _poll():
            while len(self.of(event)) < count:
                await asyncio.sleep(0.005)

        await asyncio.wait_for(_poll(), timeout)
        return self.of(event)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def slow_runtime(settings, mock_logger):
    """Runtime whose processes run long enough to be interrupted."""
    slow = settings.model_copy(
        update={"process_min_duration": 5.0, "process_max_duration": 5.0, "process_check_interval": 0.01}
    )
    return create_runtime(
        slow,
        logger=mock_logger,
        metrics=MetricsCollector(include_runtime_collectors=False),
    )


@pytest.fixture
def make_session(runtime, recorder, mock_logger):
    def _make(connection_id="conn-1", rate_limiter=None, runtime=runtime):
        runtime.connections.try_register(connection_id)
        return ConnectionSession(
            connection_id=connection_id,
            send=recorder,
            dispatcher=runtime.dispatcher,
            verifier=runtime.signer,
            rate_limiter=rate_limiter or runtime.rate_limiter,
            logger=mock_logger,
            connections=runtime.connections,
            metrics=runtime.metrics,
        )

    return _make


def _action(action_type="solicitud", process_type="database", **extra):
    payload = {"type": action_type, "processType": process_type, "priority": 2, "data": {}}
    payload.update(extra)
    return {"type": "accion", "payload": payload}


async def _login(session, signer, role="operator"):
    await session.handle({"type": "auth", "payload": {"role": role, "token": signer.issue(role, "u1")}})


# =============================================================================
# auth
# =============================================================================


@pytest.mark.asyncio
async def test_auth_success(make_session, recorder, signer, runtime):
    session = make_session()

    await _login(session, signer, "viewer")

    [reply] = recorder.of("auth_response")
    assert reply["status"] == "success"
    assert reply["permissions"]["role"] == "viewer"
    assert reply["permissions"]["processTypes"] == ["analysis"]
    assert session.authenticated
    assert runtime.connections.by_role() == {"viewer": 1}
    assert runtime.metrics.sample("ipc_connections_current", role="viewer") == 1


@pytest.mark.asyncio
async def test_auth_bad_token(make_session, recorder):
    session = make_session()

    await session.handle({"type": "auth", "payload": {"role": "admin", "token": "forged.token"}})

    [reply] = recorder.of("auth_response")
    assert reply == {"status": "error", "mensaje": "invalid or expired token"}
    assert not session.authenticated


@pytest.mark.asyncio
async def test_auth_role_mismatch(make_session, recorder, signer):
    session = make_session()

    await session.handle(
        {"type": "auth", "payload": {"role": "admin", "token": signer.issue("viewer", "u1")}}
    )

    assert recorder.of("auth_response")[0]["mensaje"] == "role does not match token"
    assert not session.authenticated


@pytest.mark.asyncio
async def test_auth_unknown_role(make_session, recorder, signer):
    session = make_session()

    await _login(session, signer, "guest")

    assert recorder.of("auth_response")[0]["mensaje"] == "unknown role: guest"


@pytest.mark.asyncio
async def test_auth_missing_fields(make_session, recorder):
    session = make_session()

    await session.handle({"type": "auth", "payload": {"role": "admin"}})

    reply = recorder.of("auth_response")[0]
    assert reply["status"] == "error"
    assert "token" in reply["mensaje"]


# =============================================================================
# accion
# =============================================================================


@pytest.mark.asyncio
async def test_action_requires_auth(make_session, recorder):
    session = make_session()

    await session.handle(_action())

    assert recorder.of("accion_respuesta") == [{"status": "error", "mensaje": "not authenticated"}]


@pytest.mark.asyncio
async def test_action_completes(make_session, recorder, signer):
    session = make_session()
    await _login(session, signer)

    await session.handle(_action())
    [reply] = await recorder.wait_for("accion_respuesta")

    assert reply["status"] == "success"
    assert reply["mensaje"] == "process completed"
    assert reply["processId"].startswith("conn-1-")
    assert reply["resultado"]["processType"] == "database"
    assert reply["resultado"]["state"] == "completed"


@pytest.mark.asyncio
async def test_action_forbidden(make_session, recorder, signer, runtime):
    session = make_session()
    await _login(session, signer, "viewer")

    await session.handle(_action("consulta", "calculation"))

    assert recorder.of("accion_respuesta") == [{"status": "error", "mensaje": "forbidden"}]
    assert len(runtime.registry) == 0


@pytest.mark.asyncio
async def test_action_validation_error(make_session, recorder, signer):
    session = make_session()
    await _login(session, signer)

    await session.handle(_action(priority=9))

    reply = recorder.of("accion_respuesta")[0]
    assert reply["status"] == "error"
    assert "priority" in reply["mensaje"]


@pytest.mark.asyncio
async def test_action_rate_limited(make_session, recorder, signer, mock_logger, runtime):
    limiter = RateLimiter(mock_logger, RateLimitConfig(max_requests=1, window_seconds=60))
    session = make_session(rate_limiter=limiter)
    await _login(session, signer)

    await session.handle(_action())
    await session.handle(_action())

    replies = await recorder.wait_for("accion_respuesta", count=2)
    assert {"status": "error", "mensaje": "rate limit exceeded"} in replies
    assert runtime.metrics.sample(
        "ipc_errors_total", error_type="rate_limit_exceeded", process_type="unknown", role="operator"
    ) == 1


# =============================================================================
# interrumpir
# =============================================================================


@pytest.mark.asyncio
async def test_interrupt_own_process(make_session, recorder, signer, slow_runtime):
    session = make_session(runtime=slow_runtime)
    await _login(session, signer)
    await session.handle(_action())
    [pid] = [p.id for p in slow_runtime.registry.active_processes()]

    await session.handle({"type": "interrumpir", "payload": {"processId": pid}})

    [ack] = recorder.of("interrupcion_respuesta")
    assert ack == {"status": "success", "mensaje": "interrupt requested", "processId": pid}

    [reply] = await recorder.wait_for("accion_respuesta")
    assert reply == {"status": "error", "mensaje": "process interrupted", "processId": pid}


@pytest.mark.asyncio
async def test_interrupt_unknown_bare_id(make_session, recorder, signer):
    session = make_session()
    await _login(session, signer, "admin")

    await session.handle({"type": "interrumpir", "payload": "ghost"})

    [reply] = recorder.of("interrupcion_respuesta")
    assert reply["status"] == "error"
    assert reply["mensaje"] == "process not found"


@pytest.mark.asyncio
async def test_interrupt_requires_auth(make_session, recorder):
    session = make_session()

    await session.handle({"type": "interrumpir", "payload": {"processId": "x"}})

    assert recorder.of("interrupcion_respuesta")[0]["mensaje"] == "not authenticated"


# =============================================================================
# protocol errors and close
# =============================================================================


@pytest.mark.asyncio
async def test_unknown_event(make_session, recorder):
    session = make_session()

    await session.handle({"type": "borrar", "payload": {}})
    await session.handle({"type": ["list"]})
    await session.handle("not a dict")

    assert recorder.of("error") == [
        {"mensaje": "unknown event: borrar"},
        {"mensaje": "unknown event: ['list']"},
        {"mensaje": "invalid message"},
    ]


@pytest.mark.asyncio
async def test_close_releases_everything(make_session, recorder, signer, slow_runtime):
    session = make_session(runtime=slow_runtime)
    await _login(session, signer)
    await session.handle(_action())
    assert slow_runtime.registry.count_active("conn-1") == 1

    await session.close()
    await session.close()
    await asyncio.sleep(0.05)

    assert slow_runtime.registry.count_active("conn-1") == 0
    assert slow_runtime.connections.connection_count == 0
    assert slow_runtime.metrics.sample("ipc_connections_current", role="operator") == 0
    assert session.pending_actions == 0


def test_outcome_payloads():
    failed = Process(id="p1", type="network", owner="o", role="admin")
    failed.state = ProcessState.FAILED
    failed.error = "simulated network failure"

    assert outcome_payload(Outcome(reason="expired")).to_wire() == {
        "status": "error",
        "mensaje": "expired",
    }
    assert outcome_payload(Outcome(process=failed)).to_wire() == {
        "status": "error",
        "mensaje": "simulated network failure",
        "processId": "p1",
    }
