"""Unit tests for the Dispatcher.

Covers admission (start / queue / deny), queue drain on completion,
interrupt authorization, owner release, maintenance and shutdown.
"""

import asyncio
import random
from dataclasses import replace

import pytest

from ipc_control_tower.dispatcher import Dispatcher
from ipc_control_tower.events.aggregator import EventAggregator
from ipc_control_tower.lifecycle.manager import ProcessLifecycle
from ipc_control_tower.lifecycle.registry import ProcessRegistry
from ipc_control_tower.permissions.gate import PermissionGate, default_permission_table
from ipc_control_tower.resources.rate_limiter import RateLimiter
from ipc_control_tower.types import (
    AdmissionStatus,
    InterruptResult,
    ProcessState,
    SchedulerConfig,
)
from ipc_shared.id_generator import SequentialIdGenerator


SLOW = SchedulerConfig(
    min_duration=5.0,
    max_duration=5.0,
    check_interval=0.01,
    max_queue_size=5,
)


@pytest.fixture
def make_dispatcher(mock_logger, fake_clock, fast_config):
    """Build a dispatcher with its own kernel components."""

    def _make(config=None, rate_limiter=None, **caps):
        config = config or fast_config
        events = EventAggregator(mock_logger)
        registry = ProcessRegistry(mock_logger)
        lifecycle = ProcessLifecycle(
            registry, events, mock_logger, config=config, rng=random.Random(3)
        )
        return Dispatcher(
            PermissionGate(default_permission_table(**caps)),
            registry,
            lifecycle,
            events,
            mock_logger,
            config=config,
            id_generator=SequentialIdGenerator(),
            queue_clock=fake_clock,
            rate_limiter=rate_limiter,
        )

    return _make


# =============================================================================
# ADMISSION
# =============================================================================


@pytest.mark.asyncio
async def test_viewer_calculation_is_forbidden(make_dispatcher, make_request):
    dispatcher = make_dispatcher()

    admission = dispatcher.submit(
        "conn-1", "viewer", make_request("consulta", "calculation")
    )

    assert admission.status == AdmissionStatus.DENIED
    assert admission.reason == "forbidden"
    assert not admission.accepted
    assert len(dispatcher.registry) == 0
    assert dispatcher.queued_count() == 0

    outcome = await admission.wait()
    assert not outcome.ran
    assert outcome.reason == "forbidden"


@pytest.mark.asyncio
async def test_unknown_role_is_forbidden(make_dispatcher, make_request):
    dispatcher = make_dispatcher()

    admission = dispatcher.submit("conn-1", "guest", make_request())

    assert admission.reason == "forbidden"


@pytest.mark.asyncio
async def test_started_action_completes(make_dispatcher, make_request):
    dispatcher = make_dispatcher()

    admission = dispatcher.submit("conn-1", "operator", make_request(data={"q": 1}))

    assert admission.status == AdmissionStatus.STARTED
    assert admission.process_id == "conn-1-000001"
    process = dispatcher.registry.get(admission.process_id)
    assert process.state == ProcessState.RUNNING
    assert process.owner == "conn-1"
    assert process.role == "operator"

    outcome = await asyncio.wait_for(admission.wait(), timeout=2.0)

    assert outcome.ran
    assert outcome.state == ProcessState.COMPLETED
    assert dispatcher.registry.count_active() == 0


@pytest.mark.asyncio
async def test_queued_action_auto_starts_after_completion(make_dispatcher, make_request):
    dispatcher = make_dispatcher(operator_max=1)

    first = dispatcher.submit("conn-1", "operator", make_request())
    second = dispatcher.submit("conn-1", "operator", make_request())

    assert first.status == AdmissionStatus.STARTED
    assert second.status == AdmissionStatus.QUEUED
    assert second.entry_id is not None
    assert dispatcher.registry.count_active("conn-1") == 1
    assert dispatcher.queued_count("conn-1") == 1

    first_outcome, second_outcome = await asyncio.wait_for(
        asyncio.gather(first.wait(), second.wait()), timeout=2.0
    )

    assert first_outcome.state == ProcessState.COMPLETED
    assert second_outcome.state == ProcessState.COMPLETED
    assert second_outcome.process.start_time >= first_outcome.process.end_time
    assert dispatcher.queued_count() == 0
    assert dispatcher.queue_for("conn-1").total_processed == 1


@pytest.mark.asyncio
async def test_limits_are_per_owner(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW, operator_max=1)

    a = dispatcher.submit("conn-1", "operator", make_request())
    b = dispatcher.submit("conn-2", "operator", make_request())

    assert a.status == AdmissionStatus.STARTED
    assert b.status == AdmissionStatus.STARTED

    await dispatcher.shutdown()


@pytest.mark.asyncio
async def test_full_queue_denies(make_dispatcher, make_request):
    # A zero cap keeps everything queued
    dispatcher = make_dispatcher(operator_max=0)

    admissions = [
        dispatcher.submit("conn-1", "operator", make_request()) for _ in range(6)
    ]

    assert [a.status for a in admissions[:5]] == [AdmissionStatus.QUEUED] * 5
    assert admissions[5].status == AdmissionStatus.DENIED
    assert admissions[5].reason == "queue full"
    assert dispatcher.queued_count("conn-1") == 5
    assert dispatcher.queue_for("conn-1").discarded == 1
    assert len(dispatcher.registry) == 0

    dispatcher.release_owner("conn-1")
    outcomes = await asyncio.gather(*(a.wait() for a in admissions[:5]))
    assert {o.reason for o in outcomes} == {"cancelled"}


@pytest.mark.asyncio
async def test_admission_events(make_dispatcher, make_request):
    dispatcher = make_dispatcher(operator_max=1)
    events = dispatcher._events

    dispatcher.submit("conn-1", "viewer", make_request("consulta", "calculation"))
    first = dispatcher.submit("conn-1", "operator", make_request())
    second = dispatcher.submit("conn-1", "operator", make_request())
    await asyncio.wait_for(asyncio.gather(first.wait(), second.wait()), timeout=2.0)

    counts = events.get_event_counts()
    assert counts["action.denied"] == 1
    assert counts["action.enqueued"] == 1
    assert counts["action.dequeued"] == 1
    assert counts["process.created"] == 2
    assert counts["process.ended"] == 2


# =============================================================================
# PROMOTION RE-CHECK
# =============================================================================


@pytest.mark.asyncio
async def test_promotion_rechecks_permissions(make_dispatcher, make_request):
    dispatcher = make_dispatcher(operator_max=1)

    first = dispatcher.submit("conn-1", "operator", make_request())
    queued = dispatcher.submit("conn-1", "operator", make_request())

    table = default_permission_table(operator_max=1)
    table["operator"] = replace(table["operator"], allowed_process_types=frozenset({"calculation"}))
    dispatcher.update_permissions(PermissionGate(table))

    await asyncio.wait_for(first.wait(), timeout=2.0)
    outcome = await asyncio.wait_for(queued.wait(), timeout=2.0)

    assert not outcome.ran
    assert outcome.reason == "forbidden"


@pytest.mark.asyncio
async def test_removed_role_releases_backlog_as_forbidden(make_dispatcher, make_request):
    dispatcher = make_dispatcher(operator_max=1)

    first = dispatcher.submit("conn-1", "operator", make_request())
    second = dispatcher.submit("conn-1", "operator", make_request())
    third = dispatcher.submit("conn-1", "operator", make_request())
    assert second.status == AdmissionStatus.QUEUED

    table = default_permission_table(operator_max=1)
    del table["operator"]
    dispatcher.update_permissions(PermissionGate(table))

    outcomes = await asyncio.wait_for(
        asyncio.gather(second.wait(), third.wait()), timeout=1.0
    )
    await asyncio.wait_for(first.wait(), timeout=2.0)

    assert [o.reason for o in outcomes] == ["forbidden", "forbidden"]
    assert dispatcher.queued_count("conn-1") == 0


@pytest.mark.asyncio
async def test_forbidden_head_does_not_block_entries_behind_it(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW, operator_max=1)

    running = dispatcher.submit("conn-1", "operator", make_request("consulta", "database"))
    revoked = dispatcher.submit("conn-1", "operator", make_request("consulta", "database"))
    allowed = dispatcher.submit("conn-1", "operator", make_request("consulta", "calculation"))

    table = default_permission_table(operator_max=2)
    table["operator"] = replace(table["operator"], allowed_process_types=frozenset({"calculation"}))
    promoted = dispatcher.update_permissions(PermissionGate(table))

    outcome = await asyncio.wait_for(revoked.wait(), timeout=1.0)

    assert outcome.reason == "forbidden"
    assert promoted == 1
    assert dispatcher.queued_count("conn-1") == 0
    assert dispatcher.registry.count_active("conn-1") == 2
    assert allowed.status == AdmissionStatus.QUEUED
    await dispatcher.shutdown()
    assert (await running.wait()).state == ProcessState.INTERRUPTED


@pytest.mark.asyncio
async def test_raised_limit_drains_backlog_immediately(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW, operator_max=1)

    dispatcher.submit("conn-1", "operator", make_request())
    queued = dispatcher.submit("conn-1", "operator", make_request())
    assert queued.status == AdmissionStatus.QUEUED

    promoted = dispatcher.update_permissions(
        PermissionGate(default_permission_table(operator_max=3))
    )

    assert promoted == 1
    assert dispatcher.queued_count("conn-1") == 0
    assert dispatcher.registry.count_active("conn-1") == 2
    await dispatcher.shutdown()


@pytest.mark.asyncio
async def test_new_submission_does_not_overtake_backlog(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW, operator_max=1)

    dispatcher.submit("conn-1", "operator", make_request())
    older = dispatcher.submit("conn-1", "operator", make_request())
    newer = dispatcher.submit("conn-1", "operator", make_request())
    assert older.status == AdmissionStatus.QUEUED
    assert newer.status == AdmissionStatus.QUEUED

    # Cap raised without a drain leaves free slots behind a backlog
    dispatcher._gate = PermissionGate(default_permission_table(operator_max=2))
    latest = dispatcher.submit("conn-1", "operator", make_request())

    assert latest.status == AdmissionStatus.QUEUED
    queue = dispatcher.queue_for("conn-1")
    assert queue.entry_ids() == [newer.entry_id, latest.entry_id]
    assert dispatcher.registry.count_active("conn-1") == 2
    await dispatcher.shutdown()


# =============================================================================
# INTERRUPTS
# =============================================================================


@pytest.mark.asyncio
async def test_owner_interrupts_own_process(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW)
    admission = dispatcher.submit("conn-1", "operator", make_request())

    result = dispatcher.interrupt("conn-1", "operator", admission.process_id)
    outcome = await asyncio.wait_for(admission.wait(), timeout=2.0)

    assert result == InterruptResult.OK
    assert outcome.state == ProcessState.INTERRUPTED


@pytest.mark.asyncio
async def test_other_operator_cannot_interrupt(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW)
    admission = dispatcher.submit("conn-1", "operator", make_request())

    result = dispatcher.interrupt("conn-2", "operator", admission.process_id)

    assert result == InterruptResult.FORBIDDEN
    assert not dispatcher.registry.get(admission.process_id).cancel_requested
    await dispatcher.shutdown()


@pytest.mark.asyncio
async def test_admin_interrupts_anyone(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW)
    admission = dispatcher.submit("conn-1", "operator", make_request())

    result = dispatcher.interrupt("conn-9", "admin", admission.process_id)
    outcome = await asyncio.wait_for(admission.wait(), timeout=2.0)

    assert result == InterruptResult.OK
    assert outcome.state == ProcessState.INTERRUPTED


@pytest.mark.asyncio
async def test_interrupt_unknown_or_finished(make_dispatcher, make_request):
    dispatcher = make_dispatcher()
    admission = dispatcher.submit("conn-1", "operator", make_request())
    await asyncio.wait_for(admission.wait(), timeout=2.0)

    assert dispatcher.interrupt("conn-1", "admin", "ghost") == InterruptResult.NOT_FOUND
    assert dispatcher.interrupt("conn-1", "admin", admission.process_id) == InterruptResult.NOT_FOUND


# =============================================================================
# RELEASE / MAINTENANCE / SHUTDOWN
# =============================================================================


@pytest.mark.asyncio
async def test_release_owner(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW, operator_max=1)
    running = dispatcher.submit("conn-1", "operator", make_request())
    queued = dispatcher.submit("conn-1", "operator", make_request())
    other = dispatcher.submit("conn-2", "operator", make_request())

    released = dispatcher.release_owner("conn-1")

    assert released == 2
    running_outcome = await asyncio.wait_for(running.wait(), timeout=2.0)
    queued_outcome = await asyncio.wait_for(queued.wait(), timeout=2.0)
    assert running_outcome.state == ProcessState.INTERRUPTED
    assert queued_outcome.reason == "cancelled"
    assert dispatcher.registry.get(other.process_id).state == ProcessState.RUNNING

    await dispatcher.shutdown()


@pytest.mark.asyncio
async def test_maintenance_expires_stale_entries(make_dispatcher, make_request, fake_clock, fast_config):
    dispatcher = make_dispatcher(operator_max=0)
    admission = dispatcher.submit("conn-1", "operator", make_request())

    fake_clock.advance(fast_config.queue_max_age + 1)
    summary = dispatcher.run_maintenance()

    assert summary["expired_entries"] == 1
    outcome = await admission.wait()
    assert outcome.reason == "expired"
    assert dispatcher.queued_count() == 0
    # Empty, idle scopes are forgotten
    assert dispatcher.queue_for("conn-1") is None


@pytest.mark.asyncio
async def test_maintenance_purges_old_processes(make_dispatcher, make_request, fast_config, mock_logger, fake_clock):
    config = replace(fast_config, process_retention=0.0)
    limiter = RateLimiter(mock_logger, clock=fake_clock)
    dispatcher = make_dispatcher(config=config, rate_limiter=limiter)
    admission = dispatcher.submit("conn-1", "operator", make_request())
    await asyncio.wait_for(admission.wait(), timeout=2.0)
    await asyncio.sleep(0.01)

    limiter.check_rate_limit("conn-1")
    fake_clock.advance(600)

    summary = dispatcher.run_maintenance()

    assert summary["removed_processes"] == 1
    assert summary["rate_windows_cleaned"] == 1
    assert admission.process_id not in dispatcher.registry


@pytest.mark.asyncio
async def test_status(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW, operator_max=1)
    dispatcher.submit("conn-1", "operator", make_request())
    dispatcher.submit("conn-1", "operator", make_request())

    status = dispatcher.status()
    assert status["activeProcesses"] == 1
    assert status["processTypes"] == {"database": 1}
    assert status["queuedActions"] == 1
    assert status["states"]["running"] == 1

    detailed = dispatcher.detailed_status()
    assert detailed["queues"]["conn-1"]["currentSize"] == 1
    assert detailed["roles"]["viewer"]["maxConcurrentProcesses"] == 2
    assert len(detailed["active"]) == 1

    await dispatcher.shutdown()


@pytest.mark.asyncio
async def test_shutdown_interrupts_everything(make_dispatcher, make_request):
    dispatcher = make_dispatcher(config=SLOW, operator_max=1)
    running = dispatcher.submit("conn-1", "operator", make_request())
    queued = dispatcher.submit("conn-1", "operator", make_request())

    await asyncio.wait_for(dispatcher.shutdown(), timeout=2.0)

    assert (await running.wait()).state == ProcessState.INTERRUPTED
    assert (await queued.wait()).reason == "cancelled"
    assert dispatcher.registry.count_active() == 0
