"""Pytest configuration for ipc_control_tower tests.

Control Tower tests exercise kernel components in isolation: no network,
no settings, millisecond process durations.
"""

import random
from typing import Dict

import pytest

from ipc_protocols import ActionRequest
from ipc_shared.id_generator import SequentialIdGenerator


# =============================================================================
# PYTEST MARKERS
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (may use mocks)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests across kernel components"
    )


# =============================================================================
# CONTROL TOWER TYPE FIXTURES
# =============================================================================
# Note: mock_logger and fake_clock fixtures are centralized in root conftest.py

@pytest.fixture
def fast_config():
    """Scheduler config with millisecond durations."""
    from ipc_control_tower.types import SchedulerConfig

    return SchedulerConfig(
        min_duration=0.001,
        max_duration=0.003,
        check_interval=0.001,
        max_retries=3,
        failure_rate=0.0,
        max_queue_size=5,
        queue_max_age=300.0,
        process_retention=3600.0,
    )


@pytest.fixture
def make_action():
    """Factory for validated Actions."""
    from ipc_control_tower.types import Action

    def _make(
        action_type: str = "solicitud",
        process_type: str = "database",
        owner: str = "conn-1",
        role: str = "operator",
        priority: int = 1,
        data: Dict = None,
    ):
        return Action(
            type=action_type,
            process_type=process_type,
            data=data if data is not None else {},
            owner=owner,
            role=role,
            priority=priority,
        )

    return _make


@pytest.fixture
def make_request():
    """Factory for wire-validated ActionRequests."""

    def _make(
        action_type: str = "solicitud",
        process_type: str = "database",
        priority: int = 1,
        data: Dict = None,
    ):
        return ActionRequest(
            type=action_type,
            processType=process_type,
            priority=priority,
            data=data if data is not None else {},
        )

    return _make


# =============================================================================
# COMPONENT FIXTURES
# =============================================================================

@pytest.fixture
def event_aggregator(mock_logger):
    from ipc_control_tower.events.aggregator import EventAggregator

    return EventAggregator(logger=mock_logger)


@pytest.fixture
def registry(mock_logger):
    from ipc_control_tower.lifecycle.registry import ProcessRegistry

    return ProcessRegistry(logger=mock_logger)


@pytest.fixture
def lifecycle(registry, event_aggregator, mock_logger, fast_config):
    from ipc_control_tower.lifecycle.manager import ProcessLifecycle

    return ProcessLifecycle(
        registry,
        event_aggregator,
        mock_logger,
        config=fast_config,
        rng=random.Random(7),
    )


@pytest.fixture
def gate():
    from ipc_control_tower.permissions.gate import PermissionGate, default_permission_table

    return PermissionGate(default_permission_table())


@pytest.fixture
def id_generator():
    return SequentialIdGenerator()
