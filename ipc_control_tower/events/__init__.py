"""Event management - kernel event fan-out and history."""

from ipc_control_tower.events.aggregator import EventAggregator

__all__ = ["EventAggregator"]
