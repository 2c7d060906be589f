"""Observability Module.

Prometheus metrics driven by kernel events.

Components:
- MetricsCollector: subscribes to the event aggregator and exports counters,
  gauges and histograms
"""

from ipc_avionics.observability.metrics import MetricsCollector

__all__ = ["MetricsCollector"]
