"""System health evaluation for ``GET /health``.

A report is ``degraded`` when any threshold is crossed; the gateway then
answers 429 so load balancers back off.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List


@dataclass(frozen=True)
class HealthThresholds:
    max_connections: int = 100
    connection_warning_percent: float = 90.0
    max_active_processes: int = 100


@dataclass
class HealthReport:
    status: str
    issues: List[str] = field(default_factory=list)
    connection_percent: float = 0.0
    active_process_count: int = 0

    @property
    def healthy(self) -> bool:
        return not self.issues

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "issues": list(self.issues),
            "metrics": {
                "connectionPercent": self.connection_percent,
                "activeProcessCount": self.active_process_count,
            },
        }


def check_system_health(
    active_process_count: int,
    connection_count: int,
    thresholds: HealthThresholds,
) -> HealthReport:
    """Compare current load against the alert thresholds."""
    connection_percent = connection_count * 100 / thresholds.max_connections
    issues: List[str] = []

    if connection_percent > thresholds.connection_warning_percent:
        issues.append(f"High connection count: {connection_count}")

    if active_process_count > thresholds.max_active_processes:
        issues.append(f"High active process count: {active_process_count}")

    return HealthReport(
        status="degraded" if issues else "healthy",
        issues=issues,
        connection_percent=connection_percent,
        active_process_count=active_process_count,
    )
