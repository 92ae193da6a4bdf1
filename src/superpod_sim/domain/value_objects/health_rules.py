"""Health thresholds for GPU health derivation.

Defines the numeric limits the central health derivation compares GPU
readings against. Every simulator renders health through these values so
that no two tools disagree about where "hot" starts.

References:
    - NVIDIA A100 thermal specification (slowdown 85 C, shutdown 90 C)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class HealthStatus(Enum):
    """GPU / node health, ordered by severity."""
    OK = "OK"
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return _RANK[self]

    @classmethod
    def worst(cls, *statuses: "HealthStatus") -> "HealthStatus":
        """Return the most severe of the given statuses (OK when empty)."""
        result = cls.OK
        for status in statuses:
            if status.rank > result.rank:
                result = status
        return result


_RANK = {
    HealthStatus.OK: 0,
    HealthStatus.WARNING: 1,
    HealthStatus.CRITICAL: 2,
}


@dataclass(frozen=True)
class HealthThresholds:
    """Thresholds used by derive_health."""
    thermal_warning_c: float = 85.0           # Slowdown temperature
    power_warning_fraction: float = 0.95      # Fraction of the enforced power limit
    shutdown_temp_c: float = 90.0             # Reported only, not a health input
    max_operating_temp_c: float = 83.0        # Reported only


DEFAULT_THRESHOLDS = HealthThresholds()
