"""Clock port.

Every timestamp the simulator prints or stores comes from an injected
clock, so identical state renders identical output under a fixed clock.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def system_clock() -> datetime:
    """Current UTC time."""
    return datetime.now(timezone.utc)


def fixed_clock(moment: datetime) -> Clock:
    """Return a clock frozen at ``moment``."""
    def _now() -> datetime:
        return moment
    return _now


def isoformat_utc(moment: datetime) -> str:
    """Render a timestamp the way stored records carry it."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
