"""Maintenance window gate."""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass
from datetime import datetime, time

_HHMM_RE = re.compile(r"([01]\d|2[0-3]):?([0-5]\d)")


class GateDecision(enum.Enum):
    PROCEED = "proceed"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class MaintenanceWindow:
    """Allowed time-of-day range; ``start > stop`` wraps past midnight."""

    start: time
    stop: time

    @property
    def crosses_midnight(self) -> bool:
        return self.start > self.stop

    def __str__(self) -> str:
        return f"{self.start:%H:%M}-{self.stop:%H:%M}"


def parse_hhmm(value: str) -> time:
    """Parse ``HHMM`` (or ``HH:MM``) into a :class:`datetime.time`."""
    match = _HHMM_RE.fullmatch(value.strip())
    if match is None:
        raise ValueError(f"invalid time of day {value!r}, expected HHMM")
    return time(int(match.group(1)), int(match.group(2)))


def check_window(now: datetime | time, window: MaintenanceWindow | None) -> GateDecision:
    """Decide whether rebuild work may start at *now*."""
    if window is None:
        return GateDecision.PROCEED
    current = now.time() if isinstance(now, datetime) else now
    # HHMM bounds cover their whole minute.
    current = current.replace(second=0, microsecond=0, tzinfo=None)

    if not window.crosses_midnight:
        blocked = current < window.start or current > window.stop
    else:
        blocked = window.stop < current < window.start
    return GateDecision.BLOCKED if blocked else GateDecision.PROCEED
