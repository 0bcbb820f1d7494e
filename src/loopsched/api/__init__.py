from __future__ import annotations

from .config import ScheduleOptions
from .driver import apply_schedule
from .handles import Handle, HandleKind
from .schedule import Schedule

__all__ = [
    "Handle",
    "HandleKind",
    "Schedule",
    "ScheduleOptions",
    "apply_schedule",
]
