from __future__ import annotations

import time
from typing import Callable


Clock = Callable[[], int]


def system_clock() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def minutes_ms(minutes: float) -> int:
    return int(minutes * 60 * 1000)


def days_ms(days: float) -> int:
    return int(days * 24 * 60 * 60 * 1000)
