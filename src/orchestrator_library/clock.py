# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Time source used by the credential pool and the task poller.

Everything that needs "now" or "today" goes through a Clock so day-boundary
logic and poll scheduling can be driven without real time passing.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Wall-clock time as epoch seconds."""

    @abstractmethod
    def now(self) -> float:
        pass

    def today(self, utc_offset_hours: float = 0.0) -> str:
        """
        Calendar day (YYYY-MM-DD) at the given UTC offset.

        Providers reset quotas on different day boundaries, e.g. UTC for
        Hugging Face and UTC+8 for ModelScope.
        """
        return day_string(self.now(), utc_offset_hours)


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


def day_string(timestamp: float, utc_offset_hours: float = 0.0) -> str:
    tz = timezone(timedelta(hours=utc_offset_hours))
    return datetime.fromtimestamp(timestamp, tz).date().isoformat()
