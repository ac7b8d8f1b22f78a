"""Time source abstraction used by the job coordinator.

The coordinator never reads the wall clock or sleeps directly; it goes through
a :class:`Clock` so that tests can drive polling deterministically (see
:class:`IKFastOnline.testing.FakeClock`).
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Monotonic time, wall time, and cooperative sleep."""

    def now(self) -> float:
        """Monotonic seconds; only differences are meaningful."""

    def utcnow(self) -> datetime:
        """Timezone-aware current wall time."""

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task for ``seconds``."""


class SystemClock:
    """Clock backed by :func:`time.monotonic` and :func:`asyncio.sleep`."""

    def now(self) -> float:
        return time.monotonic()

    def utcnow(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


__all__ = ["Clock", "SystemClock"]
