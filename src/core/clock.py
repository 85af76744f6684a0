"""Clock and timer source for schedules and retry backoff."""
import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Clock(ABC):
    """Wall time for deadlines plus a non-blocking delay primitive."""

    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic seconds, for measuring durations."""

    @abstractmethod
    async def after(self, seconds: float) -> None:
        """Resolve once `seconds` have elapsed without holding the loop."""


class SystemClock(Clock):
    """Clock backed by the system time and the running event loop."""

    def now(self) -> datetime:
        return utcnow()

    def monotonic(self) -> float:
        return time.monotonic()

    async def after(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))
