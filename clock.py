"""
Single source of "now" for the service. Components receive a Clock instead of
reading wall time so tests can move through TTLs and day boundaries.
"""
import asyncio
from datetime import date, datetime, timezone, tzinfo
from typing import Optional, Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...

    def today(self) -> date: ...

    async def sleep(self, seconds: float) -> None: ...


class SystemClock:
    """Wall clock. `today` uses the restaurant's local timezone when given."""

    def __init__(self, tz: Optional[tzinfo] = None):
        self.tz = tz

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def today(self) -> date:
        return datetime.now(self.tz).date()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
