"""
Injected clock and request identity.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol


class Clock(Protocol):
    """Source of the current time (naive UTC)."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in naive UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """Clock pinned to one instant; `advance` moves it forward."""

    def __init__(self, instant: datetime):
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def advance(self, delta) -> None:
        self.instant = self.instant + delta


@dataclass(frozen=True)
class RequestIdentity:
    """Who is calling, for structured logs."""
    session_id: Optional[str] = None
    actor_id: Optional[str] = None


ANONYMOUS = RequestIdentity()
