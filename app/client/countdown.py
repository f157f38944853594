# app/client/countdown.py
import asyncio
import logging
from datetime import datetime
from typing import Callable

from app.utils.datetime_utils import seconds_until, utc_now

logger = logging.getLogger(__name__)


def format_remaining(seconds: int) -> str:
    """`MM:SS`, or `H:MM:SS` from one hour up."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class GrantCountdown:
    """
    Ticking view of a grant's remaining time.

    Advisory only: reaching zero flips the guest view to its expired state
    without asking the server, which still decides on the next validation.
    """

    def __init__(
        self,
        expires_at: datetime,
        *,
        on_tick: Callable[[int], None] | None = None,
        on_expired: Callable[[], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
        interval: float = 1.0,
    ) -> None:
        self.expires_at = expires_at
        self._on_tick = on_tick
        self._on_expired = on_expired
        self._clock = clock
        self._interval = interval

    def remaining(self) -> int:
        return seconds_until(self.expires_at, self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def update(self, expires_at: datetime) -> None:
        """Re-anchor on a fresher expiry from the server."""
        self.expires_at = expires_at

    async def run(self) -> None:
        while True:
            remaining = self.remaining()
            if self._on_tick is not None:
                self._on_tick(remaining)
            if remaining <= 0:
                logger.info("Guest access expired on the client countdown")
                if self._on_expired is not None:
                    self._on_expired()
                return
            await asyncio.sleep(self._interval)
