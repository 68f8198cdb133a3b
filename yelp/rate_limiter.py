import asyncio
import time
from typing import Awaitable, Callable, Dict

MIN_REQUEST_INTERVAL_SEC = 0.08


class RateLimiter:
    """Serial request spacing plus per-second and per-day counters.

    ``wait_for_slot`` is meant to be awaited by one caller at a time; the
    processor issues Yelp requests strictly in sequence.
    """

    def __init__(
        self,
        max_per_second: int = 10,
        max_per_day: int = 5000,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_per_second = max_per_second
        self.max_per_day = max_per_day
        self.min_request_interval = max(MIN_REQUEST_INTERVAL_SEC, (1.0 / max_per_second) * 0.8)
        self._clock = clock
        self._sleep = sleep
        self._last_request = None
        self._second_start = clock()
        self._per_second = 0
        self._day_start = clock()
        self._daily = 0

    def _reset_windows(self, now: float) -> None:
        if now - self._second_start >= 1.0:
            self._second_start = now
            self._per_second = 0
        if now - self._day_start >= 86400.0:
            self._day_start = now
            self._daily = 0

    async def wait_for_slot(self) -> None:
        while True:
            now = self._clock()
            self._reset_windows(now)

            if self._last_request is not None:
                gap = now - self._last_request
                if gap < self.min_request_interval:
                    await self._sleep(self.min_request_interval - gap)
                    continue

            if self._daily >= self.max_per_day:
                await self._sleep(self._day_start + 86400.0 - now)
                continue
            if self._per_second >= self.max_per_second:
                await self._sleep(self._second_start + 1.0 - now)
                continue

            self._per_second += 1
            self._daily += 1
            self._last_request = now
            return

    def get_quota_status(self) -> Dict[str, int]:
        self._reset_windows(self._clock())
        return {
            "dailyUsed": self._daily,
            "dailyRemaining": self.max_per_day - self._daily,
            "perSecondUsed": self._per_second,
            "perSecondRemaining": self.max_per_second - self._per_second,
        }

    def get_daily_usage_percentage(self) -> float:
        return self._daily / self.max_per_day * 100
