"""Per-key request throttling over a minute and an hour window."""

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Dict, List, Optional

from pagegen.config import Config
from pagegen.errors import RateLimitTimeout
from pagegen.models import RateDecision, UsageRecord, mask_key

logger = logging.getLogger(__name__)

StatusCallback = Callable[[str], None]
SleepFunc = Callable[[float], Awaitable[None]]


class ThroughputLimiter:
    """
    Decides whether a key may be used right now.

    Checks, most restrictive first:
    1. hourly cap (hard backstop against provider quota exhaustion)
    2. minimum interval since the previous request on the key
    3. per-minute cap

    Windows are tumbling and anchored at the first request seen for the key;
    counters are reset to zero when a window rolls over.
    """

    def __init__(
        self,
        config: Config,
        clock: Callable[[], float] = time.time,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.min_interval = config.min_request_interval_seconds
        self.max_per_minute = config.max_requests_per_minute
        self.max_per_hour = config.max_requests_per_hour
        self.minute_window = config.minute_window_seconds
        self.hour_window = config.hour_window_seconds
        self.max_wait_checks = config.max_wait_checks
        self._clock = clock
        self._sleep = sleep
        self.usage: Dict[str, UsageRecord] = {}

    def check_and_record(self, api_key: str) -> RateDecision:
        now = self._clock()
        record = self.usage.get(api_key)
        if record is None:
            record = UsageRecord(minute_window_start=now, hour_window_start=now)
            self.usage[api_key] = record

        if now - record.hour_window_start >= self.hour_window:
            record.hour_window_start = now
            record.hour_count = 0

        if record.hour_count >= self.max_per_hour:
            wait = self.hour_window - (now - record.hour_window_start)
            return RateDecision(
                allowed=False,
                wait_seconds=wait,
                reason=(
                    f"hourly cap of {self.max_per_hour} requests reached, "
                    f"waiting {math.ceil(wait / 60)} min"
                ),
            )

        if now - record.minute_window_start >= self.minute_window:
            record.minute_window_start = now
            record.minute_count = 0

        if record.last_request_time is not None:
            since_last = now - record.last_request_time
            if since_last < self.min_interval:
                wait = self.min_interval - since_last
                return RateDecision(
                    allowed=False,
                    wait_seconds=wait,
                    reason=f"min interval not reached, waiting {math.ceil(wait)}s",
                )

        if record.minute_count >= self.max_per_minute:
            wait = self.minute_window - (now - record.minute_window_start)
            return RateDecision(
                allowed=False,
                wait_seconds=wait,
                reason=(
                    f"per-minute cap of {self.max_per_minute} requests reached, "
                    f"waiting {math.ceil(wait)}s"
                ),
            )

        record.last_request_time = now
        record.minute_count += 1
        record.hour_count += 1
        return RateDecision(allowed=True)

    async def wait_for_slot(
        self, api_key: str, on_status: Optional[StatusCallback] = None
    ) -> None:
        """Block until the limiter admits a request on ``api_key``."""
        for _ in range(self.max_wait_checks):
            decision = self.check_and_record(api_key)
            if decision.allowed:
                return

            wait = decision.wait_seconds if decision.wait_seconds > 0 else 1.0
            if on_status:
                on_status(
                    f"Rate limit: {decision.reason} (avoiding provider quota limits)"
                )
            logger.info(
                "Key %s throttled: %s", mask_key(api_key), decision.reason
            )
            await self._sleep(wait)

        raise RateLimitTimeout(
            f"Key {mask_key(api_key)} still throttled after "
            f"{self.max_wait_checks} checks"
        )

    def get_stats(self, api_key: str) -> Optional[Dict[str, float]]:
        record = self.usage.get(api_key)
        if record is None:
            return None

        now = self._clock()
        minute_count = record.minute_count
        hour_count = record.hour_count
        if now - record.minute_window_start >= self.minute_window:
            minute_count = 0
        if now - record.hour_window_start >= self.hour_window:
            hour_count = 0

        since_last = None
        if record.last_request_time is not None:
            since_last = now - record.last_request_time

        return {
            "minute_count": minute_count,
            "hour_count": hour_count,
            "seconds_since_last_request": since_last,
            "hourly_usage_percent": round(hour_count / self.max_per_hour * 100, 2),
        }

    def hourly_usage_percent(self, api_key: str) -> float:
        stats = self.get_stats(api_key)
        if stats is None:
            return 0.0
        return stats["hourly_usage_percent"]

    def get_all_stats(self) -> List[Dict[str, object]]:
        return [
            {"key": mask_key(api_key), "stats": self.get_stats(api_key)}
            for api_key in list(self.usage)
        ]

    def get_config(self) -> Dict[str, float]:
        return {
            "min_request_interval_seconds": self.min_interval,
            "max_requests_per_minute": self.max_per_minute,
            "max_requests_per_hour": self.max_per_hour,
            "minute_window_seconds": self.minute_window,
            "hour_window_seconds": self.hour_window,
        }

    def clear_key(self, api_key: str) -> None:
        self.usage.pop(api_key, None)

    def clear_all(self) -> int:
        count = len(self.usage)
        self.usage.clear()
        logger.info("Cleared rate limit records for %d key(s)", count)
        return count
