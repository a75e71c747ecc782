"""Retry loop that runs Gemini calls over the key pool."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from pagegen.config import Config
from pagegen.errors import (
    AllCredentialsQuotaLimited,
    AllCredentialsUnavailable,
    KeyPoolError,
)
from pagegen.key_manager import CredentialPool
from pagegen.models import mask_key
from pagegen.rate_limiter import StatusCallback, ThroughputLimiter
from pagegen.request_queue import CallSerializer

logger = logging.getLogger(__name__)

T = TypeVar("T")
SleepFunc = Callable[[float], Awaitable[None]]

FAILURE_LEAKED_KEY = "leaked_key"
FAILURE_FORBIDDEN = "forbidden"
FAILURE_THROTTLED = "throttled"
FAILURE_QUOTA = "quota"
FAILURE_RATE_LIMITED = "rate_limited"
FAILURE_AUTH = "auth"
FAILURE_TRANSIENT = "transient"
FAILURE_FATAL = "fatal"

TRANSIENT_STATUS_CODES = frozenset({500, 502, 503, 504})
LEAK_KEYWORDS = ("leaked", "reported as leaked", "compromised")
QUOTA_KEYWORDS = (
    "quota",
    "rate limit",
    "rate-limit",
    "resource_exhausted",
    "resource has been exhausted",
    "too many requests",
)
KEY_ERROR_KEYWORDS = ("api key", "api_key", "permission", "quota")

PREFLIGHT_DELAY_PERCENT = 70.0
PREFLIGHT_SWITCH_PERCENT = 85.0


def classify_failure(error: Exception, quota_threshold_seconds: float) -> str:
    """Map a failed call onto one of the FAILURE_* classes."""
    if isinstance(error, KeyPoolError):
        return FAILURE_FATAL

    status = getattr(error, "status_code", None)
    message = str(getattr(error, "message", None) or error).lower()

    if status == 403:
        if any(word in message for word in LEAK_KEYWORDS):
            return FAILURE_LEAKED_KEY
        return FAILURE_FORBIDDEN

    if status == 429:
        delay = getattr(error, "retry_delay_seconds", None)
        if delay is not None and 0 < delay < quota_threshold_seconds:
            return FAILURE_THROTTLED
        if (delay is not None and delay >= quota_threshold_seconds) or any(
            word in message for word in QUOTA_KEYWORDS
        ):
            return FAILURE_QUOTA
        return FAILURE_RATE_LIMITED

    if status == 401:
        return FAILURE_AUTH

    if status in TRANSIENT_STATUS_CODES:
        return FAILURE_TRANSIENT

    if any(word in message for word in KEY_ERROR_KEYWORDS):
        return FAILURE_AUTH

    return FAILURE_FATAL


def _annotate(error: Exception, api_key: Optional[str]) -> Exception:
    if api_key:
        setattr(error, "last_tried_key", mask_key(api_key))
    return error


class RetryOrchestrator:
    """
    Runs Gemini operations through the key pool with retries.

    Flow per attempt:
    1. pick a key from the pool (or keep the current one for same-key retries)
    2. pre-flight: slow down or move off a key close to its hourly cap
    3. run through the per-key queue, which waits on the rate limiter
    4. on failure classify the error, update the pool and decide to
       retry the same key, switch keys, wait, or give up

    The orchestrator keeps no state between runs; everything persistent
    lives in the pool and the limiter.
    """

    def __init__(
        self,
        pool: CredentialPool,
        limiter: ThroughputLimiter,
        serializer: CallSerializer,
        config: Config,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.pool = pool
        self.limiter = limiter
        self.serializer = serializer
        self.max_key_retries = config.max_key_retries
        self.switch_delay = config.switch_delay_seconds
        self.max_backoff = config.max_backoff_seconds
        self.quota_threshold = config.quota_delay_threshold_seconds
        self.preflight_max_delay = config.preflight_max_delay_seconds
        self._sleep = sleep

    async def run(
        self,
        operation: Callable[[str], Awaitable[T]],
        max_attempts: int = 5,
        on_status: Optional[StatusCallback] = None,
        priority: int = 0,
    ) -> T:
        def notify(message: str) -> None:
            if on_status:
                on_status(message)

        current: Optional[str] = None
        key_retry_count = 0
        last_error: Optional[Exception] = None
        last_key: Optional[str] = None

        for attempt in range(max_attempts):
            is_last = attempt == max_attempts - 1

            if current is None:
                current = self.pool.get_next()
                key_retry_count = 0

            checked = await self._preflight(current, notify)
            if checked != current:
                current, key_retry_count = checked, 0

            async def admitted(api_key: str) -> T:
                await self.limiter.wait_for_slot(api_key, on_status)
                return await operation(api_key)

            try:
                result = await self.serializer.execute(current, admitted, priority)
            except Exception as exc:
                last_error, last_key = exc, current
            else:
                self.pool.record_success(current)
                return result

            kind = classify_failure(last_error, self.quota_threshold)
            masked = mask_key(current)
            status = getattr(last_error, "status_code", None)
            progress = f"{attempt + 1}/{max_attempts}"

            if kind == FAILURE_FATAL:
                raise last_error

            if kind == FAILURE_LEAKED_KEY:
                self.pool.mark_permanently_failed(current, "key reported as leaked")
                if not self.pool.has_usable():
                    raise AllCredentialsUnavailable(
                        f"Key {masked} was reported as leaked and no other key is left"
                    ) from last_error
                notify(f"API key disabled (leaked), switching to the next key ({progress})")
                current = None
                continue

            if kind in (FAILURE_FORBIDDEN, FAILURE_AUTH, FAILURE_RATE_LIMITED):
                if kind == FAILURE_RATE_LIMITED:
                    self.pool.mark_quota_limited(current, confirmed=False)
                else:
                    self.pool.mark_failed(current)
                logger.warning(
                    "Key %s failed (%s), trying next key (attempt %s)",
                    masked,
                    status or "unknown",
                    progress,
                )
                notify(f"API key unavailable ({status}), switching to the next key ({progress})")
                current = None
                if not is_last:
                    await self._sleep(self.switch_delay)
                continue

            if kind == FAILURE_QUOTA:
                delay = getattr(last_error, "retry_delay_seconds", None)
                self.pool.mark_quota_limited(current, confirmed=True, retry_delay_seconds=delay)
                other = self.pool.other_available(current)
                if other is None:
                    raise AllCredentialsQuotaLimited(
                        self.pool.min_quota_wait_seconds()
                    ) from last_error
                notify(f"API key quota exhausted (429), switching to the next key ({progress})")
                current, key_retry_count = other, 0
                continue

            if kind == FAILURE_THROTTLED:
                delay = last_error.retry_delay_seconds
                other = self.pool.other_available(current)
                if other is not None:
                    logger.warning(
                        "Key %s throttled for %ss, switching to %s",
                        masked,
                        delay,
                        mask_key(other),
                    )
                    notify(f"API rate limited (429), switching to the next key ({progress})")
                    current, key_retry_count = other, 0
                    continue
                key_retry_count += 1
                if key_retry_count > self.max_key_retries:
                    current = self._give_up_on_key(current, last_error)
                    key_retry_count = 0
                    continue
                if is_last:
                    continue
                logger.warning(
                    "Key %s throttled (429), waiting %ss before retry "
                    "(key retry %d/%d, attempt %s)",
                    masked,
                    delay,
                    key_retry_count,
                    self.max_key_retries,
                    progress,
                )
                notify(
                    f"API rate limited (429), retrying in {delay:g}s "
                    f"({key_retry_count}/{self.max_key_retries})"
                )
                await self._sleep(delay)
                continue

            # FAILURE_TRANSIENT: same key, exponential backoff
            key_retry_count += 1
            if key_retry_count > self.max_key_retries:
                current = self._give_up_on_key(current, last_error)
                key_retry_count = 0
                continue
            if is_last:
                continue
            backoff = min(2 ** (key_retry_count - 1), self.max_backoff)
            logger.warning(
                "Retryable error (%s) on key %s, retrying after %ss "
                "(key retry %d/%d, attempt %s)",
                status,
                masked,
                backoff,
                key_retry_count,
                self.max_key_retries,
                progress,
            )
            notify(
                f"Gemini API temporarily unavailable ({status}), retrying in "
                f"{backoff:g}s ({key_retry_count}/{self.max_key_retries})"
            )
            await self._sleep(backoff)

        if last_error is None:
            raise AllCredentialsUnavailable("No attempt was made")
        raise _annotate(last_error, last_key)

    async def _preflight(self, current: str, notify: Callable[[str], None]) -> str:
        usage = self.limiter.hourly_usage_percent(current)
        if usage > PREFLIGHT_SWITCH_PERCENT:
            other = self.pool.other_available(current)
            if other is not None:
                logger.info(
                    "Key %s at %.1f%% of hourly cap, switching to %s",
                    mask_key(current),
                    usage,
                    mask_key(other),
                )
                notify(f"API key close to its hourly limit ({usage:.0f}%), switching keys")
                return other
        if usage > PREFLIGHT_DELAY_PERCENT:
            delay = min(
                (usage - PREFLIGHT_DELAY_PERCENT)
                / (100 - PREFLIGHT_DELAY_PERCENT)
                * self.preflight_max_delay,
                self.preflight_max_delay,
            )
            notify(f"API key at {usage:.0f}% of hourly limit, slowing down {delay:.1f}s")
            await self._sleep(delay)
        return current

    def _give_up_on_key(self, current: str, error: Exception) -> Optional[str]:
        """Same-key retries exhausted: fail the key and move on, or stop."""
        self.pool.mark_failed(current)
        other = self.pool.other_available(current)
        if other is None:
            raise _annotate(error, current)
        logger.warning(
            "Key %s exhausted its retries, switching to %s",
            mask_key(current),
            mask_key(other),
        )
        return other
