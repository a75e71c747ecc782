"""Key pool management."""

import logging
import re
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from pagegen.errors import (
    AllCredentialsQuotaLimited,
    AllCredentialsUnavailable,
    InvalidCredentialFormat,
    NoCredentialsAvailable,
    NoValidCredentials,
)
from pagegen.models import (
    Credential,
    QuotaLimitInfo,
    STATE_AVAILABLE,
    STATE_FAILED,
    STATE_PERMANENTLY_FAILED,
    STATE_QUOTA_LIMITED,
    mask_key,
)

logger = logging.getLogger(__name__)

KEY_PREFIX = "AIza"
KEY_MIN_LENGTH = 30
KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_key(api_key: str) -> str:
    """Return the stripped key or raise InvalidCredentialFormat."""
    api_key = api_key.strip()
    if len(api_key) < KEY_MIN_LENGTH:
        raise InvalidCredentialFormat(
            f"Key {mask_key(api_key)} is shorter than {KEY_MIN_LENGTH} characters"
        )
    if not api_key.startswith(KEY_PREFIX):
        raise InvalidCredentialFormat(
            f"Key {mask_key(api_key)} does not start with {KEY_PREFIX}"
        )
    if not KEY_PATTERN.match(api_key):
        raise InvalidCredentialFormat(
            f"Key {mask_key(api_key)} contains unsupported characters"
        )
    return api_key


def next_local_midnight(now: float) -> float:
    """Timestamp of the start of the next calendar day in local time."""
    current = datetime.fromtimestamp(now)
    tomorrow = (current + timedelta(days=1)).replace(
        hour=0, minute=0, second=0, microsecond=0
    )
    return tomorrow.timestamp()


class CredentialPool:
    """Owns the API keys and their health/quota state.

    Selection is priority key first, then round-robin over the remaining
    keys. Quota expiry is evaluated lazily on every access, there is no
    timer. All methods are synchronous so each one is a single step from the
    point of view of concurrently running tasks.
    """

    def __init__(
        self,
        api_keys: List[str],
        priority_key: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self.credentials: Dict[str, Credential] = {}
        self._priority: Optional[str] = None
        self._cursor = 0
        self.fallback_count = 0

        valid_keys: List[str] = []
        for raw_key in dict.fromkeys(k.strip() for k in api_keys if k and k.strip()):
            try:
                valid_keys.append(validate_key(raw_key))
            except InvalidCredentialFormat as exc:
                logger.warning("Dropping API key: %s", exc)

        if priority_key:
            try:
                priority_key = validate_key(priority_key)
            except InvalidCredentialFormat as exc:
                logger.warning("Ignoring priority API key: %s", exc)
                priority_key = None

        if priority_key:
            if priority_key in valid_keys:
                valid_keys.remove(priority_key)
            valid_keys.insert(0, priority_key)
            self._priority = priority_key

        if not valid_keys:
            raise NoValidCredentials("No valid API keys configured")

        for index, api_key in enumerate(valid_keys, start=1):
            self.credentials[api_key] = Credential(
                id=f"key_{index}",
                key=api_key,
                is_priority=api_key == self._priority,
            )

        self._rotation: List[str] = [k for k in valid_keys if k != self._priority]

        logger.info(
            "Key pool initialised with %d key(s)%s",
            len(self.credentials),
            " (priority key %s)" % mask_key(self._priority) if self._priority else "",
        )

    def get_next(self) -> str:
        if not self.credentials:
            raise NoCredentialsAvailable("Key pool is empty")

        now = self._clock()
        self._drop_expired_quota_limits(now)

        if self._priority and self.credentials[self._priority].is_available(now):
            return self._priority

        found = self._scan_rotation(now, exclude=None)
        if found is not None:
            return found

        usable = [c for c in self.credentials.values() if not c.permanently_failed]
        if not usable:
            raise AllCredentialsUnavailable("All API keys are permanently disabled")

        if all(c.is_quota_limited(now) for c in usable):
            raise AllCredentialsQuotaLimited(self.min_quota_wait_seconds())

        self.fallback_count += 1
        logger.warning(
            "No healthy API key left, clearing temporary failures "
            "(fallback #%d)",
            self.fallback_count,
        )
        for credential in usable:
            credential.temporarily_failed = False
        first = next(c for c in usable if not c.is_quota_limited(now))
        return first.key

    def other_available(self, current: Optional[str]) -> Optional[str]:
        """Next available key other than ``current``, without any fallback."""
        now = self._clock()
        if (
            self._priority
            and self._priority != current
            and self.credentials[self._priority].is_available(now)
        ):
            return self._priority
        return self._scan_rotation(now, exclude=current)

    def has_usable(self) -> bool:
        return any(not c.permanently_failed for c in self.credentials.values())

    def mark_failed(self, api_key: str) -> None:
        credential = self.credentials.get(api_key)
        if not credential or credential.permanently_failed:
            return
        credential.temporarily_failed = True
        self._record_error(credential)
        logger.warning("Marked key %s as failed", credential.key_prefix())

    def mark_permanently_failed(self, api_key: str, reason: str) -> None:
        credential = self.credentials.get(api_key)
        if not credential:
            return
        credential.permanently_failed = True
        credential.permanent_reason = reason
        credential.temporarily_failed = False
        credential.quota_limit = None
        self._record_error(credential)
        logger.error(
            "Key %s permanently disabled: %s", credential.key_prefix(), reason
        )

    def mark_quota_limited(
        self,
        api_key: str,
        confirmed: bool,
        retry_delay_seconds: Optional[float] = None,
    ) -> None:
        if not confirmed:
            self.mark_failed(api_key)
            return

        credential = self.credentials.get(api_key)
        if not credential or credential.permanently_failed:
            return

        now = self._clock()
        if retry_delay_seconds is not None and retry_delay_seconds > 0:
            expires_at = now + retry_delay_seconds
        else:
            expires_at = next_local_midnight(now)

        credential.quota_limit = QuotaLimitInfo(
            timestamp=now,
            expires_at=expires_at,
            retry_delay_seconds=retry_delay_seconds,
        )
        credential.temporarily_failed = False
        self._record_error(credential)
        logger.warning(
            "Key %s quota limited until %s",
            credential.key_prefix(),
            datetime.fromtimestamp(expires_at).isoformat(timespec="seconds"),
        )

    def record_success(self, api_key: str) -> None:
        credential = self.credentials.get(api_key)
        if not credential:
            return
        credential.consecutive_failures = 0
        credential.last_used = datetime.now()

    def is_expired(self, api_key: str) -> bool:
        credential = self.credentials.get(api_key)
        if not credential or credential.quota_limit is None:
            return True
        return self._clock() >= credential.quota_limit.expires_at

    def min_quota_wait_seconds(self) -> float:
        now = self._clock()
        waits = [
            c.quota_limit.expires_at - now
            for c in self.credentials.values()
            if c.quota_limit is not None and c.is_quota_limited(now)
        ]
        return min(waits) if waits else 0.0

    def status_of(self, api_key: str) -> Optional[str]:
        credential = self.credentials.get(api_key)
        if not credential:
            return None
        return credential.state(self._clock())

    def available_count(self) -> int:
        return self._count_state(STATE_AVAILABLE)

    def quota_limited_count(self) -> int:
        return self._count_state(STATE_QUOTA_LIMITED)

    def failed_count(self) -> int:
        return self._count_state(STATE_FAILED)

    def permanently_failed_count(self) -> int:
        return self._count_state(STATE_PERMANENTLY_FAILED)

    def clear_all_quota_limits(self) -> int:
        cleared = 0
        for credential in self.credentials.values():
            if credential.quota_limit is not None and not credential.permanently_failed:
                credential.quota_limit = None
                cleared += 1
        logger.info("Cleared quota limits on %d key(s)", cleared)
        return cleared

    def clear_temporary_failures(self) -> int:
        cleared = 0
        for credential in self.credentials.values():
            if credential.temporarily_failed and not credential.permanently_failed:
                credential.temporarily_failed = False
                cleared += 1
        logger.info("Cleared temporary failures on %d key(s)", cleared)
        return cleared

    def clear_all(self) -> int:
        cleared = 0
        for credential in self.credentials.values():
            if credential.permanently_failed:
                continue
            if credential.temporarily_failed or credential.quota_limit is not None:
                cleared += 1
            credential.temporarily_failed = False
            credential.quota_limit = None
            credential.consecutive_failures = 0
        logger.info("Reset state on %d key(s)", cleared)
        return cleared

    def find_by_id(self, key_id: str) -> Optional[Credential]:
        for credential in self.credentials.values():
            if credential.id == key_id:
                return credential
        return None

    def get_status(self) -> Dict[str, object]:
        return {
            "total_keys": len(self.credentials),
            "available_keys": self.available_count(),
            "quota_limited_keys": self.quota_limited_count(),
            "failed_keys": self.failed_count(),
            "permanently_failed_keys": self.permanently_failed_count(),
            "fallback_count": self.fallback_count,
            "keys": [self._format_key_status(c) for c in self.credentials.values()],
        }

    def get_key_status(self, key_id: str) -> Optional[Dict[str, object]]:
        credential = self.find_by_id(key_id)
        if not credential:
            return None
        return self._format_key_status(credential)

    def _format_key_status(self, credential: Credential) -> Dict[str, object]:
        now = self._clock()
        state = credential.state(now)
        quota_expires_at = None
        if credential.quota_limit is not None and credential.is_quota_limited(now):
            quota_expires_at = datetime.fromtimestamp(
                credential.quota_limit.expires_at
            ).isoformat(timespec="seconds")
        return {
            "id": credential.id,
            "key_prefix": credential.key_prefix(),
            "status": state,
            "detail": self._describe(credential, state, now),
            "is_priority": credential.is_priority,
            "quota_expires_at": quota_expires_at,
            "last_used": credential.last_used,
            "last_error": credential.last_error,
            "consecutive_failures": credential.consecutive_failures,
        }

    def _describe(self, credential: Credential, state: str, now: float) -> str:
        if state == STATE_PERMANENTLY_FAILED:
            return f"Disabled: {credential.permanent_reason or 'unknown reason'}"
        if state == STATE_QUOTA_LIMITED and credential.quota_limit is not None:
            remaining = int(credential.quota_limit.expires_at - now)
            hours, rest = divmod(remaining, 3600)
            return f"Quota limited, available again in {hours}h {rest // 60}m"
        if state == STATE_FAILED:
            return "Temporarily failed, skipped until reset or fallback"
        return "Available"

    def _scan_rotation(self, now: float, exclude: Optional[str]) -> Optional[str]:
        size = len(self._rotation)
        for _ in range(size):
            api_key = self._rotation[self._cursor % size]
            self._cursor = (self._cursor + 1) % size
            if api_key == exclude:
                continue
            if self.credentials[api_key].is_available(now):
                return api_key
        return None

    def _drop_expired_quota_limits(self, now: float) -> None:
        for credential in self.credentials.values():
            if credential.quota_limit is not None and not credential.is_quota_limited(now):
                logger.info("Quota limit expired for key %s", credential.key_prefix())
                credential.quota_limit = None

    def _count_state(self, state: str) -> int:
        now = self._clock()
        return sum(1 for c in self.credentials.values() if c.state(now) == state)

    def _record_error(self, credential: Credential) -> None:
        credential.last_error = datetime.now()
        credential.consecutive_failures += 1
