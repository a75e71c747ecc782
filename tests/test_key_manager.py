from typing import List

import pytest

from pagegen.errors import (
    AllCredentialsQuotaLimited,
    AllCredentialsUnavailable,
    InvalidCredentialFormat,
    NoValidCredentials,
)
from pagegen.key_manager import CredentialPool, next_local_midnight, validate_key
from pagegen.models import (
    STATE_AVAILABLE,
    STATE_FAILED,
    STATE_PERMANENTLY_FAILED,
    STATE_QUOTA_LIMITED,
)


def make_key(char: str) -> str:
    return "AIzaSy" + char * 30


KEY_A = make_key("a")
KEY_B = make_key("b")
KEY_C = make_key("c")
KEY_P = make_key("p")


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_pool(keys: List[str], priority: str = None, clock: FakeClock = None) -> CredentialPool:
    return CredentialPool(keys, priority, clock=clock or FakeClock())


def test_validate_key_rules():
    assert validate_key(f"  {KEY_A} ") == KEY_A
    with pytest.raises(InvalidCredentialFormat):
        validate_key("AIzaShort")
    with pytest.raises(InvalidCredentialFormat):
        validate_key("XXzaSy" + "a" * 30)
    with pytest.raises(InvalidCredentialFormat):
        validate_key("AIzaSy" + "a" * 29 + "!")


def test_init_drops_invalid_and_duplicate_keys():
    pool = make_pool([KEY_A, "not-a-key", KEY_B, KEY_A])

    assert list(pool.credentials) == [KEY_A, KEY_B]
    assert [c.id for c in pool.credentials.values()] == ["key_1", "key_2"]


def test_init_without_valid_keys_raises():
    with pytest.raises(NoValidCredentials):
        make_pool(["bad", "also-bad"])


def test_priority_key_goes_first():
    pool = make_pool([KEY_A, KEY_B], priority=KEY_P)

    assert list(pool.credentials)[0] == KEY_P
    assert pool.credentials[KEY_P].is_priority
    assert pool.get_next() == KEY_P
    assert pool.get_next() == KEY_P


def test_invalid_priority_key_is_ignored():
    pool = make_pool([KEY_A], priority="AIzaTooShort")

    assert list(pool.credentials) == [KEY_A]
    assert not pool.credentials[KEY_A].is_priority


def test_round_robin_over_available_keys():
    pool = make_pool([KEY_A, KEY_B, KEY_C])

    assert [pool.get_next() for _ in range(4)] == [KEY_A, KEY_B, KEY_C, KEY_A]


def test_failed_key_is_skipped():
    pool = make_pool([KEY_A, KEY_B])
    pool.mark_failed(KEY_A)

    assert pool.status_of(KEY_A) == STATE_FAILED
    assert [pool.get_next() for _ in range(3)] == [KEY_B, KEY_B, KEY_B]


def test_priority_falls_back_to_rotation_when_failed():
    pool = make_pool([KEY_A], priority=KEY_P)
    pool.mark_failed(KEY_P)

    assert pool.get_next() == KEY_A


def test_quota_limited_with_delay_sets_expiry():
    clock = FakeClock()
    pool = make_pool([KEY_A, KEY_B], clock=clock)

    pool.mark_quota_limited(KEY_A, confirmed=True, retry_delay_seconds=7200)

    info = pool.credentials[KEY_A].quota_limit
    assert info is not None
    assert info.expires_at == clock.now + 7200
    assert pool.status_of(KEY_A) == STATE_QUOTA_LIMITED
    assert not pool.is_expired(KEY_A)

    clock.advance(7200)
    assert pool.is_expired(KEY_A)
    assert pool.status_of(KEY_A) == STATE_AVAILABLE


def test_quota_limited_without_delay_expires_at_local_midnight():
    clock = FakeClock()
    pool = make_pool([KEY_A], clock=clock)

    pool.mark_quota_limited(KEY_A, confirmed=True)

    assert pool.credentials[KEY_A].quota_limit.expires_at == next_local_midnight(clock.now)
    assert next_local_midnight(clock.now) > clock.now


def test_unconfirmed_quota_only_marks_failed():
    pool = make_pool([KEY_A, KEY_B])

    pool.mark_quota_limited(KEY_A, confirmed=False)

    assert pool.credentials[KEY_A].quota_limit is None
    assert pool.status_of(KEY_A) == STATE_FAILED


def test_expired_quota_key_is_selectable_again():
    clock = FakeClock()
    pool = make_pool([KEY_A], clock=clock)
    pool.mark_quota_limited(KEY_A, confirmed=True, retry_delay_seconds=60)

    with pytest.raises(AllCredentialsQuotaLimited):
        pool.get_next()

    clock.advance(61)
    assert pool.get_next() == KEY_A
    assert pool.credentials[KEY_A].quota_limit is None


def test_all_quota_limited_reports_minimum_wait():
    pool = make_pool([KEY_A, KEY_B])
    pool.mark_quota_limited(KEY_A, confirmed=True, retry_delay_seconds=7200)
    pool.mark_quota_limited(KEY_B, confirmed=True, retry_delay_seconds=3600)

    with pytest.raises(AllCredentialsQuotaLimited) as exc_info:
        pool.get_next()

    assert exc_info.value.min_wait_seconds == 3600
    assert "1 hours 0 minutes" in str(exc_info.value)


def test_permanently_failed_is_never_returned():
    pool = make_pool([KEY_A, KEY_B])
    pool.mark_permanently_failed(KEY_A, "key reported as leaked")
    pool.mark_failed(KEY_B)

    for _ in range(5):
        assert pool.get_next() == KEY_B
    assert pool.status_of(KEY_A) == STATE_PERMANENTLY_FAILED


def test_all_permanently_failed_raises_unavailable():
    pool = make_pool([KEY_A, KEY_B])
    pool.mark_permanently_failed(KEY_A, "leaked")
    pool.mark_permanently_failed(KEY_B, "leaked")

    assert not pool.has_usable()
    with pytest.raises(AllCredentialsUnavailable):
        pool.get_next()


def test_fallback_clears_temporary_failures():
    pool = make_pool([KEY_A, KEY_B])
    pool.mark_failed(KEY_A)
    pool.mark_failed(KEY_B)

    assert pool.get_next() == KEY_A
    assert pool.fallback_count == 1
    assert pool.failed_count() == 0
    assert pool.get_status()["fallback_count"] == 1


def test_fallback_skips_quota_limited_keys():
    pool = make_pool([KEY_A, KEY_B])
    pool.mark_quota_limited(KEY_A, confirmed=True, retry_delay_seconds=7200)
    pool.mark_failed(KEY_B)

    assert pool.get_next() == KEY_B
    assert pool.status_of(KEY_A) == STATE_QUOTA_LIMITED


def test_other_available_excludes_current_and_has_no_fallback():
    pool = make_pool([KEY_A, KEY_B])

    assert pool.other_available(KEY_A) == KEY_B
    pool.mark_failed(KEY_B)
    assert pool.other_available(KEY_A) is None
    assert pool.fallback_count == 0


def test_clear_all_quota_limits_keeps_disabled_keys():
    pool = make_pool([KEY_A, KEY_B, KEY_C])
    pool.mark_quota_limited(KEY_A, confirmed=True, retry_delay_seconds=7200)
    pool.mark_quota_limited(KEY_B, confirmed=True, retry_delay_seconds=7200)
    pool.mark_permanently_failed(KEY_C, "leaked")

    assert pool.clear_all_quota_limits() == 2
    assert pool.status_of(KEY_A) == STATE_AVAILABLE
    assert pool.status_of(KEY_C) == STATE_PERMANENTLY_FAILED
    assert pool.get_next() in (KEY_A, KEY_B)


def test_clear_all_resets_everything_but_permanent_failures():
    pool = make_pool([KEY_A, KEY_B, KEY_C])
    pool.mark_failed(KEY_A)
    pool.mark_quota_limited(KEY_B, confirmed=True, retry_delay_seconds=100)
    pool.mark_permanently_failed(KEY_C, "leaked")

    assert pool.clear_all() == 2
    assert pool.available_count() == 2
    assert pool.permanently_failed_count() == 1
    assert pool.credentials[KEY_A].consecutive_failures == 0


def test_record_success_resets_failure_streak():
    pool = make_pool([KEY_A])
    pool.mark_failed(KEY_A)
    pool.mark_failed(KEY_A)
    assert pool.credentials[KEY_A].consecutive_failures == 2

    pool.record_success(KEY_A)

    assert pool.credentials[KEY_A].consecutive_failures == 0
    assert pool.credentials[KEY_A].last_used is not None


def test_get_status_counts_and_masks_keys():
    pool = make_pool([KEY_A, KEY_B, KEY_C], priority=KEY_P)
    pool.mark_failed(KEY_A)
    pool.mark_quota_limited(KEY_B, confirmed=True, retry_delay_seconds=600)
    pool.mark_permanently_failed(KEY_C, "leaked")

    status = pool.get_status()

    assert status["total_keys"] == 4
    assert status["available_keys"] == 1
    assert status["failed_keys"] == 1
    assert status["quota_limited_keys"] == 1
    assert status["permanently_failed_keys"] == 1
    for entry in status["keys"]:
        assert "..." in entry["key_prefix"]
        assert entry["key_prefix"] not in (KEY_A, KEY_B, KEY_C, KEY_P)
    quota_entry = next(e for e in status["keys"] if e["status"] == STATE_QUOTA_LIMITED)
    assert quota_entry["quota_expires_at"] is not None


def test_get_key_status_by_id():
    pool = make_pool([KEY_A, KEY_B])

    status = pool.get_key_status("key_2")
    assert status is not None
    assert status["id"] == "key_2"
    assert status["status"] == STATE_AVAILABLE
    assert pool.get_key_status("key_9") is None
