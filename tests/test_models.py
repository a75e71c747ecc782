from pagegen.errors import AllCredentialsQuotaLimited, ProviderError, format_wait
from pagegen.models import (
    Credential,
    QuotaLimitInfo,
    STATE_AVAILABLE,
    STATE_FAILED,
    STATE_PERMANENTLY_FAILED,
    STATE_QUOTA_LIMITED,
    TASK_COMPLETED,
    TaskProgress,
    mask_key,
)

KEY = "AIzaSyABCDEFGHIJKLMNOPQRSTUVWXYZ123456"


def test_mask_key_hides_the_middle():
    assert mask_key(KEY) == "AIzaSyAB...3456"
    assert KEY not in mask_key(KEY)


def test_mask_key_short_values_fully_hidden():
    assert mask_key("short") == "****"
    assert mask_key("123456789012") == "****"


def test_credential_defaults():
    credential = Credential(id="key_1", key=KEY)

    assert credential.is_priority is False
    assert credential.temporarily_failed is False
    assert credential.permanently_failed is False
    assert credential.quota_limit is None
    assert credential.consecutive_failures == 0
    assert credential.state(1000.0) == STATE_AVAILABLE
    assert credential.key_prefix() == "AIzaSyAB...3456"


def test_credential_state_precedence():
    credential = Credential(id="key_1", key=KEY, temporarily_failed=True)
    assert credential.state(1000.0) == STATE_FAILED

    credential.quota_limit = QuotaLimitInfo(timestamp=900.0, expires_at=2000.0)
    assert credential.state(1000.0) == STATE_QUOTA_LIMITED
    assert credential.state(2000.0) == STATE_FAILED

    credential.permanently_failed = True
    assert credential.state(1000.0) == STATE_PERMANENTLY_FAILED
    assert not credential.is_available(1000.0)


def test_task_progress_round_trip_keeps_details():
    task = TaskProgress(
        id="t1",
        status=TASK_COMPLETED,
        message="done",
        created_at=1.0,
        updated_at=2.0,
        keyword="luxury phones",
        page_url="https://example.com/luxury-phones/",
        details={"slug": "luxury-phones"},
    )

    copy = TaskProgress.from_dict(task.to_dict())

    assert copy == task
    copy.details["slug"] = "other"
    assert task.details["slug"] == "luxury-phones"


def test_format_wait():
    assert format_wait(59) == "1 minutes"
    assert format_wait(3600) == "1 hours 0 minutes"
    assert format_wait(5400) == "1 hours 30 minutes"


def test_all_quota_limited_message():
    error = AllCredentialsQuotaLimited(7200)

    assert error.min_wait_seconds == 7200
    assert "2 hours 0 minutes" in str(error)


def test_provider_error_str_includes_last_tried_key():
    error = ProviderError(503, "overloaded", retry_delay_seconds=None)
    assert str(error) == "[HTTP 503] overloaded"

    error.last_tried_key = mask_key(KEY)
    assert str(error).endswith("(last tried key: AIzaSyAB...3456)")
