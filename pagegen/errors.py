"""Error types raised by the key pool and the Gemini call boundary."""

from typing import Optional


class KeyPoolError(Exception):
    """Base class for key pool, limiter and queue errors."""


class InvalidCredentialFormat(KeyPoolError):
    """A configured API key does not look like a Gemini key."""


class NoValidCredentials(KeyPoolError):
    """No usable API key survived validation."""


class NoCredentialsAvailable(KeyPoolError):
    """The pool holds no credentials at all."""


class CredentialPermanentlyFailed(KeyPoolError):
    """The credential was disabled for good (for example a leaked key)."""


class AllCredentialsUnavailable(KeyPoolError):
    """Every credential is permanently failed or otherwise exhausted."""


class AllCredentialsQuotaLimited(KeyPoolError):
    """Every usable credential is quota limited."""

    def __init__(self, min_wait_seconds: float, message: Optional[str] = None):
        self.min_wait_seconds = max(0.0, min_wait_seconds)
        if message is None:
            message = (
                "All keys quota limited, earliest available in "
                f"{format_wait(self.min_wait_seconds)}"
            )
        super().__init__(message)


class RateLimitTimeout(KeyPoolError):
    """The limiter kept denying a slot past the safety cap."""


class QueueFullError(KeyPoolError):
    """The per-key request queue reached its maximum size."""


class QueueClearedError(KeyPoolError):
    """A waiting request was dropped by an administrative queue clear."""


class ProviderError(Exception):
    """Normalised failure of one Gemini call.

    Produced at the HTTP boundary so retry classification only ever sees a
    status code, an optional retry delay and a message.
    """

    def __init__(
        self,
        status_code: int,
        message: str,
        retry_delay_seconds: Optional[float] = None,
    ):
        self.status_code = status_code
        self.message = message
        self.retry_delay_seconds = retry_delay_seconds
        self.last_tried_key: Optional[str] = None
        super().__init__(f"[HTTP {status_code}] {message}")

    def __str__(self) -> str:
        text = super().__str__()
        if self.last_tried_key:
            return f"{text} (last tried key: {self.last_tried_key})"
        return text


def format_wait(seconds: float) -> str:
    """Render a wait as 'N hours M minutes' for user-facing messages."""
    total_minutes = int(-(-seconds // 60))
    hours, minutes = divmod(total_minutes, 60)
    if hours:
        return f"{hours} hours {minutes} minutes"
    return f"{minutes} minutes"
