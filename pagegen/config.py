"""Configuration management for the landing page generator."""

import os
from dataclasses import dataclass
from typing import List, Optional
from dotenv import load_dotenv


@dataclass
class Config:
    """Application configuration loaded from environment variables."""

    api_keys: List[str]
    priority_key: Optional[str] = None
    port: int = 4000
    host: str = "0.0.0.0"
    log_level: str = "INFO"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    gemini_model: str = "gemini-2.5-pro"
    request_timeout_seconds: float = 120.0

    # Throughput limiter
    min_request_interval_seconds: float = 5.0
    max_requests_per_minute: int = 6
    max_requests_per_hour: int = 200
    minute_window_seconds: float = 60.0
    hour_window_seconds: float = 3600.0
    max_wait_checks: int = 100

    # Call serializer
    max_queue_size: int = 100

    # Retry orchestrator
    max_attempts: int = 5
    max_key_retries: int = 3
    switch_delay_seconds: float = 0.5
    max_backoff_seconds: float = 10.0
    quota_delay_threshold_seconds: float = 3600.0
    preflight_max_delay_seconds: float = 10.0

    # History
    history_file: str = "data/history.json"
    max_history_records: int = 1000

    def __post_init__(self):
        if not self.api_keys:
            raise ValueError(
                "GOOGLE_API_KEYS (or GOOGLE_API_KEY / GOOGLE_API_KEY_1..N) "
                "environment variable must be set and non-empty"
            )


def collect_api_keys() -> List[str]:
    """Collect API keys from every supported environment variable.

    Supported forms, read in this order:
    GOOGLE_API_KEYS=key1,key2 / GOOGLE_API_KEY=key / GOOGLE_API_KEY_1..N.
    Numbered variables stop at the first missing index. Duplicates are
    removed, first occurrence wins.
    """
    keys: List[str] = []

    keys_raw = os.getenv("GOOGLE_API_KEYS", "")
    keys.extend(key.strip() for key in keys_raw.split(",") if key.strip())

    single_key = os.getenv("GOOGLE_API_KEY", "").strip()
    if single_key:
        keys.append(single_key)

    index = 1
    while True:
        numbered = os.getenv(f"GOOGLE_API_KEY_{index}", "").strip()
        if not numbered:
            break
        keys.append(numbered)
        index += 1

    return list(dict.fromkeys(keys))


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If required environment variables are missing or invalid
    """
    if use_dotenv:
        load_dotenv()

    priority_key = os.getenv("GOOGLE_API_KEY_PRIORITY", "").strip() or None

    return Config(
        api_keys=collect_api_keys(),
        priority_key=priority_key,
        port=int(os.getenv("PORT", "4000")),
        host=os.getenv("HOST", "0.0.0.0"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        gemini_base_url=os.getenv(
            "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"
        ),
        gemini_model=os.getenv("GEMINI_MODEL", "gemini-2.5-pro"),
        request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "120")),
        min_request_interval_seconds=float(
            os.getenv("MIN_REQUEST_INTERVAL_SECONDS", "5")
        ),
        max_requests_per_minute=int(os.getenv("MAX_REQUESTS_PER_MINUTE", "6")),
        max_requests_per_hour=int(os.getenv("MAX_REQUESTS_PER_HOUR", "200")),
        max_wait_checks=int(os.getenv("MAX_WAIT_CHECKS", "100")),
        max_queue_size=int(os.getenv("MAX_QUEUE_SIZE", "100")),
        max_attempts=int(os.getenv("MAX_ATTEMPTS", "5")),
        max_key_retries=int(os.getenv("MAX_KEY_RETRIES", "3")),
        switch_delay_seconds=float(os.getenv("SWITCH_DELAY_SECONDS", "0.5")),
        quota_delay_threshold_seconds=float(
            os.getenv("QUOTA_DELAY_THRESHOLD_SECONDS", "3600")
        ),
        preflight_max_delay_seconds=float(
            os.getenv("PREFLIGHT_MAX_DELAY_SECONDS", "10")
        ),
        history_file=os.getenv("HISTORY_FILE", "data/history.json"),
        max_history_records=int(os.getenv("MAX_HISTORY_RECORDS", "1000")),
    )
