"""Data models for the key pool, the throughput limiter and generation tasks."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

STATE_AVAILABLE = "available"
STATE_FAILED = "failed"
STATE_PERMANENTLY_FAILED = "permanently_failed"
STATE_QUOTA_LIMITED = "quota_limited"

TASK_QUEUED = "queued"
TASK_GENERATING_TITLE = "generating_title"
TASK_GENERATING_CONTENT = "generating_content"
TASK_FETCHING_PRODUCTS = "fetching_products"
TASK_RENDERING = "rendering_template"
TASK_PUBLISHING = "publishing"
TASK_PAUSED = "paused"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"

FINISHED_TASK_STATUSES = frozenset({TASK_COMPLETED, TASK_FAILED})


def mask_key(key: str) -> str:
    """Return a display-safe form of an API key."""
    if len(key) <= 12:
        return "****"
    return f"{key[:8]}...{key[-4:]}"


@dataclass
class QuotaLimitInfo:
    """When a key was flagged as quota limited and when it frees up."""

    timestamp: float
    expires_at: float
    retry_delay_seconds: Optional[float] = None


@dataclass
class Credential:
    """Represents a single API key and its health state."""

    id: str
    key: str
    is_priority: bool = False
    temporarily_failed: bool = False
    permanently_failed: bool = False
    permanent_reason: Optional[str] = None
    quota_limit: Optional[QuotaLimitInfo] = None
    last_used: Optional[datetime] = None
    last_error: Optional[datetime] = None
    consecutive_failures: int = 0

    def is_quota_limited(self, now: float) -> bool:
        return self.quota_limit is not None and now < self.quota_limit.expires_at

    def state(self, now: float) -> str:
        if self.permanently_failed:
            return STATE_PERMANENTLY_FAILED
        if self.is_quota_limited(now):
            return STATE_QUOTA_LIMITED
        if self.temporarily_failed:
            return STATE_FAILED
        return STATE_AVAILABLE

    def is_available(self, now: float) -> bool:
        return self.state(now) == STATE_AVAILABLE

    def key_prefix(self) -> str:
        return mask_key(self.key)


@dataclass
class UsageRecord:
    """Per-key request counters over a minute and an hour tumbling window."""

    minute_window_start: float
    hour_window_start: float
    last_request_time: Optional[float] = None
    minute_count: int = 0
    hour_count: int = 0


@dataclass
class RateDecision:
    """Outcome of a limiter admission check."""

    allowed: bool
    wait_seconds: float = 0.0
    reason: str = ""


@dataclass
class TaskProgress:
    """Progress of one landing page generation."""

    id: str
    status: str
    message: str
    created_at: float
    updated_at: float
    keyword: Optional[str] = None
    page_title: Optional[str] = None
    page_url: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "message": self.message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "keyword": self.keyword,
            "page_title": self.page_title,
            "page_url": self.page_url,
            "error": self.error,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskProgress":
        return cls(
            id=data["id"],
            status=data["status"],
            message=data.get("message", ""),
            created_at=data.get("created_at", 0.0),
            updated_at=data.get("updated_at", 0.0),
            keyword=data.get("keyword"),
            page_title=data.get("page_title"),
            page_url=data.get("page_url"),
            error=data.get("error"),
            details=dict(data.get("details") or {}),
        )


@dataclass
class FAQItem:
    question: str
    answer: str


@dataclass
class GeneratedContent:
    """Copy returned by Gemini for one page."""

    article_html: str
    faq_items: List[FAQItem] = field(default_factory=list)
    meta_description: str = ""
    meta_keywords: str = ""


@dataclass
class ProductSummary:
    """A shop product shown on the generated page."""

    id: int
    name: str
    link: str
    image_url: Optional[str] = None
    price: Optional[str] = None
    regular_price: Optional[str] = None
    on_sale: bool = False
    category: Optional[str] = None
