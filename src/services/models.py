"""
Shared record types for the civic ingestion pipelines.

Candidates flow from the connectors into the extraction client, which turns them
into typed `ChallengeFields` or `EventFields`. The orchestrators keep their
counters in `PipelineRunStats` and thread a `RunContext` through every loop.
"""

from __future__ import annotations

import re
import threading
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Mapping

from src.services.errors import PipelineCancelled

CHALLENGE_CATEGORIES = (
    "environment",
    "housing",
    "transport",
    "public_safety",
    "governance",
    "education",
    "health",
    "climate",
)
SEVERITY_LEVELS = ("low", "medium", "high", "critical")
EVENT_TYPES = (
    "conference",
    "hackathon",
    "meetup",
    "workshop",
    "summit",
    "webinar",
    "training",
    "festival",
    "other",
)
COST_TYPES = ("free", "paid", "donation", "unknown")
CONFIDENCE_LEVELS = ("listing_only", "low", "partial", "complete")

ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class SourceType(str, Enum):
    STRUCTURED_API = "structured-api"
    SEARCH_SNIPPET = "search-snippet"
    SEARCH_FULLPAGE = "search-fullpage"
    STATIC_DIRECTORY = "static-directory"


class PromptKind(str, Enum):
    CHALLENGE = "challenge"
    EVENT = "event"


@dataclass(frozen=True)
class CandidateItem:
    source_id: str
    title: str
    body_text: str
    source_type: SourceType
    url: str
    published_at: datetime | None = None
    venue: str | None = None
    city: str | None = None
    country: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)


def _clean_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in {"null", "none", "n/a"}:
        return None
    return text


def _clean_date(value: Any) -> str | None:
    text = _clean_str(value)
    if text and ISO_DATE_RE.match(text):
        return text
    return None


def _clean_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def _choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    text = (_clean_str(value) or "").lower()
    return text if text in allowed else default


@dataclass
class ChallengeFields:
    title: str
    summary: str | None = None
    call_to_action: str | None = None
    category: str = "environment"
    subcategory: str | None = None
    severity: str = "medium"
    skills_needed: List[str] = field(default_factory=list)
    location_specific: str | None = None
    location_city: str | None = None
    location_country: str | None = None
    geocode_query: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ChallengeFields":
        location = payload.get("location") if isinstance(payload.get("location"), Mapping) else {}
        return cls(
            title=_clean_str(payload.get("title")) or "",
            summary=_clean_str(payload.get("summary")),
            call_to_action=_clean_str(payload.get("call_to_action")),
            category=_choice(payload.get("category"), CHALLENGE_CATEGORIES, "environment"),
            subcategory=_clean_str(payload.get("subcategory")),
            severity=_choice(payload.get("severity"), SEVERITY_LEVELS, "medium"),
            skills_needed=_clean_list(payload.get("skills_needed")),
            location_specific=_clean_str(location.get("specific")),
            location_city=_clean_str(location.get("city")),
            location_country=_clean_str(location.get("country")),
            geocode_query=_clean_str(location.get("geocode_query")),
        )

    @property
    def has_location(self) -> bool:
        return bool(self.geocode_query or self.location_city)


@dataclass
class EventFields:
    name: str
    start_date: str | None = None
    end_date: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    timezone: str | None = None
    location_name: str | None = None
    location_city: str | None = None
    location_country: str | None = None
    geocode_query: str | None = None
    is_online: bool = False
    is_hybrid: bool = False
    registration_url: str | None = None
    event_url: str | None = None
    organizer: str | None = None
    description: str | None = None
    cost: str = "unknown"
    cost_details: str | None = None
    event_type: str = "conference"
    tags: List[str] = field(default_factory=list)
    relevance_score: int | None = None
    relevance_reason: str | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EventFields":
        score = payload.get("relevance_score")
        try:
            relevance = max(0, min(100, int(score))) if score is not None else None
        except (TypeError, ValueError):
            relevance = None
        return cls(
            name=_clean_str(payload.get("name")) or "",
            start_date=_clean_date(payload.get("start_date")),
            end_date=_clean_date(payload.get("end_date")),
            start_time=_clean_str(payload.get("start_time")),
            end_time=_clean_str(payload.get("end_time")),
            timezone=_clean_str(payload.get("timezone")),
            location_name=_clean_str(payload.get("location_name")),
            location_city=_clean_str(payload.get("location_city")),
            location_country=_clean_str(payload.get("location_country")),
            geocode_query=_clean_str(payload.get("geocode_query")),
            is_online=bool(payload.get("is_online")),
            is_hybrid=bool(payload.get("is_hybrid")),
            registration_url=_clean_str(payload.get("registration_url")),
            event_url=_clean_str(payload.get("event_url")),
            organizer=_clean_str(payload.get("organizer")),
            description=_clean_str(payload.get("description")),
            cost=_choice(payload.get("cost"), COST_TYPES, "unknown"),
            cost_details=_clean_str(payload.get("cost_details")),
            event_type=normalize_event_type(payload.get("event_type")),
            tags=_clean_list(payload.get("tags")),
            relevance_score=relevance,
            relevance_reason=_clean_str(payload.get("relevance_reason")),
        )

    @property
    def is_purely_online(self) -> bool:
        return self.is_online and not self.is_hybrid


# Directory and model labels that collapse onto the stored event types.
EVENT_TYPE_ALIASES = {
    "expo": "conference",
    "trade_show": "conference",
    "trade show": "conference",
    "tradeshow": "conference",
    "forum": "conference",
    "congress": "conference",
    "convention": "conference",
    "exhibition": "conference",
    "fair": "conference",
    "hack": "hackathon",
    "course": "training",
    "seminar": "workshop",
}


def normalize_event_type(value: Any, default: str = "conference") -> str:
    text = (_clean_str(value) or "").lower().replace("-", "_")
    if text in EVENT_TYPES:
        return text
    return EVENT_TYPE_ALIASES.get(text, EVENT_TYPE_ALIASES.get(text.replace("_", " "), default))


@dataclass
class ExtractionResult:
    accepted: bool
    fields: ChallengeFields | EventFields | None = None
    reason: str | None = None
    model: str | None = None
    recovered: bool = False

    @classmethod
    def accept(
        cls,
        fields: ChallengeFields | EventFields,
        model: str | None = None,
        recovered: bool = False,
    ) -> "ExtractionResult":
        return cls(accepted=True, fields=fields, model=model, recovered=recovered)

    @classmethod
    def reject(cls, reason: str | None, model: str | None = None, recovered: bool = False) -> "ExtractionResult":
        return cls(accepted=False, reason=reason or "rejected", model=model, recovered=recovered)


@dataclass
class CategoryStats:
    processed: int = 0
    accepted: int = 0
    rejected: int = 0
    errors: int = 0
    skipped: int = 0
    extra: Dict[str, int] = field(default_factory=dict)


@dataclass
class PipelineRunStats:
    processed: int = 0
    accepted: int = 0
    rejected: int = 0
    errors: int = 0
    skipped: int = 0
    by_category: Dict[str, CategoryStats] = field(default_factory=dict)
    expired: Dict[str, int] = field(default_factory=dict)
    cancelled: bool = False

    def category(self, name: str) -> CategoryStats:
        if name not in self.by_category:
            self.by_category[name] = CategoryStats()
        return self.by_category[name]

    def record(self, category: str, outcome: str, count: int = 1) -> None:
        """Bump one counter on both the run totals and the category bucket."""
        bucket = self.category(category)
        setattr(self, outcome, getattr(self, outcome) + count)
        setattr(bucket, outcome, getattr(bucket, outcome) + count)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class RunContext:
    """Per-run state: URLs already handled in this run plus a cancel token."""

    def __init__(self, today: date | None = None) -> None:
        self.processed_urls: set[str] = set()
        self.today = today or date.today()
        self._cancel = threading.Event()

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def raise_if_cancelled(self) -> None:
        if self._cancel.is_set():
            raise PipelineCancelled("pipeline run cancelled")

    def seen(self, url: str) -> bool:
        return url in self.processed_urls

    def mark(self, url: str) -> None:
        self.processed_urls.add(url)
