"""
Duplicate detection and additive merging for extracted records.

An incoming event is matched, in order, by exact event URL, by a previously seen
source URL, then fuzzily by city, a start-date window and a name prefix. Matches
are enriched in place: empty fields are filled, source references are appended,
and relevance or confidence only ever move up. Populated values are never
replaced, so the first classification of a record sticks.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from src.services.errors import DuplicateRecordError
from src.services.geocoding import Coordinates
from src.services.models import CONFIDENCE_LEVELS, CandidateItem, ChallengeFields, EventFields, SourceType
from src.services.store import RecordStore

LOGGER = logging.getLogger(__name__)

YEAR_RE = re.compile(r"\b(19|20)\d{2}\b")
MIN_PREFIX_CHARS = 5

EVENT_FILLABLE_FIELDS = (
    "description",
    "registration_url",
    "event_url",
    "organizer",
    "cost_details",
    "location_name",
    "location_country",
    "end_date",
    "start_time",
    "end_time",
    "timezone",
    "tags",
)
CHALLENGE_FILLABLE_FIELDS = (
    "summary",
    "call_to_action",
    "subcategory",
    "skills_needed",
    "location_name",
    "location_city",
    "location_country",
    "article_image",
    "source_title",
)


@dataclass(frozen=True)
class SourceRef:
    url: str
    source_type: SourceType
    key: str = ""

    @property
    def lookup_key(self) -> str:
        return self.key or self.url


@dataclass
class UpsertResult:
    action: str  # inserted | merged | unchanged | skipped | existing
    record: Optional[Dict[str, Any]] = None

    @property
    def persisted(self) -> bool:
        return self.record is not None


def _is_empty(value: Any) -> bool:
    return value in (None, "", [], {})


def normalize_name(name: str | None) -> str:
    text = YEAR_RE.sub(" ", (name or "").lower())
    text = re.sub(r"[^a-z0-9]+", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def names_match(left: str | None, right: str | None, prefix_chars: int = 20) -> bool:
    """Either normalized name's leading `prefix_chars` appear inside the other."""
    a, b = normalize_name(left), normalize_name(right)
    if not a or not b:
        return False
    if a == b:
        return True
    prefix_a = a[:prefix_chars].strip()
    prefix_b = b[:prefix_chars].strip()
    if len(prefix_a) >= MIN_PREFIX_CHARS and prefix_a in b:
        return True
    return len(prefix_b) >= MIN_PREFIX_CHARS and prefix_b in a


def _shift(iso_date: str, days: int) -> str:
    return (datetime.strptime(iso_date, "%Y-%m-%d").date() + timedelta(days=days)).isoformat()


def calculate_confidence(fields: EventFields) -> str:
    score = 0
    if fields.name:
        score += 1
    if fields.start_date:
        score += 1
    if fields.location_city or fields.is_online:
        score += 1
    if fields.description:
        score += 1
    if fields.event_url or fields.registration_url:
        score += 1
    if fields.organizer:
        score += 1
    if score >= 5:
        return "complete"
    if score >= 3:
        return "partial"
    return "low"


def _confidence_rank(value: str | None) -> int:
    return CONFIDENCE_LEVELS.index(value) if value in CONFIDENCE_LEVELS else -1


class MergeEngine:
    def __init__(self, store: RecordStore, fuzzy_window_days: int = 3, name_prefix_chars: int = 20) -> None:
        self.store = store
        self.fuzzy_window_days = fuzzy_window_days
        self.name_prefix_chars = name_prefix_chars

    # Events

    def find_event_match(self, fields: EventFields, source_ref: SourceRef | None = None) -> Optional[Dict[str, Any]]:
        if fields.event_url:
            existing = self.store.event_by_url(fields.event_url)
            if existing:
                return existing
        if source_ref and source_ref.lookup_key:
            existing = self.store.event_by_source(source_ref.lookup_key)
            if existing:
                return existing
        if not (fields.start_date and fields.location_city):
            return None
        candidates = self.store.event_candidates(
            fields.location_city,
            _shift(fields.start_date, -self.fuzzy_window_days),
            _shift(fields.start_date, self.fuzzy_window_days),
        )
        for candidate in candidates:
            if names_match(candidate.get("name"), fields.name, self.name_prefix_chars):
                LOGGER.debug("Fuzzy match '%s' -> existing #%s '%s'", fields.name, candidate["id"], candidate["name"])
                return candidate
        return None

    def matches_user_event(self, fields: EventFields) -> bool:
        if not fields.start_date:
            return False
        for user_event in self.store.user_events_between(
            _shift(fields.start_date, -self.fuzzy_window_days),
            _shift(fields.start_date, self.fuzzy_window_days),
        ):
            if names_match(user_event.get("name"), fields.name, self.name_prefix_chars):
                return True
        return False

    def _event_record(
        self,
        fields: EventFields,
        source_ref: SourceRef,
        coordinates: Coordinates | None,
        confidence: str,
    ) -> Dict[str, Any]:
        return {
            "name": fields.name,
            "name_normalized": normalize_name(fields.name),
            "description": fields.description,
            "event_type": fields.event_type,
            "tags": fields.tags,
            "start_date": fields.start_date,
            "end_date": fields.end_date,
            "start_time": fields.start_time,
            "end_time": fields.end_time,
            "timezone": fields.timezone,
            "location_name": fields.location_name,
            "location_city": fields.location_city,
            "location_country": fields.location_country,
            "latitude": coordinates.latitude if coordinates else None,
            "longitude": coordinates.longitude if coordinates else None,
            "is_online": fields.is_online,
            "is_hybrid": fields.is_hybrid,
            "event_url": fields.event_url,
            "registration_url": fields.registration_url,
            "source_url": source_ref.url,
            "source_type": source_ref.source_type.value,
            "source_urls": [source_ref.url],
            "source_keys": [source_ref.lookup_key],
            "organizer": fields.organizer,
            "cost": fields.cost,
            "cost_details": fields.cost_details,
            "relevance_score": fields.relevance_score,
            "relevance_reason": fields.relevance_reason,
            "ai_confidence": confidence,
            "status": "active",
        }

    def merge_event(
        self,
        existing: Mapping[str, Any],
        fields: EventFields,
        source_ref: SourceRef,
        coordinates: Coordinates | None = None,
        confidence: str | None = None,
    ) -> UpsertResult:
        changes: Dict[str, Any] = {}
        for column in EVENT_FILLABLE_FIELDS:
            new_value = getattr(fields, column)
            if _is_empty(existing.get(column)) and not _is_empty(new_value):
                changes[column] = new_value
        if existing.get("cost") in (None, "", "unknown") and fields.cost not in (None, "", "unknown"):
            changes["cost"] = fields.cost
        if coordinates and existing.get("latitude") is None:
            changes["latitude"] = coordinates.latitude
            changes["longitude"] = coordinates.longitude
        new_score = fields.relevance_score
        old_score = existing.get("relevance_score")
        if new_score is not None and (old_score is None or new_score > old_score):
            changes["relevance_score"] = new_score
            changes["relevance_reason"] = fields.relevance_reason
        confidence = confidence or calculate_confidence(fields)
        if _confidence_rank(confidence) > _confidence_rank(existing.get("ai_confidence")):
            changes["ai_confidence"] = confidence
        source_urls: List[str] = list(existing.get("source_urls") or [])
        if source_ref.url and source_ref.url not in source_urls and source_ref.url != existing.get("source_url"):
            changes["source_urls"] = source_urls + [source_ref.url]
        source_keys: List[str] = list(existing.get("source_keys") or [])
        if source_ref.lookup_key and source_ref.lookup_key not in source_keys:
            changes["source_keys"] = source_keys + [source_ref.lookup_key]
        if not changes:
            return UpsertResult("unchanged", dict(existing))
        LOGGER.info("Merging into event #%s: %s", existing["id"], ", ".join(sorted(changes)))
        try:
            updated = self.store.update_event(existing["id"], changes)
        except DuplicateRecordError:
            # Another record already owns this event URL.
            changes.pop("event_url", None)
            if not changes:
                return UpsertResult("unchanged", dict(existing))
            updated = self.store.update_event(existing["id"], changes)
        return UpsertResult("merged", updated)

    def upsert_event(
        self,
        fields: EventFields,
        source_ref: SourceRef,
        coordinates: Coordinates | None = None,
        confidence: str | None = None,
    ) -> UpsertResult:
        existing = self.find_event_match(fields, source_ref)
        if existing:
            return self.merge_event(existing, fields, source_ref, coordinates, confidence)
        if self.matches_user_event(fields):
            LOGGER.info("Skipping '%s': already submitted as a user event", fields.name)
            return UpsertResult("skipped")
        record = self._event_record(fields, source_ref, coordinates, confidence or calculate_confidence(fields))
        try:
            return UpsertResult("inserted", self.store.insert_event(record))
        except DuplicateRecordError:
            LOGGER.info("Event '%s' was stored concurrently; treating as existing", fields.name)
            existing = self.find_event_match(fields, source_ref)
            return UpsertResult("existing", existing)

    # Challenges

    def upsert_challenge(
        self,
        candidate: CandidateItem,
        fields: ChallengeFields,
        coordinates: Coordinates,
    ) -> UpsertResult:
        extra = candidate.extra or {}
        record = {
            "source_uri": candidate.source_id,
            "source_url": candidate.url,
            "source_title": extra.get("source_title"),
            "article_title": candidate.title,
            "article_image": extra.get("image"),
            "published_at": candidate.published_at.isoformat() if candidate.published_at else None,
            "title": fields.title,
            "summary": fields.summary,
            "call_to_action": fields.call_to_action,
            "category": fields.category,
            "subcategory": fields.subcategory,
            "severity": fields.severity,
            "skills_needed": fields.skills_needed,
            "location_name": fields.location_specific,
            "location_city": fields.location_city,
            "location_country": fields.location_country,
            "latitude": coordinates.latitude,
            "longitude": coordinates.longitude,
            "geocode_query": fields.geocode_query,
            "sentiment": extra.get("sentiment"),
            "language": extra.get("language"),
            "source_urls": [candidate.url] if candidate.url else [],
            "status": "active",
        }
        existing = self.store.challenge_by_uri(candidate.source_id)
        if existing is None:
            try:
                return UpsertResult("inserted", self.store.insert_challenge(record))
            except DuplicateRecordError:
                LOGGER.info("Challenge %s was stored concurrently; treating as existing", candidate.source_id)
                return UpsertResult("existing", self.store.challenge_by_uri(candidate.source_id))
        changes: Dict[str, Any] = {}
        for column in CHALLENGE_FILLABLE_FIELDS:
            if _is_empty(existing.get(column)) and not _is_empty(record.get(column)):
                changes[column] = record[column]
        source_urls = list(existing.get("source_urls") or [])
        if candidate.url and candidate.url not in source_urls:
            changes["source_urls"] = source_urls + [candidate.url]
        if not changes:
            return UpsertResult("unchanged", existing)
        return UpsertResult("merged", self.store.update_challenge(existing["id"], changes))
