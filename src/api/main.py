"""
FastAPI app exposing civic challenges and discovered events from the ingestion store.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Iterator, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from src.services.models import SEVERITY_LEVELS
from src.services.store import RecordStore

DB_PATH = os.getenv("CIVIC_DB_PATH", "datasets/civic/civic.sqlite")
MAX_ROWS = 2000
LOGGER = logging.getLogger("civic_api")
if not LOGGER.handlers:
    LOGGER.setLevel(logging.INFO)
    LOG_PATH = Path("logs")
    LOG_PATH.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(LOG_PATH / "api_requests.log")
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler.setFormatter(formatter)
    LOGGER.addHandler(file_handler)


def get_store() -> Iterator[RecordStore]:
    store = RecordStore(Path(DB_PATH))
    try:
        yield store
    finally:
        store.close()


class ChallengeOut(BaseModel):
    id: int
    title: str
    summary: Optional[str] = None
    call_to_action: Optional[str] = None
    category: str
    subcategory: Optional[str] = None
    severity: str
    skills_needed: List[str] = Field(default_factory=list)
    location_name: Optional[str] = None
    location_city: Optional[str] = None
    location_country: Optional[str] = None
    lat: float = Field(..., description="Latitude in decimal degrees")
    lon: float = Field(..., description="Longitude in decimal degrees")
    source_url: Optional[str] = None
    source_title: Optional[str] = None
    article_title: Optional[str] = None
    article_image: Optional[str] = None
    publishedAt: Optional[str] = None
    source_urls: List[str] = Field(default_factory=list)


class EventOut(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    event_type: str
    tags: List[str] = Field(default_factory=list)
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    timezone: Optional[str] = None
    location_name: Optional[str] = None
    location_city: Optional[str] = None
    location_country: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    is_online: bool = False
    is_hybrid: bool = False
    event_url: Optional[str] = None
    registration_url: Optional[str] = None
    organizer: Optional[str] = None
    cost: str = "unknown"
    cost_details: Optional[str] = None
    relevance_score: Optional[int] = None
    relevance_reason: Optional[str] = None
    ai_confidence: Optional[str] = None
    source_type: Optional[str] = None
    source_urls: List[str] = Field(default_factory=list)


class EventStatsOut(BaseModel):
    total: int
    upcoming: int
    by_type: dict[str, int]
    by_source: dict[str, int]


app = FastAPI(title="Civic Signals API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _parse_bbox(value: str) -> tuple[float, float, float, float]:
    parts = value.split(",")
    if len(parts) != 4:
        raise ValueError("bbox must have four comma-separated floats (west,south,east,north)")
    west, south, east, north = (float(part.strip()) for part in parts)
    if west >= east or south >= north:
        raise ValueError("bbox must satisfy west < east and south < north")
    return west, south, east, north


def _bbox_or_400(value: str | None) -> tuple[float, float, float, float] | None:
    if not value:
        return None
    try:
        return _parse_bbox(value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _split_csv(value: str | None) -> list[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


def _challenge_out(record: dict[str, Any]) -> ChallengeOut:
    return ChallengeOut(
        id=record["id"],
        title=record["title"],
        summary=record["summary"],
        call_to_action=record["call_to_action"],
        category=record["category"],
        subcategory=record["subcategory"],
        severity=record["severity"],
        skills_needed=record["skills_needed"],
        location_name=record["location_name"],
        location_city=record["location_city"],
        location_country=record["location_country"],
        lat=record["latitude"],
        lon=record["longitude"],
        source_url=record["source_url"],
        source_title=record["source_title"],
        article_title=record["article_title"],
        article_image=record["article_image"],
        publishedAt=record["published_at"],
        source_urls=record["source_urls"],
    )


def _event_out(record: dict[str, Any]) -> EventOut:
    fields = {name: record.get(name) for name in EventOut.model_fields if name in record}
    return EventOut(
        **{key: value for key, value in fields.items() if value is not None},
        lat=record.get("latitude"),
        lon=record.get("longitude"),
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/challenges", response_model=list[ChallengeOut])
def get_challenges(
    bbox: Optional[str] = Query(
        default=None,
        description='Optional bounding box "west,south,east,north" in decimal degrees.',
    ),
    categories: Optional[str] = Query(default=None, description="Comma-separated category filter."),
    severity: Optional[str] = Query(default=None, description="Minimum severity (low, medium, high, critical)."),
    limit: int = Query(500, ge=1, le=MAX_ROWS),
    store: RecordStore = Depends(get_store),
) -> list[ChallengeOut]:
    LOGGER.info("Fetching challenges bbox=%s categories=%s severity=%s", bbox, categories, severity)
    parsed_bbox = _bbox_or_400(bbox)
    if severity and severity not in SEVERITY_LEVELS:
        raise HTTPException(status_code=400, detail=f"severity must be one of {', '.join(SEVERITY_LEVELS)}")
    records = store.query_challenges(
        bbox=parsed_bbox,
        categories=_split_csv(categories),
        min_severity=severity,
        limit=limit,
    )
    return [_challenge_out(record) for record in records]


@app.get("/api/challenges/categories")
def get_challenge_categories(store: RecordStore = Depends(get_store)) -> dict[str, int]:
    return store.challenge_category_stats()


@app.get("/api/challenges/{challenge_id}", response_model=ChallengeOut)
def get_challenge(challenge_id: int, store: RecordStore = Depends(get_store)) -> ChallengeOut:
    record = store.get_challenge(challenge_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Challenge not found")
    return _challenge_out(record)


@app.get("/api/events/discovered", response_model=list[EventOut])
def get_discovered_events(
    upcoming: bool = Query(True, description="Only events that have not ended yet."),
    type: Optional[str] = Query(default=None, description="Comma-separated event type filter."),
    tags: Optional[str] = Query(default=None, description="Comma-separated tag filter."),
    city: Optional[str] = None,
    country: Optional[str] = None,
    online: Optional[bool] = None,
    min_relevance: int = Query(60, ge=0, le=100),
    limit: int = Query(50, ge=1, le=MAX_ROWS),
    offset: int = Query(0, ge=0),
    store: RecordStore = Depends(get_store),
) -> list[EventOut]:
    LOGGER.info("Fetching discovered events type=%s city=%s country=%s online=%s", type, city, country, online)
    records = store.query_events(
        upcoming=upcoming,
        event_types=_split_csv(type),
        tags=_split_csv(tags),
        city=city,
        country=country,
        online=online,
        min_relevance=min_relevance,
        limit=limit,
        offset=offset,
    )
    return [_event_out(record) for record in records]


@app.get("/api/events/map", response_model=list[EventOut])
def get_event_map(
    bbox: str = Query(..., description='Bounding box "west,south,east,north" in decimal degrees.'),
    type: Optional[str] = Query(default=None, description="Comma-separated event type filter."),
    min_relevance: int = Query(60, ge=0, le=100),
    store: RecordStore = Depends(get_store),
) -> list[EventOut]:
    LOGGER.info("Fetching event map bbox=%s type=%s", bbox, type)
    parsed_bbox = _bbox_or_400(bbox)
    records = store.events_in_bounds(
        parsed_bbox,  # type: ignore[arg-type]
        event_types=_split_csv(type),
        min_relevance=min_relevance,
        limit=MAX_ROWS,
    )
    return [_event_out(record) for record in records]


@app.get("/api/events/discovered/{event_id}", response_model=EventOut)
def get_discovered_event(event_id: int, store: RecordStore = Depends(get_store)) -> EventOut:
    record = store.get_event(event_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return _event_out(record)


@app.get("/api/events/stats", response_model=EventStatsOut)
def get_event_stats(store: RecordStore = Depends(get_store)) -> EventStatsOut:
    return EventStatsOut(**store.event_stats())
