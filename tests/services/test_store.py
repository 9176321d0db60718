from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from src.services.errors import DuplicateRecordError
from src.services.store import RecordStore

TODAY = date(2026, 10, 18)


def make_store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path / "civic.sqlite")


def add_challenge(store: RecordStore, uri: str, **overrides: object) -> dict:
    record = {
        "source_uri": uri,
        "source_url": f"https://news.example/{uri}",
        "title": f"Challenge {uri}",
        "category": "environment",
        "severity": "medium",
        "latitude": 52.0,
        "longitude": 21.0,
        "published_at": "2026-10-10T08:00:00+00:00",
        "skills_needed": ["GIS"],
        "source_urls": [f"https://news.example/{uri}"],
        "status": "active",
    }
    record.update(overrides)
    return store.insert_challenge(record)


def add_event(store: RecordStore, name: str, **overrides: object) -> dict:
    record = {
        "name": name,
        "name_normalized": name.lower(),
        "event_type": "conference",
        "start_date": "2026-11-10",
        "location_city": "Berlin",
        "location_country": "Germany",
        "latitude": 52.52,
        "longitude": 13.4,
        "source_url": f"https://search.example/{name}",
        "source_type": "search-snippet",
        "source_urls": [f"https://search.example/{name}"],
        "relevance_score": 80,
        "tags": ["open-data"],
        "status": "active",
    }
    record.update(overrides)
    return store.insert_event(record)


def test_json_and_bool_columns_round_trip(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    event = add_event(store, "Open Data Day", is_online=True)

    assert event["tags"] == ["open-data"]
    assert event["is_online"] is True
    assert event["source_urls"] == ["https://search.example/Open Data Day"]


def test_duplicate_natural_keys_raise(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    add_challenge(store, "uri-1")
    add_event(store, "Summit", event_url="https://summit.example")

    with pytest.raises(DuplicateRecordError):
        add_challenge(store, "uri-1")
    with pytest.raises(DuplicateRecordError):
        add_event(store, "Other", event_url="https://summit.example")


def test_source_lookup_checks_appended_urls(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    event = add_event(store, "Summit", source_urls=["https://search.example/Summit", "https://mirror.example/s"])

    assert store.is_source_processed("https://mirror.example/s")
    assert store.event_by_source("https://search.example/Summit")["id"] == event["id"]
    assert not store.is_source_processed("https://unknown.example")


def test_challenge_filters(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    add_challenge(store, "a", severity="low")
    add_challenge(store, "b", severity="high", category="housing")
    add_challenge(store, "c", severity="critical", latitude=40.0, longitude=-74.0)

    assert {row["source_uri"] for row in store.query_challenges(min_severity="high")} == {"b", "c"}
    assert [row["source_uri"] for row in store.query_challenges(categories=["housing"])] == ["b"]
    in_poland = store.query_challenges(bbox=(14.0, 49.0, 24.0, 55.0))
    assert {row["source_uri"] for row in in_poland} == {"a", "b"}
    assert store.challenge_category_stats() == {"environment": 2, "housing": 1}


def test_event_filters(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    add_event(store, "Berlin Summit")
    add_event(store, "Webinar", location_city=None, is_online=True, event_type="webinar", latitude=None, longitude=None)
    add_event(store, "Low Score", relevance_score=40)
    add_event(store, "Last Year", start_date="2025-11-10")

    upcoming = store.query_events(today=TODAY)
    assert {row["name"] for row in upcoming} == {"Berlin Summit", "Webinar"}
    assert [row["name"] for row in store.query_events(online=True, today=TODAY)] == ["Webinar"]
    assert [row["name"] for row in store.query_events(event_types=["webinar"], today=TODAY)] == ["Webinar"]
    assert [row["name"] for row in store.query_events(city="berlin", today=TODAY)] == ["Berlin Summit"]
    assert len(store.query_events(upcoming=False, min_relevance=0)) == 4
    in_bounds = store.events_in_bounds((13.0, 52.0, 14.0, 53.0), today=TODAY)
    assert [row["name"] for row in in_bounds] == ["Berlin Summit"]


def test_expire_stale_flips_status_only(tmp_path: Path) -> None:
    store = make_store(tmp_path)
    past = add_event(store, "Past", start_date="2026-10-01", end_date="2026-10-17")
    running = add_event(store, "Running", start_date="2026-10-16", end_date="2026-10-20")
    old = add_challenge(store, "old", published_at="2026-09-01T10:00:00+00:00")
    fresh = add_challenge(store, "fresh", published_at="2026-10-15T10:00:00+00:00")

    counts = store.expire_stale(today=TODAY, challenge_ttl_days=30)

    assert counts == {"events": 1, "challenges": 1}
    assert store.get_event(past["id"]) is None
    assert store.get_event(past["id"], include_inactive=True)["status"] == "expired"
    assert store.get_event(running["id"]) is not None
    assert store.get_challenge(old["id"]) is None
    assert store.get_challenge(fresh["id"]) is not None
    assert store.event_stats(today=TODAY)["total"] == 1
