from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from src.api import main
from src.services.store import RecordStore


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    return RecordStore(tmp_path / "civic.sqlite")


@pytest.fixture
def client(store: RecordStore):  # type: ignore[no-untyped-def]
    main.app.dependency_overrides[main.get_store] = lambda: store
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


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
        "status": "active",
    }
    record.update(overrides)
    return store.insert_challenge(record)


def add_event(store: RecordStore, name: str, **overrides: object) -> dict:
    start = (date.today() + timedelta(days=30)).isoformat()
    record = {
        "name": name,
        "event_type": "conference",
        "start_date": start,
        "location_city": "Berlin",
        "location_country": "Germany",
        "latitude": 52.52,
        "longitude": 13.4,
        "source_url": f"https://search.example/{name}",
        "source_type": "search-snippet",
        "relevance_score": 80,
        "status": "active",
    }
    record.update(overrides)
    return store.insert_event(record)


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_challenges_filtered_by_severity_and_bbox(client: TestClient, store: RecordStore) -> None:
    add_challenge(store, "a", severity="low")
    add_challenge(store, "b", severity="critical")
    add_challenge(store, "c", severity="high", latitude=40.0, longitude=-74.0)

    response = client.get("/api/challenges", params={"severity": "high", "bbox": "14,49,24,55"})

    assert response.status_code == 200
    body = response.json()
    assert [item["title"] for item in body] == ["Challenge b"]
    assert body[0]["lat"] == 52.0
    assert body[0]["skills_needed"] == ["GIS"]


def test_malformed_bbox_is_a_400(client: TestClient) -> None:
    assert client.get("/api/challenges", params={"bbox": "1,2,3"}).status_code == 400
    assert client.get("/api/events/map", params={"bbox": "10,10,5,20"}).status_code == 400


def test_unknown_ids_are_404(client: TestClient) -> None:
    assert client.get("/api/challenges/999").status_code == 404
    assert client.get("/api/events/discovered/999").status_code == 404


def test_expired_records_are_hidden(client: TestClient, store: RecordStore) -> None:
    expired = add_challenge(store, "old", status="expired")
    event = add_event(store, "Gone", status="expired")

    assert client.get(f"/api/challenges/{expired['id']}").status_code == 404
    assert client.get(f"/api/events/discovered/{event['id']}").status_code == 404
    assert client.get("/api/challenges").json() == []


def test_challenge_categories(client: TestClient, store: RecordStore) -> None:
    add_challenge(store, "a")
    add_challenge(store, "b", category="housing")

    assert client.get("/api/challenges/categories").json() == {"environment": 1, "housing": 1}


def test_discovered_events_and_detail(client: TestClient, store: RecordStore) -> None:
    summit = add_event(store, "Civic Summit", tags=["open-data"])
    add_event(store, "Webinar", event_type="webinar", is_online=True, location_city=None, latitude=None, longitude=None)
    add_event(store, "Weak", relevance_score=30)

    listed = client.get("/api/events/discovered").json()
    assert {item["name"] for item in listed} == {"Civic Summit", "Webinar"}
    online = client.get("/api/events/discovered", params={"online": "true"}).json()
    assert [item["name"] for item in online] == ["Webinar"]
    typed = client.get("/api/events/discovered", params={"type": "webinar"}).json()
    assert [item["name"] for item in typed] == ["Webinar"]

    detail = client.get(f"/api/events/discovered/{summit['id']}").json()
    assert detail["tags"] == ["open-data"]
    assert detail["lat"] == 52.52


def test_event_map_and_stats(client: TestClient, store: RecordStore) -> None:
    add_event(store, "Civic Summit")
    add_event(store, "Far Away", latitude=-33.9, longitude=151.2, location_city="Sydney")

    mapped = client.get("/api/events/map", params={"bbox": "13,52,14,53"}).json()
    assert [item["name"] for item in mapped] == ["Civic Summit"]

    stats = client.get("/api/events/stats").json()
    assert stats["total"] == 2
    assert stats["upcoming"] == 2
    assert stats["by_source"] == {"search-snippet": 2}
