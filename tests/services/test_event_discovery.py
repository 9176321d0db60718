from __future__ import annotations

import sqlite3
from datetime import date
from pathlib import Path
from typing import Dict, List

import pytest
import requests

from src.services.batch_filter import BatchRelevanceFilter
from src.services.brave_search import ALL_DAYS, QueryGroup
from src.services.directory_scraper import DirectoryListing, ScrapeStats
from src.services.config import PipelineConfig
from src.services.errors import ModelCascadeError
from src.services.event_discovery import EventDiscoveryPipeline, run_directory_pipeline
from src.services.merge import MergeEngine
from src.services.models import CandidateItem, EventFields, ExtractionResult, RunContext, SourceType
from src.services.orchestration import CoreServices, build_core_services
from src.services.store import RecordStore

from fakes import FakeExtractor, FakeGeocoder, FakeSession

TODAY = date(2026, 10, 18)
GROUPS = [QueryGroup("test", ("civic tech conference", "open data day"), ALL_DAYS)]


class FakeSearchClient:
    def __init__(self, by_query: Dict[str, object]) -> None:
        self.by_query = by_query
        self.queries: List[str] = []

    def search(self, query: str, count: int = 20, **_: object) -> List[CandidateItem]:
        self.queries.append(query)
        results = self.by_query.get(query, [])
        if isinstance(results, Exception):
            raise results
        return list(results)  # type: ignore[arg-type]


class FakeNewsClient:
    def __init__(self, items: List[CandidateItem]) -> None:
        self.items = items
        self.calls = 0

    def fetch_category(self, category: object, articles_count: int = 30, **_: object) -> List[CandidateItem]:
        self.calls += 1
        return self.items


class FakeFetcher:
    def __init__(self, text: str | None = "Full page about the Civic Camp in Warsaw on 2026-11-20.") -> None:
        self.text = text
        self.urls: List[str] = []

    def fetch_and_extract(self, url: str) -> str | None:
        self.urls.append(url)
        return self.text


class FakeScraper:
    def __init__(self, listings: List[DirectoryListing]) -> None:
        self.listings = listings

    def scrape_all_categories(self, on_progress=None, should_stop=None):  # type: ignore[no-untyped-def]
        return list(self.listings), [ScrapeStats(category="environmental", pages_scraped=1, listings_found=len(self.listings))]


def snippet(slug: str) -> CandidateItem:
    url = f"https://events.example/{slug}?utm_source=brave"
    return CandidateItem(
        source_id=url,
        title=f"Event {slug}",
        body_text="Join us",
        source_type=SourceType.SEARCH_SNIPPET,
        url=url,
    )


def event(name: str, score: int = 80, **overrides: object) -> ExtractionResult:
    values = dict(
        name=name,
        start_date="2026-11-20",
        location_city="Warsaw",
        location_country="Poland",
        geocode_query="Warsaw, Poland",
        relevance_score=score,
    )
    values.update(overrides)
    return ExtractionResult.accept(EventFields(**values))  # type: ignore[arg-type]


def make_pipeline(tmp_path: Path, extractor: FakeExtractor, **kwargs: object) -> EventDiscoveryPipeline:
    store = RecordStore(tmp_path / "civic.sqlite")
    kwargs.setdefault("geocoder", FakeGeocoder(default=(52.23, 21.01)))
    return EventDiscoveryPipeline(
        store=store,
        extractor=extractor,  # type: ignore[arg-type]
        merge=MergeEngine(store),
        query_groups=GROUPS,
        sleep=lambda _: None,
        **kwargs,  # type: ignore[arg-type]
    )


def test_full_page_fetched_only_when_snippet_needs_more_info(tmp_path: Path) -> None:
    search = FakeSearchClient({"civic tech conference": [snippet("camp"), snippet("job")]})
    fetcher = FakeFetcher()
    extractor = FakeExtractor(
        [
            ExtractionResult.reject("need more info"),
            event("Civic Camp"),
            ExtractionResult.reject("job posting"),
        ]
    )
    pipeline = make_pipeline(tmp_path, extractor, search_client=search, fetcher=fetcher)

    stats = pipeline.run_discovery(skip_news=True, context=RunContext(today=TODAY))

    assert fetcher.urls == ["https://events.example/camp?utm_source=brave"]
    assert extractor.analyzed[1].source_type is SourceType.SEARCH_FULLPAGE
    assert extractor.analyzed[1].body_text.startswith("Full page")
    assert stats.by_category["search"].accepted == 1
    assert stats.by_category["search"].rejected == 1
    stored = pipeline.store.query_events(today=TODAY)
    assert [row["name"] for row in stored] == ["Civic Camp"]
    assert stored[0]["source_url"] == "https://events.example/camp?utm_source=brave"
    assert stored[0]["source_keys"] == ["https://events.example/camp"]


def test_relevance_gate_rejects_low_scores(tmp_path: Path) -> None:
    search = FakeSearchClient({"civic tech conference": [snippet("crypto")]})
    pipeline = make_pipeline(tmp_path, FakeExtractor([event("Crypto Expo", score=59)]), search_client=search)

    stats = pipeline.run_discovery(skip_news=True, context=RunContext(today=TODAY))

    assert stats.rejected == 1
    assert pipeline.store.query_events(upcoming=False, min_relevance=0) == []


def test_online_events_skip_geocoding(tmp_path: Path) -> None:
    search = FakeSearchClient({"open data day": [snippet("webinar")]})
    geocoder = FakeGeocoder()
    extractor = FakeExtractor([event("Open Data Webinar", is_online=True, location_city=None, geocode_query=None)])
    pipeline = make_pipeline(tmp_path, extractor, search_client=search, geocoder=geocoder)

    stats = pipeline.run_discovery(skip_news=True, context=RunContext(today=TODAY))

    assert stats.accepted == 1
    assert geocoder.queries == []
    stored = pipeline.store.query_events(today=TODAY)
    assert stored[0]["is_online"] is True
    assert stored[0]["latitude"] is None


def test_physical_event_without_coordinates_is_rejected(tmp_path: Path) -> None:
    search = FakeSearchClient({"open data day": [snippet("nowhere")]})
    pipeline = make_pipeline(tmp_path, FakeExtractor([event("Lost Meetup")]), search_client=search, geocoder=FakeGeocoder())

    stats = pipeline.run_discovery(skip_news=True, context=RunContext(today=TODAY))

    assert stats.rejected == 1
    assert pipeline.store.query_events(upcoming=False, min_relevance=0) == []


def test_failed_query_is_counted_and_next_query_runs(tmp_path: Path) -> None:
    search = FakeSearchClient(
        {"civic tech conference": requests.HTTPError("HTTP 429"), "open data day": [snippet("odd")]}
    )
    pipeline = make_pipeline(tmp_path, FakeExtractor([event("Open Data Day Warsaw")]), search_client=search)

    stats = pipeline.run_discovery(skip_news=True, context=RunContext(today=TODAY))

    assert search.queries == ["civic tech conference", "open data day"]
    assert stats.by_category["search"].extra["failed_queries"] == 1
    assert stats.accepted == 1


def test_processed_sources_are_skipped_across_sources(tmp_path: Path) -> None:
    search = FakeSearchClient({"civic tech conference": [snippet("camp")], "open data day": [snippet("camp")]})
    news = FakeNewsClient(
        [
            CandidateItem(
                source_id="news-1",
                title="Camp announced",
                body_text="Civic Camp returns",
                source_type=SourceType.STRUCTURED_API,
                url="https://events.example/camp?utm_source=newsletter",
            )
        ]
    )
    extractor = FakeExtractor([event("Civic Camp")])
    pipeline = make_pipeline(tmp_path, extractor, search_client=search, news_client=news)

    stats = pipeline.run_discovery(context=RunContext(today=TODAY))

    assert len(extractor.analyzed) == 1
    assert stats.skipped == 2
    assert news.calls == 1


def test_skip_flags_leave_sources_untouched(tmp_path: Path) -> None:
    search = FakeSearchClient({})
    news = FakeNewsClient([])
    pipeline = make_pipeline(tmp_path, FakeExtractor(), search_client=search, news_client=news)

    stats = pipeline.run_discovery(skip_search=True, skip_news=True, context=RunContext(today=TODAY))

    assert search.queries == []
    assert news.calls == 0
    assert stats.processed == 0


def test_directory_listings_are_batch_filtered_and_stored(tmp_path: Path) -> None:
    listings = [
        DirectoryListing(
            name="Smart City Expo",
            source_category="urban-equipment-engineering",
            description="Urban innovation",
            detail_url="https://www.eventseye.com/fairs/f-smart-city-expo.html",
            city="Barcelona",
            country="Spain",
            venue_name="Fira Gran Via",
            start_date="2026-11-04",
            end_date="2026-11-06",
        ),
        DirectoryListing(
            name="SMART CITY EXPO",
            source_category="ict-information-communications-technologies",
            description="Urban innovation and digital government",
            detail_url="https://www.eventseye.com/fairs/f-smart-city-expo.html",
            city="Barcelona",
            country="Spain",
            venue_name="Fira Gran Via",
            start_date="2026-11-04",
            end_date="2026-11-06",
        ),
        DirectoryListing(
            name="Boat Show",
            source_category="environmental",
            detail_url="https://www.eventseye.com/fairs/f-boat-show.html",
            city="Genoa",
            country="Italy",
            start_date="2026-12-01",
        ),
        DirectoryListing(name="Old Fair", source_category="environmental", start_date="2026-01-10"),
    ]
    filter_extractor = FakeExtractor(
        completions=[
            {
                "events": [
                    {"index": 0, "relevant": True, "score": 88, "reason": "smart cities", "tags": ["smart-city"], "event_type": "expo"},
                    {"index": 1, "relevant": False, "score": 5, "reason": "boats"},
                ]
            }
        ]
    )
    geocoder = FakeGeocoder(default=(41.35, 2.13))
    pipeline = make_pipeline(
        tmp_path,
        FakeExtractor(),
        geocoder=geocoder,
        scraper=FakeScraper(listings),
        batch_filter=BatchRelevanceFilter(filter_extractor, min_score=55),
    )

    stats = pipeline.run_directory(context=RunContext(today=TODAY))

    bucket = stats.by_category["directory"]
    assert bucket.extra["scraped"] == 4
    assert bucket.extra["unique"] == 3
    assert bucket.extra["future"] == 2
    assert (stats.processed, stats.accepted, stats.rejected) == (2, 1, 1)
    assert geocoder.queries[0][0] == "Fira Gran Via, Barcelona, Spain"
    stored = pipeline.store.query_events(today=TODAY)
    assert len(stored) == 1
    assert stored[0]["description"] == "Urban innovation and digital government"
    assert stored[0]["ai_confidence"] == "listing_only"
    assert stored[0]["source_type"] == "static-directory"
    assert stored[0]["event_type"] == "conference"
    assert stored[0]["tags"] == ["smart-city"]


def test_directory_rerun_skips_stored_listings(tmp_path: Path) -> None:
    listing = DirectoryListing(
        name="GovTech Forum",
        source_category="ict-information-communications-technologies",
        detail_url="https://www.eventseye.com/fairs/f-govtech-forum.html",
        city="Vienna",
        country="Austria",
        start_date="2026-11-15",
    )
    filter_extractor = FakeExtractor(completions=[{"events": [{"index": 0, "relevant": True, "score": 90}]}])
    pipeline = make_pipeline(
        tmp_path,
        FakeExtractor(),
        scraper=FakeScraper([listing]),
        batch_filter=BatchRelevanceFilter(filter_extractor),
    )

    first = pipeline.run_directory(context=RunContext(today=TODAY))
    second = pipeline.run_directory(context=RunContext(today=TODAY))

    assert first.accepted == 1
    assert second.skipped == 1
    assert len(filter_extractor.prompts) == 1


def test_progress_reports_per_query_and_news_counts(tmp_path: Path) -> None:
    search = FakeSearchClient({"civic tech conference": [snippet("camp")], "open data day": []})
    news = FakeNewsClient([])
    pipeline = make_pipeline(tmp_path, FakeExtractor([event("Civic Camp")]), search_client=search, news_client=news)
    messages: List[str] = []

    pipeline.run_discovery(on_progress=messages.append, context=RunContext(today=TODAY))

    assert 'Query "civic tech conference": 1 results' in messages
    assert 'Query "open data day": 0 results' in messages
    assert "News: 0 articles found" in messages
    assert messages.index("Running 2 search queries") < messages.index('Query "civic tech conference": 1 results')


def test_mixed_case_source_url_is_stored_verbatim(tmp_path: Path) -> None:
    url = "https://lu.ma/CivicCamp26?ref=Brave"
    candidate = CandidateItem(
        source_id=url,
        title="Civic Camp",
        body_text="Join us",
        source_type=SourceType.SEARCH_SNIPPET,
        url=url,
    )
    search = FakeSearchClient({"civic tech conference": [candidate]})
    pipeline = make_pipeline(tmp_path, FakeExtractor([event("Civic Camp")]), search_client=search)

    pipeline.run_discovery(skip_news=True, context=RunContext(today=TODAY))

    stored = pipeline.store.query_events(today=TODAY)[0]
    assert stored["source_url"] == url
    assert stored["source_urls"] == [url]
    assert pipeline.store.is_source_processed("https://lu.ma/civiccamp26?ref=brave")


def test_missing_collaborators_raise_value_error(tmp_path: Path) -> None:
    pipeline = make_pipeline(tmp_path, FakeExtractor())

    with pytest.raises(ValueError):
        pipeline.run_directory(context=RunContext(today=TODAY))


def test_failed_directory_batch_counts_every_listing(tmp_path: Path) -> None:
    listings = [
        DirectoryListing(
            name=f"Civic Fair {index}",
            source_category="environmental",
            detail_url=f"https://www.eventseye.com/fairs/f-civic-fair-{index}.html",
            city="Vienna",
            country="Austria",
            start_date="2026-11-15",
        )
        for index in range(3)
    ]
    filter_extractor = FakeExtractor(completions=[ModelCascadeError([("model/a", "HTTP 500")])])
    pipeline = make_pipeline(
        tmp_path,
        FakeExtractor(),
        scraper=FakeScraper(listings),
        batch_filter=BatchRelevanceFilter(filter_extractor),
    )

    stats = pipeline.run_directory(context=RunContext(today=TODAY))

    bucket = stats.by_category["directory"]
    assert (bucket.processed, bucket.errors, bucket.accepted) == (3, 3, 0)
    assert bucket.extra["failed_batches"] == 1


def test_directory_factory_closes_services_on_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    closed: List[bool] = []
    monkeypatch.setattr(CoreServices, "close", lambda self: closed.append(True))

    def boom(self, on_progress=None, context=None):  # type: ignore[no-untyped-def]
        raise RuntimeError("scrape crashed")

    monkeypatch.setattr(EventDiscoveryPipeline, "run_directory", boom)
    config = PipelineConfig(openrouter_api_key="sk-test", user_agent="CivicTest/1.0", db_path=tmp_path / "civic.sqlite")

    with pytest.raises(RuntimeError):
        run_directory_pipeline(config=config, session=FakeSession())

    assert closed == [True]


def test_core_services_close_releases_databases(tmp_path: Path) -> None:
    config = PipelineConfig(openrouter_api_key="sk-test", user_agent="CivicTest/1.0", db_path=tmp_path / "civic.sqlite")
    services = build_core_services(config, session=FakeSession())

    services.close()

    with pytest.raises(sqlite3.ProgrammingError):
        services.store.conn.execute("SELECT 1")
    with pytest.raises(sqlite3.ProgrammingError):
        services.geocoder.cache.conn.execute("SELECT 1")
