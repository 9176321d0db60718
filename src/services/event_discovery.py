"""
Discover upcoming civic-tech events from search results, news and a trade-show directory.

Search snippets are classified first; only a "need more info" rejection triggers a
full-page fetch and a second classification. News articles are classified once.
Directory listings skip per-item extraction entirely and are scored in batches.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import date
from typing import Any, Callable, List, Sequence

import requests

from src.services.batch_filter import BatchRelevanceFilter, BatchVerdict
from src.services.brave_search import QUERY_GROUPS, BraveSearchClient, QueryGroup, todays_queries
from src.services.config import PipelineConfig
from src.services.directory_scraper import DirectoryScraper, deduplicate, filter_future
from src.services.errors import PipelineCancelled
from src.services.extraction import ExtractionClient, needs_more_info
from src.services.geocoding import Coordinates, NominatimGeocoder
from src.services.merge import MergeEngine, SourceRef
from src.services.models import (
    CandidateItem,
    EventFields,
    ExtractionResult,
    PipelineRunStats,
    RunContext,
    SourceType,
)
from src.services.news_api import EVENT_KEYWORDS, NewsApiClient
from src.services.orchestration import (
    CoreServices,
    ProgressCallback,
    build_core_services,
    notify_progress,
    run_expire_sweep,
)
from src.services.page_fetch import PageFetcher, normalize_url
from src.services.store import RecordStore

LOGGER = logging.getLogger(__name__)

SEARCH_BUCKET = "search"
NEWS_BUCKET = "news"
DIRECTORY_BUCKET = "directory"


def _join(*parts: str | None) -> str:
    return ", ".join(part.strip() for part in parts if part and part.strip())


class EventDiscoveryPipeline:
    def __init__(
        self,
        store: RecordStore,
        extractor: ExtractionClient,
        geocoder: NominatimGeocoder,
        merge: MergeEngine,
        fetcher: PageFetcher | None = None,
        search_client: BraveSearchClient | None = None,
        news_client: NewsApiClient | None = None,
        scraper: DirectoryScraper | None = None,
        batch_filter: BatchRelevanceFilter | None = None,
        query_groups: Sequence[QueryGroup] = QUERY_GROUPS,
        min_event_relevance: int = 60,
        item_delay: float = 0.2,
        query_delay: float = 1.0,
        directory_store_delay: float = 1.1,
        challenge_ttl_days: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.geocoder = geocoder
        self.merge = merge
        self.fetcher = fetcher
        self.search_client = search_client
        self.news_client = news_client
        self.scraper = scraper
        self.batch_filter = batch_filter
        self.query_groups = list(query_groups)
        self.min_event_relevance = min_event_relevance
        self.item_delay = item_delay
        self.query_delay = query_delay
        self.directory_store_delay = directory_store_delay
        self.challenge_ttl_days = challenge_ttl_days
        self._sleep = sleep

    # Classification

    def classify_search_result(self, candidate: CandidateItem, today: date | None = None) -> ExtractionResult:
        """Snippet first; escalate to the full page only when the model asks for more."""
        result = self.extractor.analyze_for_event(candidate, today)
        if not needs_more_info(result) or self.fetcher is None:
            return result
        LOGGER.debug("Snippet for %s needs more info; fetching page", candidate.url)
        page_text = self.fetcher.fetch_and_extract(candidate.url)
        if not page_text:
            return result
        full_page = replace(candidate, body_text=page_text, source_type=SourceType.SEARCH_FULLPAGE)
        return self.extractor.analyze_for_event(full_page, today)

    def locate(self, fields: EventFields) -> Coordinates | None:
        query = fields.geocode_query or _join(fields.location_name, fields.location_city, fields.location_country)
        return self.geocoder.resolve(
            query,
            fallback={"city": fields.location_city, "country": fields.location_country},
        )

    def process_candidate(self, candidate: CandidateItem, url_key: str, today: date | None = None) -> str:
        if candidate.source_type is SourceType.SEARCH_SNIPPET:
            result = self.classify_search_result(candidate, today)
        else:
            result = self.extractor.analyze_for_event(candidate, today)
        if not result.accepted or not isinstance(result.fields, EventFields):
            LOGGER.debug("Rejected %s: %s", candidate.url, result.reason)
            return "rejected"
        fields = result.fields
        if fields.relevance_score is None or fields.relevance_score < self.min_event_relevance:
            LOGGER.debug("Rejected '%s': relevance %s", fields.name, fields.relevance_score)
            return "rejected"
        coordinates = None
        if not fields.is_purely_online:
            coordinates = self.locate(fields)
            if coordinates is None:
                LOGGER.info("Rejected '%s': could not geocode", fields.name)
                return "rejected"
        source_ref = SourceRef(candidate.url or url_key, candidate.source_type, key=url_key)
        upsert = self.merge.upsert_event(fields, source_ref, coordinates)
        LOGGER.info("Event '%s' %s", fields.name, upsert.action)
        return "skipped" if upsert.action == "skipped" else "accepted"

    def _handle_candidate(
        self,
        candidate: CandidateItem,
        bucket: str,
        stats: PipelineRunStats,
        context: RunContext,
    ) -> None:
        url_key = normalize_url(candidate.url) or candidate.source_id
        try:
            if context.seen(url_key) or self.store.is_source_processed(url_key):
                stats.record(bucket, "skipped")
                return
            context.mark(url_key)
            stats.record(bucket, "processed")
            stats.record(bucket, self.process_candidate(candidate, url_key, context.today))
        except PipelineCancelled:
            raise
        except Exception:  # noqa: BLE001
            LOGGER.warning("Failed to process %s", candidate.url, exc_info=True)
            stats.record(bucket, "errors")
        self._sleep(self.item_delay)

    # Search and news

    def _run_search(
        self,
        stats: PipelineRunStats,
        context: RunContext,
        max_items: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        if self.search_client is None:
            raise ValueError("search_client is required for search discovery")
        bucket = stats.category(SEARCH_BUCKET)
        queries = todays_queries(self.query_groups, context.today)
        notify_progress(on_progress, f"Running {len(queries)} search queries")
        for index, query in enumerate(queries):
            context.raise_if_cancelled()
            try:
                results = self.search_client.search(query, count=max_items)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Search query failed: %s", query)
                bucket.extra["failed_queries"] = bucket.extra.get("failed_queries", 0) + 1
                continue
            notify_progress(on_progress, f'Query "{query[:40]}": {len(results)} results')
            for candidate in results:
                context.raise_if_cancelled()
                self._handle_candidate(candidate, SEARCH_BUCKET, stats, context)
            if index < len(queries) - 1:
                self._sleep(self.query_delay)
        notify_progress(on_progress, f"Search: {bucket.accepted} accepted of {bucket.processed} processed")

    def _run_news(
        self,
        stats: PipelineRunStats,
        context: RunContext,
        max_items: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        if self.news_client is None:
            raise ValueError("news_client is required for news discovery")
        bucket = stats.category(NEWS_BUCKET)
        notify_progress(on_progress, "Fetching event news")
        try:
            articles = self.news_client.fetch_category(EVENT_KEYWORDS, articles_count=max_items, languages=("eng",))
        except Exception:  # noqa: BLE001
            LOGGER.exception("Event news fetch failed")
            bucket.extra["fetch_failed"] = 1
            return
        notify_progress(on_progress, f"News: {len(articles)} articles found")
        for candidate in articles:
            context.raise_if_cancelled()
            self._handle_candidate(candidate, NEWS_BUCKET, stats, context)
        notify_progress(on_progress, f"News: {bucket.accepted} accepted of {bucket.processed} processed")

    def run_discovery(
        self,
        on_progress: ProgressCallback | None = None,
        skip_search: bool = False,
        skip_news: bool = False,
        max_items_per_source: int = 20,
        context: RunContext | None = None,
    ) -> PipelineRunStats:
        context = context or RunContext()
        stats = PipelineRunStats()
        try:
            if not skip_search and self.search_client is not None:
                self._run_search(stats, context, max_items_per_source, on_progress)
            if not skip_news and self.news_client is not None:
                context.raise_if_cancelled()
                self._run_news(stats, context, max_items_per_source, on_progress)
        except PipelineCancelled:
            LOGGER.warning("Event discovery cancelled")
            stats.cancelled = True
        finally:
            run_expire_sweep(self.store, stats, context.today, self.challenge_ttl_days, on_progress)
        notify_progress(
            on_progress,
            f"Event discovery done: {stats.processed} processed, {stats.accepted} accepted, "
            f"{stats.rejected} rejected, {stats.errors} errors",
        )
        return stats

    # Directory

    def store_listing(self, candidate: CandidateItem, verdict: BatchVerdict) -> str:
        fields = EventFields(
            name=candidate.title,
            description=candidate.body_text or None,
            start_date=candidate.start_date,
            end_date=candidate.end_date,
            location_name=candidate.venue,
            location_city=candidate.city,
            location_country=candidate.country,
            event_url=candidate.url or None,
            event_type=verdict.event_type,
            tags=verdict.tags,
            relevance_score=verdict.score,
            relevance_reason=verdict.reason,
        )
        coordinates = self.geocoder.resolve(
            _join(candidate.venue, candidate.city, candidate.country),
            fallback={"city": candidate.city, "country": candidate.country},
        )
        if coordinates is None:
            LOGGER.info("Rejected listing '%s': could not geocode", candidate.title)
            return "rejected"
        source_key = normalize_url(candidate.url) if candidate.url else candidate.source_id
        upsert = self.merge.upsert_event(
            fields,
            SourceRef(candidate.url or source_key, SourceType.STATIC_DIRECTORY, key=source_key),
            coordinates,
            confidence="listing_only",
        )
        LOGGER.info("Listing '%s' %s", candidate.title, upsert.action)
        return "skipped" if upsert.action == "skipped" else "accepted"

    def _already_stored(self, candidate: CandidateItem, context: RunContext) -> bool:
        key = normalize_url(candidate.url) if candidate.url else candidate.source_id
        if context.seen(key):
            return True
        context.mark(key)
        if candidate.url and self.store.event_by_url(candidate.url):
            return True
        return self.store.is_source_processed(key)

    def run_directory(
        self,
        on_progress: ProgressCallback | None = None,
        context: RunContext | None = None,
    ) -> PipelineRunStats:
        if self.scraper is None or self.batch_filter is None:
            raise ValueError("scraper and batch_filter are required for directory discovery")
        context = context or RunContext()
        stats = PipelineRunStats()
        bucket = stats.category(DIRECTORY_BUCKET)
        try:
            listings, scrape_stats = self.scraper.scrape_all_categories(
                on_progress=lambda message: notify_progress(on_progress, message),
                should_stop=lambda: context.cancelled,
            )
            bucket.extra["scraped"] = len(listings)
            bucket.extra["scrape_errors"] = sum(len(item.errors) for item in scrape_stats)
            unique = deduplicate(listings)
            upcoming = filter_future(unique, context.today)
            bucket.extra["unique"] = len(unique)
            bucket.extra["future"] = len(upcoming)
            notify_progress(on_progress, f"Directory: {len(listings)} scraped, {len(unique)} unique, {len(upcoming)} upcoming")
            context.raise_if_cancelled()

            candidates: List[CandidateItem] = []
            for listing in upcoming:
                candidate = listing.to_candidate()
                if self._already_stored(candidate, context):
                    stats.record(DIRECTORY_BUCKET, "skipped")
                else:
                    candidates.append(candidate)

            accepted, filter_stats = self.batch_filter.filter_items(
                candidates,
                today=context.today,
                on_progress=lambda message: notify_progress(on_progress, message),
                should_stop=lambda: context.cancelled,
            )
            bucket.extra["filtered"] = filter_stats.accepted
            stats.record(
                DIRECTORY_BUCKET,
                "processed",
                filter_stats.accepted + filter_stats.rejected + filter_stats.errors,
            )
            stats.record(DIRECTORY_BUCKET, "rejected", filter_stats.rejected)
            stats.record(DIRECTORY_BUCKET, "errors", filter_stats.errors)
            bucket.extra["failed_batches"] = filter_stats.failed_batches
            context.raise_if_cancelled()

            for index, (candidate, verdict) in enumerate(accepted):
                context.raise_if_cancelled()
                try:
                    stats.record(DIRECTORY_BUCKET, self.store_listing(candidate, verdict))
                except Exception:  # noqa: BLE001
                    LOGGER.warning("Failed to store listing %s", candidate.title, exc_info=True)
                    stats.record(DIRECTORY_BUCKET, "errors")
                if index < len(accepted) - 1:
                    self._sleep(self.directory_store_delay)
        except PipelineCancelled:
            LOGGER.warning("Directory discovery cancelled")
            stats.cancelled = True
        finally:
            run_expire_sweep(self.store, stats, context.today, self.challenge_ttl_days, on_progress)
        notify_progress(
            on_progress,
            f"Directory discovery done: {stats.accepted} stored, {stats.rejected} rejected, {stats.errors} errors",
        )
        return stats


def _build_pipeline(config: PipelineConfig, services: CoreServices, **clients: Any) -> EventDiscoveryPipeline:
    return EventDiscoveryPipeline(
        store=services.store,
        extractor=services.extractor,
        geocoder=services.geocoder,
        merge=services.merge,
        fetcher=PageFetcher(config.user_agent or "", session=services.session),
        min_event_relevance=config.min_event_relevance,
        item_delay=config.event_item_delay,
        query_delay=config.query_delay,
        directory_store_delay=config.directory_store_delay,
        challenge_ttl_days=config.challenge_ttl_days,
        **{name: factory(services) for name, factory in clients.items()},
    )


def run_discovery_pipeline(
    config: PipelineConfig | None = None,
    session: requests.Session | Any | None = None,
    on_progress: ProgressCallback | None = None,
    skip_search: bool = False,
    skip_news: bool = False,
    max_items_per_source: int = 20,
    context: RunContext | None = None,
) -> PipelineRunStats:
    require = ["openrouter", "user_agent"]
    if not skip_search:
        require.append("brave")
    if not skip_news:
        require.append("newsapi")
    if config is None:
        config = PipelineConfig.from_env(require=require)
    else:
        config.validate(require)
    clients: dict[str, Callable[[Any], Any]] = {}
    if not skip_search:
        clients["search_client"] = lambda services: BraveSearchClient(config.brave_api_key or "", session=services.session)
    if not skip_news:
        clients["news_client"] = lambda services: NewsApiClient(config.newsapi_key or "", session=services.session)
    services = build_core_services(config, session)
    try:
        pipeline = _build_pipeline(config, services, **clients)
        return pipeline.run_discovery(
            on_progress=on_progress,
            skip_search=skip_search,
            skip_news=skip_news,
            max_items_per_source=max_items_per_source,
            context=context,
        )
    finally:
        services.close()


def run_directory_pipeline(
    config: PipelineConfig | None = None,
    session: requests.Session | Any | None = None,
    on_progress: ProgressCallback | None = None,
    context: RunContext | None = None,
) -> PipelineRunStats:
    require = ("openrouter", "user_agent")
    if config is None:
        config = PipelineConfig.from_env(require=require)
    else:
        config.validate(require)
    services = build_core_services(config, session)
    try:
        pipeline = _build_pipeline(
            config,
            services,
            scraper=lambda core: DirectoryScraper(
                user_agent=config.user_agent or "",
                session=core.session,
                delay=config.directory_delay,
                max_pages=config.directory_max_pages,
            ),
            batch_filter=lambda core: BatchRelevanceFilter(
                core.extractor,
                batch_size=config.batch_size,
                min_score=config.min_batch_score,
            ),
        )
        return pipeline.run_directory(on_progress=on_progress, context=context)
    finally:
        services.close()
