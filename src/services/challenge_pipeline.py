"""
Turn category news into geocoded civic challenges.

Each category is fetched, then every article goes through the same stages:
duplicate check, model classification, geocoding with a city/country fallback, and
an additive upsert. Failures are contained per article and per category, and the
expiration sweep always runs at the end.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Sequence

import requests

from src.services.config import PipelineConfig
from src.services.errors import PipelineCancelled
from src.services.extraction import ExtractionClient
from src.services.geocoding import NominatimGeocoder
from src.services.merge import MergeEngine
from src.services.models import CandidateItem, ChallengeFields, PipelineRunStats, RunContext
from src.services.news_api import NEWS_CATEGORIES, CategoryConfig, NewsApiClient
from src.services.orchestration import (
    ProgressCallback,
    build_core_services,
    notify_progress,
    run_expire_sweep,
)
from src.services.store import RecordStore

LOGGER = logging.getLogger(__name__)


class ChallengeIngestionPipeline:
    def __init__(
        self,
        store: RecordStore,
        news_client: NewsApiClient,
        extractor: ExtractionClient,
        geocoder: NominatimGeocoder,
        merge: MergeEngine,
        categories: Sequence[CategoryConfig] = NEWS_CATEGORIES,
        item_delay: float = 0.1,
        category_delay: float = 0.5,
        challenge_ttl_days: int = 30,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.news_client = news_client
        self.extractor = extractor
        self.geocoder = geocoder
        self.merge = merge
        self.categories: List[CategoryConfig] = list(categories)
        self.item_delay = item_delay
        self.category_delay = category_delay
        self.challenge_ttl_days = challenge_ttl_days
        self._sleep = sleep

    def is_duplicate(self, item: CandidateItem, context: RunContext) -> bool:
        if context.seen(item.source_id):
            return True
        return self.store.challenge_by_uri(item.source_id) is not None

    def process_item(self, item: CandidateItem) -> str:
        """Classify, geocode and persist one article; returns the outcome counter name."""
        result = self.extractor.analyze_article(item)
        if not result.accepted or not isinstance(result.fields, ChallengeFields):
            LOGGER.debug("Rejected %s: %s", item.source_id, result.reason)
            return "rejected"
        fields = result.fields
        if not fields.has_location:
            LOGGER.debug("Rejected %s: no location", item.source_id)
            return "rejected"
        coordinates = self.geocoder.resolve(
            fields.geocode_query or fields.location_city,
            fallback={"city": fields.location_city, "country": fields.location_country},
        )
        if coordinates is None:
            LOGGER.info("Rejected '%s': could not geocode '%s'", fields.title, fields.geocode_query)
            return "rejected"
        upsert = self.merge.upsert_challenge(item, fields, coordinates)
        LOGGER.info("Challenge '%s' %s (%s)", fields.title, upsert.action, fields.category)
        return "accepted"

    def _run_category(
        self,
        category: CategoryConfig,
        stats: PipelineRunStats,
        context: RunContext,
        max_items: int,
        on_progress: ProgressCallback | None,
    ) -> None:
        bucket = stats.category(category.name)
        notify_progress(on_progress, f"Fetching {category.name} articles")
        try:
            items = self.news_client.fetch_category(category, articles_count=max_items)
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to fetch category %s", category.name)
            bucket.extra["fetch_failed"] = 1
            notify_progress(on_progress, f"Category {category.name} failed; continuing")
            return
        notify_progress(on_progress, f"Processing {len(items)} {category.name} articles")
        for item in items:
            context.raise_if_cancelled()
            try:
                if self.is_duplicate(item, context):
                    stats.record(category.name, "skipped")
                    continue
                context.mark(item.source_id)
                stats.record(category.name, "processed")
                stats.record(category.name, self.process_item(item))
            except PipelineCancelled:
                raise
            except Exception:  # noqa: BLE001
                LOGGER.warning("Failed to process article %s", item.source_id, exc_info=True)
                stats.record(category.name, "errors")
            self._sleep(self.item_delay)
        notify_progress(
            on_progress,
            f"{category.name}: {bucket.accepted} accepted, {bucket.rejected} rejected, {bucket.errors} errors",
        )

    def run(
        self,
        on_progress: ProgressCallback | None = None,
        max_items_per_category: int = 30,
        context: RunContext | None = None,
    ) -> PipelineRunStats:
        context = context or RunContext()
        stats = PipelineRunStats()
        try:
            for index, category in enumerate(self.categories):
                context.raise_if_cancelled()
                self._run_category(category, stats, context, max_items_per_category, on_progress)
                if index < len(self.categories) - 1:
                    self._sleep(self.category_delay)
        except PipelineCancelled:
            LOGGER.warning("Challenge ingestion cancelled")
            stats.cancelled = True
        finally:
            run_expire_sweep(self.store, stats, context.today, self.challenge_ttl_days, on_progress)
        notify_progress(
            on_progress,
            f"Challenge ingestion done: {stats.processed} processed, {stats.accepted} accepted, "
            f"{stats.rejected} rejected, {stats.errors} errors",
        )
        return stats


def run_ingestion_pipeline(
    config: PipelineConfig | None = None,
    session: requests.Session | Any | None = None,
    on_progress: ProgressCallback | None = None,
    max_items_per_category: int | None = None,
    context: RunContext | None = None,
) -> PipelineRunStats:
    """Build a configured challenge pipeline and run it once."""
    if config is None:
        config = PipelineConfig.from_env(require=("openrouter", "newsapi", "user_agent"))
    else:
        config.validate(("openrouter", "newsapi", "user_agent"))
    services = build_core_services(config, session)
    try:
        pipeline = ChallengeIngestionPipeline(
            store=services.store,
            news_client=NewsApiClient(config.newsapi_key or "", session=services.session),
            extractor=services.extractor,
            geocoder=services.geocoder,
            merge=services.merge,
            item_delay=config.item_delay,
            category_delay=config.category_delay,
            challenge_ttl_days=config.challenge_ttl_days,
        )
        return pipeline.run(
            on_progress=on_progress,
            max_items_per_category=max_items_per_category or config.max_items_per_category,
            context=context,
        )
    finally:
        services.close()
