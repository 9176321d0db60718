"""
Pieces shared by the challenge and event orchestrators: progress reporting, the
expiration sweep, and wiring a configured set of collaborators.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

import requests

from src.services.config import PipelineConfig
from src.services.extraction import ExtractionClient
from src.services.geocoding import GeocodeCache, NominatimGeocoder
from src.services.merge import MergeEngine
from src.services.models import PipelineRunStats
from src.services.store import RecordStore

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


def notify_progress(on_progress: ProgressCallback | None, message: str) -> None:
    """Log a milestone and forward it; callback failures never affect the run."""
    LOGGER.info(message)
    if on_progress is None:
        return
    try:
        on_progress(message)
    except Exception:  # noqa: BLE001
        LOGGER.debug("Progress callback failed for %r", message, exc_info=True)


def run_expire_sweep(
    store: RecordStore,
    stats: PipelineRunStats,
    today: date | None = None,
    challenge_ttl_days: int = 30,
    on_progress: ProgressCallback | None = None,
) -> None:
    try:
        stats.expired = store.expire_stale(today=today, challenge_ttl_days=challenge_ttl_days)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Expiration sweep failed")
        return
    notify_progress(
        on_progress,
        f"Expired {stats.expired.get('events', 0)} events and {stats.expired.get('challenges', 0)} challenges",
    )


@dataclass
class CoreServices:
    store: RecordStore
    extractor: ExtractionClient
    geocoder: NominatimGeocoder
    merge: MergeEngine
    session: Any
    owns_session: bool = False

    def close(self) -> None:
        """Release database handles, and the HTTP session when it was created here."""
        self.store.close()
        self.geocoder.cache.close()
        if self.owns_session:
            self.session.close()


def build_core_services(config: PipelineConfig, session: requests.Session | Any | None = None) -> CoreServices:
    owns_session = session is None
    session = session or requests.Session()
    store = RecordStore(config.db_path)
    extractor = ExtractionClient(
        api_key=config.openrouter_api_key or "",
        models=config.models,
        session=session,
        referer=config.app_url,
    )
    geocoder = NominatimGeocoder(
        GeocodeCache(config.db_path),
        user_agent=config.user_agent or "",
        session=session,
        min_interval=config.geocode_interval,
    )
    merge = MergeEngine(
        store,
        fuzzy_window_days=config.fuzzy_window_days,
        name_prefix_chars=config.fuzzy_prefix_chars,
    )
    return CoreServices(
        store=store,
        extractor=extractor,
        geocoder=geocoder,
        merge=merge,
        session=session,
        owns_session=owns_session,
    )
