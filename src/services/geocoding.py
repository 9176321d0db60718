"""
Cache-aside geocoding backed by a SQLite cache and OpenStreetMap's Nominatim API.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import requests

from src.services.rate_limit import RateLimitedSession, RateLimiter, shared_limiter

LOGGER = logging.getLogger(__name__)

NOMINATIM_HOST = "nominatim.openstreetmap.org"


@dataclass
class Coordinates:
    latitude: float
    longitude: float
    display_name: str | None = None
    source: str = "unknown"


class GeocodeCache:
    """Lightweight cache that stores query -> coordinates mappings.

    Only successful resolutions are written; entries are never invalidated here.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS geocode_cache (
                query TEXT PRIMARY KEY,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                display_name TEXT,
                cached_at TEXT
            )
            """
        )
        self.conn.commit()
        self.lock = threading.Lock()

    def get(self, query: str) -> Optional[Coordinates]:
        with self.lock:
            cursor = self.conn.execute(
                "SELECT latitude, longitude, display_name FROM geocode_cache WHERE query = ?",
                (query,),
            )
            row = cursor.fetchone()
        if not row:
            return None
        return Coordinates(latitude=row[0], longitude=row[1], display_name=row[2], source="cache")

    def set(self, query: str, latitude: float, longitude: float, display_name: str | None) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO geocode_cache (query, latitude, longitude, display_name, cached_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    query,
                    latitude,
                    longitude,
                    display_name,
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            self.conn.commit()

    def close(self) -> None:
        self.conn.close()


class NominatimGeocoder:
    """Resolve free-text places through the cache first, then Nominatim, then a city fallback."""

    endpoint = f"https://{NOMINATIM_HOST}/search"

    def __init__(
        self,
        cache: GeocodeCache,
        user_agent: str,
        session: requests.Session | Any | None = None,
        min_interval: float = 1.1,
        limiter: RateLimiter | None = None,
        timeout: int = 25,
    ) -> None:
        self.cache = cache
        self.user_agent = user_agent
        self.min_interval = min_interval
        self.timeout = timeout
        self.http = RateLimitedSession(
            session,
            limiter=limiter or shared_limiter(NOMINATIM_HOST, min_interval),
        )
        self.stats: dict[str, int] = {
            "cache_hits": 0,
            "provider_hits": 0,
            "fallback_hits": 0,
            "failures": 0,
        }

    def resolve(self, query: str | None, fallback: dict[str, str | None] | None = None) -> Optional[Coordinates]:
        """Return coordinates for `query`, trying "{city}, {country}" once if it fails.

        A fallback success is cached under the original query so the next lookup of
        the same text is served locally.
        """
        query = (query or "").strip()
        fallback_query = self._fallback_query(fallback)
        if not query:
            if not fallback_query:
                return None
            query = fallback_query
            fallback_query = None
        cached = self.cache.get(query)
        if cached:
            self.stats["cache_hits"] += 1
            return cached
        payload = self._fetch(query)
        source = "nominatim"
        if not payload and fallback_query and fallback_query.lower() != query.lower():
            LOGGER.debug("Geocode miss for '%s'; retrying with '%s'", query, fallback_query)
            payload = self._fetch(fallback_query)
            source = "fallback"
        if not payload:
            self.stats["failures"] += 1
            LOGGER.info("Unable to geocode '%s'", query)
            return None
        try:
            result = Coordinates(
                latitude=float(payload["lat"]),
                longitude=float(payload["lon"]),
                display_name=payload.get("display_name"),
                source=source,
            )
        except (KeyError, TypeError, ValueError):
            LOGGER.warning("Malformed geocode payload for '%s': %s", query, payload)
            self.stats["failures"] += 1
            return None
        self.cache.set(query, result.latitude, result.longitude, result.display_name)
        if source == "fallback":
            self.stats["fallback_hits"] += 1
        else:
            self.stats["provider_hits"] += 1
        return result

    @staticmethod
    def _fallback_query(fallback: dict[str, str | None] | None) -> str | None:
        if not fallback:
            return None
        city = (fallback.get("city") or "").strip()
        country = (fallback.get("country") or "").strip()
        if not city:
            return None
        return f"{city}, {country}" if country else city

    def _fetch(self, query: str) -> Optional[dict[str, Any]]:
        params = {
            "q": query,
            "format": "json",
            "limit": 1,
            "addressdetails": 1,
        }
        headers = {
            "User-Agent": self.user_agent,
        }
        try:
            response = self.http.get(self.endpoint, params=params, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            results = response.json()
        except (requests.RequestException, ValueError):
            LOGGER.warning("Geocoding request failed for query '%s'", query, exc_info=True)
            return None
        if results:
            return results[0]
        return None
