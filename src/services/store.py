"""
SQLite persistence for challenges and discovered events.

Records are plain dicts. JSON list columns (skills, tags, source URLs) are encoded
on write and decoded on read so callers never see raw JSON text. Rows are never
deleted; the expiration sweep flips `status` instead.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from src.services.errors import DuplicateRecordError
from src.services.models import SEVERITY_LEVELS

LOGGER = logging.getLogger(__name__)

CHALLENGE_COLUMNS = [
    "source_uri",
    "source_url",
    "source_title",
    "article_title",
    "article_image",
    "published_at",
    "title",
    "summary",
    "call_to_action",
    "category",
    "subcategory",
    "severity",
    "skills_needed",
    "location_name",
    "location_city",
    "location_country",
    "latitude",
    "longitude",
    "geocode_query",
    "sentiment",
    "language",
    "source_urls",
    "status",
]
EVENT_COLUMNS = [
    "name",
    "name_normalized",
    "description",
    "event_type",
    "tags",
    "start_date",
    "end_date",
    "start_time",
    "end_time",
    "timezone",
    "location_name",
    "location_city",
    "location_country",
    "latitude",
    "longitude",
    "is_online",
    "is_hybrid",
    "event_url",
    "registration_url",
    "source_url",
    "source_type",
    "source_urls",
    "source_keys",
    "organizer",
    "cost",
    "cost_details",
    "relevance_score",
    "relevance_reason",
    "ai_confidence",
    "status",
]
JSON_COLUMNS = {"skills_needed", "tags", "source_urls", "source_keys"}
BOOL_COLUMNS = {"is_online", "is_hybrid"}

Bbox = tuple[float, float, float, float]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS:
        return json.dumps(list(value or []))
    if column in BOOL_COLUMNS:
        return 1 if value else 0
    return value


def _row_to_dict(row: sqlite3.Row | None) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    record = dict(row)
    for column in JSON_COLUMNS & record.keys():
        raw = record[column]
        try:
            record[column] = json.loads(raw) if raw else []
        except json.JSONDecodeError:
            record[column] = []
    for column in BOOL_COLUMNS & record.keys():
        record[column] = bool(record[column])
    return record


class RecordStore:
    """Owns the ingestion database: challenges, discovered events and user events."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.lock = threading.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            PRAGMA journal_mode=WAL;
            CREATE TABLE IF NOT EXISTS challenges (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_uri TEXT NOT NULL UNIQUE,
                source_url TEXT,
                source_title TEXT,
                article_title TEXT,
                article_image TEXT,
                published_at TEXT,
                title TEXT NOT NULL,
                summary TEXT,
                call_to_action TEXT,
                category TEXT NOT NULL,
                subcategory TEXT,
                severity TEXT NOT NULL,
                skills_needed TEXT,
                location_name TEXT,
                location_city TEXT,
                location_country TEXT,
                latitude REAL NOT NULL,
                longitude REAL NOT NULL,
                geocode_query TEXT,
                sentiment REAL,
                language TEXT,
                source_urls TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS discovered_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                name_normalized TEXT,
                description TEXT,
                event_type TEXT NOT NULL DEFAULT 'conference',
                tags TEXT,
                start_date TEXT,
                end_date TEXT,
                start_time TEXT,
                end_time TEXT,
                timezone TEXT,
                location_name TEXT,
                location_city TEXT,
                location_country TEXT,
                latitude REAL,
                longitude REAL,
                is_online INTEGER NOT NULL DEFAULT 0,
                is_hybrid INTEGER NOT NULL DEFAULT 0,
                event_url TEXT UNIQUE,
                registration_url TEXT,
                source_url TEXT NOT NULL,
                source_type TEXT NOT NULL,
                source_urls TEXT,
                source_keys TEXT,
                organizer TEXT,
                cost TEXT NOT NULL DEFAULT 'unknown',
                cost_details TEXT,
                relevance_score INTEGER,
                relevance_reason TEXT,
                ai_confidence TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                discovered_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS user_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                start_date TEXT,
                location_city TEXT,
                created_at TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_challenges_geo ON challenges(latitude, longitude);
            CREATE INDEX IF NOT EXISTS idx_challenges_status ON challenges(status, category);
            CREATE INDEX IF NOT EXISTS idx_events_city_date ON discovered_events(location_city, start_date);
            CREATE INDEX IF NOT EXISTS idx_events_status ON discovered_events(status, start_date);
            CREATE INDEX IF NOT EXISTS idx_user_events_date ON user_events(start_date);
            """
        )
        self.conn.commit()
        self._ensure_column("discovered_events", "source_keys", "TEXT")

    def _ensure_column(self, table: str, column: str, ddl: str) -> None:
        cursor = self.conn.execute(f"PRAGMA table_info({table})")
        existing = {row[1] for row in cursor.fetchall()}
        if column not in existing:
            self.conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
            self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        with self.lock:
            row = self.conn.execute(sql, params).fetchone()
        return _row_to_dict(row)

    def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self.lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_dict(row) for row in rows]  # type: ignore[misc]

    def _insert(self, table: str, columns: Sequence[str], record: Mapping[str, Any], stamps: Sequence[str]) -> int:
        names = [column for column in columns if column in record]
        values = [_encode(column, record[column]) for column in names]
        now = _now_iso()
        names.extend(stamps)
        values.extend(now for _ in stamps)
        placeholders = ", ".join("?" for _ in names)
        sql = f"INSERT INTO {table} ({', '.join(names)}) VALUES ({placeholders})"
        with self.lock:
            try:
                with self.conn:
                    cursor = self.conn.execute(sql, values)
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc).upper():
                    raise DuplicateRecordError(str(exc)) from exc
                raise
        return int(cursor.lastrowid)

    def _update(self, table: str, columns: Sequence[str], record_id: int, changes: Mapping[str, Any]) -> None:
        names = [column for column in columns if column in changes]
        if not names:
            return
        assignments = ", ".join(f"{column} = ?" for column in names)
        values = [_encode(column, changes[column]) for column in names]
        values.extend([_now_iso(), record_id])
        with self.lock:
            try:
                with self.conn:
                    self.conn.execute(f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ?", values)
            except sqlite3.IntegrityError as exc:
                if "UNIQUE" in str(exc).upper():
                    raise DuplicateRecordError(str(exc)) from exc
                raise

    # Challenges

    def challenge_by_uri(self, source_uri: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM challenges WHERE source_uri = ?", (source_uri,))

    def insert_challenge(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        record_id = self._insert("challenges", CHALLENGE_COLUMNS, record, ("created_at", "updated_at"))
        return self.get_challenge(record_id, include_inactive=True)  # type: ignore[return-value]

    def update_challenge(self, record_id: int, changes: Mapping[str, Any]) -> Dict[str, Any]:
        self._update("challenges", CHALLENGE_COLUMNS, record_id, changes)
        return self.get_challenge(record_id, include_inactive=True)  # type: ignore[return-value]

    def get_challenge(self, record_id: int, include_inactive: bool = False) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM challenges WHERE id = ?"
        if not include_inactive:
            sql += " AND status = 'active'"
        return self._fetchone(sql, (record_id,))

    def query_challenges(
        self,
        bbox: Bbox | None = None,
        categories: Iterable[str] | None = None,
        min_severity: str | None = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM challenges WHERE status = 'active'"
        params: list[Any] = []
        if bbox:
            west, south, east, north = bbox
            sql += " AND longitude BETWEEN ? AND ? AND latitude BETWEEN ? AND ?"
            params.extend([west, east, south, north])
        category_list = [category for category in (categories or []) if category]
        if category_list:
            sql += f" AND category IN ({', '.join('?' for _ in category_list)})"
            params.extend(category_list)
        if min_severity in SEVERITY_LEVELS:
            levels = SEVERITY_LEVELS[SEVERITY_LEVELS.index(min_severity) :]
            sql += f" AND severity IN ({', '.join('?' for _ in levels)})"
            params.extend(levels)
        sql += " ORDER BY published_at DESC, id DESC LIMIT ?"
        params.append(limit)
        return self._fetchall(sql, params)

    def challenge_category_stats(self) -> Dict[str, int]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT category, COUNT(*) FROM challenges WHERE status = 'active' GROUP BY category"
            ).fetchall()
        return {row[0]: row[1] for row in rows}

    # Discovered events

    def event_by_url(self, event_url: str) -> Optional[Dict[str, Any]]:
        return self._fetchone("SELECT * FROM discovered_events WHERE event_url = ?", (event_url,))

    def event_by_source(self, source_key: str) -> Optional[Dict[str, Any]]:
        """Match a normalized source key, or a raw URL for rows stored before keys existed."""
        return self._fetchone(
            """
            SELECT * FROM discovered_events
            WHERE EXISTS (SELECT 1 FROM json_each(coalesce(discovered_events.source_keys, '[]')) WHERE value = ?)
               OR source_url = ?
               OR EXISTS (SELECT 1 FROM json_each(coalesce(discovered_events.source_urls, '[]')) WHERE value = ?)
            ORDER BY id ASC
            LIMIT 1
            """,
            (source_key, source_key, source_key),
        )

    def is_source_processed(self, source_key: str) -> bool:
        return self.event_by_source(source_key) is not None

    def event_candidates(self, city: str, start_from: str, start_to: str) -> List[Dict[str, Any]]:
        """Active events in `city` starting inside the window, earliest-created first."""
        return self._fetchall(
            """
            SELECT * FROM discovered_events
            WHERE status = 'active'
              AND lower(location_city) = lower(?)
              AND start_date BETWEEN ? AND ?
            ORDER BY discovered_at ASC, id ASC
            """,
            (city, start_from, start_to),
        )

    def insert_event(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        record_id = self._insert("discovered_events", EVENT_COLUMNS, record, ("discovered_at", "updated_at"))
        return self.get_event(record_id, include_inactive=True)  # type: ignore[return-value]

    def update_event(self, record_id: int, changes: Mapping[str, Any]) -> Dict[str, Any]:
        self._update("discovered_events", EVENT_COLUMNS, record_id, changes)
        return self.get_event(record_id, include_inactive=True)  # type: ignore[return-value]

    def get_event(self, record_id: int, include_inactive: bool = False) -> Optional[Dict[str, Any]]:
        sql = "SELECT * FROM discovered_events WHERE id = ?"
        if not include_inactive:
            sql += " AND status = 'active'"
        return self._fetchone(sql, (record_id,))

    def query_events(
        self,
        upcoming: bool = True,
        event_types: Iterable[str] | None = None,
        tags: Iterable[str] | None = None,
        city: str | None = None,
        country: str | None = None,
        online: bool | None = None,
        min_relevance: int = 60,
        limit: int = 50,
        offset: int = 0,
        today: date | None = None,
    ) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM discovered_events WHERE status = 'active' AND COALESCE(relevance_score, 0) >= ?"
        params: list[Any] = [min_relevance]
        if upcoming:
            sql += " AND COALESCE(end_date, start_date) >= ?"
            params.append((today or date.today()).isoformat())
        type_list = [event_type for event_type in (event_types or []) if event_type]
        if type_list:
            sql += f" AND event_type IN ({', '.join('?' for _ in type_list)})"
            params.extend(type_list)
        tag_list = [tag for tag in (tags or []) if tag]
        if tag_list:
            sql += (
                " AND EXISTS (SELECT 1 FROM json_each(discovered_events.tags)"
                f" WHERE value IN ({', '.join('?' for _ in tag_list)}))"
            )
            params.extend(tag_list)
        if city:
            sql += " AND lower(location_city) = lower(?)"
            params.append(city)
        if country:
            sql += " AND lower(location_country) = lower(?)"
            params.append(country)
        if online is not None:
            sql += " AND is_online = ?"
            params.append(1 if online else 0)
        sql += " ORDER BY start_date ASC, id ASC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        return self._fetchall(sql, params)

    def events_in_bounds(
        self,
        bbox: Bbox,
        event_types: Iterable[str] | None = None,
        min_relevance: int = 60,
        today: date | None = None,
        limit: int = 500,
    ) -> List[Dict[str, Any]]:
        west, south, east, north = bbox
        sql = """
            SELECT * FROM discovered_events
            WHERE status = 'active'
              AND latitude IS NOT NULL AND longitude IS NOT NULL
              AND longitude BETWEEN ? AND ? AND latitude BETWEEN ? AND ?
              AND COALESCE(relevance_score, 0) >= ?
              AND COALESCE(end_date, start_date) >= ?
        """
        params: list[Any] = [west, east, south, north, min_relevance, (today or date.today()).isoformat()]
        type_list = [event_type for event_type in (event_types or []) if event_type]
        if type_list:
            sql += f" AND event_type IN ({', '.join('?' for _ in type_list)})"
            params.extend(type_list)
        sql += " ORDER BY start_date ASC LIMIT ?"
        params.append(limit)
        return self._fetchall(sql, params)

    def event_stats(self, today: date | None = None) -> Dict[str, Any]:
        today_iso = (today or date.today()).isoformat()
        with self.lock:
            total = self.conn.execute(
                "SELECT COUNT(*) FROM discovered_events WHERE status = 'active'"
            ).fetchone()[0]
            upcoming = self.conn.execute(
                "SELECT COUNT(*) FROM discovered_events WHERE status = 'active' AND COALESCE(end_date, start_date) >= ?",
                (today_iso,),
            ).fetchone()[0]
            by_type = self.conn.execute(
                "SELECT event_type, COUNT(*) FROM discovered_events WHERE status = 'active' GROUP BY event_type"
            ).fetchall()
            by_source = self.conn.execute(
                "SELECT source_type, COUNT(*) FROM discovered_events WHERE status = 'active' GROUP BY source_type"
            ).fetchall()
        return {
            "total": total,
            "upcoming": upcoming,
            "by_type": {row[0]: row[1] for row in by_type},
            "by_source": {row[0]: row[1] for row in by_source},
        }

    # User-submitted events (owned elsewhere; read here for duplicate suppression)

    def add_user_event(self, name: str, start_date: str | None, location_city: str | None = None) -> int:
        with self.lock:
            with self.conn:
                cursor = self.conn.execute(
                    "INSERT INTO user_events (name, start_date, location_city, created_at) VALUES (?, ?, ?, ?)",
                    (name, start_date, location_city, _now_iso()),
                )
        return int(cursor.lastrowid)

    def user_events_between(self, start_from: str, start_to: str) -> List[Dict[str, Any]]:
        return self._fetchall(
            "SELECT * FROM user_events WHERE start_date BETWEEN ? AND ? ORDER BY id ASC",
            (start_from, start_to),
        )

    # Expiration

    def expire_stale(self, today: date | None = None, challenge_ttl_days: int = 30) -> Dict[str, int]:
        """Mark past events and aged-out challenges as expired; returns counts per table."""
        today = today or date.today()
        cutoff = datetime.combine(today - timedelta(days=challenge_ttl_days), time.min, tzinfo=timezone.utc)
        now = _now_iso()
        with self.lock:
            with self.conn:
                events = self.conn.execute(
                    """
                    UPDATE discovered_events SET status = 'expired', updated_at = ?
                    WHERE status = 'active' AND COALESCE(end_date, start_date) < ?
                    """,
                    (now, today.isoformat()),
                ).rowcount
                challenges = self.conn.execute(
                    """
                    UPDATE challenges SET status = 'expired', updated_at = ?
                    WHERE status = 'active' AND published_at IS NOT NULL AND published_at < ?
                    """,
                    (now, cutoff.isoformat()),
                ).rowcount
        LOGGER.info("Expired %s events and %s challenges", events, challenges)
        return {"events": events, "challenges": challenges}
