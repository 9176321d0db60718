"""
Search-snippet connector backed by the Brave web search API.

Query groups rotate by weekday so each day spends the request quota on a
different slice of the event landscape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, List, Sequence

import requests

from src.services.models import CandidateItem, SourceType
from src.services.page_fetch import normalize_url

LOGGER = logging.getLogger(__name__)

ALL_DAYS = (0, 1, 2, 3, 4, 5, 6)


@dataclass(frozen=True)
class QueryGroup:
    name: str
    queries: tuple[str, ...]
    run_days: tuple[int, ...]  # date.weekday(): Monday == 0


QUERY_GROUPS: List[QueryGroup] = [
    QueryGroup(
        "civic_tech_daily",
        (
            '"civic tech" conference 2026 register',
            '"civic technology" summit upcoming',
            "govtech conference 2026",
            '"civic tech" hackathon 2026',
        ),
        ALL_DAYS,
    ),
    QueryGroup(
        "democracy_governance",
        (
            '"open government" conference 2026 register',
            '"democratic innovation" summit upcoming',
            '"citizen assembly" workshop 2026',
            '"deliberative democracy" event upcoming',
            '"participatory budgeting" workshop 2026',
        ),
        (0, 2, 4),
    ),
    QueryGroup(
        "social_impact_open_data",
        (
            '"social impact" hackathon 2026 register',
            '"open data day" 2026 event',
            '"code for" brigade meetup upcoming',
            '"tech for good" conference 2026',
            '"data for good" summit upcoming',
        ),
        (1, 3, 5),
    ),
    QueryGroup(
        "europe_regional",
        (
            '"civic tech" event Europe 2026',
            "govtech summit EU 2026",
            '"civic tech" Poland event',
            '"open government" conference Europe upcoming',
        ),
        (0, 3),
    ),
    QueryGroup(
        "global_regional",
        (
            '"civic tech" conference USA 2026',
            '"civic tech" Africa event 2026',
            '"civic tech" Asia summit upcoming',
            '"open government" Latin America conference',
        ),
        (1, 4),
    ),
    QueryGroup(
        "platform_specific",
        (
            'site:eventbrite.com "civic tech" 2026',
            'site:lu.ma "civic tech"',
            'site:meetup.com "civic technology"',
            'site:eventbrite.com "open government" 2026',
            'site:lu.ma "govtech"',
        ),
        (2, 5),
    ),
]


def todays_queries(groups: Sequence[QueryGroup] = QUERY_GROUPS, today: date | None = None) -> List[str]:
    """Queries scheduled for `today`, de-duplicated in first-seen order."""
    weekday = (today or date.today()).weekday()
    queries: List[str] = []
    for group in groups:
        if weekday not in group.run_days:
            continue
        for query in group.queries:
            if query not in queries:
                queries.append(query)
    return queries


class BraveSearchClient:
    endpoint = "https://api.search.brave.com/res/v1/web/search"

    def __init__(
        self,
        api_key: str,
        session: requests.Session | Any | None = None,
        timeout: int = 20,
    ) -> None:
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def search(
        self,
        query: str,
        count: int = 20,
        offset: int = 0,
        freshness: str = "pm",
        country: str = "ALL",
        search_lang: str = "en",
    ) -> List[CandidateItem]:
        params = {
            "q": query,
            "count": min(count, 20),
            "offset": offset,
            "freshness": freshness,
            "country": country,
            "search_lang": search_lang,
        }
        headers = {
            "Accept": "application/json",
            "X-Subscription-Token": self.api_key,
        }
        response = self.session.get(self.endpoint, params=params, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        payload = response.json() or {}
        results = (payload.get("web") or {}).get("results") or []
        LOGGER.info("Brave returned %s results for %r", len(results), query)
        candidates: List[CandidateItem] = []
        for result in results:
            url = result.get("url")
            if not url:
                continue
            candidates.append(
                CandidateItem(
                    source_id=normalize_url(url),
                    title=result.get("title") or "",
                    body_text=result.get("description") or "",
                    source_type=SourceType.SEARCH_SNIPPET,
                    url=url,
                    extra={"page_age": result.get("page_age"), "query": query},
                )
            )
        return candidates
