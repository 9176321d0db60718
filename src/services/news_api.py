"""
Structured news connector for the Event Registry (NewsAPI.ai) article search.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

import requests

from src.services.models import CandidateItem, SourceType

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryConfig:
    name: str
    keywords: tuple[str, ...]


NEWS_CATEGORIES: List[CategoryConfig] = [
    CategoryConfig("environment", ("pollution", "contamination", "waste dumping", "water quality", "deforestation")),
    CategoryConfig("housing", ("housing crisis", "homelessness", "eviction", "affordable housing", "gentrification")),
    CategoryConfig("transport", ("transit", "traffic", "road safety", "public transport", "cycling infrastructure")),
    CategoryConfig("public_safety", ("crime", "public safety", "emergency services", "community safety")),
    CategoryConfig(
        "governance",
        ("corruption", "transparency", "civic participation", "public spending", "accountability"),
    ),
    CategoryConfig("education", ("school funding", "education access", "digital divide", "literacy")),
    CategoryConfig("health", ("healthcare access", "mental health", "public health", "hospital", "epidemic")),
    CategoryConfig("climate", ("flood", "drought", "wildfire", "climate adaptation", "extreme weather")),
]

# Keyword set used when mining news for upcoming civic-tech events.
EVENT_KEYWORDS = CategoryConfig(
    "events",
    (
        "civic tech conference",
        "civic technology summit",
        "govtech event",
        "open government conference",
        "democracy summit",
        "civic hackathon",
        "hack for good",
        "social impact hackathon",
        "code for hackathon",
        "open data conference",
        "open data day",
        "data for good event",
    ),
)


class NewsApiClient:
    """Thin wrapper over the Event Registry `article/getArticles` endpoint."""

    endpoint = "https://eventregistry.org/api/v1/article/getArticles"

    def __init__(
        self,
        api_key: str,
        session: requests.Session | Any | None = None,
        timeout: int = 30,
    ) -> None:
        self.api_key = api_key
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_category(
        self,
        category: CategoryConfig,
        articles_count: int = 30,
        languages: Sequence[str] = ("eng", "pol"),
        sort_by: str = "date",
    ) -> List[CandidateItem]:
        """One OR'd keyword query per category; HTTP errors propagate to the caller."""
        body = {
            "keyword": list(category.keywords),
            "keywordOper": "or",
            "lang": list(languages),
            "articlesSortBy": sort_by,
            "articlesCount": min(articles_count, 100),
            "includeArticleConcepts": True,
            "includeArticleCategories": True,
            "isDuplicateFilter": "skipDuplicates",
            "resultType": "articles",
            "apiKey": self.api_key,
        }
        response = self.session.post(
            self.endpoint,
            json=body,
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        results = ((payload or {}).get("articles") or {}).get("results") or []
        LOGGER.info("Event Registry returned %s articles for %s", len(results), category.name)
        candidates = [self._to_candidate(article) for article in results if article.get("uri")]
        return candidates[:articles_count]

    @staticmethod
    def _location_concepts(article: Dict[str, Any]) -> List[str]:
        labels: List[str] = []
        for concept in article.get("concepts") or []:
            if concept.get("type") != "loc":
                continue
            label = concept.get("label") or {}
            text = label.get("eng") if isinstance(label, dict) else label
            if text:
                labels.append(str(text))
        return labels

    def _to_candidate(self, article: Dict[str, Any]) -> CandidateItem:
        source = article.get("source") or {}
        return CandidateItem(
            source_id=str(article["uri"]),
            title=article.get("title") or "",
            body_text=article.get("body") or "",
            source_type=SourceType.STRUCTURED_API,
            url=article.get("url") or "",
            published_at=self._parse_date(article.get("dateTimePub") or article.get("dateTime")),
            extra={
                "source_title": source.get("title"),
                "image": article.get("image"),
                "language": article.get("lang"),
                "sentiment": article.get("sentiment"),
                "location_concepts": self._location_concepts(article),
            },
        )

    @staticmethod
    def _parse_date(raw: str | None) -> datetime | None:
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            LOGGER.debug("Unable to parse Event Registry date %s", raw, exc_info=True)
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
