"""
OpenRouter-backed classification with a model cascade.

`ExtractionClient.complete` walks the configured models in order and returns the
first non-empty answer. `classify` wraps it with the challenge or event prompt and
the lenient parser so truncated answers still yield a result instead of an error.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, List, Sequence

import requests

from src.services.errors import ModelCascadeError
from src.services.lenient_json import parse_extraction
from src.services.models import CandidateItem, ExtractionResult, PromptKind, SourceType

LOGGER = logging.getLogger(__name__)

OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL_CASCADE = (
    "mistralai/ministral-8b-2512",
    "openrouter/pony-alpha",
    "z-ai/glm-4.5-air:free",
)
NEED_MORE_INFO_SENTINEL = "need more info"
MAX_ARTICLE_BODY_CHARS = 3000

CHALLENGE_SYSTEM_PROMPT = """You are a civic challenge analyzer for a platform that connects civic tech volunteers with real-world problems. Decide whether a news article describes an actionable, localized civic challenge that local volunteers or civic tech projects could help address.

Respond ONLY with a JSON object. No other text.

If the article IS a relevant civic challenge, respond with:
{
  "is_civic_challenge": true,
  "location": {
    "specific": "Nowa Huta, Krakow",
    "city": "Krakow",
    "country": "Poland",
    "geocode_query": "Nowa Huta, Krakow, Poland"
  },
  "category": "environment",
  "subcategory": "water_pollution",
  "title": "River contamination near Nowa Huta industrial zone",
  "summary": "Industrial discharge detected in a Vistula tributary with pollution above safe limits.",
  "call_to_action": "Water quality monitoring volunteers needed to document the contamination.",
  "severity": "high",
  "skills_needed": ["environmental monitoring", "data collection", "GIS mapping"]
}

If the article is NOT a civic challenge (opinion piece, distant politics, corporate news, sports, entertainment), respond with:
{
  "is_civic_challenge": false,
  "reason": "Brief explanation why this isn't actionable"
}

Rules:
- "category" must be one of: environment, housing, transport, public_safety, governance, education, health, climate
- "severity" must be one of: low, medium, high, critical
- "location" is the place where the problem is happening, as specific as possible.
- "geocode_query" is optimized for geocoding: include city and country, use common English names.
- "summary" is 1-3 factual sentences about the problem.
- "call_to_action" suggests what a volunteer or local community member could realistically do.
- "skills_needed" is an array of 2-5 relevant skills.
- Filter aggressively. Only real, localized, actionable civic problems should pass."""

EVENT_SYSTEM_PROMPT = """You are an event extractor for a platform that connects civic tech volunteers. Analyze web content (search results, event pages, news) and extract structured event information.

Respond ONLY with a JSON object. No other text.

If the content describes a REAL, UPCOMING event related to civic technology, open government, democracy, social impact, or civic innovation, respond with:
{
  "is_event": true,
  "event": {
    "name": "Code for All Summit 2026",
    "start_date": "2026-06-15",
    "end_date": "2026-06-17",
    "start_time": "09:00",
    "end_time": "18:00",
    "timezone": "Europe/Lisbon",
    "location_name": "Centro de Congressos de Lisboa",
    "location_city": "Lisbon",
    "location_country": "Portugal",
    "geocode_query": "Centro de Congressos de Lisboa, Lisbon, Portugal",
    "is_online": false,
    "is_hybrid": false,
    "registration_url": "https://example.org/summit/register",
    "event_url": "https://example.org/summit",
    "organizer": "Code for All",
    "description": "Annual gathering of civic technologists.",
    "cost": "free",
    "cost_details": null,
    "event_type": "conference",
    "tags": ["civic tech", "open source"],
    "relevance_score": 95,
    "relevance_reason": "Core civic tech conference"
  }
}

If the content is NOT a relevant upcoming event, respond with:
{
  "is_event": false,
  "reason": "Brief explanation, e.g. 'Past event', 'Blog post, not an event'"
}

Rules:
- "event_type" must be one of: conference, hackathon, meetup, workshop, summit, webinar, training, festival, other
- "cost" must be one of: free, paid, donation, unknown
- Dates use ISO format YYYY-MM-DD. If only a month is known, use the 1st of the month.
- If the event has already happened relative to today, set is_event to false.
- "relevance_score" is 0-100 for civic tech, open government, democracy and social impact communities. Below 50 means set is_event to false.
- For ONLINE events set is_online to true and location_city, location_country and geocode_query to null.
- For HYBRID events set is_hybrid to true and give the physical location.
- Leave unknown fields as null. Never guess URLs.
- If the content doesn't contain enough information to decide, respond with is_event: false and reason: "need more info\""""


def format_article_content(candidate: CandidateItem) -> str:
    extra = candidate.extra or {}
    concepts = extra.get("location_concepts") or []
    published = candidate.published_at.isoformat() if candidate.published_at else "unknown"
    parts = [
        f"Title: {candidate.title}",
        f"Body: {(candidate.body_text or '')[:MAX_ARTICLE_BODY_CHARS]}",
        f"Source: {extra.get('source_title') or 'unknown'}",
        f"Published: {published}",
        f"Detected concepts: {', '.join(concepts) if concepts else 'none'}",
    ]
    sentiment = extra.get("sentiment")
    if sentiment is not None:
        parts.append(f"Sentiment: {sentiment}")
    return "\n".join(parts)


def format_event_content(candidate: CandidateItem) -> str:
    if candidate.source_type is SourceType.SEARCH_FULLPAGE:
        return f"Title: {candidate.title}\nURL: {candidate.url}\n\nPage content:\n{candidate.body_text}"
    if candidate.source_type is SourceType.STRUCTURED_API:
        return (
            f"Title: {candidate.title}\nURL: {candidate.url}\n\n"
            f"Article:\n{(candidate.body_text or '')[:MAX_ARTICLE_BODY_CHARS]}"
        )
    return f"Title: {candidate.title}\nURL: {candidate.url}\nDescription: {candidate.body_text}"


class ExtractionClient:
    """Chat-completions client that falls through a cascade of models."""

    endpoint = OPENROUTER_ENDPOINT

    def __init__(
        self,
        api_key: str,
        models: Sequence[str] = DEFAULT_MODEL_CASCADE,
        session: requests.Session | Any | None = None,
        referer: str = "https://civicmatch.com",
        title: str = "Civic Signal Ingest",
        timeout: int = 60,
        max_tokens: int = 1000,
    ) -> None:
        if not models:
            raise ValueError("at least one model is required")
        self.api_key = api_key
        self.models: List[str] = list(models)
        self.session = session or requests.Session()
        self.referer = referer
        self.title = title
        self.timeout = timeout
        self.max_tokens = max_tokens

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.title,
        }

    def _try_model(self, model: str, messages: list[dict[str, str]], max_tokens: int) -> tuple[str | None, str | None]:
        """Return (content, None) on success or (None, reason) on failure."""
        body = {
            "model": model,
            "messages": messages,
            "temperature": 0.1,
            "max_tokens": max_tokens,
            "response_format": {"type": "json_object"},
        }
        try:
            response = self.session.post(self.endpoint, json=body, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as exc:
            return None, f"{type(exc).__name__}: {exc}"
        if not 200 <= response.status_code < 300:
            return None, f"HTTP {response.status_code}: {(response.text or '')[:200]}"
        try:
            data = response.json()
        except ValueError:
            return None, "invalid JSON body"
        if not isinstance(data, dict):
            return None, "unexpected response shape"
        if data.get("error"):
            error = data["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            return None, message or "provider error"
        choices = data.get("choices") or []
        content = None
        if choices and isinstance(choices[0], dict):
            content = (choices[0].get("message") or {}).get("content")
        if not content or not str(content).strip():
            return None, "Empty response"
        return str(content), None

    def complete(self, system_prompt: str, user_content: str, max_tokens: int | None = None) -> tuple[str, str]:
        """Run the cascade; returns (content, model) or raises ModelCascadeError."""
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_content},
        ]
        failures: list[tuple[str, str]] = []
        for model in self.models:
            content, reason = self._try_model(model, messages, max_tokens or self.max_tokens)
            if content is not None:
                if failures:
                    LOGGER.info("Model %s answered after %s failure(s)", model, len(failures))
                return content, model
            LOGGER.warning("Model %s failed: %s", model, reason)
            failures.append((model, reason or "unknown error"))
        raise ModelCascadeError(failures)

    def classify(
        self,
        content: str,
        prompt_kind: PromptKind,
        today: date | None = None,
        source_label: str = "web",
    ) -> ExtractionResult:
        """Classify one piece of content; events are judged relative to `today`."""
        if prompt_kind is PromptKind.CHALLENGE:
            raw, model = self.complete(CHALLENGE_SYSTEM_PROMPT, content)
        else:
            today = today or date.today()
            user_content = (
                f"Analyze this content (source: {source_label}). "
                f"Today's date is {today.isoformat()}.\n\n{content}"
            )
            raw, model = self.complete(EVENT_SYSTEM_PROMPT, user_content)
        result = parse_extraction(raw, prompt_kind, model=model)
        if result.recovered:
            LOGGER.info("Recovered %s response from %s (accepted=%s)", prompt_kind.value, model, result.accepted)
        return result

    def analyze_article(self, candidate: CandidateItem) -> ExtractionResult:
        return self.classify(format_article_content(candidate), PromptKind.CHALLENGE)

    def analyze_for_event(self, candidate: CandidateItem, today: date | None = None) -> ExtractionResult:
        return self.classify(
            format_event_content(candidate),
            PromptKind.EVENT,
            today=today,
            source_label=candidate.source_type.value,
        )


def needs_more_info(result: ExtractionResult) -> bool:
    """True when a rejection asks for more context rather than judging the content."""
    if result.accepted or not result.reason:
        return False
    return "need more" in result.reason.lower()
