"""
Score directory listings in batches with a single model call per batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Sequence

from src.services.errors import ModelCascadeError
from src.services.extraction import ExtractionClient
from src.services.lenient_json import TruncatedResponseError, loads_lenient
from src.services.models import CandidateItem, normalize_event_type

LOGGER = logging.getLogger(__name__)

NOT_EVALUATED_REASON = "not evaluated"

BATCH_FILTER_PROMPT = """You are a relevance filter for a platform connecting civic technology founders with volunteers. Evaluate a batch of trade shows and conferences and decide which would be valuable for people working in civic technology, open government, smart cities, democracy, social impact, climate action, and public interest technology.

Respond ONLY with a JSON object. No other text.

{
  "events": [
    {
      "index": 0,
      "relevant": true,
      "score": 85,
      "reason": "Major smart city conference bringing together urban tech innovators and city officials",
      "tags": ["smart cities", "urban tech", "govtech"],
      "event_type": "conference"
    },
    {
      "index": 3,
      "relevant": false,
      "score": 15,
      "reason": "Commercial kitchen equipment trade show, no civic relevance"
    }
  ]
}

Scoring guide (0-100):
- 90-100: core civic tech, open government or democracy event (Smart City Expo, OGP Summit, GovTech Summit)
- 75-89: civic tech is a major theme (World Water Week, COP, International Transport Forum, IFAT)
- 55-74: large industry event with meaningful public sector tracks (Web Summit, MWC, renewable energy expos)
- 30-54: tangential connection only (generic construction or IT expos)
- below 30: commercial trade show with no civic dimension

Include an entry for every index. "event_type" is one of: conference, expo, summit, forum, congress, convention, trade_show, workshop, other."""


@dataclass
class BatchVerdict:
    index: int
    relevant: bool
    score: int
    reason: str
    tags: List[str] = field(default_factory=list)
    event_type: str = "conference"
    accepted: bool = False


@dataclass
class FilterStats:
    total: int = 0
    batches: int = 0
    accepted: int = 0
    rejected: int = 0
    # Listings lost to failed batches.
    errors: int = 0
    failed_batches: int = 0


def map_to_base_event_type(value: Any) -> str:
    return normalize_event_type(value, default="conference")


def format_batch_line(index: int, item: CandidateItem) -> str:
    if item.city and item.country:
        location = f"{item.city}, {item.country}"
    else:
        location = item.city or item.country or "Location TBD"
    if item.start_date:
        dates = item.start_date + (f" to {item.end_date}" if item.end_date else "")
    else:
        dates = "Date TBD"
    return f"[{index}] {item.title} — {item.body_text or 'No description'} — {location} — {dates}"


class BatchRelevanceFilter:
    def __init__(
        self,
        extractor: ExtractionClient,
        batch_size: int = 40,
        min_score: int = 55,
        max_tokens: int = 2000,
    ) -> None:
        self.extractor = extractor
        self.batch_size = max(1, batch_size)
        self.min_score = min_score
        self.max_tokens = max_tokens

    def _verdict(self, index: int, entry: Dict[str, Any]) -> BatchVerdict:
        try:
            score = int(entry.get("score") or 0)
        except (TypeError, ValueError):
            score = 0
        relevant = entry.get("relevant") is True
        tags = entry.get("tags") if isinstance(entry.get("tags"), list) else []
        return BatchVerdict(
            index=index,
            relevant=relevant,
            score=score,
            reason=str(entry.get("reason") or ""),
            tags=[str(tag) for tag in tags],
            event_type=map_to_base_event_type(entry.get("event_type")),
            accepted=relevant and score >= self.min_score,
        )

    def filter_batch(self, items: Sequence[CandidateItem], today: date | None = None) -> List[BatchVerdict]:
        """One verdict per input position; indices the model skipped are rejected."""
        today = today or date.today()
        lines = "\n".join(format_batch_line(index, item) for index, item in enumerate(items))
        content, model = self.extractor.complete(
            BATCH_FILTER_PROMPT,
            f"Today's date: {today.isoformat()}\n\nEvents to evaluate:\n{lines}",
            max_tokens=self.max_tokens,
        )
        payload = loads_lenient(content)
        entries = payload.get("events") if isinstance(payload.get("events"), list) else []
        by_index: Dict[int, Dict[str, Any]] = {}
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            try:
                index = int(entry.get("index"))
            except (TypeError, ValueError):
                continue
            if 0 <= index < len(items) and index not in by_index:
                by_index[index] = entry
        LOGGER.debug("Model %s returned %s/%s verdicts", model, len(by_index), len(items))
        verdicts: List[BatchVerdict] = []
        for index in range(len(items)):
            entry = by_index.get(index)
            if entry is None:
                verdicts.append(BatchVerdict(index=index, relevant=False, score=0, reason=NOT_EVALUATED_REASON))
            else:
                verdicts.append(self._verdict(index, entry))
        return verdicts

    def filter_items(
        self,
        items: Sequence[CandidateItem],
        today: date | None = None,
        on_progress: Callable[[str], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> tuple[List[tuple[CandidateItem, BatchVerdict]], FilterStats]:
        stats = FilterStats(total=len(items))
        accepted: List[tuple[CandidateItem, BatchVerdict]] = []
        for start in range(0, len(items), self.batch_size):
            if should_stop and should_stop():
                break
            batch = list(items[start : start + self.batch_size])
            stats.batches += 1
            if on_progress:
                on_progress(f"Filtering batch {stats.batches} ({len(batch)} listings)")
            try:
                verdicts = self.filter_batch(batch, today)
            except (ModelCascadeError, TruncatedResponseError):
                LOGGER.warning("Batch %s failed; skipping %s listings", stats.batches, len(batch), exc_info=True)
                stats.errors += len(batch)
                stats.failed_batches += 1
                continue
            for item, verdict in zip(batch, verdicts):
                if verdict.accepted:
                    accepted.append((item, verdict))
                    stats.accepted += 1
                else:
                    stats.rejected += 1
        LOGGER.info(
            "Batch filter kept %s/%s listings (%s failed batches)",
            stats.accepted,
            stats.total,
            stats.failed_batches,
        )
        return accepted, stats
