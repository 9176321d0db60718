"""
Tolerant parsing for model responses that may be fenced, chatty, or cut off mid-object.

Recovery never invents values: a field survives only if its string was closed
before the truncation point, and anything unrecoverable becomes a rejection.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict

from src.services.models import ChallengeFields, EventFields, ExtractionResult, PromptKind

LOGGER = logging.getLogger(__name__)

UNPARSEABLE_REASON = "unparseable model response"
TRUNCATED_RELEVANCE_REASON = "Recovered from a truncated model response"
TRUNCATED_RELEVANCE_DEFAULT = 70

FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
EVENT_FLAG_RE = re.compile(r'"is_event"\s*:\s*(true|false)', re.IGNORECASE)
CHALLENGE_FLAG_RE = re.compile(r'"is_civic_challenge"\s*:\s*(true|false)', re.IGNORECASE)
ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class TruncatedResponseError(ValueError):
    """Raised when a response cannot be repaired into a JSON object."""


def _strip_wrapping(text: str) -> str:
    cleaned = FENCE_RE.sub("", text.strip()).strip()
    start = cleaned.find("{")
    if start > 0:
        cleaned = cleaned[start:]
    end = cleaned.rfind("}")
    # Drop trailing prose only when the object looks closed.
    if end != -1 and cleaned.count("{") == cleaned.count("}"):
        cleaned = cleaned[: end + 1]
    return cleaned


def _closing_suffix(text: str) -> str | None:
    """Closers needed to balance `text`, or None when it ends inside a string."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack:
            stack.pop()
    if in_string:
        return None
    return "".join(reversed(stack))


def _loads_tracking_repair(text: str | None) -> tuple[Dict[str, Any], bool]:
    if not text or not text.strip():
        raise TruncatedResponseError("empty response")
    cleaned = _strip_wrapping(text)
    repaired = False
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        suffix = _closing_suffix(cleaned)
        if not suffix:
            raise TruncatedResponseError("response is not valid JSON") from None
        balanced = re.sub(r",\s*$", "", cleaned.rstrip()) + suffix
        try:
            parsed = json.loads(balanced)
        except json.JSONDecodeError as exc:
            raise TruncatedResponseError("response could not be repaired") from exc
        LOGGER.debug("Repaired truncated JSON by appending %r", suffix)
        repaired = True
    if not isinstance(parsed, dict):
        raise TruncatedResponseError("response is not a JSON object")
    return parsed, repaired


def loads_lenient(text: str | None) -> Dict[str, Any]:
    """Parse a JSON object, balancing unclosed braces when the text was truncated."""
    parsed, _ = _loads_tracking_repair(text)
    return parsed


def _closed_string(text: str, key: str) -> str | None:
    match = re.search(r'"%s"\s*:\s*"((?:[^"\\]|\\.)*)"' % re.escape(key), text)
    if not match:
        return None
    try:
        value = json.loads(f'"{match.group(1)}"')
    except json.JSONDecodeError:
        value = match.group(1)
    value = value.strip()
    return value or None


def _closed_date(text: str, key: str) -> str | None:
    value = _closed_string(text, key)
    if value and ISO_DATE_RE.match(value):
        return value
    return None


def _from_payload(payload: Dict[str, Any], kind: PromptKind, model: str | None, recovered: bool) -> ExtractionResult:
    if kind is PromptKind.EVENT:
        if not payload.get("is_event"):
            return ExtractionResult.reject(payload.get("reason"), model=model, recovered=recovered)
        event_payload = payload.get("event")
        if not isinstance(event_payload, dict):
            return ExtractionResult.reject("event details missing", model=model, recovered=recovered)
        fields = EventFields.from_payload(event_payload)
        if not fields.name:
            return ExtractionResult.reject("event name missing", model=model, recovered=recovered)
        return ExtractionResult.accept(fields, model=model, recovered=recovered)

    if not payload.get("is_civic_challenge"):
        return ExtractionResult.reject(payload.get("reason"), model=model, recovered=recovered)
    challenge = ChallengeFields.from_payload(payload)
    if not challenge.title:
        return ExtractionResult.reject("challenge title missing", model=model, recovered=recovered)
    return ExtractionResult.accept(challenge, model=model, recovered=recovered)


def _recover_event(text: str, model: str | None) -> ExtractionResult:
    flag = EVENT_FLAG_RE.search(text)
    if not flag:
        return ExtractionResult.reject(UNPARSEABLE_REASON, model=model, recovered=True)
    if flag.group(1).lower() == "false":
        return ExtractionResult.reject(_closed_string(text, "reason"), model=model, recovered=True)
    name = _closed_string(text, "name")
    if not name:
        return ExtractionResult.reject(UNPARSEABLE_REASON, model=model, recovered=True)
    fields = EventFields(
        name=name,
        description=_closed_string(text, "description"),
        start_date=_closed_date(text, "start_date"),
        end_date=_closed_date(text, "end_date"),
        location_city=_closed_string(text, "location_city"),
        event_url=_closed_string(text, "event_url"),
        relevance_score=TRUNCATED_RELEVANCE_DEFAULT,
        relevance_reason=TRUNCATED_RELEVANCE_REASON,
    )
    return ExtractionResult.accept(fields, model=model, recovered=True)


def _recover_challenge(text: str, model: str | None) -> ExtractionResult:
    flag = CHALLENGE_FLAG_RE.search(text)
    if not flag:
        return ExtractionResult.reject(UNPARSEABLE_REASON, model=model, recovered=True)
    if flag.group(1).lower() == "false":
        return ExtractionResult.reject(_closed_string(text, "reason"), model=model, recovered=True)
    title = _closed_string(text, "title")
    geocode_query = _closed_string(text, "geocode_query")
    city = _closed_string(text, "city")
    if not title or not (geocode_query or city):
        return ExtractionResult.reject(UNPARSEABLE_REASON, model=model, recovered=True)
    payload = {
        "title": title,
        "summary": _closed_string(text, "summary"),
        "category": _closed_string(text, "category"),
        "severity": _closed_string(text, "severity"),
        "location": {
            "specific": _closed_string(text, "specific"),
            "city": city,
            "country": _closed_string(text, "country"),
            "geocode_query": geocode_query,
        },
    }
    return ExtractionResult.accept(ChallengeFields.from_payload(payload), model=model, recovered=True)


def parse_extraction(text: str | None, kind: PromptKind, model: str | None = None) -> ExtractionResult:
    """Turn raw model text into an ExtractionResult; never raises."""
    try:
        payload, repaired = _loads_tracking_repair(text)
    except TruncatedResponseError:
        LOGGER.debug("Falling back to field recovery for %s response from %s", kind.value, model)
        if not text:
            return ExtractionResult.reject(UNPARSEABLE_REASON, model=model, recovered=True)
        if kind is PromptKind.EVENT:
            return _recover_event(text, model)
        return _recover_challenge(text, model)
    result = _from_payload(payload, kind, model, recovered=repaired)
    if repaired and isinstance(result.fields, EventFields) and result.fields.relevance_score is None:
        result.fields.relevance_score = TRUNCATED_RELEVANCE_DEFAULT
        result.fields.relevance_reason = TRUNCATED_RELEVANCE_REASON
    return result
