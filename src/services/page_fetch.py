"""
Fetch event pages and reduce them to readable text for second-pass classification.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import requests
from bs4 import BeautifulSoup

from src.services.rate_limit import RateLimitedSession

LOGGER = logging.getLogger(__name__)

MAX_PAGE_CHARS = 4000
MIN_MAIN_CONTENT_CHARS = 200
NO_RETRY_STATUSES = {403, 429}
TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid"}
REMOVABLE_TAGS = [
    "script",
    "style",
    "noscript",
    "iframe",
    "svg",
    "form",
    "nav",
    "footer",
    "header",
    "aside",
]
CONTAINER_SIGNALS = ("event", "content", "main")


def normalize_url(url: str) -> str:
    """Canonical key for dedup: no tracking params, no fragment, lowercase."""
    if not url:
        return ""
    parsed = urlparse(url.strip())
    kept = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in TRACKING_PARAMS
    ]
    path = parsed.path.rstrip("/") or "/"
    rebuilt = urlunparse((parsed.scheme or "https", parsed.netloc, path, "", urlencode(kept), ""))
    return rebuilt.lower()


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()


def _truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    boundary = cut.rfind(". ")
    if boundary > max_length * 0.8:
        return cut[: boundary + 1]
    return cut.rstrip()


def extract_readable_text(html: str, max_length: int = MAX_PAGE_CHARS) -> str:
    """Strip page chrome and prefer the main content container when it has real text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(REMOVABLE_TAGS):
        tag.decompose()

    candidates: list[Any] = list(soup.find_all(["main", "article"]))
    for node in soup.find_all("div"):
        attr_values: list[str] = []
        for attr in ("id", "class"):
            raw_value = node.get(attr)
            values = raw_value if isinstance(raw_value, list) else [raw_value]
            attr_values.extend(str(value).lower() for value in values if value)
        if any(signal in " ".join(attr_values) for signal in CONTAINER_SIGNALS):
            candidates.append(node)

    text = ""
    for node in candidates:
        node_text = _collapse(node.get_text(" ", strip=True))
        if len(node_text) > MIN_MAIN_CONTENT_CHARS:
            text = node_text
            break
    if not text:
        text = _collapse((soup.body or soup).get_text(" ", strip=True))
    return _truncate(text, max_length)


class PageFetcher:
    """Bounded page fetcher; only server errors and transport failures are retried."""

    def __init__(
        self,
        user_agent: str,
        session: requests.Session | Any | None = None,
        timeout: int = 10,
        max_retries: int = 2,
        backoff_base: float = 1.0,
        min_interval: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
        max_length: int = MAX_PAGE_CHARS,
    ) -> None:
        self.user_agent = user_agent
        self.http = RateLimitedSession(session, min_interval=min_interval)
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_length = max_length
        self._sleep = sleep

    def fetch_and_extract(self, url: str) -> str | None:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.backoff_base * (2 ** (attempt - 1))
                LOGGER.debug("Retrying %s in %.1fs (attempt %s)", url, delay, attempt + 1)
                self._sleep(delay)
            try:
                response = self.http.get(url, headers=headers, timeout=self.timeout, allow_redirects=True)
            except requests.RequestException:
                LOGGER.warning("Page fetch failed for %s", url, exc_info=True)
                continue
            if response.status_code in NO_RETRY_STATUSES:
                LOGGER.info("Page fetch blocked (%s) for %s", response.status_code, url)
                return None
            if response.status_code >= 500:
                LOGGER.info("Page fetch returned HTTP %s for %s", response.status_code, url)
                continue
            if response.status_code >= 400:
                LOGGER.info("Page fetch returned HTTP %s for %s; not retrying", response.status_code, url)
                return None
            content_type = (response.headers or {}).get("Content-Type", "")
            if content_type and "html" not in content_type.lower():
                LOGGER.debug("Skipping non-HTML content (%s) at %s", content_type, url)
                return None
            text = extract_readable_text(response.text or "", self.max_length)
            return text or None
        return None
