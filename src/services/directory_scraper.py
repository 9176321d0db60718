"""
Paginated scraper for the EventsEye trade-show directory.

Listing pages are server-rendered tables; each row carries the show name, cycle,
venue cell and a start date with a duration. Requests to the host are paced by a
shared limiter so the politeness delay holds across categories.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup

from src.services.models import CandidateItem, SourceType
from src.services.rate_limit import RateLimitedSession, RateLimiter, shared_limiter

LOGGER = logging.getLogger(__name__)

DIRECTORY_HOST = "https://www.eventseye.com"
DIRECTORY_BASE = f"{DIRECTORY_HOST}/fairs/"
DEFAULT_USER_AGENT = "CivicMatchBot/1.0 (contact@civicmatch.com)"

PAGINATION_RE = re.compile(r"Page\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)
DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
DURATION_RE = re.compile(r"(\d+)\s*days?", re.IGNORECASE)
COUNTRY_RE = re.compile(r"\(([^)]+)\)")

ACRONYMS = {
    "AI", "ICT", "IT", "IOT", "IIOT", "UN", "EU", "US", "UK", "UAE", "USA", "COP", "SDG", "PPP",
    "IFAT", "MWC", "CES", "GIS", "BIM", "EV", "VR", "AR", "XR", "API", "HR", "GDPR", "ISO",
    "LED", "3D", "GPS", "RFID", "5G", "IP", "TV", "CCTV", "HVAC", "BMS", "ERP", "CRM", "SCADA",
    "EMEA", "APAC", "LATAM", "WHO", "UNESCO", "G7", "G20", "B2B", "B2C", "CAD", "MES",
}
SMALL_WORDS = {"a", "an", "the", "and", "but", "or", "for", "nor", "on", "at", "to", "from", "by", "in", "of"}


@dataclass(frozen=True)
class DirectoryCategory:
    slug: str
    prefix: str  # "t1" primary sector, "st1" subcategory


DIRECTORY_CATEGORIES: List[DirectoryCategory] = [
    DirectoryCategory("environmental", "t1"),
    DirectoryCategory("ict-information-communications-technologies", "t1"),
    DirectoryCategory("education-training-employment", "t1"),
    DirectoryCategory("quality-security", "t1"),
    DirectoryCategory("urban-equipment-engineering", "st1"),
    DirectoryCategory("clean-energies-renewable-energies", "st1"),
    DirectoryCategory("environmental-protection", "st1"),
    DirectoryCategory("water-management-and-treatment", "st1"),
    DirectoryCategory("knowledge-based-systems-artificial-intelligence", "st1"),
]


@dataclass(frozen=True)
class DirectoryListing:
    name: str
    source_category: str
    description: str | None = None
    detail_url: str | None = None
    cycle: str | None = None
    city: str | None = None
    country: str | None = None
    venue_name: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    duration_days: int | None = None

    @property
    def dedupe_key(self) -> str:
        return f"{re.sub(r'[^a-z0-9]', '', self.name.lower())}|{self.start_date}"

    def to_candidate(self) -> CandidateItem:
        return CandidateItem(
            source_id=self.detail_url or self.dedupe_key,
            title=self.name,
            body_text=self.description or "",
            source_type=SourceType.STATIC_DIRECTORY,
            url=self.detail_url or "",
            venue=self.venue_name,
            city=self.city,
            country=self.country,
            start_date=self.start_date,
            end_date=self.end_date,
            extra={"cycle": self.cycle, "category": self.source_category},
        )


@dataclass
class ListingPage:
    listings: List[DirectoryListing]
    current_page: int = 1
    total_pages: int = 1
    not_found: bool = False

    @property
    def has_next_page(self) -> bool:
        return not self.not_found and self.current_page < self.total_pages


@dataclass
class ScrapeStats:
    category: str
    pages_scraped: int = 0
    listings_found: int = 0
    errors: List[str] = field(default_factory=list)


def to_title_case(value: str) -> str:
    """Title-case shouting names while keeping known acronyms upper case."""
    if not value.isupper():
        return value.strip()
    words = re.sub(r"[^\w\s-]|_", " ", value.lower()).split()
    result: List[str] = []
    for index, word in enumerate(words):
        if word.upper() in ACRONYMS:
            result.append(word.upper())
        elif index > 0 and word in SMALL_WORDS:
            result.append(word)
        else:
            result.append("-".join(part[:1].upper() + part[1:] for part in word.split("-")))
    return " ".join(result)


def parse_listing_date(text: str) -> tuple[str | None, str | None, int | None]:
    """Parse `MM/DD/YYYY` plus an optional `N days` into ISO start/end dates."""
    match = DATE_RE.search(text or "")
    if not match:
        return None, None, None
    month, day, year = (int(part) for part in match.groups())
    try:
        start = date(year, month, day)
    except ValueError:
        LOGGER.debug("Invalid listing date %r", text)
        return None, None, None
    duration_match = DURATION_RE.search(text)
    if not duration_match:
        return start.isoformat(), None, None
    duration = int(duration_match.group(1))
    end = start + timedelta(days=max(duration - 1, 0))
    return start.isoformat(), end.isoformat(), duration


def parse_listing_html(html: str, category_slug: str) -> ListingPage:
    soup = BeautifulSoup(html, "html.parser")
    marker = PAGINATION_RE.search(soup.get_text(" "))
    current_page = int(marker.group(1)) if marker else 1
    total_pages = int(marker.group(2)) if marker else 1

    listings: List[DirectoryListing] = []
    for row in soup.select("table tr"):
        cells = row.find_all("td", recursive=False) or row.find_all("td")
        if len(cells) < 4:
            continue
        name_cell, cycle_cell, venue_cell, date_cell = cells[:4]
        bold = name_cell.find("b")
        name = bold.get_text(" ", strip=True) if bold else ""
        if not name:
            continue
        italic = name_cell.find("i")
        link = name_cell.find("a")
        href = link.get("href") if link else None
        venue_links = venue_cell.find_all("a")
        country_match = COUNTRY_RE.search(venue_cell.get_text(" "))
        start_date, end_date, duration = parse_listing_date(date_cell.get_text(" ", strip=True))
        listings.append(
            DirectoryListing(
                name=to_title_case(name),
                source_category=category_slug,
                description=(italic.get_text(" ", strip=True) if italic else "") or None,
                detail_url=urljoin(DIRECTORY_BASE, href) if href else None,
                cycle=cycle_cell.get_text(" ", strip=True) or None,
                city=(venue_links[0].get_text(" ", strip=True) if venue_links else "") or None,
                country=country_match.group(1).strip() if country_match else None,
                venue_name=(venue_links[1].get_text(" ", strip=True) if len(venue_links) > 1 else "") or None,
                start_date=start_date,
                end_date=end_date,
                duration_days=duration,
            )
        )
    return ListingPage(listings=listings, current_page=current_page, total_pages=total_pages)


def deduplicate(listings: List[DirectoryListing]) -> List[DirectoryListing]:
    """Collapse the same show seen under several categories; the richer description wins."""
    seen: Dict[str, DirectoryListing] = {}
    for listing in listings:
        key = listing.dedupe_key
        existing = seen.get(key)
        if existing is None:
            seen[key] = listing
            continue
        if len(listing.description or "") > len(existing.description or ""):
            merged = {name: value for name, value in vars(listing).items() if value is not None}
            seen[key] = replace(existing, **merged)
    return list(seen.values())


def filter_future(listings: List[DirectoryListing], today: date | None = None) -> List[DirectoryListing]:
    today = today or date.today()
    upcoming: List[DirectoryListing] = []
    for listing in listings:
        if not listing.start_date:
            continue
        if datetime.strptime(listing.start_date, "%Y-%m-%d").date() >= today:
            upcoming.append(listing)
    return upcoming


class DirectoryScraper:
    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        session: requests.Session | Any | None = None,
        delay: float = 2.0,
        max_pages: int = 30,
        limiter: RateLimiter | None = None,
        categories: Optional[List[DirectoryCategory]] = None,
        timeout: int = 20,
    ) -> None:
        self.user_agent = user_agent
        self.max_pages = max_pages
        self.timeout = timeout
        self.categories = categories if categories is not None else DIRECTORY_CATEGORIES
        self.http = RateLimitedSession(
            session,
            limiter=limiter or shared_limiter("www.eventseye.com", delay),
        )

    @staticmethod
    def build_page_url(category: DirectoryCategory, page: int) -> str:
        suffix = "" if page == 1 else f"_{page}"
        return f"{DIRECTORY_BASE}{category.prefix}_trade-shows_{category.slug}{suffix}.html"

    def scrape_listing_page(self, url: str, category_slug: str) -> ListingPage:
        """Fetch and parse one page; a 404 means the directory has no more pages."""
        response = self.http.get(
            url,
            headers={
                "User-Agent": self.user_agent,
                "Accept-Language": "en-US,en;q=0.9",
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            },
            timeout=self.timeout,
        )
        if response.status_code == 404:
            LOGGER.debug("No listing page at %s", url)
            return ListingPage(listings=[], not_found=True)
        response.raise_for_status()
        return parse_listing_html(response.text, category_slug)

    def scrape_category(self, category: DirectoryCategory) -> tuple[List[DirectoryListing], ScrapeStats]:
        listings: List[DirectoryListing] = []
        stats = ScrapeStats(category=category.slug)
        page = 1
        while page <= self.max_pages:
            url = self.build_page_url(category, page)
            try:
                result = self.scrape_listing_page(url, category.slug)
            except (requests.RequestException, ValueError) as exc:
                LOGGER.warning("Failed to scrape %s", url, exc_info=True)
                stats.errors.append(f"Page {page}: {exc}")
                break
            if result.not_found:
                break
            stats.pages_scraped += 1
            listings.extend(result.listings)
            if not result.listings and page == 1:
                stats.errors.append(f"No listings found on first page of {category.slug}")
            if not result.has_next_page:
                break
            page += 1
        stats.listings_found = len(listings)
        LOGGER.info(
            "Scraped %s listings from %s page(s) of %s",
            stats.listings_found,
            stats.pages_scraped,
            category.slug,
        )
        return listings, stats

    def scrape_all_categories(
        self,
        on_progress: Callable[[str], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> tuple[List[DirectoryListing], List[ScrapeStats]]:
        listings: List[DirectoryListing] = []
        all_stats: List[ScrapeStats] = []
        for category in self.categories:
            if should_stop and should_stop():
                break
            if on_progress:
                on_progress(f"Scraping directory category {category.slug}")
            found, stats = self.scrape_category(category)
            listings.extend(found)
            all_stats.append(stats)
            if on_progress:
                on_progress(f"Found {len(found)} raw listings in {category.slug}")
        return listings, all_stats
