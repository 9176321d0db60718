from __future__ import annotations

from datetime import date

from src.services.directory_scraper import (
    DirectoryCategory,
    DirectoryListing,
    DirectoryScraper,
    deduplicate,
    filter_future,
    parse_listing_date,
    parse_listing_html,
    to_title_case,
)
from src.services.models import SourceType
from src.services.rate_limit import RateLimiter

from fakes import FakeResponse, FakeSession

CATEGORY = DirectoryCategory("environmental", "t1")


def make_page(rows: list[tuple[str, str, str]], page: int, total: int) -> str:
    body = "".join(
        f"""
        <tr>
          <td><a href="{slug}.html"><b>{name}</b></a><br><i>{description}</i></td>
          <td>Every year</td>
          <td><a href="/city.html">Lyon</a> (France)<br><a href="/venue.html">Eurexpo Lyon</a></td>
          <td>11/05/2026<br>3 days</td>
        </tr>
        """
        for name, slug, description in rows
    )
    return f"<html><body><p>Page {page} / {total}</p><table>{body}</table></body></html>"


def make_scraper(session: FakeSession) -> DirectoryScraper:
    return DirectoryScraper(
        user_agent="CivicTest/1.0",
        session=session,
        limiter=RateLimiter(0),
        categories=[CATEGORY],
    )


def test_parse_listing_date_adds_duration() -> None:
    assert parse_listing_date("11/05/2026 3 days") == ("2026-11-05", "2026-11-07", 3)
    assert parse_listing_date("02/28/2027 1 day") == ("2027-02-28", "2027-02-28", 1)
    assert parse_listing_date("12/30/2026 4 days") == ("2026-12-30", "2027-01-02", 4)


def test_parse_listing_date_without_duration_or_date() -> None:
    assert parse_listing_date("06/01/2027") == ("2027-06-01", None, None)
    assert parse_listing_date("Dates to be announced") == (None, None, None)
    assert parse_listing_date("13/45/2026") == (None, None, None)


def test_title_case_only_applies_to_shouting_names() -> None:
    assert to_title_case("SMART CITY EXPO OF THE AMERICAS") == "Smart City Expo of the Americas"
    assert to_title_case("GreenTech Forum") == "GreenTech Forum"


def test_parse_listing_html_extracts_rows_and_pagination() -> None:
    html = make_page([("POLLUTEC", "pollutec", "Environmental solutions fair")], page=1, total=3)

    page = parse_listing_html(html, "environmental")

    assert page.current_page == 1
    assert page.total_pages == 3
    assert page.has_next_page
    listing = page.listings[0]
    assert listing.name == "Pollutec"
    assert listing.description == "Environmental solutions fair"
    assert listing.detail_url == "https://www.eventseye.com/fairs/pollutec.html"
    assert listing.city == "Lyon"
    assert listing.country == "France"
    assert listing.venue_name == "Eurexpo Lyon"
    assert (listing.start_date, listing.end_date, listing.duration_days) == ("2026-11-05", "2026-11-07", 3)


def test_not_found_page_ends_category_without_error() -> None:
    session = FakeSession(
        get=[
            FakeResponse(200, text=make_page([("SHOW ONE", "one", "First")], 1, 5)),
            FakeResponse(200, text=make_page([("SHOW TWO", "two", "Second")], 2, 5)),
            FakeResponse(404, text="missing"),
        ]
    )
    scraper = make_scraper(session)

    listings, stats = scraper.scrape_category(CATEGORY)

    assert [listing.name for listing in listings] == ["Show One", "Show Two"]
    assert stats.pages_scraped == 2
    assert stats.errors == []
    assert session.calls[2]["url"].endswith("t1_trade-shows_environmental_3.html")


def test_server_error_stops_category_and_records_error() -> None:
    session = FakeSession(get=[FakeResponse(503, text="busy")])
    scraper = make_scraper(session)

    listings, stats = scraper.scrape_category(CATEGORY)

    assert listings == []
    assert len(stats.errors) == 1
    assert stats.errors[0].startswith("Page 1")


def test_build_page_url_omits_suffix_on_first_page() -> None:
    assert DirectoryScraper.build_page_url(CATEGORY, 1) == (
        "https://www.eventseye.com/fairs/t1_trade-shows_environmental.html"
    )
    assert DirectoryScraper.build_page_url(CATEGORY, 2).endswith("environmental_2.html")


def test_scrape_all_categories_honours_stop_signal() -> None:
    session = FakeSession()
    scraper = make_scraper(session)

    listings, stats = scraper.scrape_all_categories(should_stop=lambda: True)

    assert listings == [] and stats == []
    assert session.calls == []


def test_deduplicate_keeps_richer_description() -> None:
    short = DirectoryListing(name="Water Expo", source_category="environmental", description="Water", start_date="2026-11-05")
    rich = DirectoryListing(
        name="WATER EXPO",
        source_category="water-management-and-treatment",
        description="International water technology exhibition",
        start_date="2026-11-05",
        city="Lyon",
    )
    other_year = DirectoryListing(name="Water Expo", source_category="environmental", start_date="2027-11-04")

    result = deduplicate([short, rich, other_year])

    assert len(result) == 2
    assert result[0].description == "International water technology exhibition"
    assert result[0].city == "Lyon"


def test_filter_future_drops_past_and_undated() -> None:
    listings = [
        DirectoryListing(name="Past", source_category="x", start_date="2026-10-17"),
        DirectoryListing(name="Today", source_category="x", start_date="2026-10-18"),
        DirectoryListing(name="Undated", source_category="x"),
    ]

    assert [item.name for item in filter_future(listings, date(2026, 10, 18))] == ["Today"]


def test_listing_becomes_directory_candidate() -> None:
    listing = DirectoryListing(
        name="Pollutec",
        source_category="environmental",
        detail_url="https://www.eventseye.com/fairs/pollutec.html",
        city="Lyon",
        country="France",
        venue_name="Eurexpo Lyon",
        start_date="2026-11-05",
    )
    candidate = listing.to_candidate()

    assert candidate.source_type is SourceType.STATIC_DIRECTORY
    assert candidate.url == listing.detail_url
    assert candidate.venue == "Eurexpo Lyon"
