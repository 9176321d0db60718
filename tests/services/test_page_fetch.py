from __future__ import annotations

import requests

from src.services.page_fetch import PageFetcher, extract_readable_text, normalize_url

from fakes import FakeResponse, FakeSession

HTML_HEADERS = {"Content-Type": "text/html; charset=utf-8"}
MAIN_TEXT = "The Civic Data Forum brings together city officials and volunteers. " * 5


def make_fetcher(session: FakeSession, sleeps: list[float]) -> PageFetcher:
    return PageFetcher("CivicTest/1.0", session=session, min_interval=0, sleep=sleeps.append)


def test_normalize_url_strips_tracking_and_fragment() -> None:
    url = "https://Events.Example.com/Summit/?utm_source=x&id=7&fbclid=abc#register"
    assert normalize_url(url) == "https://events.example.com/summit?id=7"
    assert normalize_url("") == ""


def test_extract_prefers_main_content() -> None:
    html = f"""
    <html><body>
      <nav>Home | About | Contact</nav>
      <script>var tracking = 1;</script>
      <main><h1>Civic Data Forum</h1><p>{MAIN_TEXT}</p></main>
      <footer>Copyright</footer>
    </body></html>
    """
    text = extract_readable_text(html)

    assert text.startswith("Civic Data Forum")
    assert "Home | About" not in text
    assert "tracking" not in text
    assert "Copyright" not in text


def test_extract_falls_back_to_body_when_main_is_thin() -> None:
    html = "<html><body><main>Short</main><p>Body paragraph about the hackathon.</p></body></html>"
    text = extract_readable_text(html)

    assert "Short" in text
    assert "Body paragraph about the hackathon." in text


def test_extract_truncates_at_sentence_boundary() -> None:
    html = "<html><body><p>" + "Sentence number one is here. " * 200 + "</p></body></html>"
    text = extract_readable_text(html, max_length=500)

    assert len(text) <= 500
    assert text.endswith(".")


def test_forbidden_is_not_retried() -> None:
    session = FakeSession(get=[FakeResponse(403, text="no bots")])
    sleeps: list[float] = []

    assert make_fetcher(session, sleeps).fetch_and_extract("https://blocked.example/page") is None
    assert len(session.calls) == 1
    assert sleeps == []


def test_missing_page_is_not_retried() -> None:
    session = FakeSession(get=[FakeResponse(404, text="gone"), FakeResponse(200, text="<main>late</main>")])
    sleeps: list[float] = []

    assert make_fetcher(session, sleeps).fetch_and_extract("https://events.example/removed") is None
    assert len(session.calls) == 1
    assert sleeps == []


def test_server_errors_retry_with_backoff() -> None:
    page = FakeResponse(200, text=f"<main>{MAIN_TEXT}</main>", headers=HTML_HEADERS)
    session = FakeSession(get=[FakeResponse(500), requests.ConnectionError("reset"), page])
    sleeps: list[float] = []

    text = make_fetcher(session, sleeps).fetch_and_extract("https://flaky.example/event")

    assert text is not None and "Civic Data Forum" in text
    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_gives_up_after_max_retries() -> None:
    session = FakeSession(get=[FakeResponse(502), FakeResponse(502), FakeResponse(502)])
    sleeps: list[float] = []

    assert make_fetcher(session, sleeps).fetch_and_extract("https://down.example/") is None
    assert len(session.calls) == 3


def test_non_html_content_is_skipped() -> None:
    session = FakeSession(get=[FakeResponse(200, text="%PDF-1.7", headers={"Content-Type": "application/pdf"})])

    assert make_fetcher(session, []).fetch_and_extract("https://docs.example/agenda.pdf") is None
