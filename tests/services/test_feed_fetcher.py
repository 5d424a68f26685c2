import pytest
import requests

from http_fakes import FakeSession, make_response
from kynews.services.errors import ContentTypeError, HttpStatusError, NetworkError
from kynews.services.feed_fetcher import FeedFetcher
from kynews.services.models import Feed

FEED_URL = "https://paper.example.com/rss"


def _feed(**overrides) -> Feed:
    values = {"id": "paper", "url": FEED_URL, "name": "Paper"}
    values.update(overrides)
    return Feed(**values)


def test_conditional_headers_use_stored_tokens() -> None:
    session = FakeSession({FEED_URL: make_response(304)})
    fetcher = FeedFetcher(session=session)

    result = fetcher.fetch(_feed(etag='"v1"', last_modified="Mon, 06 Jan 2025 10:00:00 GMT"))

    _, headers = session.calls[0]
    assert headers["If-None-Match"] == '"v1"'
    assert headers["If-Modified-Since"] == "Mon, 06 Jan 2025 10:00:00 GMT"
    assert result.not_modified
    assert result.body is None
    assert result.etag == '"v1"'


def test_force_skips_conditional_headers() -> None:
    session = FakeSession({FEED_URL: make_response(200, b"<rss/>", {"ETag": '"v2"'})})
    fetcher = FeedFetcher(session=session)

    result = fetcher.fetch(_feed(etag='"v1"'), force=True)

    _, headers = session.calls[0]
    assert "If-None-Match" not in headers
    assert result.status == 200
    assert result.body == b"<rss/>"
    assert result.etag == '"v2"'


def test_scrape_feeds_ask_for_html() -> None:
    fetcher = FeedFetcher(session=FakeSession())

    headers = fetcher.build_headers(_feed(fetch_mode="scrape"))

    assert headers["Accept"].startswith("text/html")


def test_error_status_raises_with_snippet() -> None:
    session = FakeSession({FEED_URL: make_response(500, "x" * 500)})
    fetcher = FeedFetcher(session=session)

    with pytest.raises(HttpStatusError) as excinfo:
        fetcher.fetch(_feed())

    assert excinfo.value.status == 500
    assert excinfo.value.snippet == "x" * 200


@pytest.mark.parametrize("failure", [requests.ConnectionError("refused"), requests.Timeout("slow")])
def test_transport_failures_become_network_errors(failure: Exception) -> None:
    fetcher = FeedFetcher(session=FakeSession({FEED_URL: failure}))

    with pytest.raises(NetworkError):
        fetcher.fetch(_feed())


def test_html_page_served_for_a_feed_is_rejected() -> None:
    login_page = b"<!DOCTYPE html><html><body>Please sign in</body></html>"
    session = FakeSession({FEED_URL: make_response(200, login_page, {"Content-Type": "text/html; charset=utf-8"})})

    with pytest.raises(ContentTypeError) as excinfo:
        FeedFetcher(session=session).fetch(_feed())

    assert excinfo.value.content_type == "text/html; charset=utf-8"
    assert excinfo.value.url == FEED_URL


def test_feed_mislabelled_as_html_is_still_accepted() -> None:
    body = b'\n<?xml version="1.0"?><rss version="2.0"><channel></channel></rss>'
    session = FakeSession({FEED_URL: make_response(200, body, {"Content-Type": "text/html"})})

    result = FeedFetcher(session=session).fetch(_feed())

    assert result.body == body


def test_scraped_listing_pages_may_be_html() -> None:
    page = b"<html><body><a href='/news/1'>Story</a></body></html>"
    session = FakeSession({FEED_URL: make_response(200, page, {"Content-Type": "text/html"})})

    result = FeedFetcher(session=session).fetch(_feed(fetch_mode="scrape"))

    assert result.body == page
