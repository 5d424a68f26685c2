from pathlib import Path
from typing import Dict, List
from xml.sax.saxutils import escape

import pytest

from http_fakes import FakeSession, make_response
from kynews.services import news_ingestion
from kynews.services.article_enricher import ArticleEnricher
from kynews.services.errors import PersistenceError
from kynews.services.feed_fetcher import FeedFetcher
from kynews.services.identity import make_item_id
from kynews.services.news_ingestion import NewsIngestor
from kynews.services.settings import IngestSettings
from kynews.services.store import NewsStore

KY_FEED = {
    "id": "ky-paper",
    "name": "KY Paper",
    "url": "https://ky.example.com/rss",
    "default_county": "Fayette",
}
WIRE_FEED = {
    "id": "wire",
    "name": "Wire",
    "url": "https://wire.example.com/rss",
    "region_scope": "national",
    "state_code": "US",
}
KY_OTHER_FEED = {
    "id": "ky-other",
    "name": "Other KY",
    "url": "https://other.example.com/rss",
    "default_county": "Pike",
}
SCRAPE_FEED = {
    "id": "hazard-local",
    "name": "Hazard Local",
    "url": "https://hazard.example.com/news",
    "fetch_mode": "scrape",
}

FILLER = (
    "Members reviewed spending plans for roads, parks and public safety during a lengthy meeting "
    "that stretched late into the evening. Residents spoke during the comment period about "
    "property taxes, sidewalk repairs and bus service. The final vote came after several "
    "amendments were debated and approved by a narrow margin of the members present that night."
)
LOCAL_STORY = {
    "title": "Louisville council approves budget",
    "link": "https://ky.example.com/news/budget",
    "description": "The Louisville Metro Council in Jefferson County, Kentucky voted Tuesday. " + FILLER,
    "image": "https://ky.example.com/img/budget.jpg",
}
NATIONAL_STORY = {
    "title": "Congress passes spending bill",
    "link": "https://wire.example.com/news/spending",
    "description": "Lawmakers in the capital voted Tuesday. " + FILLER,
    "image": "https://wire.example.com/img/spending.jpg",
}
HTML = {"Content-Type": "text/html; charset=utf-8"}


def make_rss(items: List[Dict[str, str]]) -> bytes:
    parts = []
    for item in items:
        enclosure = ""
        if item.get("image"):
            enclosure = f'<enclosure url="{escape(item["image"])}" type="image/jpeg" length="0"/>'
        parts.append(
            "<item>"
            f"<title>{escape(item['title'])}</title>"
            f"<link>{escape(item['link'])}</link>"
            f"<description>{escape(item.get('description', ''))}</description>"
            f"{enclosure}"
            "</item>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel><title>Test</title>'
        + "".join(parts)
        + "</channel></rss>"
    ).encode("utf-8")


@pytest.fixture()
def store(tmp_path: Path) -> NewsStore:
    news_store = NewsStore(tmp_path / "news.sqlite")
    yield news_store
    news_store.close()


def _ingestor(store: NewsStore, session: FakeSession) -> NewsIngestor:
    return NewsIngestor(
        store,
        IngestSettings(),
        fetcher=FeedFetcher(session=session),
        enricher=ArticleEnricher(session=session),
    )


def test_repeated_runs_are_idempotent(store: NewsStore) -> None:
    store.seed_feeds([KY_FEED])
    session = FakeSession({KY_FEED["url"]: make_response(200, make_rss([LOCAL_STORY]))})
    ingestor = _ingestor(store, session)

    first = ingestor.run_cycle()
    second = ingestor.run_cycle()

    item_id = make_item_id(LOCAL_STORY["link"])
    assert first.status == "ok"
    assert second.status == "ok"
    assert store.count_items() == 1
    assert store.feed_item_ids("ky-paper") == [item_id]
    assert store.item_locations(item_id) == [("KY", ""), ("KY", "Fayette"), ("KY", "Jefferson")]
    # Feed already supplied an image and enough text, so the article page is never requested.
    assert session.calls_to(LOCAL_STORY["link"]) == 0
    assert second.feeds[0].items_upserted == 0


def test_national_feed_items_get_no_locations(store: NewsStore) -> None:
    store.seed_feeds([WIRE_FEED])
    session = FakeSession({WIRE_FEED["url"]: make_response(200, make_rss([NATIONAL_STORY]))})

    _ingestor(store, session).run_cycle()

    item_id = make_item_id(NATIONAL_STORY["link"])
    state = store.get_item_state(item_id)
    assert state.region_scope == "national"
    assert store.item_locations(item_id) == []


def test_thin_items_are_pruned_and_not_refetched(store: NewsStore) -> None:
    store.seed_feeds([KY_FEED])
    thin = {"title": "Kentucky brief", "link": "https://ky.example.com/news/brief", "description": "Short blurb."}
    session = FakeSession(
        {
            KY_FEED["url"]: make_response(200, make_rss([thin])),
            thin["link"]: make_response(200, "<html><body><p>Tiny article.</p></body></html>", HTML),
        }
    )
    ingestor = _ingestor(store, session)

    first = ingestor.run_cycle()
    ingestor.run_cycle()

    assert first.feeds[0].items_pruned == 1
    assert store.get_item_state(make_item_id(thin["link"])) is None
    assert store.count_items() == 0
    assert session.calls_to(thin["link"]) == 1


def test_not_modified_feed_updates_tokens(store: NewsStore) -> None:
    store.seed_feeds([KY_FEED])
    store.update_feed_meta("ky-paper", '"v1"', None)
    session = FakeSession({KY_FEED["url"]: make_response(304, headers={"ETag": '"v2"'})})

    summary = _ingestor(store, session).run_cycle()

    _, headers = session.calls[0]
    assert headers["If-None-Match"] == '"v1"'
    feed = store.get_feed("ky-paper")
    assert feed.etag == '"v2"'
    assert feed.last_checked_at
    assert summary.status == "ok"
    assert store.feed_metrics(summary.run_id)[0]["status"] == "not_modified"
    assert store.count_items() == 0


def test_broken_feed_does_not_stop_the_run(store: NewsStore) -> None:
    store.seed_feeds([KY_FEED, WIRE_FEED])
    session = FakeSession(
        {
            KY_FEED["url"]: make_response(200, b"this is not a feed at all"),
            WIRE_FEED["url"]: make_response(200, make_rss([NATIONAL_STORY])),
        }
    )

    summary = _ingestor(store, session).run_cycle()

    assert summary.status == "ok"
    assert [outcome.status for outcome in summary.feeds] == ["error", "ok"]
    assert len(store.fetch_errors(feed_id="ky-paper")) == 1
    assert store.count_items() == 1
    assert store.get_feed("ky-paper").last_checked_at
    run = store.get_run(summary.run_id)
    assert run["status"] == "ok"
    assert run["finished_at"]


def test_http_errors_are_recorded_per_feed(store: NewsStore) -> None:
    store.seed_feeds([WIRE_FEED])
    session = FakeSession({WIRE_FEED["url"]: make_response(500, "upstream exploded")})

    summary = _ingestor(store, session).run_cycle(source="manual", force=True)

    errors = store.fetch_errors(feed_id="wire")
    assert len(errors) == 1
    assert errors[0]["error"].startswith("HTTP 500")
    assert errors[0]["run_id"] == summary.run_id
    metric = store.feed_metrics(summary.run_id)[0]
    assert metric["http_status"] == 500
    assert metric["source"] == "manual"


def test_irrelevant_item_leaves_target_region(store: NewsStore) -> None:
    store.seed_feeds([KY_FEED, WIRE_FEED])
    payload = make_rss([NATIONAL_STORY])
    session = FakeSession(
        {
            KY_FEED["url"]: make_response(200, payload),
            WIRE_FEED["url"]: make_response(200, payload),
        }
    )
    ingestor = _ingestor(store, session)

    ingestor.run_cycle()
    ingestor.run_cycle(force=True)

    item_id = make_item_id(NATIONAL_STORY["link"])
    state = store.get_item_state(item_id)
    assert state.region_scope == "national"
    assert store.feed_item_ids("ky-paper") == []
    assert store.feed_item_ids("wire") == [item_id]
    assert store.item_locations(item_id) == []


def test_scraped_listing_is_enriched_from_article_page(store: NewsStore) -> None:
    store.seed_feeds([SCRAPE_FEED])
    article_url = "https://hazard.example.com/news/clinic"
    listing = '<html><body><article><a href="/news/clinic">Pikeville hospital expands clinic</a></article></body></html>'
    article = (
        '<html><head><meta property="og:image" content="https://hazard.example.com/img/clinic.jpg"></head>'
        f"<body><article><p>The hospital in Pikeville, Kentucky opened a new wing. {FILLER}</p></article></body></html>"
    )
    session = FakeSession(
        {
            SCRAPE_FEED["url"]: make_response(200, listing, HTML),
            article_url: make_response(200, article, HTML),
        }
    )

    _ingestor(store, session).run_cycle()

    item_id = make_item_id(article_url)
    state = store.get_item_state(item_id)
    assert state.article_fetch_status == "ok"
    assert state.image_url == "https://hazard.example.com/img/clinic.jpg"
    assert state.content.startswith("The hospital in Pikeville")
    assert store.item_locations(item_id) == [("KY", ""), ("KY", "Pike")]


def test_truncated_feed_fails_without_touching_other_feeds(store: NewsStore) -> None:
    store.seed_feeds([KY_FEED, WIRE_FEED])
    payload = make_rss([LOCAL_STORY])
    truncated = payload[: payload.index(b"</item>") + len(b"</item>")]
    session = FakeSession(
        {
            KY_FEED["url"]: make_response(200, truncated),
            WIRE_FEED["url"]: make_response(200, make_rss([NATIONAL_STORY])),
        }
    )

    summary = _ingestor(store, session).run_cycle()

    assert {outcome.feed_id: outcome.status for outcome in summary.feeds} == {"ky-paper": "error", "wire": "ok"}
    errors = store.fetch_errors(feed_id="ky-paper")
    assert len(errors) == 1
    assert "Malformed feed XML" in errors[0]["error"]
    assert store.feed_item_ids("ky-paper") == []
    assert store.feed_item_ids("wire") == [make_item_id(NATIONAL_STORY["link"])]


def test_unparseable_image_url_does_not_sink_the_feed(store: NewsStore) -> None:
    store.seed_feeds([WIRE_FEED])
    storm = {
        "title": "Storm knocks out power across the region",
        "link": "https://wire.example.com/news/storm",
        "description": "Utility crews worked overnight. " + FILLER,
        "image": "http://[oops/img.jpg",
    }
    session = FakeSession({WIRE_FEED["url"]: make_response(200, make_rss([storm, NATIONAL_STORY]))})

    summary = _ingestor(store, session).run_cycle()

    outcome = summary.feeds[0]
    assert outcome.status == "ok"
    assert outcome.items_failed == 0
    assert store.get_item_state(make_item_id(storm["link"])).image_url is None
    assert store.get_item_state(make_item_id(NATIONAL_STORY["link"])) is not None


def test_unexpected_item_error_is_contained_to_that_item(
    store: NewsStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    store.seed_feeds([WIRE_FEED])
    cursed = dict(NATIONAL_STORY, title="Cursed headline", link="https://wire.example.com/news/cursed")
    real_compute_tags = news_ingestion.compute_tags

    def compute_tags(title, *args):
        if title == cursed["title"]:
            raise ValueError("tagging blew up")
        return real_compute_tags(title, *args)

    monkeypatch.setattr(news_ingestion, "compute_tags", compute_tags)
    session = FakeSession({WIRE_FEED["url"]: make_response(200, make_rss([cursed, NATIONAL_STORY]))})

    summary = _ingestor(store, session).run_cycle()

    outcome = summary.feeds[0]
    assert outcome.status == "ok"
    assert outcome.items_failed == 1
    assert outcome.items_upserted == 1
    assert store.get_item_state(make_item_id(NATIONAL_STORY["link"])) is not None


def test_item_interrupted_by_store_error_is_finished_next_run(
    store: NewsStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    store.seed_feeds([KY_FEED])
    story = {key: value for key, value in NATIONAL_STORY.items() if key != "image"}
    session = FakeSession(
        {
            KY_FEED["url"]: make_response(200, make_rss([story])),
            story["link"]: make_response(200, f"<html><body><article><p>{FILLER}</p></article></body></html>", HTML),
        }
    )
    real_apply = store.apply_enrichment
    failures = [PersistenceError("database is locked")]

    def flaky_apply(item_id, fetch):
        if failures:
            raise failures.pop()
        return real_apply(item_id, fetch)

    monkeypatch.setattr(store, "apply_enrichment", flaky_apply)
    ingestor = _ingestor(store, session)

    first = ingestor.run_cycle()
    second = ingestor.run_cycle()

    assert first.feeds[0].items_failed == 1
    assert second.feeds[0].items_excluded == 1
    assert store.feed_item_ids("ky-paper") == []
    assert store.get_item_state(make_item_id(story["link"])) is None
    assert session.calls_to(story["link"]) == 2


def test_repeated_wire_story_is_flagged_as_duplicate(store: NewsStore) -> None:
    store.seed_feeds([WIRE_FEED])
    reprint = dict(NATIONAL_STORY, link="https://wire.example.com/reprints/spending")
    session = FakeSession({WIRE_FEED["url"]: make_response(200, make_rss([NATIONAL_STORY, reprint]))})

    _ingestor(store, session).run_cycle()

    original_id = make_item_id(NATIONAL_STORY["link"])
    flags = {row["id"]: (row["is_duplicate"], row["duplicate_of"]) for row in store.list_items(feed_id="wire")}
    assert flags == {original_id: (0, None), make_item_id(reprint["link"]): (1, original_id)}


def test_every_carrying_target_feed_contributes_its_county(store: NewsStore) -> None:
    store.seed_feeds([KY_FEED, KY_OTHER_FEED])
    payload = make_rss([LOCAL_STORY])
    session = FakeSession(
        {
            KY_FEED["url"]: make_response(200, payload),
            KY_OTHER_FEED["url"]: make_response(200, payload),
        }
    )

    _ingestor(store, session).run_cycle()

    item_id = make_item_id(LOCAL_STORY["link"])
    assert store.item_locations(item_id) == [("KY", ""), ("KY", "Fayette"), ("KY", "Jefferson"), ("KY", "Pike")]
