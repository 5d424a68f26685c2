from pathlib import Path

from http_fakes import FakeSession, make_response
from kynews.services.article_enricher import ArticleEnricher
from kynews.services.feed_fetcher import FeedFetcher
from kynews.services.news_ingestion import NewsIngestor
from kynews.services.scheduler import LEASE_NAME, IngestScheduler
from kynews.services.settings import IngestSettings
from kynews.services.store import NewsStore

FEED = {"id": "ky-paper", "name": "KY Paper", "url": "https://ky.example.com/rss"}
EMPTY_RSS = b'<?xml version="1.0" encoding="UTF-8"?><rss version="2.0"><channel><title>Empty</title></channel></rss>'


def _scheduler(tmp_path: Path) -> IngestScheduler:
    store = NewsStore(tmp_path / "news.sqlite")
    store.seed_feeds([FEED])
    session = FakeSession({FEED["url"]: make_response(200, EMPTY_RSS)})
    ingestor = NewsIngestor(
        store,
        IngestSettings(),
        fetcher=FeedFetcher(session=session),
        enricher=ArticleEnricher(session=session),
    )
    return IngestScheduler(ingestor, lease_seconds=600, holder="worker-a")


def test_trigger_runs_a_cycle_and_releases_the_lease(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path)

    summary = scheduler.trigger("manual")

    assert summary is not None
    assert summary.status == "ok"
    assert summary.source == "manual"
    assert scheduler.store.acquire_lease(LEASE_NAME, "worker-b", 600)
    scheduler.store.close()


def test_trigger_is_skipped_while_another_process_holds_the_lease(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path)
    assert scheduler.store.acquire_lease(LEASE_NAME, "worker-b", 600)

    assert scheduler.trigger() is None
    assert scheduler.store.recent_runs() == []
    scheduler.store.close()


def test_trigger_is_skipped_while_a_cycle_runs_in_process(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path)
    scheduler._lock.acquire()
    try:
        assert scheduler.trigger() is None
    finally:
        scheduler._lock.release()
    scheduler.store.close()


def test_run_forever_stops_when_asked(tmp_path: Path) -> None:
    scheduler = _scheduler(tmp_path)
    scheduler.ingestor.run_cycle = lambda **kwargs: scheduler.stop()

    scheduler.run_forever(interval_minutes=1)

    assert scheduler._stop.is_set()
    scheduler.store.close()
