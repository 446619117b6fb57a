"""
End-to-end ingestion tests: feeds → extraction → classification → store.

Everything runs against an in-memory SQLite store and an httpx.MockTransport;
the primary feed parse reads from a per-test {url: xml} mapping instead of
the network.

Run: pytest test_pipeline.py -v
"""

import asyncio
import re

import feedparser
import httpx
import pytest

from conftest import Router, make_article, make_client, make_settings
from newswire.news.dedup import Deduplicator
from newswire.pipeline import IngestionCoordinator
from newswire.schemas import Source
from newswire.tools.feed_reader import FeedReader

DAILY_FEED = "https://daily.test/rss.xml"
POLLS_URL = "https://daily.test/politics/polls"
ZEBRA_URL = "https://daily.test/misc/zebra"

POLLS_BODY = (
    "The state election commission on Tuesday announced the schedule for assembly polls. "
    "Voting will be held in two phases and counting is set for the following week."
)

POLLS_PAGE = f"""
<html>
<head><title>Polls announced</title><meta property="og:title" content="Polls announced"></head>
<body>
  <nav>Home | States</nav>
  <article>
    <h1>Polls announced</h1>
    <p>{POLLS_BODY}</p>
    <img src="/uploads/polls.jpg" width="640" height="360" alt="Polling booth">
  </article>
</body>
</html>
"""


def _item(title="", link="", description="", extra=""):
    parts = [
        f"<title>{title}</title>" if title else "",
        f"<link>{link}</link>" if link else "",
        f"<description>{description}</description>",
        extra,
    ]
    return "<item>" + "".join(parts) + "</item>"


def _rss(*items):
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/">'
        "<channel><title>Test</title><link>https://daily.test</link>"
        + "".join(items)
        + "</channel></rss>"
    )


DAILY_RSS = _rss(
    _item(
        "Election commission announces assembly polls", POLLS_URL,
        "Voting will be held in two phases.",
        "<dc:creator>Ravi Kumar</dc:creator>",
    ),
    _item(
        "Zebra yawns 42", ZEBRA_URL,
        "Keepers were surprised.",
        '<enclosure url="https://cdn.daily.test/zebra.jpg" type="image/jpeg" length="100"/>',
    ),
    _item("Item without a link", "", "Dropped."),
)


def _source(source_id="daily", feeds=(DAILY_FEED,), **fields):
    return Source(
        id=source_id,
        name=fields.pop("name", source_id.title()),
        url=fields.pop("url", "https://daily.test"),
        feed_urls=list(feeds),
        language=fields.pop("language", "en"),
        **fields,
    )


def _coordinator(db, settings, router, feeds, reader_cls=FeedReader):
    client = make_client(settings, router)
    reader = reader_cls(client, settings, primary_parse=lambda url: feedparser.parse(feeds[url]))
    return IngestionCoordinator(db, settings, client=client, feed_reader=reader)


def test_full_run_inserts_articles(db, settings):
    db.upsert_source(_source())
    router = Router({POLLS_URL: POLLS_PAGE})
    coordinator = _coordinator(db, settings, router, {DAILY_FEED: DAILY_RSS})

    stats = asyncio.run(coordinator.run())

    assert stats.error is None
    assert (stats.sources_total, stats.sources_succeeded, stats.sources_failed) == (1, 1, 0)
    assert stats.totals.items_seen == 3
    assert stats.totals.items_scraped == 2
    assert stats.totals.items_inserted == 2

    polls = db.get_article_by_slug("election-commission-announces-assembly-polls")
    assert polls is not None
    assert polls.status == "scraped"
    assert polls.author == "Ravi Kumar"
    assert polls.language == "en"
    assert polls.canonical_url == POLLS_URL
    assert polls.thumbnail == "https://daily.test/uploads/polls.jpg"
    assert polls.images[0].alt == "Polling booth"
    assert "schedule for assembly polls" in polls.content
    assert "Home | States" not in polls.content
    assert polls.word_count == len(polls.content.split())
    assert polls.reading_time == 1
    assert polls.category_detected == "politics"
    # Politics is not persisted and far below the promotion threshold
    assert polls.categories == ["general"]
    assert "election" in polls.tags
    assert polls.open_graph.title == "Polls announced"
    assert polls.source.source_id == "daily"

    zebra = db.get_article_by_slug("zebra-yawns-42")
    assert zebra.thumbnail == "https://cdn.daily.test/zebra.jpg"
    assert zebra.images[0].source == "rss"
    assert zebra.content == "Keepers were surprised."

    assert db.get_source("daily").last_scraped is not None


def test_second_run_is_idempotent(db, settings):
    db.upsert_source(_source())
    router = Router({POLLS_URL: POLLS_PAGE})
    coordinator = _coordinator(db, settings, router, {DAILY_FEED: DAILY_RSS})

    asyncio.run(coordinator.run())
    requests_after_first = len(router.requests)
    stats = asyncio.run(coordinator.run())

    assert stats.totals.items_seen == 3
    assert stats.totals.items_scraped == 0
    assert stats.totals.items_inserted == 0
    assert db.count_articles() == 2
    # Hash hits are skipped before any page fetch
    assert len(router.requests) == requests_after_first


def test_fast_mode_skips_page_io(db, settings):
    router = Router({POLLS_URL: POLLS_PAGE})
    coordinator = _coordinator(db, settings, router, {DAILY_FEED: DAILY_RSS})

    stats = asyncio.run(coordinator.run(sources=[_source()], mode="fast"))

    assert stats.totals.items_inserted == 2
    assert router.requests == []
    polls = db.get_article_by_slug("election-commission-announces-assembly-polls")
    assert polls.content == "Voting will be held in two phases."
    assert polls.images == []
    assert polls.thumbnail is None
    zebra = db.get_article_by_slug("zebra-yawns-42")
    assert zebra.thumbnail == "https://cdn.daily.test/zebra.jpg"
    assert zebra.author == "Daily"


def test_failing_source_does_not_affect_its_batch(db):
    settings = make_settings(source_batch_size=2)

    class CrashingReader(FeedReader):
        async def read_feed(self, url):
            if "three" in url:
                raise RuntimeError("reader crashed")
            return await super().read_feed(url)

    names = ["one", "two", "three", "four", "five"]
    feeds = {
        f"https://{n}.test/rss.xml": _rss(_item(f"Story from source {n}", f"https://{n}.test/story", "Body."))
        for n in names
    }
    sources = [_source(n, feeds=[f"https://{n}.test/rss.xml"], url=f"https://{n}.test") for n in names]

    coordinator = _coordinator(db, settings, Router(), feeds, reader_cls=CrashingReader)

    stats = asyncio.run(coordinator.run(sources=sources, mode="fast"))

    assert stats.sources_total == 5
    assert stats.sources_succeeded == 4
    assert stats.sources_failed == 1
    assert stats.totals.items_inserted == 4
    failed = [s for s in stats.per_source if s.error]
    assert [s.source_id for s in failed] == ["three"]
    assert failed[0].error == "reader crashed"
    assert stats.error is None


def test_fallback_parse_inside_a_run(db, settings):
    router = Router({DAILY_FEED: DAILY_RSS})
    # Nothing in the primary table: the primary parse raises and the raw fetch takes over
    coordinator = _coordinator(db, settings, router, {})

    stats = asyncio.run(coordinator.run(sources=[_source()], mode="fast"))

    source_stats = stats.per_source[0]
    assert source_stats.feeds_fetched == 1
    assert source_stats.feeds_failed == 0
    assert stats.totals.items_inserted == 2
    assert router.urls == [DAILY_FEED]


def test_source_with_every_feed_failing_is_failed(db):
    settings = make_settings(fetch_max_attempts=1)
    db.upsert_source(_source(feeds=["https://daily.test/a.xml", "https://daily.test/b.xml"]))
    coordinator = _coordinator(db, settings, Router(), {})

    stats = asyncio.run(coordinator.run())

    assert stats.sources_failed == 1
    source_stats = stats.per_source[0]
    assert source_stats.feeds_total == 2
    assert source_stats.feeds_failed == 2
    assert source_stats.error == "All 2 feeds failed"
    assert db.get_source("daily").last_scraped is None


def test_partial_feed_failure_still_succeeds(db, settings):
    coordinator = _coordinator(db, settings, Router(), {DAILY_FEED: DAILY_RSS})
    source = _source(feeds=["https://daily.test/missing.xml", DAILY_FEED])

    stats = asyncio.run(coordinator.run(sources=[source], mode="fast"))

    source_stats = stats.per_source[0]
    assert (source_stats.feeds_total, source_stats.feeds_fetched, source_stats.feeds_failed) == (2, 1, 1)
    assert source_stats.error is None
    assert stats.totals.items_inserted == 2


def test_source_enumeration_failure_aborts_with_stats(db, settings, monkeypatch):
    coordinator = _coordinator(db, settings, Router(), {})

    def broken():
        raise RuntimeError("store offline")

    monkeypatch.setattr(db, "list_active_sources", broken)

    stats = asyncio.run(coordinator.run())

    assert "Could not list active sources" in stats.error
    assert stats.sources_total == 0
    status = coordinator.status()
    assert status.error == stats.error
    assert status.finished_at is not None
    runs = db.get_ingest_runs()
    assert runs[0]["status"] == "failed"
    assert "store offline" in runs[0]["errors"][0]


def test_status_lifecycle(db, settings):
    db.upsert_source(_source())
    coordinator = _coordinator(db, settings, Router({POLLS_URL: POLLS_PAGE}), {DAILY_FEED: DAILY_RSS})

    before = coordinator.status()
    assert before.started_at is None and before.articles_inserted is None

    asyncio.run(coordinator.run(mode="fast"))

    after = coordinator.status()
    assert after.started_at is not None
    assert after.finished_at >= after.started_at
    assert after.active_sources == 1
    assert after.articles_inserted == 2
    assert after.error is None
    assert not coordinator.is_running

    runs = db.get_ingest_runs()
    assert runs[0]["status"] == "completed"
    assert runs[0]["articles_inserted"] == 2
    assert runs[0]["items_seen"] == 3


def test_stats_serialize_camel_case(db, settings):
    coordinator = _coordinator(db, settings, Router(), {DAILY_FEED: DAILY_RSS})

    stats = asyncio.run(coordinator.run(sources=[_source()], mode="fast"))
    payload = stats.model_dump(by_alias=True)

    assert payload["sourcesTotal"] == 1
    assert payload["totals"]["itemsInserted"] == 2
    assert payload["perSource"][0]["feedsFetched"] == 1
    status = coordinator.status().model_dump(by_alias=True)
    assert set(status) == {"startedAt", "finishedAt", "activeSources", "articlesInserted", "error"}


def test_slow_item_times_out_and_the_rest_continue(db):
    settings = make_settings(article_timeout=0.3)

    async def slow_page(request):
        await asyncio.sleep(2)
        return httpx.Response(200, text=POLLS_PAGE)

    router = Router({POLLS_URL: slow_page})
    coordinator = _coordinator(db, settings, router, {DAILY_FEED: DAILY_RSS})

    stats = asyncio.run(coordinator.run(sources=[_source()]))

    assert stats.totals.items_inserted == 1
    assert stats.sources_succeeded == 1
    assert db.get_article_by_slug("election-commission-announces-assembly-polls") is None
    assert db.get_article_by_slug("zebra-yawns-42") is not None


def test_api_source(db, settings):
    api_url = "https://api.news.test/v2/top-headlines"
    payload = {
        "status": "ok",
        "articles": [{
            "title": "Markets rally on budget day",
            "url": "https://wire.test/markets",
            "description": "Stocks rose sharply.",
            "content": "Stocks rose sharply on Friday after the budget.",
            "urlToImage": "https://wire.test/markets.jpg",
            "publishedAt": "2024-05-06T08:00:00Z",
        }],
    }
    router = Router({api_url: payload})
    coordinator = _coordinator(db, settings, router, {})
    source = _source("wire", feeds=(), type="api", api_url=api_url, name="Wire")

    stats = asyncio.run(coordinator.run(sources=[source]))

    assert stats.per_source[0].feeds_total == 1
    assert stats.totals.items_inserted == 1
    # The API record supplies the body; only Open-Graph is read from the page
    assert router.urls == [api_url, "https://wire.test/markets"]
    article = db.get_article_by_slug("markets-rally-on-budget-day")
    assert article.thumbnail == "https://wire.test/markets.jpg"
    assert article.images[0].source == "api"
    assert article.content == "Stocks rose sharply on Friday after the budget."
    assert article.author == "Wire"


def test_feed_allow_list(db):
    settings = make_settings(only_feed_urls="https://daily.test/one.xml")
    feeds = {
        "https://daily.test/one.xml": _rss(_item("First feed story", "https://daily.test/1", "One.")),
        "https://daily.test/two.xml": _rss(_item("Second feed story", "https://daily.test/2", "Two.")),
    }
    coordinator = _coordinator(db, settings, Router(), feeds)
    source = _source(feeds=list(feeds))

    stats = asyncio.run(coordinator.run(sources=[source], mode="fast"))

    assert stats.per_source[0].feeds_total == 1
    assert [a.title for a in db.list_articles()] == ["First feed story"]


def test_language_detected_when_source_has_none(db, settings):
    feeds = {DAILY_FEED: _rss(_item(
        "The council approved the new metro line for the city",
        "https://daily.test/metro",
        "Work on the first stretch will begin next month and should finish within three years.",
    ))}
    coordinator = _coordinator(db, settings, Router(), feeds)

    asyncio.run(coordinator.run(sources=[_source(language="")], mode="fast"))

    article = db.list_articles()[0]
    assert article.language == "en"


def test_same_title_from_two_sources_gets_distinct_slugs(db, settings):
    feeds = {
        "https://a.test/rss.xml": _rss(_item("Budget session begins", "https://a.test/budget", "From A.")),
        "https://b.test/rss.xml": _rss(_item("Budget session begins", "https://b.test/budget", "From B.")),
    }
    coordinator = _coordinator(db, settings, Router(), feeds)
    sources = [_source("a", feeds=["https://a.test/rss.xml"]), _source("b", feeds=["https://b.test/rss.xml"])]

    stats = asyncio.run(coordinator.run(sources=sources, mode="fast"))

    assert stats.totals.items_inserted == 2
    slugs = sorted(a.slug for a in db.list_articles())
    assert slugs[0] == "budget-session-begins"
    assert re.fullmatch(r"budget-session-begins-\d+-1", slugs[1])


def test_same_link_in_two_sources_is_stored_once(db, settings):
    feeds = {
        "https://a.test/rss.xml": _rss(_item("Bridge opens", "https://wire.test/bridge", "Version A.")),
        "https://b.test/rss.xml": _rss(_item("Bridge opens to traffic", "https://wire.test/bridge", "Version B.")),
    }
    coordinator = _coordinator(db, settings, Router(), feeds)
    sources = [_source("a", feeds=["https://a.test/rss.xml"]), _source("b", feeds=["https://b.test/rss.xml"])]

    stats = asyncio.run(coordinator.run(sources=sources, mode="fast"))

    assert stats.totals.items_inserted == 1
    assert db.count_articles() == 1


def test_start_refuses_overlapping_runs(db, settings):
    coordinator = _coordinator(db, settings, Router(), {DAILY_FEED: DAILY_RSS})
    db.upsert_source(_source())

    async def go():
        task = coordinator.start(mode="fast")
        with pytest.raises(RuntimeError):
            coordinator.start(mode="fast")
        return await task

    stats = asyncio.run(go())

    assert stats.totals.items_inserted == 2
    assert not coordinator.is_running


def test_enrich_fills_thin_articles(db, settings):
    long_body = " ".join(f"sentence{i} about the metro extension" for i in range(40))
    page = f"""
    <html><head><meta property="og:description" content="Metro extension"></head>
    <body><article><p>{long_body}</p>
    <img src="/uploads/metro.jpg" width="800" height="450" alt="Metro"></article></body></html>
    """
    db.insert_article(make_article(1))
    db.insert_article(make_article(2))
    db.insert_article(make_article(3, content=" ".join(["word"] * 120)))
    router = Router({"https://seed.test/articles/1": page})
    coordinator = _coordinator(db, settings, router, {})

    stats = asyncio.run(coordinator.enrich(limit=10, min_words=80))

    assert stats.processed == 2
    assert stats.improved == 1
    assert stats.failed == 0
    article = db.get_article_by_slug("seed-article-1")
    assert article.status == "processed"
    assert article.word_count >= 200
    assert article.thumbnail == "https://seed.test/uploads/metro.jpg"
    assert article.open_graph.description == "Metro extension"
    assert db.get_article_by_slug("seed-article-2").status == "scraped"
    assert "https://seed.test/articles/3" not in router.urls


def test_inactive_sources_are_skipped(db, settings):
    router = Router({POLLS_URL: POLLS_PAGE})
    coordinator = _coordinator(db, settings, router, {DAILY_FEED: DAILY_RSS})

    stats = asyncio.run(coordinator.run(sources=[_source(active=False)], mode="fast"))

    assert stats.error is None
    assert stats.sources_total == 0
    assert stats.per_source == []
    assert stats.totals.items_inserted == 0
    assert router.requests == []
    assert db.count_articles() == 0


def test_body_keywords_drive_classification(db, settings):
    page = (
        "<html><body><article><p>The cricket tournament went down to the last over "
        "as the home player won the league match.</p></article></body></html>"
    )
    feeds = {DAILY_FEED: _rss(_item("Zebra yawns 42", ZEBRA_URL, "Keepers were surprised."))}
    coordinator = _coordinator(db, settings, Router({ZEBRA_URL: page}), feeds)

    stats = asyncio.run(coordinator.run(sources=[_source()], mode="full"))

    assert stats.totals.items_inserted == 1
    zebra = db.get_article_by_slug("zebra-yawns-42")
    assert "cricket tournament" in zebra.content
    assert zebra.category_detected == "sports"


def test_duplicate_checks_go_through_the_deduplicator(db, settings):
    class SeenZebras(Deduplicator):
        def __init__(self, db):
            super().__init__(db)
            self.checked = []

        def is_duplicate(self, item, source_id):
            self.checked.append((item.title, source_id))
            return item.title.startswith("Zebra")

    client = make_client(settings, Router({POLLS_URL: POLLS_PAGE}))
    reader = FeedReader(client, settings, primary_parse=lambda url: feedparser.parse(DAILY_RSS))
    dedup = SeenZebras(db)
    coordinator = IngestionCoordinator(db, settings, client=client, feed_reader=reader, dedup=dedup)

    stats = asyncio.run(coordinator.run(sources=[_source()], mode="fast"))

    assert ("Zebra yawns 42", "daily") in dedup.checked
    assert stats.totals.items_scraped == 1
    assert stats.totals.items_inserted == 1
    assert db.get_article_by_slug("zebra-yawns-42") is None
    assert db.get_article_by_slug("election-commission-announces-assembly-polls") is not None


def test_unknown_mode_is_reported_not_raised(db, settings):
    router = Router()
    coordinator = _coordinator(db, settings, router, {DAILY_FEED: DAILY_RSS})

    stats = asyncio.run(coordinator.run(sources=[_source()], mode="turbo"))

    assert "turbo" in stats.error
    assert stats.sources_total == 0
    assert router.requests == []
    status = coordinator.status()
    assert status.error == stats.error
    assert status.finished_at is not None
    assert not coordinator.is_running


def test_aclose_shuts_down_the_reader_pool(db, settings):
    class ClosingReader(FeedReader):
        closed = False

        def close(self):
            ClosingReader.closed = True
            super().close()

    coordinator = _coordinator(db, settings, Router(), {}, reader_cls=ClosingReader)

    asyncio.run(coordinator.aclose())

    assert ClosingReader.closed
