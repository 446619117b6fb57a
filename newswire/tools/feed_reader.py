"""
Feed reading — RSS/Atom documents and NewsAPI-style JSON endpoints.

Feed documents are read in two steps:
  1. Primary: feedparser fetches and parses the URL itself. feedparser is
     blocking, so it runs on the reader's own thread pool, awaited under
     the request timeout, with the same timeout applied to its sockets.
     A timed-out thread cannot be cancelled; it finishes on its own and its
     result is discarded. close() shuts the pool down without joining it,
     so a hung host never delays event loop shutdown.
  2. Fallback (primary raised, or yielded zero entries): fetch the raw body
     through FetchClient with feed Accept headers and parse the text.

Either way entries are normalized into CandidateItem.
"""

import asyncio
import functools
import html
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from urllib.request import HTTPHandler, HTTPSHandler

import feedparser

from ..config import FEED_ACCEPT, USER_AGENTS, get_settings
from ..schemas import CandidateItem, FeedMetrics, Source
from .fetch_client import FetchClient, FetchError

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")


@dataclass
class FeedResult:
    """Outcome of reading one feed URL (or one API endpoint)."""
    url: str
    items: List[CandidateItem] = field(default_factory=list)
    fetched: bool = False
    via: Optional[str] = None  # primary | fallback | api
    error: Optional[str] = None

    @property
    def metrics(self) -> FeedMetrics:
        return FeedMetrics(
            url=self.url,
            attempted=True,
            succeeded=self.fetched,
            item_count=len(self.items),
            via=self.via,
            error=self.error,
        )


class _TimeoutHTTPHandler(HTTPHandler):
    def __init__(self, timeout: float):
        super().__init__()
        self.timeout = timeout

    def http_open(self, req):
        req.timeout = self.timeout
        return super().http_open(req)


class _TimeoutHTTPSHandler(HTTPSHandler):
    def __init__(self, timeout: float):
        super().__init__()
        self.timeout = timeout

    def https_open(self, req):
        req.timeout = self.timeout
        return super().https_open(req)


def timeout_handlers(timeout: float) -> list:
    """urllib handlers that put a socket timeout on feedparser's own fetch."""
    return [_TimeoutHTTPHandler(timeout), _TimeoutHTTPSHandler(timeout)]


def _parse_remote(url: str, timeout: Optional[float] = None):
    """Let feedparser fetch and parse `url` (blocking)."""
    handlers = timeout_handlers(timeout) if timeout else []
    return feedparser.parse(
        url,
        agent=USER_AGENTS[0],
        request_headers={"Accept": FEED_ACCEPT},
        handlers=handlers,
    )


def strip_html(text: str) -> str:
    """Plain text from an HTML snippet: tags dropped, entities decoded, whitespace collapsed."""
    if not text:
        return ""
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text)
    return _WS_RE.sub(" ", text).strip()


def _entry_datetime(entry) -> datetime:
    for key in ("published_parsed", "updated_parsed"):
        parsed = entry.get(key)
        if parsed:
            try:
                return datetime(*parsed[:6], tzinfo=timezone.utc)
            except (TypeError, ValueError):
                continue
    return datetime.now(timezone.utc)


def _parse_iso(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _entry_image(entry) -> Optional[str]:
    """First image from enclosure, media:content or media:thumbnail."""
    for enclosure in entry.get("enclosures", []) or []:
        href = enclosure.get("href") or enclosure.get("url")
        kind = enclosure.get("type", "")
        if href and (not kind or kind.startswith("image")):
            return href
    for media in entry.get("media_content", []) or []:
        if media.get("url") and media.get("medium", "image") == "image":
            return media["url"]
    for thumb in entry.get("media_thumbnail", []) or []:
        if thumb.get("url"):
            return thumb["url"]
    image = entry.get("image")
    if isinstance(image, dict) and image.get("href"):
        return image["href"]
    return None


def normalize_entry(entry) -> CandidateItem:
    """feedparser entry → CandidateItem."""
    body_html = None
    content = entry.get("content")
    if content:
        body_html = content[0].get("value") or None

    summary = entry.get("summary", "") or entry.get("description", "") or body_html or ""

    return CandidateItem(
        title=html.unescape(entry.get("title", "") or "").strip(),
        link=(entry.get("link", "") or "").strip(),
        summary=strip_html(summary),
        body_html=body_html,
        published_at=_entry_datetime(entry),
        categories=[t.get("term") for t in entry.get("tags", []) or [] if t.get("term")],
        author=entry.get("author") or None,
        feed_image=_entry_image(entry),
    )


def normalize_api_record(record: Dict[str, Any]) -> CandidateItem:
    """NewsAPI-style article record → CandidateItem."""
    return CandidateItem(
        title=(record.get("title") or "").strip(),
        link=(record.get("url") or record.get("link") or "").strip(),
        summary=strip_html(record.get("description") or ""),
        body_html=record.get("content") or None,
        published_at=_parse_iso(record.get("publishedAt")),
        author=record.get("author") or None,
        api_image=record.get("urlToImage") or None,
    )


class FeedReader:
    """Reads one feed URL or API endpoint into normalized items."""

    def __init__(
        self,
        client: FetchClient,
        settings=None,
        primary_parse: Optional[Callable[[str], Any]] = None,
    ):
        self.client = client
        self.settings = settings or get_settings()
        self._primary_parse = primary_parse or functools.partial(
            _parse_remote, timeout=self.settings.request_timeout,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, self.settings.source_batch_size),
            thread_name_prefix="feedparse",
        )

    def close(self) -> None:
        """Drop queued parses and stop the pool without waiting on hung ones."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def _parse_url(self, url: str) -> List[CandidateItem]:
        loop = asyncio.get_running_loop()
        feed = await asyncio.wait_for(
            loop.run_in_executor(self._executor, self._primary_parse, url),
            timeout=self.settings.request_timeout,
        )
        status = feed.get("status")
        if status and status >= self.settings.fail_status:
            raise FetchError(url, f"HTTP {status}", status=status, transient=False)
        if not feed.entries and not feed.get("version"):
            raise ValueError(f"Unparseable feed: {feed.get('bozo_exception')}")
        return [normalize_entry(e) for e in feed.entries]

    async def _parse_text(self, url: str) -> List[CandidateItem]:
        text = await self.client.fetch_text(url, accept=FEED_ACCEPT)
        feed = feedparser.parse(text)
        if not feed.entries and not feed.get("version"):
            raise ValueError(f"Unparseable feed: {feed.get('bozo_exception')}")
        return [normalize_entry(e) for e in feed.entries]

    async def read_feed(self, url: str) -> FeedResult:
        """Primary parse, then raw-fetch fallback. Never raises."""
        result = FeedResult(url=url)

        try:
            items = await self._parse_url(url)
            result.fetched, result.via, result.items = True, "primary", items
            if items:
                return result
            logger.debug(f"Primary parse of {url} returned no items, trying fallback")
        except asyncio.TimeoutError:
            logger.warning(f"[TIMEOUT] primary parse {url}, trying fallback")
        except Exception as e:
            logger.warning(f"Primary parse failed for {url}: {e}. Trying fallback...")

        try:
            items = await self._parse_text(url)
            result.fetched, result.via, result.items, result.error = True, "fallback", items, None
        except Exception as e:
            if not result.fetched:
                result.error = str(e)
                logger.error(f"[FAIL] feed {url}: {e}")
            else:
                logger.debug(f"Fallback for empty feed {url} failed: {e}")

        return result

    async def read_api(self, source: Source) -> FeedResult:
        """GET the source's API endpoint with the configured key. Never raises."""
        url = source.api_url or ""
        result = FeedResult(url=url, via="api")
        if not url:
            result.error = "API source has no api_url"
            return result
        if not self.settings.news_api_key:
            logger.warning(f"NEWS_API_KEY not set; calling {source.name} without a key")

        try:
            data = await self.client.fetch_json(url, params={"apiKey": self.settings.news_api_key})
        except FetchError as e:
            result.error = str(e)
            logger.error(f"[FAIL] API {source.name} ({url}): {e}")
            return result

        records = data.get("articles", []) if isinstance(data, dict) else []
        result.fetched = True
        result.items = [normalize_api_record(r) for r in records if isinstance(r, dict)]
        logger.info(f"API {source.name}: {len(result.items)} articles")
        return result
