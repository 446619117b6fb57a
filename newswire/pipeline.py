"""
Ingestion coordinator — one run over every active source.

FLOW:
  sources (store) → batches of SOURCE_BATCH_SIZE, run concurrently
    → per source: each feed URL in declared order (+ the API endpoint for
      type=api sources) → FeedReader
      → per item, in feed order, under an ARTICLE_TIMEOUT deadline:
          hash check → ContentExtractor → Classifier → URL re-check
          → slug → insert
  → RunStats (per source + totals), RunStatus, ingest_runs row

ISOLATION:
  A failing item is logged and skipped; a failing feed is counted and the
  next feed is read; a failing source is recorded in its SourceStats and
  the rest of its batch carries on. Only a failure to list sources aborts
  the run, and even then a RunStats (with `error`) is returned.

CANCELLATION:
  The item deadline is asyncio.wait_for, so a timed-out item is cancelled
  together with whatever httpx request it is awaiting. The one exception
  is the primary feedparser fetch, which runs on the reader's own thread
  pool with a socket timeout; aclose() shuts that pool down without
  joining it, so a hung feed host cannot hold up loop shutdown.

PERSISTENCE:
  Store calls are short synchronous SQLAlchemy sessions made on the loop
  thread. They are not suspension points, so each check-then-insert is
  atomic with respect to the other source coroutines, at the price of
  blocking the loop while a session is open.
"""

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union
from uuid import uuid4

from langdetect import DetectorFactory, LangDetectException, detect
from sqlalchemy.exc import IntegrityError

from .config import get_settings
from .database import Database, get_database
from .news.classifier import Classifier
from .news.dedup import Deduplicator
from .news.extractor import ContentExtractor, extract_tags
from .run_status import RunStatusHolder
from .schemas import (
    ArticleStatus, CandidateItem, EnrichStats, IngestedArticle, IngestMode,
    RunStats, RunStatus, SeoMeta, Source, SourceRef, SourceStats, SourceType,
)
from .tools.feed_reader import FeedReader, FeedResult, strip_html
from .tools.fetch_client import FetchClient

DetectorFactory.seed = 0  # Deterministic language detection

logger = logging.getLogger(__name__)


class SourceEnumerationError(Exception):
    """Active sources could not be listed; the run cannot start."""


class InvalidModeError(ValueError):
    """The requested ingest mode is neither fast nor full."""


def _new_run_id() -> str:
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:6]}"


class IngestionCoordinator:
    """
    Drives ingestion runs and the enrichment pass.

    Collaborators are built from settings unless injected (tests inject a
    FetchClient on an httpx.MockTransport and an in-memory Database).
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        settings=None,
        *,
        client: Optional[FetchClient] = None,
        feed_reader: Optional[FeedReader] = None,
        extractor: Optional[ContentExtractor] = None,
        dedup: Optional[Deduplicator] = None,
        classifier: Optional[Classifier] = None,
        status_holder: Optional[RunStatusHolder] = None,
    ):
        self.settings = settings or get_settings()
        self.db = db or get_database()
        self.client = client or FetchClient(self.settings)
        self.reader = feed_reader or FeedReader(self.client, self.settings)
        self.extractor = extractor or ContentExtractor(self.client, self.settings)
        self.dedup = dedup or Deduplicator(self.db)
        self.classifier = classifier or Classifier(self.db, self.settings)
        self.status_holder = status_holder or RunStatusHolder()
        self._task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "IngestionCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()

    async def aclose(self) -> None:
        self.reader.close()
        await self.client.aclose()

    # ── Triggers & status ─────────────────────────────────────────────

    def status(self) -> RunStatus:
        """Snapshot of the latest run (all fields None before the first run)."""
        return self.status_holder.snapshot()

    @property
    def is_running(self) -> bool:
        return self.status_holder.is_running or (self._task is not None and not self._task.done())

    def start(self, mode: Optional[Union[str, IngestMode]] = None) -> asyncio.Task:
        """Kick off a run in the background. Refuses to overlap a running one."""
        if self.is_running:
            raise RuntimeError("An ingestion run is already in progress")
        self._task = asyncio.create_task(self.run(mode=mode))
        return self._task

    # ── Run ───────────────────────────────────────────────────────────

    def _enumerate_sources(self) -> List[Source]:
        try:
            return self.db.list_active_sources()
        except Exception as e:
            raise SourceEnumerationError(f"Could not list active sources: {e}") from e

    def _parse_mode(self, mode: Optional[Union[str, IngestMode]]) -> IngestMode:
        value = mode or self.settings.ingest_mode
        try:
            return IngestMode(value)
        except ValueError:
            raise InvalidModeError(f"Unknown ingest mode: {value!r}") from None

    async def run(
        self,
        sources: Optional[Sequence[Source]] = None,
        mode: Optional[Union[str, IngestMode]] = None,
    ) -> RunStats:
        """Ingest every active source, of those given or (by default) in the store, once."""
        run_id = _new_run_id()
        stats = RunStats()
        self.status_holder.start(run_id)

        try:
            mode = self._parse_mode(mode)
            self._record_run_start(run_id, mode)
            if sources is None:
                sources = self._enumerate_sources()
            sources = [s for s in sources if s.active]
            stats.sources_total = len(sources)
            self.status_holder.update(active_sources=len(sources))
            logger.info(f"Ingestion run {run_id} ({mode.value}): {len(sources)} active sources")

            await self._run_batches(sources, mode, stats)

        except (SourceEnumerationError, InvalidModeError) as e:
            stats.error = str(e)
            logger.error(f"[FAIL] Run {run_id}: {e}")
        except Exception as e:
            stats.error = f"{type(e).__name__}: {e}"
            logger.exception(f"[FAIL] Run {run_id} aborted: {e}")
        finally:
            self.status_holder.finish(articles_inserted=stats.totals.items_inserted, error=stats.error)
            self._record_run_end(run_id, stats)

        logger.info(
            f"Run {run_id} complete: {stats.sources_succeeded} ok, {stats.sources_failed} failed, "
            f"{stats.totals.items_seen} seen, {stats.totals.items_scraped} scraped, "
            f"{stats.totals.items_inserted} inserted"
        )
        return stats

    async def _run_batches(self, sources: List[Source], mode: IngestMode, stats: RunStats) -> None:
        batch_size = max(1, self.settings.source_batch_size)
        for start in range(0, len(sources), batch_size):
            batch = sources[start:start + batch_size]
            results = await asyncio.gather(
                *[self._run_source(source, mode) for source in batch],
                return_exceptions=True,
            )
            for source, result in zip(batch, results):
                if isinstance(result, BaseException):
                    error = str(result) or type(result).__name__
                    logger.error(f"[FAIL] {source.name}: {error}")
                    result = SourceStats(source_id=source.id, name=source.name, error=error)
                stats.add_source(result)
            self.status_holder.update(articles_inserted=stats.totals.items_inserted)

    def _feed_urls(self, source: Source) -> List[str]:
        allow = self.settings.feed_allow_list
        urls = [u for u in source.feed_urls if u]
        if allow:
            skipped = [u for u in urls if u not in allow]
            if skipped:
                logger.debug(f"{source.name}: {len(skipped)} feed URLs not in allow-list")
            urls = [u for u in urls if u in allow]
        return urls

    async def _run_source(self, source: Source, mode: IngestMode) -> SourceStats:
        """Every feed (and API endpoint) of one source. Unexpected errors propagate."""
        stats = SourceStats(source_id=source.id, name=source.name)
        logger.info(f"Scraping source: {source.name}")

        for url in self._feed_urls(source):
            stats.feeds_total += 1
            result = await self.reader.read_feed(url)
            await self._consume(result, source, mode, stats, from_api=False)

        if source.type == SourceType.API.value and source.api_url:
            stats.feeds_total += 1
            result = await self.reader.read_api(source)
            await self._consume(result, source, mode, stats, from_api=True)

        if stats.feeds_total and not stats.feeds_fetched:
            stats.error = f"All {stats.feeds_total} feeds failed"
            logger.warning(f"[FAIL] {source.name}: {stats.error}")
            return stats

        self.db.mark_source_scraped(source.id)
        logger.info(
            f"[OK] {source.name}: {stats.items_inserted} inserted, {stats.items_scraped} scraped "
            f"(feeds ok: {stats.feeds_fetched}, failed: {stats.feeds_failed}, items seen: {stats.items_seen})"
        )
        return stats

    async def _consume(
        self,
        result: FeedResult,
        source: Source,
        mode: IngestMode,
        stats: SourceStats,
        from_api: bool,
    ) -> None:
        stats.record_feed(result.metrics)
        for item in result.items:
            await self._run_item(item, source, mode, stats, from_api)

    # ── Items ─────────────────────────────────────────────────────────

    async def _run_item(
        self,
        item: CandidateItem,
        source: Source,
        mode: IngestMode,
        stats: SourceStats,
        from_api: bool,
    ) -> None:
        try:
            await asyncio.wait_for(
                self._process_item(item, source, mode, stats, from_api),
                timeout=self.settings.article_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[TIMEOUT] {source.name}: {item.link} exceeded {self.settings.article_timeout}s")
        except Exception as e:
            logger.warning(f"[FAIL] {source.name}: item {item.link or item.title!r}: {e}")

    def _language_for(self, source: Source, item: CandidateItem) -> str:
        if source.language:
            return source.language
        text = f"{item.title} {item.summary}".strip()
        if not text:
            return "en"
        try:
            return detect(text[:500])
        except LangDetectException:
            return "en"

    async def _process_item(
        self,
        item: CandidateItem,
        source: Source,
        mode: IngestMode,
        stats: SourceStats,
        from_api: bool,
    ) -> None:
        if not item.title or not item.link:
            logger.warning(f"Skipping item without title/link from {source.name}")
            return

        item_hash = self.dedup.content_hash(item.title, item.summary, source.id)
        if self.dedup.is_duplicate(item, source.id):
            logger.debug(f"[DUP] {item.link} (hash)")
            return

        fast = mode == IngestMode.FAST
        extraction = await self.extractor.extract(
            item.link,
            fast=fast,
            fetch_page=not from_api,
            feed_image=item.feed_image,
            api_image=item.api_image,
            alt=item.title,
        )
        stats.items_scraped += 1

        if fast:
            content = item.summary[:self.settings.fast_content_chars]
        else:
            content = extraction.body or strip_html(item.body_html or "") or item.summary
            content = content[:self.settings.content_max_chars]

        language = self._language_for(source, item)
        classification = await self.classifier.classify(
            item.title,
            item.summary,
            content,
            language=language,
            declared=[*item.categories, *source.categories],
        )

        if self.dedup.has_canonical_url(item.link):
            logger.debug(f"[DUP] {item.link} (url)")
            return

        tags = extract_tags(item.title, item.summary, content)
        images = extraction.images
        article = IngestedArticle(
            title=item.title,
            slug=self.dedup.resolve_slug(item.title),
            summary=item.summary[:self.settings.summary_max_chars],
            content=content,
            images=images,
            category_id=classification.category.id,
            categories=[classification.category.key],
            category_detected=classification.detected,
            tags=tags,
            author=item.author or extraction.author or source.name,
            language=language,
            source=SourceRef(name=source.name, url=source.url, source_id=source.id),
            status=ArticleStatus.SCRAPED,
            published_at=item.published_at,
            canonical_url=item.link,
            thumbnail=images[0].url if images else None,
            seo=SeoMeta(meta_description=(item.summary or content)[:160], keywords=tags),
            open_graph=extraction.open_graph,
            hash=item_hash,
        )

        if self._insert(article):
            stats.items_inserted += 1

    def _try_insert(self, article: IngestedArticle) -> Optional[IntegrityError]:
        try:
            self.db.insert_article(article)
            return None
        except IntegrityError as e:
            return e

    def _insert(self, article: IngestedArticle) -> bool:
        """Insert, retrying once with a fresh slug when only the slug collided."""
        slugs = [article.slug]
        try:
            conflict = self._try_insert(article)
            if conflict is None:
                return True
            slug_only = (
                not self.db.has_hash(article.hash)
                and not self.db.has_canonical_url(article.canonical_url)
            )
            if slug_only:
                article.slug = self.dedup.resolve_slug(article.title)
                slugs.append(article.slug)
                conflict = self._try_insert(article)
                if conflict is None:
                    return True
            logger.info(f"[DUP] {article.canonical_url}: {conflict.orig}")
            return False
        finally:
            for slug in slugs:
                self.dedup.release_slug(slug)

    # ── Run history ───────────────────────────────────────────────────

    def _record_run_start(self, run_id: str, mode: IngestMode) -> None:
        try:
            self.db.save_ingest_run({
                "run_id": run_id,
                "mode": mode.value,
                "status": "running",
                "started_at": datetime.now(timezone.utc),
            })
        except Exception as e:
            logger.warning(f"Could not record start of run {run_id}: {e}")

    def _record_run_end(self, run_id: str, stats: RunStats) -> None:
        errors = [s.error for s in stats.per_source if s.error]
        if stats.error:
            errors.insert(0, stats.error)
        try:
            self.db.update_ingest_run(run_id, {
                "status": "failed" if stats.error else "completed",
                "active_sources": stats.sources_total,
                "sources_succeeded": stats.sources_succeeded,
                "sources_failed": stats.sources_failed,
                "items_seen": stats.totals.items_seen,
                "items_scraped": stats.totals.items_scraped,
                "articles_inserted": stats.totals.items_inserted,
                "errors": errors,
                "finished_at": datetime.now(timezone.utc),
            })
        except Exception as e:
            logger.warning(f"Could not record end of run {run_id}: {e}")

    # ── Enrichment ────────────────────────────────────────────────────

    async def enrich(self, limit: int = 200, min_words: int = 80, concurrency: int = 5) -> EnrichStats:
        """Re-fetch pages of thin articles and fill in body, images and Open-Graph."""
        candidates = self.db.get_thin_articles(limit=limit, min_words=min_words)
        stats = EnrichStats(limit=limit, min_words=min_words)
        concurrency = max(1, concurrency)

        for start in range(0, len(candidates), concurrency):
            batch = candidates[start:start + concurrency]
            results = await asyncio.gather(*[self._enrich_one(doc) for doc in batch], return_exceptions=True)
            for doc, result in zip(batch, results):
                stats.processed += 1
                if isinstance(result, BaseException):
                    stats.failed += 1
                    logger.warning(f"[FAIL] enrich {doc['canonical_url']}: {result}")
                elif result:
                    stats.improved += 1

        logger.info(f"Enrichment: {stats.processed} processed, {stats.improved} improved, {stats.failed} failed")
        return stats

    async def _enrich_one(self, doc: dict) -> bool:
        """True when the article's word count grew meaningfully."""
        url = doc.get("canonical_url")
        if not url:
            return False
        extraction = await self.extractor.reextract(url)
        if extraction is None:
            return False

        content = extraction.body or doc["content"]
        word_count = len(content.split())
        images = [img.model_dump() for img in extraction.images] or doc["images"]
        open_graph = dict(doc["open_graph"])
        open_graph.update({k: v for k, v in extraction.open_graph.model_dump().items() if v})

        self.db.update_article(doc["id"], {
            "content": content,
            "images": images,
            "thumbnail": images[0]["url"] if images else doc["thumbnail"],
            "word_count": word_count,
            "reading_time": max(1, math.ceil(word_count / 200)),
            "open_graph": open_graph,
            "status": ArticleStatus.PROCESSED.value,
        })
        return word_count > doc["word_count"] + 30
