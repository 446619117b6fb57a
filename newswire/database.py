"""
SQL store — sources, categories, articles and ingest run history.

Tables:
  - sources: Feed/API sources (written by the admin surface, read here)
  - categories: Admin-defined and dynamically promoted categories
  - articles: Ingested articles; hash, canonical_url and slug are unique
  - ingest_runs: Run history with counts, errors, timing

List/dict fields are stored as JSON text.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean, Column, DateTime, ForeignKey, Integer, String, Text,
    UniqueConstraint, create_engine, func, or_,
)
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_settings
from .schemas import (
    ArticleImage, Category, IngestedArticle, OpenGraph, SeoMeta, Source,
    SourceRef,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _loads(raw: Optional[str], default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


# ── Models ───────────────────────────────────────────────────────────────────

class SourceModel(Base):
    """News source. The pipeline only writes last_scraped."""
    __tablename__ = "sources"

    id = Column(String(64), primary_key=True)
    name = Column(String(300), nullable=False)
    url = Column(String(500), default="")
    type = Column(String(10), default="feed")  # feed | api
    feed_urls = Column(Text, default="[]")  # JSON array, ordered
    api_url = Column(String(1000))
    categories = Column(Text, default="[]")  # JSON array
    language = Column(String(10), default="en")
    active = Column(Boolean, default=True, index=True)
    last_scraped = Column(DateTime(timezone=True))


class CategoryModel(Base):
    """Category — unique per (key, language); NULL language = global."""
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("key", "language", name="uq_category_key_language"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), nullable=False, index=True)
    label = Column(String(200), nullable=False)
    icon = Column(String(50), default="newspaper")
    color = Column(String(20), default="#6366f1")
    parent_id = Column(Integer, ForeignKey("categories.id"))
    order = Column(Integer, default=0)
    active = Column(Boolean, default=True)
    language = Column(String(10))
    is_dynamic = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ArticleModel(Base):
    """Ingested article."""
    __tablename__ = "articles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(1000), nullable=False)
    slug = Column(String(600), nullable=False, unique=True)
    summary = Column(Text, default="")
    content = Column(Text, default="")
    images = Column(Text, default="[]")  # JSON array of {url, alt, caption, width, height, source}
    category_id = Column(Integer, ForeignKey("categories.id"))
    categories = Column(Text, default="[]")  # JSON array
    category_detected = Column(String(100), index=True)
    tags = Column(Text, default="[]")  # JSON array
    author = Column(String(300), default="")
    language = Column(String(10), default="en", index=True)

    source_name = Column(String(300))
    source_url = Column(String(500))
    source_id = Column(String(64), index=True)

    status = Column(String(20), default="scraped", index=True)
    published_at = Column(DateTime(timezone=True))
    scraped_at = Column(DateTime(timezone=True), default=_utcnow)
    canonical_url = Column(String(2000), nullable=False, unique=True)
    thumbnail = Column(String(2000))
    word_count = Column(Integer, default=0)
    reading_time = Column(Integer, default=1)
    seo = Column(Text, default="{}")  # JSON object
    open_graph = Column(Text, default="{}")  # JSON object
    hash = Column(String(64), nullable=False, unique=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class IngestRunModel(Base):
    """Ingestion run history."""
    __tablename__ = "ingest_runs"

    id = Column(String(50), primary_key=True)
    mode = Column(String(10), default="full")
    status = Column(String(20), default="running")  # running | completed | failed
    active_sources = Column(Integer, default=0)
    sources_succeeded = Column(Integer, default=0)
    sources_failed = Column(Integer, default=0)
    items_seen = Column(Integer, default=0)
    items_scraped = Column(Integer, default=0)
    articles_inserted = Column(Integer, default=0)
    errors = Column(Text)  # JSON array
    started_at = Column(DateTime(timezone=True), default=_utcnow)
    finished_at = Column(DateTime(timezone=True))


# ── Row → schema mapping ─────────────────────────────────────────────────────

def _source_from_row(r: SourceModel) -> Source:
    return Source(
        id=r.id,
        name=r.name,
        url=r.url or "",
        type=r.type or "feed",
        feed_urls=_loads(r.feed_urls, []),
        api_url=r.api_url,
        categories=_loads(r.categories, []),
        language=r.language or "",
        active=bool(r.active),
        last_scraped=r.last_scraped,
    )


def _category_from_row(r: CategoryModel) -> Category:
    return Category(
        id=r.id,
        key=r.key,
        label=r.label,
        icon=r.icon,
        color=r.color,
        parent_id=r.parent_id,
        order=r.order or 0,
        active=bool(r.active),
        language=r.language,
        is_dynamic=bool(r.is_dynamic),
    )


def _article_from_row(r: ArticleModel) -> IngestedArticle:
    return IngestedArticle(
        title=r.title,
        slug=r.slug,
        summary=r.summary or "",
        content=r.content or "",
        images=[ArticleImage(**img) for img in _loads(r.images, [])],
        category_id=r.category_id,
        categories=_loads(r.categories, []),
        category_detected=r.category_detected,
        tags=_loads(r.tags, []),
        author=r.author or "",
        language=r.language or "en",
        source=SourceRef(name=r.source_name or "", url=r.source_url or "", source_id=r.source_id or ""),
        status=r.status,
        published_at=r.published_at,
        scraped_at=r.scraped_at,
        canonical_url=r.canonical_url,
        thumbnail=r.thumbnail,
        word_count=r.word_count or 0,
        reading_time=r.reading_time or 0,
        seo=SeoMeta(**_loads(r.seo, {})),
        open_graph=OpenGraph(**_loads(r.open_graph, {})),
        hash=r.hash,
    )


# ── Database class ───────────────────────────────────────────────────────────

class Database:
    """Database manager — singleton via get_database(), or built directly in tests."""

    def __init__(self, database_url: Optional[str] = None):
        settings = get_settings()
        url = database_url or settings.database_url
        if "aiosqlite" in url:
            url = url.replace("sqlite+aiosqlite", "sqlite")

        self.engine = create_engine(url, echo=False)
        self.SessionLocal = sessionmaker(bind=self.engine)

    def create_tables(self):
        """Create all tables (safe to call multiple times)."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self) -> Session:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ── Sources ───────────────────────────────────────────────────────

    def list_active_sources(self) -> List[Source]:
        with self.get_session() as session:
            rows = session.query(SourceModel).filter(SourceModel.active.is_(True)).all()
            return [_source_from_row(r) for r in rows]

    def upsert_source(self, source: Source) -> str:
        """Insert or replace a source row (seeding / admin use)."""
        with self.get_session() as session:
            row = SourceModel(
                id=source.id,
                name=source.name,
                url=source.url,
                type=source.type,
                feed_urls=json.dumps(source.feed_urls),
                api_url=source.api_url,
                categories=json.dumps(source.categories),
                language=source.language,
                active=source.active,
                last_scraped=source.last_scraped,
            )
            session.merge(row)  # merge = upsert
            return source.id

    def mark_source_scraped(self, source_id: str, when: Optional[datetime] = None):
        with self.get_session() as session:
            row = session.get(SourceModel, source_id)
            if row:
                row.last_scraped = when or _utcnow()

    def get_source(self, source_id: str) -> Optional[Source]:
        with self.get_session() as session:
            row = session.get(SourceModel, source_id)
            return _source_from_row(row) if row else None

    # ── Articles ──────────────────────────────────────────────────────

    def has_hash(self, content_hash: str) -> bool:
        with self.get_session() as session:
            return session.query(ArticleModel.id).filter_by(hash=content_hash).first() is not None

    def has_canonical_url(self, url: str) -> bool:
        with self.get_session() as session:
            return session.query(ArticleModel.id).filter_by(canonical_url=url).first() is not None

    def has_slug(self, slug: str) -> bool:
        with self.get_session() as session:
            return session.query(ArticleModel.id).filter_by(slug=slug).first() is not None

    def insert_article(self, article: IngestedArticle) -> int:
        """Insert one article. Raises IntegrityError on hash/url/slug conflict."""
        with self.get_session() as session:
            row = ArticleModel(
                title=article.title,
                slug=article.slug,
                summary=article.summary,
                content=article.content,
                images=json.dumps([img.model_dump() for img in article.images]),
                category_id=article.category_id,
                categories=json.dumps(article.categories),
                category_detected=article.category_detected,
                tags=json.dumps(article.tags),
                author=article.author,
                language=article.language,
                source_name=article.source.name,
                source_url=article.source.url,
                source_id=article.source.source_id,
                status=article.status,
                published_at=article.published_at,
                scraped_at=article.scraped_at,
                canonical_url=article.canonical_url,
                thumbnail=article.thumbnail,
                word_count=article.word_count,
                reading_time=article.reading_time,
                seo=json.dumps(article.seo.model_dump()),
                open_graph=json.dumps(article.open_graph.model_dump()),
                hash=article.hash,
            )
            session.add(row)
            session.flush()
            return row.id

    def get_article_by_slug(self, slug: str) -> Optional[IngestedArticle]:
        with self.get_session() as session:
            row = session.query(ArticleModel).filter_by(slug=slug).first()
            return _article_from_row(row) if row else None

    def list_articles(self, source_id: Optional[str] = None, limit: int = 100) -> List[IngestedArticle]:
        with self.get_session() as session:
            q = session.query(ArticleModel)
            if source_id:
                q = q.filter(ArticleModel.source_id == source_id)
            rows = q.order_by(ArticleModel.id.asc()).limit(limit).all()
            return [_article_from_row(r) for r in rows]

    def count_articles(self) -> int:
        with self.get_session() as session:
            return session.query(func.count(ArticleModel.id)).scalar() or 0

    def count_detected(self, category_key: str, language: str) -> int:
        """Articles in `language` whose detected category is `category_key`."""
        with self.get_session() as session:
            return (
                session.query(func.count(ArticleModel.id))
                .filter(ArticleModel.language == language)
                .filter(ArticleModel.category_detected == category_key)
                .scalar()
            ) or 0

    def get_thin_articles(self, limit: int = 200, min_words: int = 80) -> List[Dict[str, Any]]:
        """Articles whose body is missing or short — candidates for enrichment."""
        with self.get_session() as session:
            rows = (
                session.query(ArticleModel)
                .filter(or_(ArticleModel.status.in_(["scraped", "processed"]), ArticleModel.status.is_(None)))
                .filter(or_(
                    ArticleModel.word_count.is_(None),
                    ArticleModel.word_count < min_words,
                    ArticleModel.content.is_(None),
                    ArticleModel.content == "",
                ))
                .order_by(ArticleModel.scraped_at.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "id": r.id,
                    "canonical_url": r.canonical_url,
                    "content": r.content or "",
                    "images": _loads(r.images, []),
                    "thumbnail": r.thumbnail,
                    "word_count": r.word_count or 0,
                    "open_graph": _loads(r.open_graph, {}),
                }
                for r in rows
            ]

    def update_article(self, article_id: int, updates: Dict[str, Any]):
        """Update specific fields of an article. List/dict values are JSON-encoded."""
        with self.get_session() as session:
            row = session.get(ArticleModel, article_id)
            if not row:
                return
            for key, value in updates.items():
                if not hasattr(row, key):
                    continue
                if isinstance(value, (list, dict)):
                    value = json.dumps(value)
                setattr(row, key, value)

    # ── Categories ────────────────────────────────────────────────────

    def find_category(self, key: str, language: Optional[str] = None) -> Optional[Category]:
        """Category by key scoped to `language`, else a global one."""
        key = (key or "").strip().lower()
        with self.get_session() as session:
            q = session.query(CategoryModel).filter(CategoryModel.key == key)
            if language:
                q = q.filter(or_(CategoryModel.language == language, CategoryModel.language.is_(None)))
                # Language-scoped rows first
                q = q.order_by(CategoryModel.language.is_(None))
            else:
                q = q.filter(CategoryModel.language.is_(None))
            row = q.first()
            return _category_from_row(row) if row else None

    def find_category_by_name(self, name: str, language: Optional[str] = None) -> Optional[Category]:
        """Case-insensitive match on key, then on label."""
        name = (name or "").strip().lower()
        if not name:
            return None
        found = self.find_category(name, language)
        if found:
            return found
        with self.get_session() as session:
            q = session.query(CategoryModel).filter(func.lower(CategoryModel.label) == name)
            if language:
                q = q.filter(or_(CategoryModel.language == language, CategoryModel.language.is_(None)))
            row = q.first()
            return _category_from_row(row) if row else None

    def create_category(self, category: Category) -> Category:
        """Insert a category. Raises IntegrityError if (key, language) exists."""
        with self.get_session() as session:
            row = CategoryModel(
                key=category.key,
                label=category.label,
                icon=category.icon,
                color=category.color,
                parent_id=category.parent_id,
                order=category.order,
                active=category.active,
                language=category.language,
                is_dynamic=category.is_dynamic,
            )
            session.add(row)
            session.flush()
            return _category_from_row(row)

    def list_categories(self) -> List[Category]:
        with self.get_session() as session:
            rows = session.query(CategoryModel).order_by(CategoryModel.order.asc(), CategoryModel.id.asc()).all()
            return [_category_from_row(r) for r in rows]

    # ── Ingest runs ───────────────────────────────────────────────────

    def save_ingest_run(self, run_data: Dict[str, Any]) -> str:
        """Save an ingest run record."""
        with self.get_session() as session:
            run = IngestRunModel(
                id=run_data["run_id"],
                mode=run_data.get("mode", "full"),
                status=run_data.get("status", "running"),
                active_sources=run_data.get("active_sources", 0),
                errors=json.dumps(run_data.get("errors", [])),
                started_at=run_data.get("started_at"),
                finished_at=run_data.get("finished_at"),
            )
            session.merge(run)
            return run.id

    def update_ingest_run(self, run_id: str, updates: Dict[str, Any]):
        """Update specific fields of an existing ingest run."""
        with self.get_session() as session:
            run = session.get(IngestRunModel, run_id)
            if run:
                for key, value in updates.items():
                    if key == "errors":
                        value = json.dumps(value)
                    if hasattr(run, key):
                        setattr(run, key, value)

    def get_ingest_runs(self, limit: int = 20) -> List[Dict]:
        """Get recent ingest runs."""
        with self.get_session() as session:
            runs = session.query(IngestRunModel).order_by(
                IngestRunModel.started_at.desc()
            ).limit(limit).all()
            return [
                {
                    "run_id": r.id,
                    "mode": r.mode,
                    "status": r.status,
                    "active_sources": r.active_sources,
                    "sources_succeeded": r.sources_succeeded,
                    "sources_failed": r.sources_failed,
                    "items_seen": r.items_seen,
                    "items_scraped": r.items_scraped,
                    "articles_inserted": r.articles_inserted,
                    "errors": _loads(r.errors, []),
                    "started_at": r.started_at.isoformat() if r.started_at else None,
                    "finished_at": r.finished_at.isoformat() if r.finished_at else None,
                }
                for r in runs
            ]


# ── Singleton ────────────────────────────────────────────────────────────────

_db: Optional[Database] = None


def get_database() -> Database:
    """Get or create database instance."""
    global _db
    if _db is None:
        _db = Database()
        _db.create_tables()
    return _db
