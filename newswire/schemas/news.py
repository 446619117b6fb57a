"""
News source, item and article data models.

Hierarchy: Source → CandidateItem (ephemeral, one per feed entry / API
record) → IngestedArticle (persisted). Category is the classification
target an article points at.
"""

import hashlib
import math
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from .base import ArticleStatus, ImageSource, SourceType


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Source(BaseModel):
    """News source configuration (owned by the admin surface)."""
    id: str
    name: str
    url: str = ""
    type: SourceType = SourceType.FEED
    feed_urls: List[str] = Field(default_factory=list)
    api_url: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    language: str = "en"
    active: bool = True
    last_scraped: Optional[datetime] = None

    @field_validator("language", mode="before")
    @classmethod
    def _lower_language(cls, v):
        return (v or "").strip().lower()

    class Config:
        use_enum_values = True


class CandidateItem(BaseModel):
    """One feed entry or API record, before it becomes an article."""
    title: str = ""
    link: str = ""
    summary: str = ""
    body_html: Optional[str] = None
    published_at: datetime = Field(default_factory=_utcnow)
    categories: List[str] = Field(default_factory=list)
    author: Optional[str] = None
    feed_image: Optional[str] = None
    api_image: Optional[str] = None


class ArticleImage(BaseModel):
    url: str
    alt: str = ""
    caption: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    source: ImageSource = ImageSource.SCRAPED

    class Config:
        use_enum_values = True


class OpenGraph(BaseModel):
    image: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None


class SourceRef(BaseModel):
    name: str
    url: str = ""
    source_id: str


class SeoMeta(BaseModel):
    meta_description: str = ""
    keywords: List[str] = Field(default_factory=list)


class IngestedArticle(BaseModel):
    """
    Persisted article record.

    `hash`, `canonical_url` and `slug` are each unique in the store.
    `word_count` and `reading_time` are derived from `content` when left at 0.
    """
    title: str
    slug: str
    summary: str = ""
    content: str = ""
    images: List[ArticleImage] = Field(default_factory=list)
    category_id: Optional[int] = None
    categories: List[str] = Field(default_factory=list)
    category_detected: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    author: str = ""
    language: str = "en"
    source: SourceRef
    status: ArticleStatus = ArticleStatus.SCRAPED
    published_at: datetime = Field(default_factory=_utcnow)
    scraped_at: datetime = Field(default_factory=_utcnow)
    canonical_url: str
    thumbnail: Optional[str] = None
    word_count: int = Field(default=0, validate_default=True)
    reading_time: int = Field(default=0, validate_default=True)
    seo: SeoMeta = Field(default_factory=SeoMeta)
    open_graph: OpenGraph = Field(default_factory=OpenGraph)
    hash: str

    @field_validator("summary", mode="after")
    @classmethod
    def _cap_summary(cls, v):
        return v[:300] if v else ""

    @field_validator("word_count", mode="before")
    @classmethod
    def _word_count(cls, v, info):
        if v:
            return v
        content = info.data.get("content") or ""
        return len(content.split())

    @field_validator("reading_time", mode="before")
    @classmethod
    def _reading_time(cls, v, info):
        if v:
            return v
        words = info.data.get("word_count") or 0
        return max(1, math.ceil(words / 200))

    class Config:
        use_enum_values = True


class Category(BaseModel):
    """Category row. `language=None` means the category applies to every language."""
    id: Optional[int] = None
    key: str
    label: str
    icon: str = "newspaper"
    color: str = "#6366f1"
    parent_id: Optional[int] = None
    order: int = 0
    active: bool = True
    language: Optional[str] = None
    is_dynamic: bool = False

    @field_validator("key", mode="before")
    @classmethod
    def _normalize_key(cls, v):
        return (v or "").strip().lower()


def content_hash(title: str, summary: str, source_id: str) -> str:
    """Deterministic digest over title, summary and source identifier."""
    payload = "\x1f".join([title or "", summary or "", source_id or ""])
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
