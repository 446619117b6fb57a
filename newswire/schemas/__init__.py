"""
Schemas package — data models for the newswire ingestion pipeline.

  - base.py: enums (source type, ingest mode, article status, image provenance)
  - news.py: Source, CandidateItem, IngestedArticle, Category
  - pipeline.py: FeedMetrics, SourceStats, RunStats, RunStatus, EnrichStats
"""

from newswire.schemas.base import ArticleStatus, ImageSource, IngestMode, SourceType

from newswire.schemas.news import (
    ArticleImage, CandidateItem, Category, IngestedArticle, OpenGraph,
    SeoMeta, Source, SourceRef, content_hash,
)

from newswire.schemas.pipeline import (
    EnrichStats, FeedMetrics, RunStats, RunStatus, RunTotals, SourceStats,
)
