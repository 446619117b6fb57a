"""
Run accounting models.

RunStats is what `IngestionCoordinator.run()` returns; RunStatus is the
last-run snapshot. Both serialize to camelCase with
`model_dump(by_alias=True)` for the (external) admin API.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class FeedMetrics(_CamelModel):
    """Per-URL feed outcome as reported by FeedReader."""
    url: str
    attempted: bool = True
    succeeded: bool = False
    item_count: int = 0
    via: Optional[str] = None      # primary | fallback | api
    error: Optional[str] = None


class SourceStats(_CamelModel):
    source_id: str
    name: str
    feeds_total: int = 0
    feeds_fetched: int = 0
    feeds_failed: int = 0
    items_seen: int = 0
    items_scraped: int = 0
    items_inserted: int = 0
    error: Optional[str] = None

    def record_feed(self, metrics: FeedMetrics) -> None:
        if metrics.succeeded:
            self.feeds_fetched += 1
            self.items_seen += metrics.item_count
        else:
            self.feeds_failed += 1


class RunTotals(_CamelModel):
    items_seen: int = 0
    items_scraped: int = 0
    items_inserted: int = 0


class RunStats(_CamelModel):
    sources_total: int = 0
    sources_succeeded: int = 0
    sources_failed: int = 0
    totals: RunTotals = Field(default_factory=RunTotals)
    per_source: List[SourceStats] = Field(default_factory=list)
    error: Optional[str] = None

    def add_source(self, stats: SourceStats) -> None:
        """Fold one source's outcome in. Order-independent."""
        self.per_source.append(stats)
        if stats.error:
            self.sources_failed += 1
        else:
            self.sources_succeeded += 1
        self.totals.items_seen += stats.items_seen
        self.totals.items_scraped += stats.items_scraped
        self.totals.items_inserted += stats.items_inserted


class RunStatus(_CamelModel):
    """Last-run snapshot. Every field is optional until a run has started."""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    active_sources: Optional[int] = None
    articles_inserted: Optional[int] = None
    error: Optional[str] = None


class EnrichStats(_CamelModel):
    processed: int = 0
    improved: int = 0
    failed: int = 0
    limit: int = 0
    min_words: int = 0
