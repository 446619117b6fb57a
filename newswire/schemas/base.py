"""
Common enums used across the pipeline.

These define the vocabulary of the system: source kinds, ingest modes,
article lifecycle, and image provenance.
"""

from enum import Enum


class SourceType(str, Enum):
    """How a source delivers its items."""
    FEED = "feed"
    API = "api"


class IngestMode(str, Enum):
    """Fast skips page fetches; full extracts body, images and Open-Graph."""
    FAST = "fast"
    FULL = "full"


class ArticleStatus(str, Enum):
    """Article lifecycle. The pipeline only writes SCRAPED and PROCESSED."""
    SCRAPED = "scraped"
    PROCESSED = "processed"
    PUBLISHED = "published"


class ImageSource(str, Enum):
    """Where an article image was found."""
    SCRAPED = "scraped"
    OPENGRAPH = "opengraph"
    API = "api"
    RSS = "rss"
