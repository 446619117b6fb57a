"""
Exact-duplicate detection and slug allocation.

Three keys keep the article store free of duplicates, each with a unique
constraint behind it:
  1. content hash  — SHA-256 of title + summary + source id; checked before
                     any page fetch so re-runs over an unchanged feed are cheap
  2. canonical URL — re-checked right before insert
  3. slug          — allocated here; a process-local reservation set covers
                     the window between allocation and insert, when two
                     concurrent sources may resolve the same title
"""

import logging
import re
import time
import unicodedata
from typing import Set

from ..database import Database
from ..schemas import CandidateItem, content_hash

logger = logging.getLogger(__name__)

_SLUG_MAX = 80


def slugify(text: str) -> str:
    """Lowercase ASCII slug; accents folded, everything else dropped."""
    if not text:
        return ""
    slug = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    slug = slug.lower()
    slug = re.sub(r'[^a-z0-9\s-]', '', slug)
    slug = re.sub(r'[\s_-]+', '-', slug)
    slug = slug.strip('-')
    return slug[:_SLUG_MAX].rstrip('-')


class Deduplicator:
    """Hash / URL duplicate checks and collision-free slug resolution."""

    def __init__(self, db: Database):
        self.db = db
        self._reserved: Set[str] = set()

    @staticmethod
    def content_hash(title: str, summary: str, source_id: str) -> str:
        return content_hash(title, summary, source_id)

    def is_duplicate(self, item: CandidateItem, source_id: str) -> bool:
        return self.db.has_hash(content_hash(item.title, item.summary, source_id))

    def has_canonical_url(self, url: str) -> bool:
        return self.db.has_canonical_url(url)

    def _taken(self, slug: str) -> bool:
        return slug in self._reserved or self.db.has_slug(slug)

    def resolve_slug(self, title: str) -> str:
        """
        Slug for `title` that is neither persisted nor reserved.

        Collisions get `-<epoch millis>-<n>` appended, n counting up until
        free. The returned slug stays reserved until release_slug().
        """
        base = slugify(title) or "untitled"
        slug = base
        suffix = 1
        while self._taken(slug):
            slug = f"{base}-{int(time.time() * 1000)}-{suffix}"
            suffix += 1
        self._reserved.add(slug)
        return slug

    def release_slug(self, slug: str) -> None:
        """Drop a reservation once the insert committed or was abandoned."""
        self._reserved.discard(slug)
