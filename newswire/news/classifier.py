"""
Multilingual keyword classifier with dynamic category promotion.

SCORING:
  Text (title + summary + body) and keywords are normalized the same way:
  lowercase, zero-width characters removed, punctuation/symbols turned into
  spaces, whitespace collapsed. Only keywords in the script of the item's
  language are active; an unknown language activates every script.

  A keyword (>= 3 chars) hits when it, or its stem
  keyword[:max(3, floor(len * 0.7))], occurs in the text. Each hit adds
  max(1, len // 4). Highest total wins, ties go to the lexicographically
  smaller category key, all-zero means the default category.

PROMOTION:
  A detected category that is not yet persisted for the language becomes a
  real (is_dynamic) category once enough stored articles in that language
  carry it as their detected category, the current item included.

The keyword table is data (newswire/data/category_keywords.json), keyed by
category then script, loaded once per process.
"""

import json
import logging
import re
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from ..config import (
    CATEGORY_COLORS, CATEGORY_ICONS, CATEGORY_LABELS, CATEGORY_NAME_MAP,
    DEFAULT_CATEGORY_COLOR, DEFAULT_CATEGORY_ICON, get_settings,
)
from ..database import Database
from ..schemas import Category

logger = logging.getLogger(__name__)

KEYWORDS_PATH = Path(__file__).resolve().parent.parent / "data" / "category_keywords.json"

_ZERO_WIDTH_RE = re.compile("[\u200b-\u200d\ufeff]")

DYNAMIC_CATEGORY_ORDER = 100


def normalize_text(text: str) -> str:
    """Lowercase, drop zero-width chars, punctuation/symbols → space, collapse whitespace."""
    text = _ZERO_WIDTH_RE.sub("", (text or "").lower())
    text = "".join(" " if unicodedata.category(ch)[0] in ("P", "S") else ch for ch in text)
    return " ".join(text.split())


def keyword_stem(keyword: str) -> str:
    return keyword[:max(3, int(len(keyword) * 0.7))]


def keyword_weight(keyword: str) -> int:
    return max(1, len(keyword) // 4)


def keyword_matches(text: str, keyword: str) -> bool:
    if len(keyword) < 3:
        return False
    return keyword in text or keyword_stem(keyword) in text


@dataclass(frozen=True)
class KeywordTable:
    """Keywords by category then script, plus the language → script map."""
    version: int
    languages: Dict[str, str]
    categories: Dict[str, Dict[str, Tuple[str, ...]]]

    def script_for(self, language: Optional[str]) -> Optional[str]:
        return self.languages.get((language or "").lower())

    def keywords_for(self, category: str, language: Optional[str]) -> Tuple[str, ...]:
        by_script = self.categories.get(category, {})
        script = self.script_for(language)
        if script is None:
            merged: List[str] = []
            for words in by_script.values():
                merged.extend(w for w in words if w not in merged)
            return tuple(merged)
        return by_script.get(script, ())


def _in_ranges(ch: str, ranges: List[Tuple[int, int]]) -> bool:
    cp = ord(ch)
    return any(lo <= cp <= hi for lo, hi in ranges)


def _belongs_to_script(keyword: str, ranges: List[Tuple[int, int]]) -> bool:
    # Only letters and marks decide; spaces and joiners are script-neutral
    return all(
        _in_ranges(ch, ranges)
        for ch in keyword
        if unicodedata.category(ch)[0] in ("L", "M")
    )


def parse_keyword_table(raw: dict) -> KeywordTable:
    scripts = {
        name: [(int(lo, 16), int(hi, 16)) for lo, hi in blocks]
        for name, blocks in raw.get("scripts", {}).items()
    }
    categories: Dict[str, Dict[str, Tuple[str, ...]]] = {}
    for category, by_script in raw.get("categories", {}).items():
        categories[category] = {}
        for script, words in by_script.items():
            ranges = scripts.get(script)
            kept: List[str] = []
            for word in words:
                norm = normalize_text(word)
                if not norm or norm in kept:
                    continue
                if ranges is not None and not _belongs_to_script(norm, ranges):
                    logger.warning(f"Keyword {word!r} ({category}/{script}) is outside its script block, dropped")
                    continue
                kept.append(norm)
            categories[category][script] = tuple(kept)
    return KeywordTable(
        version=int(raw.get("version", 1)),
        languages={k.lower(): v for k, v in raw.get("languages", {}).items()},
        categories=categories,
    )


@lru_cache()
def load_keyword_table(path: Optional[str] = None) -> KeywordTable:
    """Load and validate the keyword table once per process."""
    with open(path or KEYWORDS_PATH, encoding="utf-8") as f:
        table = parse_keyword_table(json.load(f))
    logger.info(f"Keyword table v{table.version}: {len(table.categories)} categories")
    return table


def canonical_category_name(name: str) -> str:
    """Regional category names → category keys; anything else lowercased."""
    name = (name or "").strip()
    return CATEGORY_NAME_MAP.get(name, name).lower()


@dataclass
class Classification:
    category: Category
    detected: str


class Classifier:
    """Keyword scoring plus resolution of the detected key to a persisted Category."""

    def __init__(self, db: Database, settings=None, table: Optional[KeywordTable] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.table = table or load_keyword_table()
        self.default_key = self.settings.default_category

    def scores(self, text: str, language: Optional[str]) -> Dict[str, int]:
        normalized = normalize_text(text)
        result: Dict[str, int] = {}
        for category in sorted(self.table.categories):
            result[category] = sum(
                keyword_weight(kw)
                for kw in self.table.keywords_for(category, language)
                if keyword_matches(normalized, kw)
            )
        return result

    def detect(self, title: str, summary: str = "", body: str = "", language: Optional[str] = None) -> str:
        """Best-scoring category key, or the default key when nothing matches."""
        scores = self.scores(f"{title or ''} {summary or ''} {body or ''}", language)
        best, best_score = self.default_key, 0
        for category in sorted(scores):
            if scores[category] > best_score:
                best, best_score = category, scores[category]
        return best

    async def classify(
        self,
        title: str,
        summary: str = "",
        body: str = "",
        language: Optional[str] = None,
        declared: Iterable[str] = (),
    ) -> Classification:
        """
        Detect, then resolve to a persisted category.

        Order: persisted detected category > freshly promoted one > first
        declared name matching a category key or label > default category.
        """
        detected = self.detect(title, summary, body, language)
        category = None

        if detected != self.default_key:
            category = self.db.find_category(detected, language)
            if category is None:
                category = self.promote(detected, language)

        if category is None:
            for name in declared:
                key = canonical_category_name(name)
                if not key:
                    continue
                category = self.db.find_category_by_name(key, language)
                if category is not None:
                    break

        if category is None:
            category = self.ensure_default(language)

        return Classification(category=category, detected=detected)

    def promote(self, key: str, language: Optional[str]) -> Optional[Category]:
        """Create a dynamic category once its article count reaches the threshold."""
        existing = self.db.count_detected(key, language)
        if existing + 1 < self.settings.promotion_threshold:
            return None

        candidate = Category(
            key=key,
            label=CATEGORY_LABELS.get(key, key.capitalize()),
            icon=CATEGORY_ICONS.get(key, DEFAULT_CATEGORY_ICON),
            color=CATEGORY_COLORS.get(key, DEFAULT_CATEGORY_COLOR),
            order=DYNAMIC_CATEGORY_ORDER,
            language=language or None,
            is_dynamic=True,
        )
        try:
            created = self.db.create_category(candidate)
        except IntegrityError:
            # Created concurrently; use the winner
            return self.db.find_category(key, language)
        logger.info(f"[PROMOTE] Created dynamic category '{key}' for '{language}' ({existing} prior articles)")
        return created

    def ensure_default(self, language: Optional[str] = None) -> Category:
        found = self.db.find_category(self.default_key, language)
        if found is not None:
            return found
        key = self.default_key
        return self.db.create_category(Category(
            key=key,
            label=CATEGORY_LABELS.get(key, key.capitalize()),
            icon=CATEGORY_ICONS.get(key, DEFAULT_CATEGORY_ICON),
            color=CATEGORY_COLORS.get(key, DEFAULT_CATEGORY_COLOR),
        ))
