"""
Configuration management for the newswire ingestion pipeline.

Runtime knobs come from environment variables (or `.env`) through
pydantic-settings. Static lookup tables (identities, selectors, category
presentation) live here as module constants.
"""

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    database_url: str = Field(default="sqlite:///./newswire.db", alias="DATABASE_URL")

    # API sources (NewsAPI-style). One key for every type=api source.
    news_api_key: str = Field(default="", alias="NEWS_API_KEY")

    # ── Fetching ──
    # Comma-separated proxy endpoints, rotated round-robin per client.
    proxy_urls: str = Field(default="", alias="PROXY_URLS")
    # Global minimum gap between outbound request dispatches (seconds).
    rate_limit_delay: float = Field(default=0.25, alias="RATE_LIMIT_DELAY")
    request_timeout: float = Field(default=6.0, alias="REQUEST_TIMEOUT")
    max_redirects: int = Field(default=5, alias="MAX_REDIRECTS")
    fetch_max_attempts: int = Field(default=3, alias="FETCH_MAX_ATTEMPTS")
    retry_base_delay: float = Field(default=1.0, alias="RETRY_BASE_DELAY")
    retry_jitter: float = Field(default=1.0, alias="RETRY_JITTER")
    # Any status at or above this is a failed response.
    fail_status: int = Field(default=400, alias="FAIL_STATUS")

    # ── Pipeline ──
    source_batch_size: int = Field(default=5, alias="SOURCE_BATCH_SIZE")
    article_timeout: float = Field(default=8.0, alias="ARTICLE_TIMEOUT")
    ingest_mode: str = Field(default="full", alias="INGEST_MODE")
    # Comma-separated feed URL allow-list. Empty = read every feed.
    only_feed_urls: str = Field(default="", alias="ONLY_FEED_URLS")

    # ── Extraction ──
    content_max_chars: int = Field(default=5000, alias="CONTENT_MAX_CHARS")
    summary_max_chars: int = Field(default=300, alias="SUMMARY_MAX_CHARS")
    fast_content_chars: int = Field(default=1000, alias="FAST_CONTENT_CHARS")
    max_images: int = Field(default=5, alias="MAX_IMAGES")
    min_image_size: int = Field(default=200, alias="MIN_IMAGE_SIZE")

    # ── Classification ──
    promotion_threshold: int = Field(default=10, alias="PROMOTION_THRESHOLD")
    default_category: str = Field(default="general", alias="DEFAULT_CATEGORY")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True

    @property
    def proxies(self) -> List[str]:
        return [p.strip() for p in self.proxy_urls.split(",") if p.strip()]

    @property
    def feed_allow_list(self) -> set:
        return {u.strip() for u in self.only_feed_urls.split(",") if u.strip()}


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# ══════════════════════════════════════════════════════════════════════════════
# FETCH IDENTITIES
# ══════════════════════════════════════════════════════════════════════════════

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:109.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (X11; Linux x86_64; rv:109.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.1 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Edge/120.0.0.0 Safari/537.36",
]

# Browser-like headers to avoid being blocked
BASE_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Cache-Control": "max-age=0",
    "DNT": "1",
    "Referer": "https://www.google.com/",
}

FEED_ACCEPT = "application/rss+xml, application/xml, text/xml;q=0.9,*/*;q=0.8"


# ══════════════════════════════════════════════════════════════════════════════
# EXTRACTION TABLES
# ══════════════════════════════════════════════════════════════════════════════

# Non-content elements stripped before body selection
STRIP_SELECTORS = (
    "script, style, noscript, iframe, nav, header, footer, aside, "
    ".advertisement, .ad, .ads"
)

# Ordered: first match wins, `body` is the last resort
CONTENT_SELECTORS = [
    "article",
    '[itemprop="articleBody"]',
    ".article-content",
    ".post-content",
    ".entry-content",
    "main",
    ".content",
    "#content",
]

ARTICLE_IMAGE_SELECTORS = [
    "article img",
    '[itemprop="articleBody"] img',
    ".article-content img",
    ".post-content img",
    ".entry-content img",
    "main img",
]

# Substrings (URL or alt) that mark non-article images. Bare "ad"/"ads" is
# matched as a standalone token instead (see IMAGE_AD_TOKEN) so that paths
# like /uploads/ survive.
IMAGE_EXCLUDE_PATTERNS = [
    "logo", "icon", "avatar", "badge", "button", "banner",
    "advert", "doubleclick", "sprite", "pixel", "tracking",
    "1x1", "blank.gif", "spacer.gif", "placeholder", "default",
]

IMAGE_AD_TOKEN = r"(?:^|[^a-z0-9])ads?(?:[^a-z0-9]|$)"

OPENGRAPH_PLACEHOLDER_HINTS = ("logo", "icon", "placeholder", "default")


# ══════════════════════════════════════════════════════════════════════════════
# CATEGORY PRESENTATION (used when promoting dynamic categories)
# ══════════════════════════════════════════════════════════════════════════════

CATEGORY_LABELS = {
    "general": "General", "politics": "Politics", "sports": "Sports",
    "entertainment": "Entertainment", "technology": "Technology", "health": "Health",
    "business": "Business", "education": "Education", "crime": "Crime",
    "weather": "Weather", "science": "Science", "travel": "Travel",
    "food": "Food", "fashion": "Fashion", "automobile": "Automobile",
    "realestate": "Real Estate",
}

CATEGORY_ICONS = {
    "general": "newspaper", "politics": "landmark", "sports": "trophy",
    "entertainment": "film", "technology": "laptop", "health": "heart",
    "business": "briefcase", "education": "graduation-cap", "crime": "shield",
    "weather": "cloud-sun", "science": "flask", "travel": "map",
    "food": "utensils", "fashion": "shirt", "automobile": "car",
    "realestate": "home",
}

CATEGORY_COLORS = {
    "general": "#9CA3AF", "politics": "#EF4444", "sports": "#10B981",
    "entertainment": "#8B5CF6", "technology": "#3B82F6", "health": "#F59E0B",
    "business": "#06B6D4", "education": "#84CC16", "crime": "#DC2626",
    "weather": "#0EA5E9", "science": "#7C3AED", "travel": "#059669",
    "food": "#D97706", "fashion": "#EC4899", "automobile": "#6B7280",
    "realestate": "#B45309",
}

DEFAULT_CATEGORY_ICON = "newspaper"
DEFAULT_CATEGORY_COLOR = "#9CA3AF"

# Feed/source category names in regional languages → category keys
CATEGORY_NAME_MAP = {
    # Telugu
    "సినిమా": "entertainment", "వినోదం": "entertainment", "క్రీడలు": "sports",
    "వ్యాపారం": "business", "ఆరోగ్యం": "health", "సాంకేతికం": "technology",
    "రాజకీయాలు": "politics", "అపరాధం": "crime",
    # Hindi
    "मनोरंजन": "entertainment", "खेल": "sports", "व्यापार": "business",
    "स्वास्थ्य": "health", "तकनीक": "technology", "राजनीति": "politics",
    "अपराध": "crime",
    # Tamil
    "பொழுதுபோக்கு": "entertainment", "சினிமா": "entertainment",
    "விளையாட்டு": "sports", "வணிகம்": "business", "ஆரோக்கியம்": "health",
    "தொழில்நுட்பம்": "technology", "ராஜகியம்": "politics", "குற்றம்": "crime",
    # Bengali
    "বিনোদন": "entertainment", "খেলা": "sports", "ব্যবসা": "business",
    "স্বাস্থ্য": "health", "প্রযুক্তি": "technology", "রাজনীতি": "politics",
    "অপরাধ": "crime",
    # Gujarati
    "મનોરંજન": "entertainment", "રમત": "sports", "વ્યવસાય": "business",
    "સ્વાસ્થ્ય": "health", "ટેકનોલોજી": "technology", "રાજકારણ": "politics",
    "અપરાધ": "crime",
    # Marathi
    "खेळ": "sports", "व्यवसाय": "business", "आरोग्य": "health",
    "तंत्रज्ञान": "technology", "राजकारण": "politics", "गुन्हा": "crime",
}
