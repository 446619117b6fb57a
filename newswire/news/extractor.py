"""
Article page extraction: body text, images, Open-Graph metadata, author.

Everything here is best-effort. A page that fails to fetch or parse
degrades to an empty body and whatever images the feed or API supplied;
extraction never raises into the item pipeline.

Image priority: article images on the page > feed enclosure/media image
> API image > Open-Graph image (placeholder-looking ones skipped).
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Comment

from ..config import (
    ARTICLE_IMAGE_SELECTORS, CONTENT_SELECTORS, IMAGE_AD_TOKEN,
    IMAGE_EXCLUDE_PATTERNS, OPENGRAPH_PLACEHOLDER_HINTS, STRIP_SELECTORS,
    get_settings,
)
from ..schemas import ArticleImage, ImageSource, OpenGraph
from ..tools.fetch_client import FetchClient, FetchError

logger = logging.getLogger(__name__)

# trafilatura logs every metadata miss on JS-heavy pages
for _noisy in ("trafilatura", "trafilatura.core", "trafilatura.metadata", "trafilatura.utils"):
    _tlog = logging.getLogger(_noisy)
    _tlog.setLevel(logging.CRITICAL + 1)
    _tlog.propagate = False

_WS_RE = re.compile(r"\s+")
_AD_RE = re.compile(IMAGE_AD_TOKEN)
_BYLINE_RE = re.compile(r"By ([A-Z][a-z]+ [A-Z][a-z]+)")
# Word characters plus the Indic blocks, whose vowel signs are not \w
_TAG_SPLIT_RE = re.compile(r"[^\w\u0900-\u0DFF]+")


@dataclass
class Extraction:
    html: str = ""
    body: str = ""
    images: List[ArticleImage] = field(default_factory=list)
    open_graph: OpenGraph = field(default_factory=OpenGraph)
    author: Optional[str] = None


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def _int_attr(value) -> int:
    try:
        return int(str(value).strip().rstrip("px"))
    except (TypeError, ValueError):
        return 0


def is_valid_image(url: str, alt: str = "", width: int = 0, height: int = 0, min_size: int = 200) -> bool:
    """Reject logos, icons, ad/tracking images and (when both are declared) tiny dimensions."""
    haystack = f"{url or ''} {alt or ''}".lower()
    if any(pattern in haystack for pattern in IMAGE_EXCLUDE_PATTERNS):
        return False
    if _AD_RE.search(haystack):
        return False
    if width and height and (width < min_size or height < min_size):
        return False
    return True


def looks_like_placeholder(url: str) -> bool:
    lower = (url or "").lower()
    return any(hint in lower for hint in OPENGRAPH_PLACEHOLDER_HINTS)


def extract_images(
    html: str,
    page_url: str,
    max_images: int = 5,
    min_size: int = 200,
) -> List[ArticleImage]:
    """Article-scoped images first; all <img> only if no article selector yields one."""
    soup = _soup(html)

    def collect(nodes) -> List[ArticleImage]:
        found: List[ArticleImage] = []
        seen = set()
        for img in nodes:
            src = (img.get("src") or img.get("data-src") or "").strip()
            if not src or src.startswith("data:"):
                continue
            alt = img.get("alt") or "Article image"
            width, height = _int_attr(img.get("width")), _int_attr(img.get("height"))
            if not is_valid_image(src, alt, width, height, min_size):
                continue
            full_url = urljoin(page_url, src)
            if full_url in seen:
                continue
            seen.add(full_url)
            found.append(ArticleImage(
                url=full_url,
                alt=alt,
                width=width or None,
                height=height or None,
                source=ImageSource.SCRAPED,
            ))
            if len(found) >= max_images:
                break
        return found

    for selector in ARTICLE_IMAGE_SELECTORS:
        images = collect(soup.select(selector))
        if images:
            return images
    return collect(soup.find_all("img"))


def clean_body(html: str, max_chars: int = 5000) -> str:
    """Main article text: boilerplate stripped, first content container, whitespace collapsed."""
    if not html:
        return ""
    soup = _soup(html)

    for node in soup.select(STRIP_SELECTORS):
        node.decompose()
    for node in soup.find_all("script", attrs={"type": "application/ld+json"}):
        node.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()

    container = None
    for selector in CONTENT_SELECTORS:
        node = soup.select_one(selector)
        if node is not None and node.get_text(strip=True):
            container = node
            break
    if container is None:
        container = soup.body or soup

    text = _WS_RE.sub(" ", container.get_text(" ", strip=True)).strip()
    return text[:max_chars]


def open_graph_from_html(html: str, page_url: str = "") -> OpenGraph:
    """og:* tags with twitter:image, <title> and meta description fallbacks."""
    if not html:
        return OpenGraph()
    soup = _soup(html)

    def meta(attr: str, name: str) -> Optional[str]:
        tag = soup.find("meta", attrs={attr: name})
        content = tag.get("content") if tag else None
        return content.strip() if content and content.strip() else None

    image = meta("property", "og:image") or meta("name", "twitter:image")
    if image and page_url:
        image = urljoin(page_url, image)
    title = meta("property", "og:title")
    if not title and soup.title:
        title = soup.title.get_text(strip=True) or None
    description = meta("property", "og:description") or meta("name", "description")
    return OpenGraph(image=image, title=title, description=description)


def extract_author(html: str) -> Optional[str]:
    """Page metadata author (trafilatura), else a 'By First Last' byline."""
    if not html:
        return None
    try:
        import trafilatura
        metadata = trafilatura.extract_metadata(html)
        author = getattr(metadata, "author", None) if metadata is not None else None
        if author:
            return author.strip()
    except Exception as e:
        logger.debug(f"trafilatura metadata failed: {e}")

    match = _BYLINE_RE.search(html)
    return match.group(1) if match else None


def extract_tags(title: str, summary: str, body: str, limit: int = 10) -> List[str]:
    """Up to `limit` distinct lowercase words longer than 4 characters, in order of appearance."""
    text = f"{title or ''} {summary or ''} {body or ''}".lower()
    tags: List[str] = []
    for word in _TAG_SPLIT_RE.split(text):
        if len(word) > 4 and word not in tags:
            tags.append(word)
            if len(tags) >= limit:
                break
    return tags


class ContentExtractor:
    """Fetches an article page and pulls body, images, Open-Graph and author from it."""

    def __init__(self, client: FetchClient, settings=None):
        self.client = client
        self.settings = settings or get_settings()

    async def fetch_page(self, url: str) -> str:
        """Page HTML, or "" on any fetch failure."""
        try:
            return await self.client.fetch_text(url)
        except FetchError as e:
            logger.debug(f"Page fetch failed for {url}: {e}")
            return ""

    async def fetch_open_graph(self, url: str) -> OpenGraph:
        html = await self.fetch_page(url)
        return open_graph_from_html(html, url)

    def fallback_images(
        self,
        link: str,
        alt: str,
        feed_image: Optional[str],
        api_image: Optional[str],
        open_graph: Optional[OpenGraph],
    ) -> List[ArticleImage]:
        """First usable image from feed, API, then Open-Graph."""
        if feed_image and is_valid_image(feed_image, "", 0, 0, self.settings.min_image_size):
            return [ArticleImage(url=urljoin(link, feed_image), alt=alt, source=ImageSource.RSS)]
        if api_image:
            return [ArticleImage(url=api_image, alt=alt, source=ImageSource.API)]
        if open_graph and open_graph.image and not looks_like_placeholder(open_graph.image):
            return [ArticleImage(
                url=open_graph.image, alt=alt, caption="Open Graph image", source=ImageSource.OPENGRAPH,
            )]
        return []

    async def extract(
        self,
        url: str,
        *,
        fast: bool = False,
        fetch_page: bool = True,
        feed_image: Optional[str] = None,
        api_image: Optional[str] = None,
        alt: str = "",
    ) -> Extraction:
        """
        Run extraction for one article URL.

        fast=True skips all page I/O: no body, no Open-Graph, only the
        feed/API image. fetch_page=False (API items) skips the page fetch
        but still reads Open-Graph in full mode.
        """
        result = Extraction()

        if not fast and fetch_page:
            result.html = await self.fetch_page(url)

        if fast:
            open_graph = None
        elif result.html:
            open_graph = open_graph_from_html(result.html, url)
        else:
            open_graph = await self.fetch_open_graph(url)
        if open_graph is not None:
            result.open_graph = open_graph

        if result.html:
            result.images = extract_images(
                result.html, url, self.settings.max_images, self.settings.min_image_size,
            )
            result.body = clean_body(result.html, self.settings.content_max_chars)
            result.author = extract_author(result.html)

        if not result.images:
            result.images = self.fallback_images(url, alt, feed_image, api_image, open_graph)

        return result

    async def reextract(self, url: str) -> Optional[Extraction]:
        """Full page extraction for enrichment; None when the page cannot be fetched."""
        html = await self.fetch_page(url)
        if not html:
            return None
        return Extraction(
            html=html,
            body=clean_body(html, self.settings.content_max_chars),
            images=extract_images(html, url, self.settings.max_images, self.settings.min_image_size),
            open_graph=open_graph_from_html(html, url),
            author=extract_author(html),
        )
