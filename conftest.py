"""Shared fixtures: zero-delay settings, in-memory store, mock-transport HTTP."""

import json
from typing import Callable, Dict, Optional

import httpx
import pytest

from newswire.config import Settings
from newswire.database import Database
from newswire.schemas import IngestedArticle, SourceRef, content_hash
from newswire.tools.fetch_client import FetchClient, RateGate


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite://",
        rate_limit_delay=0.0,
        retry_base_delay=0.0,
        retry_jitter=0.0,
        article_timeout=5.0,
        request_timeout=5.0,
        news_api_key="test-key",
        proxy_urls="",
        only_feed_urls="",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_tables()
    yield database
    database.engine.dispose()


class Router:
    """URL → response table for httpx.MockTransport, recording every request."""

    def __init__(self, routes: Optional[Dict[str, object]] = None):
        self.routes: Dict[str, object] = dict(routes or {})
        self.requests = []

    def add(self, url: str, response) -> None:
        self.routes[url] = response

    @property
    def urls(self):
        return [str(r.url).split("?")[0] for r in self.requests]

    def __call__(self, request: httpx.Request):
        self.requests.append(request)
        key = str(request.url).split("?")[0]
        route = self.routes.get(key)
        if route is None:
            return httpx.Response(404, text="not found")
        if callable(route):
            return route(request)
        if isinstance(route, httpx.Response):
            return route
        if isinstance(route, (dict, list)):
            return httpx.Response(200, text=json.dumps(route), headers={"Content-Type": "application/json"})
        return httpx.Response(200, text=str(route))


@pytest.fixture
def router():
    return Router()


def make_client(settings: Settings, handler: Callable) -> FetchClient:
    return FetchClient(settings, rate_gate=RateGate(0), transport=httpx.MockTransport(handler))


def make_article(n: int, *, language: str = "en", detected: Optional[str] = None, **fields) -> IngestedArticle:
    """Minimal unique article for seeding the store."""
    title = fields.pop("title", f"Seed article {n}")
    summary = fields.pop("summary", f"Seed summary {n}")
    return IngestedArticle(
        title=title,
        slug=fields.pop("slug", f"seed-article-{n}"),
        summary=summary,
        content=fields.pop("content", "short body"),
        language=language,
        category_detected=detected,
        source=SourceRef(name="Seed", url="https://seed.test", source_id="seed"),
        canonical_url=fields.pop("canonical_url", f"https://seed.test/articles/{n}"),
        hash=content_hash(title, summary, "seed"),
        **fields,
    )
