# Tools module
from .fetch_client import FetchClient, FetchError, IdentityRotator, RateGate, get_rate_gate
from .feed_reader import FeedReader, FeedResult, normalize_api_record, normalize_entry, strip_html

__all__ = [
    # Fetching
    "FetchClient",
    "FetchError",
    "IdentityRotator",
    "RateGate",
    "get_rate_gate",
    # Feeds
    "FeedReader",
    "FeedResult",
    "normalize_entry",
    "normalize_api_record",
    "strip_html",
]
