"""
Seed script: upserts news sources from a JSON file into the newswire store.

Usage:
    python scripts/seed_sources.py                 # uses scripts/sources.example.json
    python scripts/seed_sources.py my_sources.json

File format: a list of source objects (or {"sources": [...]}) with
id, name, url, type (feed|api), feed_urls, api_url, categories, language, active.
"""
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from newswire.main import seed_sources  # noqa: E402

DEFAULT_PATH = os.path.join(os.path.dirname(__file__), "sources.example.json")


if __name__ == "__main__":
    path = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_PATH
    ids = seed_sources(path)
    print(f"Seeded {len(ids)} sources: {', '.join(ids)}")
