"""
Newswire ingestion - CLI entry point.

    python -m newswire.main                     # one full run over active sources
    python -m newswire.main --mode fast         # snippet-only run, no page fetches
    python -m newswire.main --seed sources.json # upsert sources first, then run
    python -m newswire.main --enrich            # re-extract thin articles instead
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from .config import get_settings
from .database import Database, get_database
from .pipeline import IngestionCoordinator
from .schemas import Source

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)
logger = logging.getLogger(__name__)

# Suppress noisy loggers
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def seed_sources(path: str, db: Optional[Database] = None) -> List[str]:
    """Upsert sources from a JSON file (a list of source objects). Returns their ids."""
    db = db or get_database()
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict):
        raw = raw.get("sources", [])

    ids = []
    for entry in raw:
        try:
            source = Source(**entry)
        except ValidationError as e:
            logger.warning(f"Skipping invalid source entry {entry.get('id', '?')}: {e}")
            continue
        ids.append(db.upsert_source(source))
    logger.info(f"Seeded {len(ids)} sources from {path}")
    return ids


def _print_run(stats) -> None:
    print("\n" + "=" * 60)
    print("NEWSWIRE INGESTION RUN")
    print("=" * 60)
    print(f"Sources: {stats.sources_total} (ok: {stats.sources_succeeded}, failed: {stats.sources_failed})")
    print(f"Items seen: {stats.totals.items_seen}")
    print(f"Items scraped: {stats.totals.items_scraped}")
    print(f"Articles inserted: {stats.totals.items_inserted}")
    if stats.error:
        print(f"\nRun error: {stats.error}")
    failed = [s for s in stats.per_source if s.error]
    if failed:
        print(f"\nFailed sources: {len(failed)}")
        for s in failed[:10]:
            print(f"   - {s.name}: {s.error}")
    print("=" * 60 + "\n")


async def cli_main():
    """Command-line interface for one ingestion (or enrichment) pass."""
    import argparse

    parser = argparse.ArgumentParser(description="Newswire news ingestion pipeline")
    parser.add_argument(
        "--mode",
        choices=["fast", "full"],
        default=None,
        help="Ingest mode (default: INGEST_MODE setting)"
    )
    parser.add_argument(
        "--seed",
        metavar="PATH",
        help="Upsert sources from a JSON file before running"
    )
    parser.add_argument(
        "--enrich",
        action="store_true",
        help="Re-extract thin articles instead of ingesting"
    )
    parser.add_argument("--limit", type=int, default=200, help="Enrichment: max articles (default: 200)")
    parser.add_argument("--min-words", type=int, default=80, help="Enrichment: word-count floor (default: 80)")
    parser.add_argument("--json", action="store_true", help="Print the result as camelCase JSON")

    args = parser.parse_args()
    settings = get_settings()
    db = get_database()

    if args.seed:
        seed_sources(args.seed, db)

    async with IngestionCoordinator(db, settings) as coordinator:
        if args.enrich:
            result = await coordinator.enrich(limit=args.limit, min_words=args.min_words)
            if args.json:
                print(result.model_dump_json(by_alias=True, indent=2))
            else:
                print(f"Enrichment: {result.processed} processed, {result.improved} improved, {result.failed} failed")
            return

        stats = await coordinator.run(mode=args.mode)
        if args.json:
            print(stats.model_dump_json(by_alias=True, exclude_none=True, indent=2))
        else:
            _print_run(stats)


def main():
    """Entry point for CLI."""
    asyncio.run(cli_main())


if __name__ == "__main__":
    main()
