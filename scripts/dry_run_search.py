"""
Dry-run script to check what the engine would pick for a title.

Run:
    python scripts/dry_run_search.py [--config config.ini] [--imdb tt0133093]
        [--year 1999] [--season 1 --episode 2] "The Matrix"

This does not touch the database or the download daemon. It builds the
enabled source adapters from the [search] section of config.ini, runs the
aggregated search and prints the ranking the matcher would apply.
"""

from __future__ import annotations

import argparse
import asyncio
import logging

from roundup.config import get_configuration
from roundup.models import MediaKind, SearchQuery
from roundup.services import scoring
from roundup.services.search_logic import Aggregator, build_scrapers
from roundup.utils import format_bytes


async def _run_for_query(aggregator: Aggregator, query: SearchQuery, preferences: dict) -> None:
    print("\n===", query.label(), "===")
    candidates, errors = await aggregator.search_with_errors(query)
    print(f"{len(candidates)} raw candidates from {len(aggregator.scrapers)} sources")
    for error in errors:
        print(f"  ! {error.source_id}: {error.kind.value} error: {error.message}")

    ranked = scoring.rank(candidates, query, preferences)
    if not ranked:
        print("No candidate survives filtering.")
        return

    print("Ranking:")
    for position, candidate in enumerate(ranked[:10], start=1):
        marker = "*" if position == 1 else " "
        print(
            f"{marker}{position:>2}. {candidate.title} | {candidate.quality} | "
            f"seeders={candidate.seeders} | size={format_bytes(candidate.size_bytes)} | "
            f"src={candidate.source}"
        )


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Dry-run aggregated search and candidate selection"
    )
    parser.add_argument("titles", nargs="+", help="Titles to query")
    parser.add_argument("--config", default=None, help="Path to config.ini")
    parser.add_argument("--imdb", default=None, help="IMDb id (used as the media id)")
    parser.add_argument("--year", type=int, default=None)
    parser.add_argument("--season", type=int, default=None)
    parser.add_argument("--episode", type=int, default=None)
    args = parser.parse_args(argv)

    if (args.season is None) != (args.episode is None):
        parser.error("--season and --episode must be given together")

    logging.getLogger("httpx").setLevel(logging.WARNING)
    _, _, _, _, search_config = get_configuration(args.config)
    aggregator = Aggregator(build_scrapers(search_config))
    kind = MediaKind.TVSHOW if args.season is not None else MediaKind.MOVIE

    for title in args.titles:
        query = SearchQuery(
            title=title,
            kind=kind,
            year=args.year,
            season=args.season,
            episode=args.episode,
            media_id=args.imdb,
        )
        await _run_for_query(aggregator, query, search_config["preferences"])


if __name__ == "__main__":
    asyncio.run(main())
