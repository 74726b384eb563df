# roundup/services/scoring.py

from collections.abc import Callable, Iterable
from typing import Any

from thefuzz import fuzz

from ..config import DEFAULT_PREFERENCES, logger
from ..models import SearchQuery, TorrentCandidate
from ..utils import normalize_title, parse_torrent_name


def get_fuzz_scorer(name: str | None) -> Callable[[str, str], int]:
    scorer_name = name or DEFAULT_PREFERENCES["fuzz_scorer"]
    scorer = getattr(fuzz, scorer_name, None)
    if scorer is None:
        logger.warning(f"[MATCH] Unknown fuzz scorer '{scorer_name}'; defaulting to 'WRatio'")
        return fuzz.WRatio
    return scorer


def title_similarity(
    candidate: TorrentCandidate,
    target_title: str,
    scorer: Callable[[str, str], int] = fuzz.WRatio,
) -> int:
    """
    Scores how closely a candidate's title matches the target title (0-100).

    Release names carry years, episode markers and release tags, so the base
    title parsed out of the name is compared, not the raw string.
    """
    target = normalize_title(target_title)
    if not target:
        return 0
    parsed_title = parse_torrent_name(candidate.title).get("title") or candidate.title
    variants = {normalize_title(parsed_title), normalize_title(candidate.title)}
    return max((scorer(target, v) for v in variants if v), default=0)


def _year_conflicts(candidate: TorrentCandidate, query: SearchQuery) -> bool:
    if not query.year or not candidate.year:
        return False
    if abs(candidate.year - query.year) <= 1:
        return False
    # "Blade Runner 2049" style titles put a year-like number in the name.
    return str(candidate.year) not in query.title


def filter_candidates(
    candidates: Iterable[TorrentCandidate],
    query: SearchQuery,
    preferences: dict[str, Any],
    excluded_hashes: Iterable[str] = (),
) -> list[TorrentCandidate]:
    """Drops every candidate that must never be selected for ``query``."""
    qualities = [q.lower() for q in preferences.get("qualities", [])]
    threshold = int(preferences.get("title_similarity_threshold", 85))
    min_seeders = int(preferences.get("min_seeders", 1))
    max_size_bytes = float(preferences.get("max_size_gb", 21)) * 1024**3
    scorer = get_fuzz_scorer(preferences.get("fuzz_scorer"))
    excluded = {h.lower() for h in excluded_hashes}

    survivors: list[TorrentCandidate] = []
    for candidate in candidates:
        if candidate.quality.lower() not in qualities:
            continue
        if candidate.info_hash.lower() in excluded:
            continue
        if candidate.seeders < min_seeders:
            continue
        if candidate.size_bytes and candidate.size_bytes > max_size_bytes:
            continue
        if query.is_tv:
            if candidate.season != query.season or candidate.episode != query.episode:
                continue
        elif candidate.season is not None or _year_conflicts(candidate, query):
            continue
        score = title_similarity(candidate, query.title, scorer)
        if score < threshold:
            logger.debug(
                f"[MATCH] '{candidate.title}' scored {score} against '{query.title}' (< {threshold})"
            )
            continue
        survivors.append(candidate)
    return survivors


def rank_key(
    candidate: TorrentCandidate, qualities: list[str]
) -> tuple[int, int, int, int, str, str]:
    """
    Sort key for surviving candidates: configured quality order, then seeders,
    then the source's own listing order. Source id and info hash close the
    ordering so equal candidates never tie.
    """
    quality_index = qualities.index(candidate.quality.lower())
    has_rank = 0 if candidate.source_rank is not None else 1
    return (
        quality_index,
        -candidate.seeders,
        has_rank,
        candidate.source_rank if candidate.source_rank is not None else 0,
        candidate.source,
        candidate.info_hash,
    )


def select(
    candidates: Iterable[TorrentCandidate],
    query: SearchQuery,
    preferences: dict[str, Any],
    excluded_hashes: Iterable[str] = (),
) -> TorrentCandidate | None:
    """
    Picks the best candidate for ``query`` or None when nothing qualifies.
    """
    survivors = filter_candidates(candidates, query, preferences, excluded_hashes)
    if not survivors:
        logger.info(f"[MATCH] No candidate survived filtering for {query.label()}.")
        return None

    qualities = [q.lower() for q in preferences.get("qualities", [])]
    ranked = sorted(survivors, key=lambda c: rank_key(c, qualities))
    best = ranked[0]
    logger.info(
        f"[MATCH] Selected '{best.title}' ({best.quality}, {best.seeders} seeders, "
        f"{best.source}) for {query.label()} out of {len(survivors)} candidates."
    )
    return best


def rank(
    candidates: Iterable[TorrentCandidate],
    query: SearchQuery,
    preferences: dict[str, Any],
) -> list[TorrentCandidate]:
    """Full ordering of the surviving candidates, best first."""
    survivors = filter_candidates(candidates, query, preferences)
    qualities = [q.lower() for q in preferences.get("qualities", [])]
    return sorted(survivors, key=lambda c: rank_key(c, qualities))
