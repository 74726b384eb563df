# roundup/utils.py

import base64
import binascii
import math
import os
import re
import urllib.parse
from typing import Any, Iterable

_STOP_WORDS = {"the", "a", "an", "of", "and"}

_RELEASE_TAGS = re.compile(
    r"\b(2160p|1080p|720p|480p|4k|uhd|x264|x265|h264|h265|hevc|BluRay|BRRip|WEB-DL|"
    r"WEBRip|WEB|AAC|DTS|HDTV|RM4k|REPACK|PROPER)\b",
    re.IGNORECASE,
)

_QUALITY_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("2160p", re.compile(r"(?i)\b(2160p|4k|uhd)\b")),
    ("1080p", re.compile(r"(?i)\b1080p\b")),
    ("720p", re.compile(r"(?i)\b720p\b")),
    ("480p", re.compile(r"(?i)\b480p\b")),
    ("cam", re.compile(r"(?i)\b(hd)?cam(rip)?\b")),
    ("telesync", re.compile(r"(?i)\b(telesync|hd\s?ts|ts|tsx)\b")),
]

_BTIH_PATTERN = re.compile(r"urn:btih:([a-zA-Z0-9]+)")


def safe_int(value: Any) -> int:
    try:
        parsed = int(value)
        return parsed if parsed >= 0 else 0
    except (TypeError, ValueError):
        return 0


def format_bytes(size_bytes: int) -> str:
    """Converts bytes into a human-readable string (e.g., KB, MB, GB)."""
    if size_bytes <= 0:
        return "0B"
    size_name = ("B", "KB", "MB", "GB", "TB")
    i = min(int(math.floor(math.log(size_bytes, 1024))), len(size_name) - 1)
    p = math.pow(1024, i)
    s = round(size_bytes / p, 2)
    return f"{s} {size_name[i]}"


def parse_size_to_bytes(size_str: str) -> int:
    """Convert strings like ``'1.5 GB'`` or ``'500 MB'`` to bytes."""
    size_str = size_str.lower().replace(",", "")
    match = re.search(r"([\d.]+)", size_str)
    if not match:
        return 0
    try:
        value = float(match.group(1))
    except ValueError:
        return 0
    if "tb" in size_str or "tib" in size_str:
        return int(value * 1024**4)
    if "gb" in size_str or "gib" in size_str:
        return int(value * 1024**3)
    if "mb" in size_str or "mib" in size_str:
        return int(value * 1024**2)
    if "kb" in size_str or "kib" in size_str:
        return int(value * 1024)
    return int(value)


def parse_quality(text: str) -> str:
    """Returns the normalised quality label found in a release name."""
    cleaned = re.sub(r"[\._\[\]\(\)]", " ", text)
    for label, pattern in _QUALITY_PATTERNS:
        if pattern.search(cleaned):
            return label
    return "unknown"


def normalize_quality_label(label: str) -> str:
    """Maps a source-provided quality field (e.g. YTS '1080p') onto our labels."""
    value = (label or "").strip().lower()
    if not value:
        return "unknown"
    if value in ("4k", "uhd"):
        return "2160p"
    parsed = parse_quality(value)
    return parsed if parsed != "unknown" else value


def contains_excluded_keyword(title: str, keywords: Iterable[str]) -> bool:
    tokens = set(re.split(r"[\s\._\-\[\]\(\)]+", title.lower()))
    lowered = title.lower()
    for keyword in keywords:
        kw = keyword.lower()
        if " " in kw:
            if kw in lowered:
                return True
        elif kw in tokens:
            return True
    return False


def parse_torrent_name(name: str) -> dict[str, Any]:
    """
    Parses a torrent name to identify if it's a movie or a TV show
    and extracts relevant metadata.
    """
    cleaned_name = re.sub(r"[\._]", " ", name)

    # TV Show Detection: S01E01 or 1x01 formats
    tv_match = re.search(
        r"(?i)\b(S(\d{1,2})\s?E(\d{1,3})|(\d{1,2})x(\d{1,3}))\b", cleaned_name
    )
    if tv_match:
        title = _clean_title(cleaned_name[: tv_match.start()])
        season = int(tv_match.group(2) or tv_match.group(4))
        episode = int(tv_match.group(3) or tv_match.group(5))
        title, year = _split_trailing_year(title)
        return {
            "type": "tv",
            "title": title,
            "season": season,
            "episode": episode,
            "year": year,
            "is_season_pack": False,
        }

    # Season packs: "S02 Complete", "Season 2"
    pack_match = re.search(r"(?i)\b(?:S(\d{1,2})|Season\s+(\d{1,2}))\b", cleaned_name)
    if pack_match and not re.search(r"(?i)\bepisode\b", cleaned_name):
        title = _clean_title(cleaned_name[: pack_match.start()])
        title, year = _split_trailing_year(title)
        return {
            "type": "tv",
            "title": title,
            "season": int(pack_match.group(1) or pack_match.group(2)),
            "episode": None,
            "year": year,
            "is_season_pack": True,
        }

    # Movie Detection: Look for a year (19xx or 20xx)
    year_match = re.search(r"\b(19\d{2}|20\d{2})\b", cleaned_name)
    if year_match and year_match.start() > 0:
        year = int(year_match.group(1))
        title = cleaned_name[: year_match.start()].strip()
        # Remove residual trailing separators or brackets before the year
        # e.g., "Happy Gilmore 2 (" -> "Happy Gilmore 2"
        title = title.rstrip(" _.-([").strip()
        return {"type": "movie", "title": title, "year": year}

    # Fallback for names that don't match standard patterns
    no_ext = os.path.splitext(cleaned_name)[0]
    title = _clean_title(no_ext)
    return {"type": "unknown", "title": title}


def _clean_title(raw: str) -> str:
    title = re.sub(r"\[.*?\]|\(.*?\)", "", raw)
    title = _RELEASE_TAGS.sub("", title)
    title = re.sub(r"\s+", " ", title)
    return title.strip().rstrip(" _.-([").strip()


def _split_trailing_year(title: str) -> tuple[str, int | None]:
    match = re.search(r"\s(19\d{2}|20\d{2})$", title)
    if not match:
        return title, None
    return title[: match.start()].strip(), int(match.group(1))


def normalize_title(value: str) -> str:
    """Lowercases, strips punctuation and stop words for fuzzy comparison."""
    text = re.sub(r"[^a-zA-Z0-9\s]", " ", value.lower())
    text = re.sub(r"\s+", " ", text).strip()
    if not text:
        return text
    tokens = [tok for tok in text.split(" ") if tok and tok not in _STOP_WORDS]
    return " ".join(tokens)


def extract_info_hash(magnet: str) -> str | None:
    """
    Returns the lowercase hex info hash from a magnet URI.

    Base32 encoded hashes (32 chars) are converted to their 40-char hex form
    so the same torrent always maps to the same key.
    """
    if not magnet:
        return None
    match = _BTIH_PATTERN.search(magnet)
    if not match:
        return None
    value = match.group(1)
    if len(value) == 40 and re.fullmatch(r"[0-9a-fA-F]{40}", value):
        return value.lower()
    if len(value) == 32:
        try:
            return binascii.hexlify(base64.b32decode(value.upper())).decode("ascii")
        except (binascii.Error, ValueError):
            return None
    return None


def build_magnet(info_hash: str, name: str, trackers: Iterable[str] = ()) -> str:
    tracker_query = "".join(
        f"&tr={urllib.parse.quote_plus(tracker)}" for tracker in trackers
    )
    return (
        f"magnet:?xt=urn:btih:{info_hash}"
        f"&dn={urllib.parse.quote_plus(name)}"
        f"{tracker_query}"
    )
