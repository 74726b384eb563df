# roundup/config.py

import configparser
import json
import logging
import os
import sys
from typing import Any

from .errors import ConfigurationError

# --- Constants ---
DEFAULT_CONFIG_PATH = "config.ini"
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///roundup.sqlite3"
MAX_TORRENT_SIZE_GB = 21
MIN_RECONCILE_INTERVAL_MINUTES = 60
DEFAULT_RECONCILE_INTERVAL_MINUTES = 360
DEFAULT_TRACKER_INTERVAL_SECONDS = 15
DEFAULT_MAX_CONCURRENT_TARGETS = 4
LOG_SCRAPER_RESULTS = True

DEFAULT_PREFERENCES: dict[str, Any] = {
    "qualities": ["1080p"],
    "title_similarity_threshold": 85,
    "fuzz_scorer": "WRatio",
    "max_pages": 5,
    "min_seeders": 1,
    "max_size_gb": MAX_TORRENT_SIZE_GB,
    "max_episodes_per_show": 10,
    "exclude_keywords": ["cam", "hdcam", "ts", "hdts", "telesync", "camrip", "tsx"],
}

# Setup basic logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_configuration(
    config_path: str | None = None,
) -> tuple[str, dict[str, Any], dict[str, str], dict[str, Any], dict[str, Any]]:
    """
    Reads the database URL, download client, Plex, schedule and search
    configuration from config.ini. Anything missing that the engine cannot
    run without is fatal here; everything else falls back to defaults.
    """
    config_path = config_path or os.environ.get("ROUNDUP_CONFIG", DEFAULT_CONFIG_PATH)
    if not os.path.exists(config_path):
        logger.critical(
            f"Configuration file '{config_path}' not found. Please create it."
        )
        sys.exit(1)

    with open(config_path, encoding="utf-8") as f:
        lines = f.readlines()

    # --- Manually parse the [search] section to handle multi-line JSON ---
    search_config = _parse_search_section(lines)

    # --- Create a clean config for the standard parser (without the search section) ---
    config_for_parser = configparser.ConfigParser()
    clean_lines = _strip_section("[search]", lines)
    config_for_parser.read_string("".join(clean_lines))

    database_url = config_for_parser.get(
        "database", "url", fallback=DEFAULT_DATABASE_URL
    ).strip()

    client_config = _load_client_config(config_for_parser)
    if not client_config:
        logger.critical(
            f"[CONFIG] No usable [download_client] section in '{config_path}'."
        )
        sys.exit(1)

    plex_config = _load_plex_config(config_for_parser)
    schedule_config = _load_schedule_config(config_for_parser)

    search_config["preferences"] = {
        **DEFAULT_PREFERENCES,
        **search_config.get("preferences", {}),
    }
    search_config["preferences"]["qualities"] = [
        str(q).strip().lower() for q in search_config["preferences"]["qualities"]
    ]
    if not search_config.get("websites"):
        logger.warning(
            "[CONFIG] No websites configured in [search]. Every source is disabled."
        )
        search_config["websites"] = {}

    return database_url, client_config, plex_config, schedule_config, search_config


def _strip_section(section_header: str, lines: list[str]) -> list[str]:
    """Returns the lines of the file that do not belong to ``section_header``."""
    kept: list[str] = []
    current: str | None = None
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("[") and stripped.endswith("]"):
            current = stripped
        if current != section_header:
            kept.append(line)
    return kept


def _parse_search_section(lines: list[str]) -> dict[str, Any]:
    """Extracts and parses the [search] section JSON content."""
    search_config: dict[str, Any] = {}
    search_section_content: dict[str, str] = {}
    in_search_section = False
    current_key = None

    for line in lines:
        stripped_line = line.strip()
        if stripped_line == "[search]":
            in_search_section = True
            continue
        if in_search_section:
            if stripped_line.startswith("[") and stripped_line.endswith("]"):
                break  # Reached the next section
            if "=" in line and stripped_line.startswith(("websites", "preferences")):
                key, value = line.split("=", 1)
                current_key = key.strip()
                search_section_content[current_key] = value.strip()
            elif current_key and not stripped_line.startswith(("#", ";")):
                search_section_content[current_key] += "\n" + line

    try:
        if "websites" in search_section_content:
            search_config["websites"] = json.loads(search_section_content["websites"])
        if "preferences" in search_section_content:
            search_config["preferences"] = json.loads(
                search_section_content["preferences"]
            )
        if search_config:
            logger.info("[CONFIG] Search configuration loaded successfully.")
    except json.JSONDecodeError as e:
        logger.critical(f"Failed to parse JSON from [search] section: {e}")
        raise ConfigurationError(f"Invalid JSON in [search] section: {e}") from e

    return search_config


def _load_client_config(config: configparser.ConfigParser) -> dict[str, Any]:
    """Loads the download daemon connection details."""
    if not config.has_section("download_client"):
        return {}

    client_type = config.get("download_client", "type", fallback="qbittorrent")
    client_type = client_type.strip().lower()
    url = config.get("download_client", "url", fallback="").strip()
    if client_type not in ("qbittorrent", "transmission") or not url:
        logger.error(
            f"[CONFIG] Download client type '{client_type}' or url '{url}' is invalid."
        )
        return {}

    file_types_raw = config.get("download_client", "valid_file_types", fallback="")
    valid_file_types = [
        ext.strip().lower() for ext in file_types_raw.split(",") if ext.strip()
    ]

    client_config: dict[str, Any] = {
        "type": client_type,
        "url": url.rstrip("/"),
        "username": config.get("download_client", "username", fallback=""),
        "password": config.get("download_client", "password", fallback=""),
        "timeout": config.getfloat("download_client", "timeout", fallback=15.0),
        "remove_completed": config.getboolean(
            "download_client", "remove_completed", fallback=True
        ),
        "valid_file_types": valid_file_types,
        "stalled_reannounce_minutes": config.getint(
            "download_client", "stalled_reannounce_minutes", fallback=30
        ),
    }
    logger.info(f"[CONFIG] Using {client_type} download client at {client_config['url']}")
    return client_config


def _load_plex_config(config: configparser.ConfigParser) -> dict[str, str]:
    """Loads the Plex configuration if it exists and is valid."""
    plex_config = {}
    if config.has_section("plex"):
        plex_url = config.get("plex", "plex_url", fallback=None)
        plex_token = config.get("plex", "plex_token", fallback=None)
        if plex_url and plex_token and plex_token != "YOUR_PLEX_TOKEN_HERE":
            plex_config = {
                "url": plex_url,
                "token": plex_token,
                "movies_library": config.get(
                    "plex", "movies_library", fallback="Movies"
                ),
                "tv_library": config.get("plex", "tv_library", fallback="TV Shows"),
            }
            logger.info("[CONFIG] Plex configuration loaded successfully.")
    return plex_config


def _load_schedule_config(config: configparser.ConfigParser) -> dict[str, Any]:
    """Loads loop intervals and the target concurrency ceiling."""
    reconcile_minutes = config.getint(
        "schedule",
        "reconcile_interval_minutes",
        fallback=DEFAULT_RECONCILE_INTERVAL_MINUTES,
    )
    if reconcile_minutes < MIN_RECONCILE_INTERVAL_MINUTES:
        logger.warning(
            f"[CONFIG] reconcile_interval_minutes={reconcile_minutes} is too aggressive; "
            f"using {MIN_RECONCILE_INTERVAL_MINUTES}."
        )
        reconcile_minutes = MIN_RECONCILE_INTERVAL_MINUTES

    tracker_seconds = config.getint(
        "schedule", "tracker_interval_seconds", fallback=DEFAULT_TRACKER_INTERVAL_SECONDS
    )
    max_targets = config.getint(
        "schedule", "max_concurrent_targets", fallback=DEFAULT_MAX_CONCURRENT_TARGETS
    )

    return {
        "reconcile_interval_seconds": reconcile_minutes * 60,
        "tracker_interval_seconds": max(1, tracker_seconds),
        "max_concurrent_targets": max(1, max_targets),
    }
