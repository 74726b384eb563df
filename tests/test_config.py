import pytest

from roundup.config import (
    DEFAULT_DATABASE_URL,
    MIN_RECONCILE_INTERVAL_MINUTES,
    get_configuration,
)
from roundup.errors import ConfigurationError


def test_get_configuration_happy_path(mocker):
    config_data = """
[database]
url = sqlite+aiosqlite:///test.sqlite3

[download_client]
type = Transmission
url = http://localhost:9091/
username = admin
password = secret
valid_file_types = mkv, .MP4

[plex]
plex_url=http://example.com
plex_token=abc

[schedule]
reconcile_interval_minutes = 120
tracker_interval_seconds = 30
max_concurrent_targets = 2

[search]
websites = {
    "yts": {"enabled": true, "max_concurrent_requests": 1},
    "eztv": {"enabled": false}
    }
preferences = {"qualities": ["1080P", "720p"], "max_pages": 3}
"""
    mocker.patch("builtins.open", mocker.mock_open(read_data=config_data))
    mocker.patch("os.path.exists", return_value=True)

    database_url, client, plex, schedule, search = get_configuration("config.ini")

    assert database_url == "sqlite+aiosqlite:///test.sqlite3"
    assert client["type"] == "transmission"
    assert client["url"] == "http://localhost:9091"
    assert client["username"] == "admin"
    assert client["valid_file_types"] == ["mkv", ".mp4"]
    assert client["remove_completed"] is True
    assert client["stalled_reannounce_minutes"] == 30
    assert plex == {
        "url": "http://example.com",
        "token": "abc",
        "movies_library": "Movies",
        "tv_library": "TV Shows",
    }
    assert schedule == {
        "reconcile_interval_seconds": 7200,
        "tracker_interval_seconds": 30,
        "max_concurrent_targets": 2,
    }
    assert search["websites"]["yts"]["max_concurrent_requests"] == 1
    assert search["websites"]["eztv"]["enabled"] is False
    prefs = search["preferences"]
    assert prefs["qualities"] == ["1080p", "720p"]
    assert prefs["max_pages"] == 3
    # Unspecified preferences fall back to defaults.
    assert prefs["title_similarity_threshold"] == 85
    assert prefs["fuzz_scorer"] == "WRatio"


def test_get_configuration_defaults(mocker):
    config_data = """
[download_client]
url = http://localhost:8080
"""
    mocker.patch("builtins.open", mocker.mock_open(read_data=config_data))
    mocker.patch("os.path.exists", return_value=True)

    database_url, client, plex, schedule, search = get_configuration("config.ini")

    assert database_url == DEFAULT_DATABASE_URL
    assert client["type"] == "qbittorrent"
    assert plex == {}
    assert schedule["reconcile_interval_seconds"] == 360 * 60
    assert search["websites"] == {}
    assert search["preferences"]["qualities"] == ["1080p"]


def test_reconcile_interval_is_clamped(mocker):
    config_data = """
[download_client]
url = http://localhost:8080

[schedule]
reconcile_interval_minutes = 5
"""
    mocker.patch("builtins.open", mocker.mock_open(read_data=config_data))
    mocker.patch("os.path.exists", return_value=True)

    _, _, _, schedule, _ = get_configuration("config.ini")

    assert schedule["reconcile_interval_seconds"] == MIN_RECONCILE_INTERVAL_MINUTES * 60


def test_get_configuration_missing_file(mocker):
    mocker.patch("os.path.exists", return_value=False)
    with pytest.raises(SystemExit):
        get_configuration("missing.ini")


def test_get_configuration_uses_env_path(mocker, monkeypatch):
    monkeypatch.setenv("ROUNDUP_CONFIG", "/etc/roundup/custom.ini")
    exists = mocker.patch("os.path.exists", return_value=False)
    with pytest.raises(SystemExit):
        get_configuration()
    exists.assert_called_with("/etc/roundup/custom.ini")


def test_get_configuration_missing_download_client(mocker):
    config_data = """
[plex]
plex_url=http://example.com
plex_token=abc
"""
    mocker.patch("builtins.open", mocker.mock_open(read_data=config_data))
    mocker.patch("os.path.exists", return_value=True)
    with pytest.raises(SystemExit):
        get_configuration("config.ini")


def test_get_configuration_unknown_client_type(mocker):
    config_data = """
[download_client]
type = deluge
url = http://localhost:8112
"""
    mocker.patch("builtins.open", mocker.mock_open(read_data=config_data))
    mocker.patch("os.path.exists", return_value=True)
    with pytest.raises(SystemExit):
        get_configuration("config.ini")


def test_get_configuration_invalid_search_json(mocker):
    config_data = """
[download_client]
url = http://localhost:8080

[search]
websites = {"yts": {"enabled": true}
"""
    mocker.patch("builtins.open", mocker.mock_open(read_data=config_data))
    mocker.patch("os.path.exists", return_value=True)
    with pytest.raises(ConfigurationError):
        get_configuration("config.ini")


def test_placeholder_plex_token_is_ignored(mocker):
    config_data = """
[download_client]
url = http://localhost:8080

[plex]
plex_url=http://example.com
plex_token=YOUR_PLEX_TOKEN_HERE
"""
    mocker.patch("builtins.open", mocker.mock_open(read_data=config_data))
    mocker.patch("os.path.exists", return_value=True)

    _, _, plex, _, _ = get_configuration("config.ini")
    assert plex == {}
