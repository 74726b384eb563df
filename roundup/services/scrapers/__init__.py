from .base_scraper import Scraper, load_site_config
from .eztv import EztvScraper
from .therarbg import TheRarbgScraper
from .yts import YtsScraper

__all__ = [
    "Scraper",
    "load_site_config",
    "EztvScraper",
    "TheRarbgScraper",
    "YtsScraper",
]
