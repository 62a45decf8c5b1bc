"""Crawl policy: robots.txt compliance and documentation URL filtering."""

import logging
import re
import urllib.robotparser
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse

import aiohttp

logger = logging.getLogger(__name__)

NON_DOC_URL_PATTERNS = [
    r'/blog/',
    r'/pricing',
    r'/changelog',
    r'/news',
    r'/press',
    r'/legal',
    r'/terms',
    r'/privacy',
    r'\.(?:png|jpg|jpeg|gif|svg|webp|ico)$',
]


class DocumentationUrlFilter:
    """Rejects URLs that are unlikely to hold product documentation."""

    def __init__(self, patterns: Optional[List[str]] = None):
        self.patterns = [re.compile(pattern, re.IGNORECASE) for pattern in (patterns or NON_DOC_URL_PATTERNS)]

    def is_non_documentation(self, url: str) -> bool:
        for pattern in self.patterns:
            if pattern.search(url):
                logger.debug(f"URL {url} matches non-documentation pattern: {pattern.pattern}")
                return True
        return False


@dataclass
class RobotsCache:
    """Cache entry for robots.txt data. A None parser records a failed fetch."""
    robots_parser: Optional[urllib.robotparser.RobotFileParser]
    fetched_at: datetime = field(default_factory=datetime.now)
    ttl_hours: int = 24

    def is_expired(self) -> bool:
        """Check if the cache entry has expired."""
        return datetime.now() - self.fetched_at > timedelta(hours=self.ttl_hours)


class RobotsPolicy:
    """Fetches, caches and evaluates robots.txt for one crawl session.

    Entries are keyed by robots.txt URL and live for the lifetime of the
    instance (or ``ttl_hours``, whichever is shorter).
    """

    def __init__(self, user_agent: str, fail_open: bool = True,
                 timeout: float = 10.0, ttl_hours: int = 24):
        self.user_agent = user_agent
        self.fail_open = fail_open
        self.timeout = timeout
        self.ttl_hours = ttl_hours
        self.robots_cache: Dict[str, RobotsCache] = {}

    @staticmethod
    def get_robots_txt_url(url: str) -> str:
        """Get the robots.txt URL for a given URL."""
        parsed = urlparse(url)
        return f"{parsed.scheme}://{parsed.netloc}/robots.txt"

    async def fetch_robots_txt(self, session: aiohttp.ClientSession,
                               url: str) -> Optional[urllib.robotparser.RobotFileParser]:
        """Fetch and parse robots.txt for a given URL, using the cache when possible."""
        robots_url = self.get_robots_txt_url(url)

        cache_entry = self.robots_cache.get(robots_url)
        if cache_entry and not cache_entry.is_expired():
            return cache_entry.robots_parser

        parser = None
        try:
            logger.info(f"Fetching robots.txt from {robots_url}")
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with session.get(robots_url, headers={'User-Agent': self.user_agent},
                                   timeout=timeout) as response:
                if response.status == 200:
                    body = await response.text()
                    parser = urllib.robotparser.RobotFileParser(robots_url)
                    parser.parse(body.splitlines())
                    parser.modified()
                elif 400 <= response.status < 500:
                    logger.info(f"No robots.txt found at {robots_url} (HTTP {response.status})")
                    parser = urllib.robotparser.RobotFileParser(robots_url)
                    parser.allow_all = True
                else:
                    logger.warning(f"Failed to fetch robots.txt from {robots_url}: HTTP {response.status}")
        except Exception as e:
            logger.warning(f"Error fetching robots.txt from {robots_url}: {e}")

        self.robots_cache[robots_url] = RobotsCache(robots_parser=parser, ttl_hours=self.ttl_hours)
        return parser

    async def can_fetch(self, session: aiohttp.ClientSession, url: str) -> Tuple[bool, Optional[str]]:
        """Check if a URL can be fetched according to robots.txt.

        Returns:
            Tuple of (can_fetch, reason)
        """
        parser = await self.fetch_robots_txt(session, url)

        if parser is None:
            if self.fail_open:
                return True, None
            return False, "robots.txt unavailable"

        if not parser.can_fetch(self.user_agent, url):
            return False, f"Disallowed by robots.txt for user-agent '{self.user_agent}'"

        return True, None

    def get_crawl_delay(self, url: str) -> Optional[float]:
        """Get crawl delay in seconds from the cached robots.txt, if declared."""
        cache_entry = self.robots_cache.get(self.get_robots_txt_url(url))
        if not cache_entry or cache_entry.robots_parser is None:
            return None

        try:
            delay = cache_entry.robots_parser.crawl_delay(self.user_agent)
        except Exception as e:
            logger.error(f"Error getting crawl delay for {url}: {e}")
            return None

        if delay is None:
            return None
        delay = float(delay)
        return delay if delay > 0 else None
