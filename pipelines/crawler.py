"""Documentation crawler for DocManifest.

Breadth-first crawl from seed URLs with robots.txt compliance, per-host rate
limiting and retried fetches. Each accepted page is parsed, chunked and
handed to the chunk store.
"""

import asyncio
import logging
import random
import re
import time
from collections import deque
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple
from urllib.parse import parse_qs, urlparse

import aiohttp
from bs4 import BeautifulSoup

from .chunker import ChunkInput, DocumentChunker
from .errors import ConfigurationError, ContentRejected, FetchError, RobotsDisallowed, StorageError
from .parser import DocumentParser, ParsedDocument
from .policy import DocumentationUrlFilter, RobotsPolicy
from .retry import RETRYABLE_STATUS_CODES, RetryPolicy, retry_async
from .url_normalizer import URLNormalizer
from observability.metrics import record_fetch, record_fetch_retry, record_page

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = 'DocManifest-Crawler/1.0'

SUPPORTED_CONTENT_TYPES = [
    'text/html',
    'text/plain',
    'text/markdown',
    'application/xhtml+xml',
]

MARKDOWN_URL = re.compile(r'\.m(?:d|arkdown)$', re.IGNORECASE)

URL_VERSION_SEGMENT = re.compile(r'^v(?:ersion)?[-_]?([0-9]+(?:\.[0-9]+){0,2})$', re.IGNORECASE)
URL_NUMERIC_SEGMENT = re.compile(r'^([0-9]+(?:\.[0-9]+){1,2})$')
QUERY_VERSION = re.compile(r'^([0-9]+(?:\.[0-9]+){0,2})$')

TEXT_VERSION_PATTERNS = [
    re.compile(r'version\s*(?:release\s*)?[:\-]?\s*v?(\d+(?:\.\d+){0,2})', re.IGNORECASE),
    re.compile(r'release\s*v?(\d+(?:\.\d+){0,2})', re.IGNORECASE),
    re.compile(r'v(\d+(?:\.\d+){0,2})\b'),
    re.compile(r'\b(\d+\.\d+\.\d+)\b'),
]

TEXT_SAMPLE_LENGTH = 160
VERSION_SCAN_CHARS = 2000


@dataclass
class CrawlerConfig:
    """Limits and politeness settings for one crawl."""
    max_depth: int = 3
    max_pages: int = 150
    rate_limit_ms: int = 750
    min_jitter_ms: int = 250
    respect_robots_txt: bool = True
    robots_fail_open: bool = True
    allowed_patterns: List[str] = field(default_factory=list)
    user_agent: str = DEFAULT_USER_AGENT
    timeout_ms: int = 15000
    retry_attempts: int = 3
    exponential_backoff: bool = True
    retry_base_delay_ms: int = 1000
    max_content_length_bytes: int = 2 * 1024 * 1024
    min_content_chars: int = 100

    def __post_init__(self):
        if self.max_depth < 0:
            raise ConfigurationError("max_depth must not be negative")
        if self.max_pages < 1:
            raise ConfigurationError("max_pages must be at least 1")
        if self.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be at least 1")
        if self.timeout_ms <= 0:
            raise ConfigurationError("timeout_ms must be positive")
        if self.rate_limit_ms < 0 or self.min_jitter_ms < 0 or self.retry_base_delay_ms < 0:
            raise ConfigurationError("Delays must not be negative")
        for pattern in self.allowed_patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ConfigurationError(f"Invalid allowed pattern {pattern!r}: {e}") from e

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlerConfig':
        """Build a config from a mapping, ignoring unknown keys."""
        names = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in (data or {}).items() if key in names})

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay_ms / 1000,
            multiplier=2.0 if self.exponential_backoff else 1.0,
            max_delay=30.0,
            jitter_fraction=0.3,
        )


@dataclass
class CrawlStats:
    """Running counters for one crawl, complete at every point of the run."""
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: Optional[datetime] = None
    total_pages: int = 0
    successful_pages: int = 0
    failed_pages: int = 0
    skipped_pages: int = 0
    total_bytes: int = 0
    stored_chunks: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def duration(self) -> Optional[timedelta]:
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return None

    def finish(self):
        """Mark crawl as finished."""
        self.end_time = datetime.now(timezone.utc)

    def record_error(self, url: str, error: str):
        self.errors.append({'url': url, 'error': error})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['start_time'] = self.start_time.isoformat()
        data['end_time'] = self.end_time.isoformat() if self.end_time else None
        data['duration_seconds'] = self.duration.total_seconds() if self.duration else None
        return data


@dataclass
class CrawlResult:
    """Outcome of crawling a single URL."""
    url: str
    success: bool
    status: str
    title: Optional[str] = None
    text_sample: Optional[str] = None
    section: Optional[str] = None
    version: Optional[str] = None
    chunk_count: int = 0
    error: Optional[str] = None
    status_code: Optional[int] = None
    content_type: Optional[str] = None


@dataclass
class FetchedPage:
    url: str
    status_code: int
    content_type: str
    body: str


def is_supported_content_type(content_type: str, url: str) -> bool:
    """Accept html, plain text, markdown and xhtml, or markdown/text files by extension."""
    if not content_type:
        return True

    content_type = content_type.lower()
    if any(supported in content_type for supported in SUPPORTED_CONTENT_TYPES):
        return True

    return bool(MARKDOWN_URL.search(url)) or url.lower().endswith('.txt')


def extract_version_from_url(url: str) -> Optional[str]:
    parsed = urlparse(url)

    for segment in (part for part in parsed.path.split('/') if part):
        match = URL_VERSION_SEGMENT.match(segment) or URL_NUMERIC_SEGMENT.match(segment)
        if match:
            return match.group(1)

    for value in parse_qs(parsed.query).get('version', []):
        match = QUERY_VERSION.match(value.strip().lower())
        if match:
            return match.group(1)

    return None


def _is_likely_year(value: str) -> bool:
    try:
        return 2000 <= float(value) <= 2099
    except ValueError:
        return False


def extract_version_from_text(text: str) -> Optional[str]:
    """Find a version-like phrase, skipping bare calendar years."""
    for pattern in TEXT_VERSION_PATTERNS:
        match = pattern.search(text)
        if match and not _is_likely_year(match.group(1)):
            return match.group(1)
    return None


def detect_version(url: str, parsed: ParsedDocument) -> str:
    """Best-effort version hint for a page; ``latest`` when nothing matches."""
    version = extract_version_from_url(url)
    if version:
        return version

    combined = f"{parsed.title}\n{parsed.section or ''}\n{parsed.text[:VERSION_SCAN_CHARS]}"
    return extract_version_from_text(combined) or 'latest'


class DocumentCrawler:
    """Polite breadth-first documentation crawler.

    One instance runs one crawl. The seen set, per-host request times, crawl
    delays and robots cache all live on the instance.
    """

    def __init__(self,
                 root_url: str,
                 store,
                 config: Optional[CrawlerConfig] = None,
                 session: Optional[aiohttp.ClientSession] = None,
                 parser: Optional[DocumentParser] = None,
                 chunker: Optional[DocumentChunker] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """Initialize crawler.

        Args:
            root_url: Site root; only links on its host are followed
            store: Chunk store receiving bulk inserts
            config: Crawl limits and politeness settings
            session: aiohttp session to reuse; one is created per crawl when omitted
            parser: Document parser
            chunker: Document chunker
            sleep: Coroutine used for rate-limit and retry waits
        """
        self.root_url = root_url
        self.store = store
        self.config = config or CrawlerConfig()
        self.session = session
        self.parser = parser or DocumentParser()
        self.chunker = chunker or DocumentChunker()
        self._sleep = sleep

        self.url_normalizer = URLNormalizer(root_url, same_origin_only=True)
        self.url_filter = DocumentationUrlFilter()
        self.robots = RobotsPolicy(
            self.config.user_agent,
            fail_open=self.config.robots_fail_open,
            timeout=self.config.timeout_ms / 1000,
        )
        self.allowed_patterns = [re.compile(pattern) for pattern in self.config.allowed_patterns]
        self.retry_policy = self.config.retry_policy()

        self.crawl_delays: Dict[str, float] = {}
        self.last_request_per_host: Dict[str, float] = {}
        self.queue: Deque[Tuple[str, int]] = deque()
        self.processed: Set[str] = set()
        self.results: List[CrawlResult] = []
        self.stats = CrawlStats()
        self._cancelled = False

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            'User-Agent': self.config.user_agent,
            'Accept': ','.join(SUPPORTED_CONTENT_TYPES),
        }

    def cancel(self):
        """Stop dequeuing pages. The page in flight finishes normally."""
        self._cancelled = True

    def get_stats(self) -> CrawlStats:
        """Snapshot of the running counters."""
        return replace(self.stats, errors=list(self.stats.errors))

    async def crawl(self, seed_urls: List[str], tool_id: str, version: Optional[str] = None) -> CrawlStats:
        """Crawl from ``seed_urls`` and store chunks for ``tool_id``.

        Args:
            seed_urls: Starting URLs (depth 0)
            tool_id: Tool the stored chunks belong to
            version: Version to stamp on every chunk; detected per page when omitted

        Returns:
            Final crawl statistics
        """
        self.stats.start_time = datetime.now(timezone.utc)

        for seed_url in seed_urls:
            sanitized = self.url_normalizer.sanitize(seed_url)
            if sanitized and not self.url_normalizer.has_seen(sanitized.url):
                self.queue.append((sanitized.url, 0))
                self.url_normalizer.mark_seen(sanitized.url)
            elif not sanitized:
                logger.warning(f"Ignoring invalid or off-site seed URL: {seed_url}")

        logger.info(f"Starting crawl of {len(self.queue)} seed URLs for tool '{tool_id}' "
                    f"(max_depth={self.config.max_depth}, max_pages={self.config.max_pages})")

        owns_session = self.session is None
        if owns_session:
            self.session = aiohttp.ClientSession(headers={'User-Agent': self.config.user_agent})

        try:
            while self.queue and self.stats.total_pages < self.config.max_pages:
                if self._cancelled:
                    logger.info(f"Crawl for '{tool_id}' cancelled with {len(self.queue)} URLs queued")
                    break

                url, depth = self.queue.popleft()
                if url in self.processed:
                    continue
                self.processed.add(url)

                result = await self._crawl_page(url, depth, tool_id, version)
                self.results.append(result)
                record_page(result.status, result.chunk_count)
        finally:
            if owns_session:
                await self.session.close()
                self.session = None

        self.stats.finish()
        logger.info(f"Crawl completed for '{tool_id}': {self.stats.successful_pages} stored, "
                    f"{self.stats.skipped_pages} skipped, {self.stats.failed_pages} failed, "
                    f"{self.stats.stored_chunks} chunks out of {self.stats.total_pages} pages")
        return self.stats

    async def _crawl_page(self, url: str, depth: int, tool_id: str, version: Optional[str]) -> CrawlResult:
        self.stats.total_pages += 1

        if self.url_filter.is_non_documentation(url):
            return self._skip(url, 'Non-documentation URL skipped')

        if self.config.respect_robots_txt:
            try:
                await self._check_robots(url)
            except RobotsDisallowed as e:
                return self._fail(url, str(e))

        try:
            page = await retry_async(
                lambda: self._fetch_once(url),
                policy=self.retry_policy,
                description=f"Fetch {url}",
                sleep=self._sleep,
                on_retry=lambda attempt, error: record_fetch_retry(),
            )
        except ContentRejected as e:
            return self._skip(url, str(e))
        except Exception as e:
            return self._fail(url, self._describe(e), status_code=getattr(e, 'status_code', None))

        self.stats.total_bytes += len(page.body)

        try:
            return await self._process_page(page, depth, tool_id, version)
        except Exception as e:
            logger.error(f"Failed to process {url}: {e}")
            return self._fail(url, self._describe(e), status_code=page.status_code)

    async def _check_robots(self, url: str) -> None:
        """Raise RobotsDisallowed when robots.txt forbids ``url``."""
        allowed, reason = await self.robots.can_fetch(self.session, url)
        self._update_crawl_delay(url)
        if not allowed:
            logger.info(f"Robots policy blocked {url}: {reason}")
            raise RobotsDisallowed('Blocked by robots.txt')

    async def _process_page(self, page: FetchedPage, depth: int, tool_id: str,
                            version: Optional[str]) -> CrawlResult:
        url = page.url
        content_type = page.content_type.lower()
        is_html = 'text/html' in content_type or 'application/xhtml' in content_type
        is_markdown = 'text/markdown' in content_type or bool(MARKDOWN_URL.search(url))

        if is_html:
            parsed = self.parser.parse_html(page.body, url)
        elif is_markdown:
            parsed = self.parser.parse_markdown(page.body, url)
        else:
            parsed = self.parser.parse_text(page.body, url)

        content_text = parsed.text.strip()
        if len(content_text) < self.config.min_content_chars:
            return self._skip(url, 'Content too short to store')

        detected_version = version or detect_version(url, parsed)

        chunks = self.chunker.chunk_document(ChunkInput(
            tool_id=tool_id,
            text=content_text,
            source_url=url,
            section=parsed.section or parsed.title,
            version=detected_version,
        ))
        if not chunks:
            return self._skip(url, 'No chunks generated from content')

        insert = await self.store.bulk_insert(chunks)
        if insert.error:
            raise StorageError(f"Failed to store document chunks: {insert.error}")

        self.stats.stored_chunks += len(chunks)
        self.stats.successful_pages += 1

        if depth < self.config.max_depth and is_html:
            discovered = self._enqueue_links(page.body, url, depth + 1)
            logger.debug(f"Queued {discovered} links from {url} at depth {depth + 1}")

        return CrawlResult(
            url=url,
            success=True,
            status='stored',
            title=parsed.title,
            text_sample=self._sample_text(chunks[0].text),
            section=parsed.section,
            version=detected_version,
            chunk_count=len(chunks),
            status_code=page.status_code,
            content_type=page.content_type,
        )

    async def _fetch_once(self, url: str) -> FetchedPage:
        """Single rate-limited fetch attempt with response gating."""
        await self._wait_for_turn(url)

        timeout = aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000)
        started = time.monotonic()

        async with self.session.get(url, headers=self._headers, timeout=timeout) as response:
            status = response.status
            if not 200 <= status < 300:
                raise FetchError(f"HTTP {status}: {response.reason or ''}".strip(),
                                 status_code=status,
                                 retryable=status in RETRYABLE_STATUS_CODES)

            content_length = self._content_length(response.headers.get('Content-Length'))
            if content_length is not None and content_length > self.config.max_content_length_bytes:
                raise ContentRejected('Content too large to process')

            content_type = response.headers.get('Content-Type', '') or ''
            if not is_supported_content_type(content_type, url):
                raise ContentRejected(f"Unsupported content type: {content_type}")

            body = await response.text(errors='replace')

        record_fetch(time.monotonic() - started)
        return FetchedPage(url=url, status_code=status, content_type=content_type, body=body)

    async def _wait_for_turn(self, url: str):
        """Sleep until the host's rate limit (or robots crawl-delay) allows a request."""
        host = urlparse(url).netloc
        base_delay = max(self.config.rate_limit_ms, self.crawl_delays.get(host, 0))
        jitter = random.random() * max(self.config.min_jitter_ms, base_delay / 2)

        last_request = self.last_request_per_host.get(host)
        if last_request is not None:
            wait_ms = last_request + base_delay + jitter - time.monotonic() * 1000
            if wait_ms > 0:
                logger.debug(f"Rate limiting {host}: sleeping {wait_ms / 1000:.2f}s")
                await self._sleep(wait_ms / 1000)

        self.last_request_per_host[host] = time.monotonic() * 1000

    def _update_crawl_delay(self, url: str):
        delay = self.robots.get_crawl_delay(url)
        if delay:
            self.crawl_delays[urlparse(url).netloc] = delay * 1000

    def _enqueue_links(self, html: str, base_url: str, depth: int) -> int:
        queued = 0
        for link in self._extract_links(html, base_url):
            if link in self.processed or self.url_normalizer.has_seen(link):
                continue
            self.queue.append((link, depth))
            self.url_normalizer.mark_seen(link)
            queued += 1
        return queued

    def _extract_links(self, html: str, base_url: str) -> List[str]:
        """Extract crawlable documentation links in document order."""
        links = []
        try:
            soup = BeautifulSoup(html, 'html.parser')
        except Exception as e:
            logger.warning(f"Failed to extract links from {base_url}: {e}")
            return links

        for anchor in soup.find_all('a', href=True):
            sanitized = self.url_normalizer.sanitize(anchor['href'], base_url)
            if not sanitized or self.url_filter.is_non_documentation(sanitized.url):
                continue
            if self.allowed_patterns and not any(p.search(sanitized.url) for p in self.allowed_patterns):
                continue
            links.append(sanitized.url)

        return links

    def _skip(self, url: str, reason: str) -> CrawlResult:
        self.stats.skipped_pages += 1
        logger.debug(f"Skipped {url}: {reason}")
        return CrawlResult(url=url, success=False, status='skipped', error=reason)

    def _fail(self, url: str, error: str, status_code: Optional[int] = None) -> CrawlResult:
        self.stats.failed_pages += 1
        self.stats.record_error(url, error)
        logger.warning(f"Failed to crawl {url}: {error}")
        return CrawlResult(url=url, success=False, status='failed', error=error, status_code=status_code)

    @staticmethod
    def _describe(error: BaseException) -> str:
        if isinstance(error, asyncio.TimeoutError):
            return 'Request timed out'
        return str(error) or type(error).__name__

    @staticmethod
    def _content_length(value: Optional[str]) -> Optional[int]:
        if not value:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    @staticmethod
    def _sample_text(text: str, length: int = TEXT_SAMPLE_LENGTH) -> str:
        return f"{text[:length]}…" if len(text) > length else text


# Convenience functions
async def crawl_documentation(root_url: str,
                              seed_urls: List[str],
                              tool_id: str,
                              store,
                              version: Optional[str] = None,
                              config: Optional[CrawlerConfig] = None,
                              session: Optional[aiohttp.ClientSession] = None) -> CrawlStats:
    """Convenience function to run one crawl with a fresh crawler."""
    crawler = DocumentCrawler(root_url, store, config=config, session=session)
    return await crawler.crawl(seed_urls, tool_id, version)
