"""URL canonicalization, filtering and deduplication for the crawler."""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set
from urllib.parse import urljoin, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_BLOCKED_EXTENSIONS = [
    '.jpg', '.jpeg', '.png', '.gif', '.svg', '.webp', '.ico', '.bmp',
    '.pdf', '.zip', '.tar', '.gz', '.tgz', '.rar', '.7z', '.mp4', '.mp3', '.mov',
    '.avi', '.wmv', '.flv', '.mkv', '.exe', '.dmg', '.iso', '.apk', '.msi',
]

ALLOWED_SCHEMES = {'http', 'https'}

DEFAULT_PORTS = {'http': 80, 'https': 443}


@dataclass
class NormalizedUrl:
    """A sanitized URL and its parts."""
    url: str
    hostname: str
    pathname: str
    pathname_segments: List[str] = field(default_factory=list)


class URLNormalizer:
    """Canonicalizes links and remembers which ones were already queued.

    The ``seen`` set belongs to one normalizer instance and is not meant to be
    shared between crawls.
    """

    def __init__(self,
                 root_url: Optional[str] = None,
                 allowed_hosts: Optional[List[str]] = None,
                 blocked_extensions: Optional[List[str]] = None,
                 same_origin_only: bool = True,
                 remove_query_params: bool = False):
        root = self._safe_parse(root_url) if root_url else None
        self.root_host = root.hostname if root else None
        if allowed_hosts is None:
            allowed_hosts = [self.root_host] if self.root_host else []
        self.allowed_hosts = [host.lower() for host in allowed_hosts]
        self.blocked_extensions = [ext.lower() for ext in (blocked_extensions or DEFAULT_BLOCKED_EXTENSIONS)]
        self.same_origin_only = same_origin_only
        self.remove_query_params = remove_query_params
        self._seen: Set[str] = set()

    def sanitize(self, raw_url: str, base_url: Optional[str] = None) -> Optional[NormalizedUrl]:
        """Return the canonical form of ``raw_url`` or None if it must not be crawled."""
        parsed = self._safe_parse(raw_url, base_url)
        if parsed is None:
            return None

        scheme = parsed.scheme.lower()
        if scheme not in ALLOWED_SCHEMES:
            return None

        hostname = (parsed.hostname or '').lower()
        if not hostname:
            return None

        if self.same_origin_only and self.root_host and hostname != self.root_host:
            return None

        if self.allowed_hosts and hostname not in self.allowed_hosts:
            return None

        path = parsed.path or '/'
        if path != '/':
            path = path.rstrip('/') or '/'

        if self._is_blocked_extension(path):
            return None

        host = f"[{hostname}]" if ':' in hostname else hostname
        netloc = host
        if parsed.port and parsed.port != DEFAULT_PORTS.get(scheme):
            netloc = f"{host}:{parsed.port}"

        query = '' if self.remove_query_params else parsed.query
        url = urlunsplit((scheme, netloc, path, query, ''))

        return NormalizedUrl(
            url=url,
            hostname=hostname,
            pathname=path,
            pathname_segments=[segment for segment in path.split('/') if segment],
        )

    def has_seen(self, url: str) -> bool:
        return url in self._seen

    def mark_seen(self, url: str) -> None:
        self._seen.add(url)

    def dedupe(self, urls: Iterable[str], base_url: Optional[str] = None) -> List[str]:
        """Sanitize ``urls`` and return the ones not seen before, in order."""
        unique = []
        for candidate in urls:
            sanitized = self.sanitize(candidate, base_url)
            if not sanitized or self.has_seen(sanitized.url):
                continue
            self.mark_seen(sanitized.url)
            unique.append(sanitized.url)
        return unique

    def _is_blocked_extension(self, path: str) -> bool:
        lower_path = path.lower()
        return any(lower_path.endswith(ext) for ext in self.blocked_extensions)

    @staticmethod
    def _safe_parse(raw_url: str, base_url: Optional[str] = None):
        if not raw_url:
            return None
        try:
            candidate = raw_url.strip()
            if base_url:
                candidate = urljoin(base_url, candidate)
            parsed = urlsplit(candidate)
            # Accessing port validates it
            parsed.port
        except ValueError:
            logger.debug(f"Unparseable URL skipped: {raw_url!r}")
            return None
        if not parsed.scheme or not parsed.netloc:
            return None
        return parsed


def normalize_urls(urls: Iterable[str], base_url: Optional[str] = None, **options) -> List[str]:
    """Convenience function to sanitize and dedupe a batch of URLs."""
    normalizer = URLNormalizer(base_url, **options)
    return normalizer.dedupe(urls, base_url)
