"""Shared fixtures: an in-process stand-in for aiohttp.ClientSession."""

import json
import os
import sys
from typing import Any, Dict, List, Optional

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from indexer.store import InMemoryStore
from pipelines.crawler import CrawlerConfig


class FakeResponse:
    """Response object usable as ``async with session.get(...) as response``."""

    def __init__(self, status: int = 200, body: str = '', content_type: str = 'text/html',
                 headers: Optional[Dict[str, str]] = None, json_data: Any = None, reason: str = 'OK'):
        self.status = status
        self.reason = reason
        self._body = body
        self._json = json_data
        self.headers = {'Content-Type': content_type, 'Content-Length': str(len(body.encode('utf-8')))}
        if headers:
            self.headers.update(headers)

    async def text(self, **kwargs) -> str:
        return self._body

    async def json(self) -> Any:
        if self._json is not None:
            return self._json
        return json.loads(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Routes requests by exact URL. Unknown URLs answer 404."""

    def __init__(self):
        self.routes: Dict[str, List[Any]] = {}
        self.requests: List[Dict[str, Any]] = []

    def add(self, url: str, body: str = '', status: int = 200, content_type: str = 'text/html',
            headers: Optional[Dict[str, str]] = None, reason: str = 'OK'):
        self.routes.setdefault(url, []).append(
            FakeResponse(status, body, content_type, headers=headers, reason=reason))
        return self

    def add_json(self, url: str, data: Any, status: int = 200):
        self.routes.setdefault(url, []).append(
            FakeResponse(status, json.dumps(data), 'application/json', json_data=data))
        return self

    def add_error(self, url: str, error: BaseException):
        self.routes.setdefault(url, []).append(error)
        return self

    def calls(self, url: str) -> List[Dict[str, Any]]:
        return [request for request in self.requests if request['url'] == url]

    def _respond(self, method: str, url: str, kwargs: Dict[str, Any]):
        self.requests.append({'method': method, 'url': url, **kwargs})
        queue = self.routes.get(url)
        if not queue:
            return FakeResponse(404, 'Not Found', 'text/plain', reason='Not Found')
        # The last queued response repeats
        route = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(route, BaseException):
            raise route
        return route

    def get(self, url: str, **kwargs):
        return self._respond('GET', url, kwargs)

    def post(self, url: str, **kwargs):
        return self._respond('POST', url, kwargs)

    async def close(self):
        pass


async def no_sleep(seconds: float):
    return None


def words(count: int, word: str = 'documentation') -> str:
    return ' '.join(f"{word}{i % 7}" for i in range(count))


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture
def fast_config():
    """Crawler config without politeness delays or retry backoff."""
    return CrawlerConfig(
        rate_limit_ms=0,
        min_jitter_ms=0,
        retry_base_delay_ms=0,
        min_content_chars=50,
    )


@pytest.fixture
def sleep():
    return no_sleep


@pytest.fixture
def make_words():
    return words
