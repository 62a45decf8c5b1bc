from datetime import datetime, timedelta

import pytest

from pipelines.policy import DocumentationUrlFilter, RobotsCache, RobotsPolicy

ROBOTS_URL = 'https://docs.example.com/robots.txt'

ROBOTS_TXT = """User-agent: *
Disallow: /private/
Crawl-delay: 2
"""


@pytest.mark.parametrize('url, expected', [
    ('https://docs.example.com/blog/launch', True),
    ('https://docs.example.com/pricing', True),
    ('https://docs.example.com/PRIVACY', True),
    ('https://docs.example.com/logo.svg', True),
    ('https://docs.example.com/guide/rules', False),
    ('https://docs.example.com/api/reference', False),
])
def test_non_documentation_urls(url, expected):
    assert DocumentationUrlFilter().is_non_documentation(url) is expected


def test_custom_filter_patterns():
    url_filter = DocumentationUrlFilter([r'/internal/'])
    assert url_filter.is_non_documentation('https://x.dev/internal/a')
    assert not url_filter.is_non_documentation('https://x.dev/blog/a')


def test_robots_txt_url():
    assert RobotsPolicy.get_robots_txt_url('https://docs.example.com:8443/a/b?c=1') == \
        'https://docs.example.com:8443/robots.txt'


def test_cache_expiry():
    entry = RobotsCache(robots_parser=None, fetched_at=datetime.now() - timedelta(hours=2), ttl_hours=1)
    assert entry.is_expired()
    assert not RobotsCache(robots_parser=None).is_expired()


class TestRobotsPolicy:
    """robots.txt fetching and evaluation"""

    @pytest.mark.asyncio
    async def test_disallowed_path(self, fake_session):
        fake_session.add(ROBOTS_URL, ROBOTS_TXT, content_type='text/plain')
        policy = RobotsPolicy('DocManifestBot/1.0')

        allowed, reason = await policy.can_fetch(fake_session, 'https://docs.example.com/guide')
        assert allowed and reason is None

        allowed, reason = await policy.can_fetch(fake_session, 'https://docs.example.com/private/keys')
        assert not allowed
        assert 'Disallowed by robots.txt' in reason

    @pytest.mark.asyncio
    async def test_robots_fetched_once_per_host(self, fake_session):
        fake_session.add(ROBOTS_URL, ROBOTS_TXT, content_type='text/plain')
        policy = RobotsPolicy('DocManifestBot/1.0')

        for path in ('/a', '/b', '/c'):
            await policy.can_fetch(fake_session, f'https://docs.example.com{path}')
        assert len(fake_session.calls(ROBOTS_URL)) == 1

    @pytest.mark.asyncio
    async def test_missing_robots_allows_everything(self, fake_session):
        policy = RobotsPolicy('DocManifestBot/1.0', fail_open=False)
        allowed, _ = await policy.can_fetch(fake_session, 'https://docs.example.com/private/keys')
        assert allowed

    @pytest.mark.asyncio
    async def test_server_error_fails_open_by_default(self, fake_session):
        fake_session.add(ROBOTS_URL, 'oops', status=500)
        allowed, _ = await RobotsPolicy('bot').can_fetch(fake_session, 'https://docs.example.com/a')
        assert allowed

    @pytest.mark.asyncio
    async def test_network_error_fails_closed_when_configured(self, fake_session):
        fake_session.add_error(ROBOTS_URL, ConnectionResetError('reset'))
        allowed, reason = await RobotsPolicy('bot', fail_open=False).can_fetch(
            fake_session, 'https://docs.example.com/a')
        assert not allowed
        assert reason == 'robots.txt unavailable'

    @pytest.mark.asyncio
    async def test_crawl_delay(self, fake_session):
        fake_session.add(ROBOTS_URL, ROBOTS_TXT, content_type='text/plain')
        policy = RobotsPolicy('bot')

        assert policy.get_crawl_delay('https://docs.example.com/a') is None
        await policy.fetch_robots_txt(fake_session, 'https://docs.example.com/a')
        assert policy.get_crawl_delay('https://docs.example.com/a') == 2.0
