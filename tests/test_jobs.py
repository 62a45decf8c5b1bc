import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from config.settings import PipelineSettings
from indexer.store import InMemoryStore, StoreResult
from manifests.builder import ManifestBuilder, check_template
from manifests.detector import FormatDetector
from manifests.models import FormatDetectionResult, PromptFormat
from pipelines.chunker import Chunk, TokenizerCache
from pipelines.errors import PipelineError, StorageError
from pipelines.jobs import (
    build_tool_manifest,
    cleanup_chunks,
    gather_limited,
    recrawl_enabled_sources,
    run_crawl_job,
    validate_manifests,
)
from sources.loader import SourceLoader, ToolSource

ROOT = 'https://docs.example.com/'


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setattr(TokenizerCache, '_load', lambda self: None)
    return PipelineSettings(
        str(tmp_path / 'missing.yaml'),
        overrides={'crawler': {'rate_limit_ms': 0, 'min_jitter_ms': 0, 'retry_base_delay_ms': 0,
                               'min_content_chars': 50}},
        environ={},
    )


@pytest.fixture
def source():
    return ToolSource(tool_id='cursor', name='Cursor', root_url=ROOT, max_pages=1)


def markdown_chunks(tool_id='cursor'):
    text = "# Rules\n\n## Setup\n\n- Write rules in `.cursorrules`\n- Use **markdown** headings\n"
    return [Chunk(tool_id=tool_id, text=text, source_url=f"{ROOT}rules", version='2.1', id=f"{tool_id}-{i}")
            for i in range(2)]


class TestRunCrawlJob:
    """Crawling one configured source"""

    @pytest.mark.asyncio
    async def test_crawls_and_registers_tool(self, settings, source, fake_session, make_words):
        fake_session.add(ROOT, f"<html><body><main><h1>Intro</h1><p>{make_words(200)}</p></main></body></html>")
        store = InMemoryStore()

        stats = await run_crawl_job(source, store, settings, session=fake_session)

        assert stats.successful_pages == 1
        assert stats.stored_chunks >= 1
        assert (await store.get_tool('cursor')).name == 'Cursor'
        assert all(chunk.section == 'Intro' for chunk in await store.list_chunks('cursor'))

    @pytest.mark.asyncio
    async def test_replace_existing_deletes_old_chunks(self, settings, source, fake_session):
        store = InMemoryStore()
        await store.bulk_insert([Chunk(tool_id='cursor', text='stale', id='old')])

        await run_crawl_job(source, store, settings, replace_existing=True, session=fake_session)

        assert await store.list_chunks('cursor') == []

    @pytest.mark.asyncio
    async def test_old_chunks_kept_by_default(self, settings, source, fake_session):
        store = InMemoryStore()
        await store.bulk_insert([Chunk(tool_id='cursor', text='stale', id='old')])

        await run_crawl_job(source, store, settings, session=fake_session)

        assert [chunk.id for chunk in await store.list_chunks('cursor')] == ['old']

    @pytest.mark.asyncio
    async def test_delete_failure_raises(self, settings, source, fake_session):
        class FailingStore(InMemoryStore):
            async def delete_by_tool(self, tool_id):
                return StoreResult(error='disk full')

        with pytest.raises(StorageError, match='disk full'):
            await run_crawl_job(source, FailingStore(), settings, replace_existing=True, session=fake_session)


class TestBuildToolManifest:
    """Detecting the format and saving the manifest"""

    @pytest.mark.asyncio
    async def test_builds_and_saves_manifest(self):
        store = InMemoryStore()
        await store.register_tool('cursor', 'Cursor IDE')
        await store.bulk_insert(markdown_chunks())

        manifest = await build_tool_manifest('cursor', store, store, FormatDetector(enable_classifier_fallback=False),
                                             ManifestBuilder())

        assert manifest.id == 'cursor'
        assert manifest.name == 'Cursor IDE'
        assert manifest.doc_version == '2.1'
        assert manifest.doc_sources == [f"{ROOT}rules"]
        record = await store.get_tool('cursor')
        assert record.manifest == manifest

    @pytest.mark.asyncio
    async def test_explicit_name_and_unknown_tool(self):
        store = InMemoryStore()
        await store.bulk_insert(markdown_chunks())

        manifest = await build_tool_manifest('cursor', store, store, FormatDetector(enable_classifier_fallback=False),
                                             ManifestBuilder(), tool_name='Cursor')
        assert manifest.name == 'Cursor'

        await store.bulk_insert(markdown_chunks('zed'))
        manifest = await build_tool_manifest('zed', store, store, FormatDetector(enable_classifier_fallback=False),
                                             ManifestBuilder())
        assert manifest.name == 'zed'

    @pytest.mark.asyncio
    async def test_no_chunks(self):
        store = InMemoryStore()
        with pytest.raises(PipelineError, match='No documentation chunks found for tool cursor'):
            await build_tool_manifest('cursor', store, store, FormatDetector(), ManifestBuilder())

    @pytest.mark.asyncio
    async def test_detector_sees_joined_sample(self):
        store = InMemoryStore()
        await store.bulk_insert([Chunk(tool_id='cursor', text=f"part {i}", id=f"c{i}") for i in range(4)])
        detector = AsyncMock()
        detector.detect_format.return_value = FormatDetectionResult(preferred_format='plaintext',
                                                                    confidence_score=20)

        manifest = await build_tool_manifest('cursor', store, store, detector, ManifestBuilder(), sample_size=2)

        detector.detect_format.assert_awaited_once_with('cursor', 'part 0\n\n---\n\npart 1')
        assert manifest.preferred_format.value == 'plaintext'
        assert manifest.doc_version == 'latest'

    @pytest.mark.asyncio
    async def test_save_failure_raises(self):
        store = InMemoryStore()
        await store.bulk_insert(markdown_chunks())
        tool_store = AsyncMock()
        tool_store.get_tool.return_value = None
        tool_store.save_manifest.return_value = StoreResult(error='read only')

        with pytest.raises(StorageError, match='read only'):
            await build_tool_manifest('cursor', store, tool_store, FormatDetector(enable_classifier_fallback=False),
                                      ManifestBuilder())


@pytest.mark.asyncio
async def test_gather_limited_caps_concurrency():
    running = []
    peak = []

    async def worker(item):
        running.append(item)
        peak.append(len(running))
        await asyncio.sleep(0)
        running.remove(item)
        return item * 2

    results = await gather_limited(range(6), worker, concurrency=2)

    assert results == [0, 2, 4, 6, 8, 10]
    assert max(peak) == 2


@pytest.mark.asyncio
async def test_gather_limited_rejects_zero_concurrency():
    with pytest.raises(ValueError, match='concurrency'):
        await gather_limited([1], AsyncMock(), concurrency=0)


class TestRecrawlEnabledSources:
    """Recrawling every enabled source"""

    @pytest.fixture
    def loader(self, tmp_path):
        sources_dir = tmp_path / 'sources'
        sources_dir.mkdir()
        (sources_dir / 'cursor.yaml').write_text(f"name: Cursor\nroot_url: {ROOT}\nmax_pages: 1\n", encoding='utf-8')
        (sources_dir / 'zed.yaml').write_text("name: Zed\nroot_url: https://zed.example.com/\nmax_pages: 1\n",
                                              encoding='utf-8')
        (sources_dir / 'old.yaml').write_text("root_url: https://old.example.com/\nenabled: false\n",
                                              encoding='utf-8')
        return SourceLoader(sources_dir)

    @pytest.mark.asyncio
    async def test_reports_each_enabled_source(self, settings, loader, fake_session, make_words):
        fake_session.add(ROOT, f"<html><body><main><h1>Intro</h1><p>{make_words(200)}</p></main></body></html>")
        store = InMemoryStore()

        report = await recrawl_enabled_sources(loader, store, settings, session=fake_session)

        results = {result.tool_id: result for result in report.results}
        assert sorted(results) == ['cursor', 'zed']
        assert results['cursor'].status == 'success'
        assert results['cursor'].stored_chunks >= 1
        assert results['zed'].status == 'failed'
        assert results['zed'].error
        assert report.has_failures
        assert report.to_dict()['by_status'] == {'failed': 1, 'success': 1}
        assert fake_session.calls('https://old.example.com/') == []

    @pytest.mark.asyncio
    async def test_job_error_does_not_stop_other_sources(self, settings, loader, fake_session, make_words):
        fake_session.add(ROOT, f"<html><body><main><h1>Intro</h1><p>{make_words(200)}</p></main></body></html>")

        class FlakyStore(InMemoryStore):
            async def register_tool(self, tool_id, name):
                if tool_id == 'zed':
                    raise RuntimeError('database is locked')
                return await super().register_tool(tool_id, name)

        report = await recrawl_enabled_sources(loader, FlakyStore(), settings, concurrency=1, session=fake_session)

        assert [(r.tool_id, r.status, r.error) for r in report.results] == [
            ('cursor', 'success', None),
            ('zed', 'failed', 'database is locked'),
        ]


@pytest.mark.asyncio
async def test_batch_jobs_log_with_job_context(caplog):
    store = InMemoryStore()

    with caplog.at_level(logging.INFO, logger='pipelines.jobs'):
        await cleanup_chunks(store)

    records = [record for record in caplog.records if record.name == 'pipelines.jobs']
    assert records
    assert all(record.ctx_job == 'cleanup' for record in records)


class TestValidateManifests:
    """Checking stored manifests and rebuilding stale ones"""

    @pytest.fixture
    def detector(self):
        return FormatDetector(enable_classifier_fallback=False)

    async def seeded_store(self, detector):
        store = InMemoryStore()
        await store.register_tool('cursor', 'Cursor')
        await store.bulk_insert(markdown_chunks())
        await build_tool_manifest('cursor', store, store, detector, ManifestBuilder())
        return store

    @pytest.mark.asyncio
    async def test_current_manifest_is_valid(self, detector):
        store = await self.seeded_store(detector)
        before = (await store.get_tool('cursor')).manifest

        report = await validate_manifests(store, detector, ManifestBuilder(), check_template)

        assert [(r.tool_id, r.status, r.issues) for r in report.results] == [('cursor', 'valid', [])]
        assert (await store.get_tool('cursor')).manifest == before
        assert not report.has_failures

    @pytest.mark.asyncio
    async def test_missing_manifest_is_regenerated(self, detector):
        store = InMemoryStore()
        await store.register_tool('cursor', 'Cursor')
        await store.bulk_insert(markdown_chunks())

        report = await validate_manifests(store, detector, ManifestBuilder(), check_template)

        result = report.results[0]
        assert (result.status, result.issues) == ('regenerated', ['No manifest exists'])
        manifest = (await store.get_tool('cursor')).manifest
        assert manifest.name == 'Cursor'
        assert manifest.doc_version == '2.1'

    @pytest.mark.asyncio
    async def test_old_manifest_is_regenerated(self, detector):
        store = await self.seeded_store(detector)
        later = datetime.now(timezone.utc) + timedelta(days=120)

        report = await validate_manifests(store, detector, ManifestBuilder(), check_template, now=later)

        assert report.results[0].status == 'regenerated'
        assert report.results[0].issues == ['Manifest is older than 90 days']

    @pytest.mark.asyncio
    async def test_version_change_is_regenerated(self, detector):
        store = await self.seeded_store(detector)
        await store.bulk_insert([Chunk(tool_id='cursor', text='# New', version='3.0', id='cursor-new')])

        report = await validate_manifests(store, detector, ManifestBuilder(), check_template)

        assert report.results[0].status == 'regenerated'
        assert 'Documentation version has changed' in report.results[0].issues

    @pytest.mark.asyncio
    async def test_broken_template_is_regenerated(self, detector):
        store = await self.seeded_store(detector)
        manifest = (await store.get_tool('cursor')).manifest
        templates = {**manifest.templates, PromptFormat.JSON: '{not json'}
        await store.save_manifest('cursor', manifest.model_copy(update={'templates': templates}))

        report = await validate_manifests(store, detector, ManifestBuilder(), check_template)

        assert report.results[0].status == 'regenerated'
        assert report.results[0].issues[0].startswith('Invalid JSON template')
        assert (await store.get_tool('cursor')).manifest.templates[PromptFormat.JSON] != '{not json'

    @pytest.mark.asyncio
    async def test_rebuild_without_chunks_fails(self, detector):
        store = await self.seeded_store(detector)
        await store.register_tool('zed', 'Zed')

        report = await validate_manifests(store, detector, ManifestBuilder(), check_template)

        assert [r.status for r in report.results] == ['valid', 'failed']
        assert report.results[1].error == 'No documentation chunks found for tool zed'
        assert report.to_dict()['by_status'] == {'failed': 1, 'valid': 1}
        assert report.has_failures


class TestCleanupChunks:
    """Removing duplicate and orphaned chunks"""

    @pytest.mark.asyncio
    async def test_removes_duplicates_and_orphans(self):
        store = InMemoryStore()
        await store.register_tool('cursor', 'Cursor')
        await store.bulk_insert([
            Chunk(tool_id='cursor', text='Use rules files', id='a'),
            Chunk(tool_id='cursor', text='Use  rules files\n', id='b'),
            Chunk(tool_id='cursor', text='Something else', id='c'),
            Chunk(tool_id='zed', text='Use rules files', id='d'),
            Chunk(tool_id='zed', text='Use rules files', id='e'),
        ])

        summary = await cleanup_chunks(store)

        assert summary.to_dict() == {'duplicates_removed': 2, 'orphans_removed': 1}
        assert [chunk.id for chunk in await store.list_chunks()] == ['a', 'c']

    @pytest.mark.asyncio
    async def test_keeps_chunks_when_no_tools_registered(self):
        store = InMemoryStore()
        await store.bulk_insert(markdown_chunks())

        summary = await cleanup_chunks(store)

        assert summary.orphans_removed == 0
        assert len(await store.list_chunks()) == 2

    @pytest.mark.asyncio
    async def test_delete_failure_raises(self):
        class FailingStore(InMemoryStore):
            async def delete_chunks(self, chunk_ids):
                return StoreResult(error='disk full')

        store = FailingStore()
        await store.bulk_insert([Chunk(tool_id='cursor', text='same', id=f"c{i}") for i in range(2)])

        with pytest.raises(StorageError, match='disk full'):
            await cleanup_chunks(store)
