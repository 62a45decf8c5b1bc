"""Batch jobs that chain the pipeline stages for one tool or for every tool."""

import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import aiohttp

from indexer.embeddings import cache_key
from observability.logging import get_structured_logger
from .crawler import CrawlStats, DocumentCrawler
from .errors import PipelineError, StorageError

CHUNK_SEPARATOR = "\n\n---\n\n"
DEFAULT_SAMPLE_SIZE = 50

RECRAWL_CONCURRENCY = 2
VALIDATE_CONCURRENCY = 5
MAX_MANIFEST_AGE_DAYS = 90
# Most recently stored chunks compared against the manifest doc_version
VERSION_CHECK_CHUNKS = 10


@dataclass
class RecrawlResult:
    """Outcome of recrawling one source: success, failed or skipped."""
    tool_id: str
    name: str
    status: str = 'skipped'
    successful_pages: int = 0
    failed_pages: int = 0
    stored_chunks: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ManifestCheckResult:
    """Outcome of checking one tool's manifest: valid, invalid, regenerated or failed."""
    tool_id: str
    name: str
    status: str = 'valid'
    issues: List[str] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {**self.__dict__, 'issues': list(self.issues)}


@dataclass
class CleanupSummary:
    duplicates_removed: int = 0
    orphans_removed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class BatchReport:
    """Per-item results of a batch job plus counts by status."""
    job: str
    results: List[Any] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for result in self.results if result.status == status)

    @property
    def has_failures(self) -> bool:
        return self.count('failed') > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'job': self.job,
            'total': len(self.results),
            'by_status': dict(sorted(Counter(result.status for result in self.results).items())),
            'results': [result.to_dict() for result in self.results],
        }


async def gather_limited(items: Sequence[Any],
                         worker: Callable[[Any], Awaitable[Any]],
                         concurrency: int) -> List[Any]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` running at once.

    Results keep the order of ``items``. Workers are expected to record their
    own failures rather than raise.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be at least 1")

    semaphore = asyncio.Semaphore(concurrency)

    async def run(item):
        async with semaphore:
            return await worker(item)

    return list(await asyncio.gather(*(run(item) for item in items)))


async def run_crawl_job(source,
                        store,
                        settings,
                        replace_existing: bool = False,
                        session: Optional[aiohttp.ClientSession] = None) -> CrawlStats:
    """Crawl one tool source into ``store``.

    Args:
        source: ToolSource to crawl
        store: Chunk store; a tool store as well when it supports ``register_tool``
        settings: PipelineSettings providing crawler and chunker options
        replace_existing: Delete the tool's stored chunks first (also enabled by the source)
        session: Shared aiohttp session, created per crawl when omitted

    Returns:
        CrawlStats for the run
    """
    log = get_structured_logger(__name__, tool_id=source.tool_id, job='crawl')

    if hasattr(store, 'register_tool'):
        await store.register_tool(source.tool_id, source.name)

    if replace_existing or source.replace_existing:
        result = await store.delete_by_tool(source.tool_id)
        if result.error:
            raise StorageError(f"Failed to delete existing chunks for {source.tool_id}: {result.error}")
        log.info('Deleted existing chunks', deleted=result.count)

    config = settings.crawler_config(**source.crawler_overrides())
    crawler = DocumentCrawler(source.root_url, store, config=config, session=session,
                              chunker=settings.chunker())

    log.info('Starting crawl', root_url=source.root_url, seeds=len(source.seed_urls))
    stats = await crawler.crawl(source.seed_urls, source.tool_id, source.version)
    log.info('Crawl finished', successful=stats.successful_pages, failed=stats.failed_pages,
             skipped=stats.skipped_pages, chunks=stats.stored_chunks)
    return stats


async def recrawl_enabled_sources(loader,
                                  store,
                                  settings,
                                  concurrency: int = RECRAWL_CONCURRENCY,
                                  session: Optional[aiohttp.ClientSession] = None) -> BatchReport:
    """Recrawl every enabled tool source, a few at a time.

    A source counts as ``success`` when at least one page was stored. Errors
    of one source are recorded on its result and do not stop the others.
    """
    log = get_structured_logger(__name__, job='recrawl')
    sources = list(loader.get_enabled_sources().values())
    log.info('Recrawling enabled sources', sources=len(sources), concurrency=concurrency)

    async def recrawl(source) -> RecrawlResult:
        result = RecrawlResult(tool_id=source.tool_id, name=source.name)
        try:
            stats = await run_crawl_job(source, store, settings, session=session)
        except Exception as e:
            result.status = 'failed'
            result.error = str(e) or type(e).__name__
            log.error('Recrawl failed', tool_id=source.tool_id, error=result.error)
            return result

        result.successful_pages = stats.successful_pages
        result.failed_pages = stats.failed_pages
        result.stored_chunks = stats.stored_chunks
        if stats.successful_pages:
            result.status = 'success'
        else:
            result.status = 'failed'
            result.error = stats.errors[0]['error'] if stats.errors else 'No pages stored'
        return result

    report = BatchReport('recrawl', await gather_limited(sources, recrawl, concurrency))
    if report.has_failures:
        log.warning('Recrawl finished with failures',
                    failed=[r.tool_id for r in report.results if r.status == 'failed'])
    return report


async def build_tool_manifest(tool_id: str,
                              chunk_store,
                              tool_store,
                              detector,
                              builder,
                              sample_size: int = DEFAULT_SAMPLE_SIZE,
                              tool_name: Optional[str] = None):
    """Detect the prompt format from stored chunks, build the manifest and save it.

    Raises:
        PipelineError: If the tool has no stored chunks
        StorageError: If the manifest cannot be saved
    """
    log = get_structured_logger(__name__, tool_id=tool_id, job='build-manifest')

    chunks = await chunk_store.list_chunks(tool_id, limit=sample_size)
    if not chunks:
        raise PipelineError(f"No documentation chunks found for tool {tool_id}")

    if tool_name is None:
        record = await tool_store.get_tool(tool_id)
        tool_name = record.name if record and record.name else tool_id

    sample = CHUNK_SEPARATOR.join(chunk.text for chunk in chunks)
    detection = await detector.detect_format(tool_id, sample)
    log.info('Detected format', format=detection.preferred_format,
             confidence=detection.confidence_score, methods=detection.detection_methods_used)

    version = chunks[0].version or 'latest'
    manifest = builder.build_manifest(tool_id, tool_name, detection, chunks, version)

    result = await tool_store.save_manifest(tool_id, manifest, tool_name)
    if result.error:
        raise StorageError(f"Failed to save manifest for {tool_id}: {result.error}")

    log.info('Saved manifest', preferred=manifest.preferred_format.value, sources=len(manifest.doc_sources))
    return manifest


async def manifest_issues(manifest, chunk_store, check_template,
                          max_age: timedelta, now: datetime) -> List[str]:
    """Reasons a stored manifest should be rebuilt (empty when it is current)."""
    issues = []

    if not manifest.templates:
        issues.append('Manifest has no templates')
    for prompt_format, template in manifest.templates.items():
        issues.extend(check_template(prompt_format, template))

    recent = (await chunk_store.list_chunks(manifest.id))[-VERSION_CHECK_CHUNKS:]
    versions = {chunk.version or 'latest' for chunk in recent}
    if versions and (len(versions) > 1 or manifest.doc_version not in versions):
        issues.append('Documentation version has changed')

    last_updated = manifest.last_updated
    if last_updated.tzinfo is None:
        last_updated = last_updated.replace(tzinfo=timezone.utc)
    if now - last_updated > max_age:
        issues.append(f"Manifest is older than {max_age.days} days")

    return issues


async def validate_manifests(store,
                             detector,
                             builder,
                             check_template,
                             concurrency: int = VALIDATE_CONCURRENCY,
                             max_age_days: int = MAX_MANIFEST_AGE_DAYS,
                             sample_size: int = DEFAULT_SAMPLE_SIZE,
                             now: Optional[datetime] = None) -> BatchReport:
    """Check every registered tool's manifest and rebuild the ones that are stale.

    A manifest is rebuilt when it is missing or unreadable, has broken
    templates, disagrees with the version of the latest stored chunks, or is
    older than ``max_age_days``. Tools whose rebuild fails are ``failed``.

    Args:
        store: Combined chunk and tool store
        detector: FormatDetector used for rebuilds
        builder: ManifestBuilder used for rebuilds
        check_template: ``(format, template) -> [problem]`` template check
        concurrency: Tools checked at once
        max_age_days: Age after which a manifest is rebuilt
        sample_size: Chunks sampled for format detection on rebuild
        now: Reference time, defaults to the current UTC time
    """
    log = get_structured_logger(__name__, job='validate-manifests')
    now = now or datetime.now(timezone.utc)
    max_age = timedelta(days=max_age_days)
    tool_ids = await store.list_tool_ids()
    log.info('Validating manifests', tools=len(tool_ids), concurrency=concurrency)

    async def check(tool_id: str) -> ManifestCheckResult:
        result = ManifestCheckResult(tool_id=tool_id, name=tool_id)
        try:
            record = await store.get_tool(tool_id)
            result.name = record.name if record and record.name else tool_id
            if record is None or record.manifest is None:
                result.issues.append('No manifest exists')
            else:
                result.issues.extend(await manifest_issues(record.manifest, store, check_template, max_age, now))
        except StorageError as e:
            result.issues.append(str(e))
        except Exception as e:
            result.status = 'failed'
            result.error = str(e) or type(e).__name__
            log.error('Manifest check failed', tool_id=tool_id, error=result.error)
            return result

        if not result.issues:
            return result

        result.status = 'invalid'
        try:
            await build_tool_manifest(tool_id, store, store, detector, builder,
                                      sample_size=sample_size, tool_name=result.name)
        except Exception as e:
            result.status = 'failed'
            result.error = str(e) or type(e).__name__
            log.error('Manifest rebuild failed', tool_id=tool_id, error=result.error)
        else:
            result.status = 'regenerated'
            log.info('Manifest rebuilt', tool_id=tool_id, issues=result.issues)
        return result

    report = BatchReport('validate-manifests', await gather_limited(tool_ids, check, concurrency))
    log.info('Manifest validation finished', valid=report.count('valid'),
             regenerated=report.count('regenerated'), failed=report.count('failed'))
    return report


async def cleanup_chunks(store) -> CleanupSummary:
    """Delete duplicate chunks and chunks of tools that are no longer registered.

    Chunks of one tool whose whitespace-normalized text hashes the same are
    duplicates; the first stored one is kept. Orphans are only removed while
    at least one tool is registered.

    Raises:
        StorageError: If a delete fails
    """
    log = get_structured_logger(__name__, job='cleanup')
    summary = CleanupSummary()
    chunks = await store.list_chunks()

    seen = set()
    duplicates = []
    for chunk in chunks:
        key = (chunk.tool_id, cache_key(chunk.text))
        if key in seen:
            duplicates.append(chunk.id)
        else:
            seen.add(key)

    if duplicates:
        result = await store.delete_chunks(duplicates)
        if result.error:
            raise StorageError(f"Failed to delete duplicate chunks: {result.error}")
        summary.duplicates_removed = result.count

    tool_ids = set(await store.list_tool_ids())
    if not tool_ids:
        log.warning('No registered tools, orphaned chunks kept')
    else:
        removed = set(duplicates)
        orphans = [chunk.id for chunk in chunks if chunk.tool_id not in tool_ids and chunk.id not in removed]
        if orphans:
            result = await store.delete_chunks(orphans)
            if result.error:
                raise StorageError(f"Failed to delete orphaned chunks: {result.error}")
            summary.orphans_removed = result.count

    log.info('Chunk cleanup finished', duplicates=summary.duplicates_removed, orphans=summary.orphans_removed)
    return summary
