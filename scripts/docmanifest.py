#!/usr/bin/env python3
"""
DocManifest command line.

Crawls tool documentation, embeds stored chunks, builds prompt-format
manifests and generates prompts from them.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from config.settings import PipelineSettings
from indexer.embeddings import embed_pending_chunks
from manifests.generator import PromptGenerator
from manifests.models import FileContext, PromptRequest
from observability.metrics import get_metrics_text
from pipelines.errors import PipelineError, PromptGenerationError
from manifests.builder import check_template
from pipelines.jobs import (
    build_tool_manifest,
    cleanup_chunks,
    recrawl_enabled_sources,
    run_crawl_job,
    validate_manifests,
)
from sources.loader import SourceLoader

logger = logging.getLogger(__name__)


def parse_constraint(raw: str):
    """Split ``key=value``; values that parse as JSON keep their type."""
    if '=' not in raw:
        raise argparse.ArgumentTypeError(f"Constraint must look like key=value: {raw!r}")
    key, value = raw.split('=', 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError(f"Constraint key is empty: {raw!r}")
    try:
        return key, json.loads(value)
    except ValueError:
        return key, value


def load_file_context(path: str) -> FileContext:
    if os.path.isfile(path):
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return FileContext(path=path, content=f.read())
    return FileContext(path=path)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='docmanifest', description="DocManifest documentation pipeline")
    parser.add_argument("--config", help="Path to pipeline settings YAML")
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument("--print-metrics", action="store_true", help="Print Prometheus metrics when done")

    subcommands = parser.add_subparsers(dest='command', required=True)

    crawl = subcommands.add_parser('crawl', help="Crawl a tool source into the chunk store")
    crawl.add_argument("source", help="Tool id of the source YAML")
    crawl.add_argument("--replace", action="store_true", help="Delete the tool's stored chunks first")
    crawl.add_argument("--sources-dir", help="Directory of tool source YAML files")

    embed = subcommands.add_parser('embed', help="Embed stored chunks that have no embedding")
    embed.add_argument("--tool", help="Only embed chunks of this tool")

    build = subcommands.add_parser('build-manifest', help="Detect the prompt format and save a manifest")
    build.add_argument("tool_id")
    build.add_argument("--sample-size", type=int, help="Number of chunks used for detection")

    generate = subcommands.add_parser('generate', help="Generate a prompt from a tool's manifest")
    generate.add_argument("tool_id")
    generate.add_argument("--task", required=True, help="Task description")
    generate.add_argument("--language", required=True, help="Programming language")
    generate.add_argument("--file", dest='files', action='append', default=[], help="File to include (repeatable)")
    generate.add_argument("--constraint", dest='constraints', action='append', default=[], type=parse_constraint,
                          help="Constraint as key=value (repeatable)")
    generate.add_argument("--json", action="store_true", help="Print the full result as JSON")

    recrawl = subcommands.add_parser('recrawl', help="Recrawl every enabled tool source")
    recrawl.add_argument("--sources-dir", help="Directory of tool source YAML files")
    recrawl.add_argument("--concurrency", type=int, help="Sources crawled at once")

    validate = subcommands.add_parser('validate-manifests', help="Check stored manifests and rebuild stale ones")
    validate.add_argument("--concurrency", type=int, help="Tools checked at once")
    validate.add_argument("--max-age-days", type=int, help="Rebuild manifests older than this")

    subcommands.add_parser('cleanup', help="Delete duplicate chunks and chunks of unregistered tools")

    sources = subcommands.add_parser('list-sources', help="List configured tool sources")
    sources.add_argument("--sources-dir", help="Directory of tool source YAML files")

    return parser


async def _open_store(settings: PipelineSettings):
    store = settings.store()
    await store.initialize()
    return store


async def cmd_crawl(args, settings: PipelineSettings) -> int:
    loader = SourceLoader(args.sources_dir or settings.sources_dir())
    source = loader.load_source(args.source)
    if source is None:
        logger.error(f"Unknown or invalid tool source: {args.source}")
        return 2

    store = await _open_store(settings)
    try:
        stats = await run_crawl_job(source, store, settings, replace_existing=args.replace)
    finally:
        await store.close()

    print(json.dumps(stats.to_dict(), indent=2))
    return 0 if stats.successful_pages else 1


async def cmd_embed(args, settings: PipelineSettings) -> int:
    store = await _open_store(settings)
    try:
        updated = await embed_pending_chunks(store, settings.embedding_service(), tool_id=args.tool)
    finally:
        await store.close()

    print(f"Embedded {updated} chunks")
    return 0


async def cmd_build_manifest(args, settings: PipelineSettings) -> int:
    store = await _open_store(settings)
    try:
        manifest = await build_tool_manifest(
            args.tool_id,
            chunk_store=store,
            tool_store=store,
            detector=settings.detector(),
            builder=settings.manifest_builder(),
            sample_size=args.sample_size or settings.get('detector.sample_size', 50),
        )
    finally:
        await store.close()

    print(manifest.to_json())
    return 0


async def cmd_generate(args, settings: PipelineSettings) -> int:
    constraints: Dict[str, Any] = dict(args.constraints)
    request = PromptRequest(
        tool_id=args.tool_id,
        task=args.task,
        language=args.language,
        files=[load_file_context(path) for path in args.files],
        constraints=constraints,
    )

    store = await _open_store(settings)
    try:
        generator = PromptGenerator(store, renderer=settings.renderer())
        try:
            result = await generator.generate(request)
        except PromptGenerationError as e:
            logger.error(str(e))
            for attempt in e.attempts:
                errors = attempt.error or '; '.join(attempt.validation.errors if attempt.validation else [])
                logger.error(f"  {attempt.format}: {errors}")
            return 1
    finally:
        await store.close()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        if result.used_fallback:
            logger.warning(f"Used fallback format {result.format}")
        print(result.prompt)
    return 0


async def cmd_recrawl(args, settings: PipelineSettings) -> int:
    loader = SourceLoader(args.sources_dir or settings.sources_dir())
    store = await _open_store(settings)
    try:
        report = await recrawl_enabled_sources(
            loader, store, settings,
            concurrency=args.concurrency or settings.get('jobs.recrawl_concurrency', 2),
        )
    finally:
        await store.close()

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.has_failures else 0


async def cmd_validate_manifests(args, settings: PipelineSettings) -> int:
    store = await _open_store(settings)
    try:
        report = await validate_manifests(
            store,
            detector=settings.detector(use_classifier=settings.get('jobs.classifier_on_rebuild', False)),
            builder=settings.manifest_builder(),
            check_template=check_template,
            concurrency=args.concurrency or settings.get('jobs.validate_concurrency', 5),
            max_age_days=args.max_age_days or settings.get('jobs.manifest_max_age_days', 90),
            sample_size=settings.get('detector.sample_size', 50),
        )
    finally:
        await store.close()

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.has_failures else 0


async def cmd_cleanup(args, settings: PipelineSettings) -> int:
    store = await _open_store(settings)
    try:
        summary = await cleanup_chunks(store)
    finally:
        await store.close()

    print(json.dumps(summary.to_dict(), indent=2))
    return 0


async def cmd_list_sources(args, settings: PipelineSettings) -> int:
    loader = SourceLoader(args.sources_dir or settings.sources_dir())
    for tool_id, source in loader.load_all_sources().items():
        status = 'enabled' if source.enabled else 'disabled'
        print(f"{tool_id}\t{source.name}\t{source.root_url}\t{status}")
    return 0


COMMANDS = {
    'crawl': cmd_crawl,
    'embed': cmd_embed,
    'build-manifest': cmd_build_manifest,
    'generate': cmd_generate,
    'recrawl': cmd_recrawl,
    'validate-manifests': cmd_validate_manifests,
    'cleanup': cmd_cleanup,
    'list-sources': cmd_list_sources,
}


async def run(args) -> int:
    overrides = {'logging': {'level': args.log_level}} if args.log_level else None
    settings = PipelineSettings(args.config, overrides=overrides)
    settings.configure_logging()

    try:
        code = await COMMANDS[args.command](args, settings)
    except PipelineError as e:
        logger.error(f"{args.command} failed: {e}")
        code = 1

    if args.print_metrics:
        print(get_metrics_text())
    return code


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
