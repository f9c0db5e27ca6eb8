from __future__ import annotations

import argparse
import asyncio
import json
import sys
from contextlib import contextmanager
from dataclasses import asdict
from pathlib import Path
from typing import Any, Iterator, Sequence

from .cleanup import CleanupConfig, TaxonomyCleanupEngine
from .config import config_sha256, load_config, resolve_runtime_secrets
from .config_schema import AppConfig
from .errors import (
    CleanupStateError,
    ConfigError,
    EmbeddingError,
    GeocodingError,
    LLMError,
    StorageError,
)
from .extractor import MetadataExtractor
from .jobs import JobRegistry
from .pipeline import TaxonomyPipeline
from .reconciler import EmbeddingReconciler
from .reorganize import HierarchyOrganizer
from .resolver import CategoryResolver
from .retry import RetryEvent
from .run_log import RunLogger
from .storage import SQLiteGraphStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ig_taxonomy")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def _add(name: str, help_text: str, handler: Any) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--config", required=True, help="Path to YAML config file.")
        sub.add_argument(
            "--offline",
            action="store_true",
            help="Use deterministic local stand-ins instead of OpenAI and Mapbox.",
        )
        sub.set_defaults(_handler=handler)
        return sub

    imp = _add("import-posts", "Import saved posts from a JSON or JSONL export.", _cmd_import)
    imp.add_argument("--input", help="Path to the export (a JSON array or JSONL).")
    imp.add_argument(
        "--no-embed", action="store_true", help="Skip caption-only embeddings for new posts."
    )

    ext = _add("extract", "Extract metadata and categories for pending posts.", _cmd_extract)
    ext.add_argument("--mode", choices=("realtime", "batch"), default="realtime")
    ext.add_argument("--limit", type=int, default=None)
    ext.add_argument("--post-id", action="append", dest="post_ids", default=None)

    status = _add("batch-status", "Poll a bulk extraction job; applies results once ended.", _cmd_batch_status)
    status.add_argument("batch_id")

    cancel = _add("batch-cancel", "Cancel a bulk extraction job.", _cmd_batch_cancel)
    cancel.add_argument("batch_id")

    emb = _add("embeddings", "Regenerate stale post embeddings.", _cmd_embeddings)
    emb.add_argument(
        "--all", action="store_true", help="Re-embed every categorized post, even fresh ones."
    )

    geo = _add("geocode", "Geocode post locations that have no coordinates.", _cmd_geocode)
    geo.add_argument("--limit", type=int, default=None)

    cleanup = _add("cleanup", "Analyze, execute, revert or commit a taxonomy cleanup.", _cmd_cleanup)
    cleanup.add_argument(
        "action", choices=("analyze", "execute", "revert", "commit", "status")
    )
    cleanup.add_argument("--threshold", type=int, default=None)
    cleanup.add_argument("--dry-run", action="store_true")
    cleanup.add_argument("--no-reassign", action="store_true")
    cleanup.add_argument(
        "--flat", action="store_true", help="Skip grouping categories under parents."
    )

    return parser


def _eprint(message: str) -> None:
    print(message, file=sys.stderr)


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False, sort_keys=True, default=str))


def _log_retry(log: RunLogger) -> Any:
    def _on_retry(event: RetryEvent) -> None:
        log.warning("provider_retry", **asdict(event))

    return _on_retry


def _build_pipeline(
    cfg: AppConfig, store: SQLiteGraphStore, log: RunLogger, *, offline: bool
) -> TaxonomyPipeline:
    geocoder = None
    if offline:
        from .offline import OfflineEmbeddingProvider, OfflineExtractionProvider

        extraction_provider: Any = OfflineExtractionProvider()
        embedding_provider: Any = OfflineEmbeddingProvider()
    else:
        from .embeddings import OpenAIEmbeddingProvider
        from .geocoding import MapboxGeocoder
        from .llm import OpenAIExtractionProvider

        secrets = resolve_runtime_secrets(cfg)
        on_retry = _log_retry(log)
        extraction_provider = OpenAIExtractionProvider(
            secrets.openai_api_key, openai_cfg=cfg.openai, on_retry=on_retry
        )
        embedding_provider = OpenAIEmbeddingProvider(
            secrets.openai_api_key, openai_cfg=cfg.openai, on_retry=on_retry
        )
        if cfg.geocoding.enabled and secrets.mapbox_token:
            geocoder = MapboxGeocoder(
                secrets.mapbox_token, geocoding_cfg=cfg.geocoding, on_retry=on_retry
            )

    cleanup = TaxonomyCleanupEngine(store, logger=log)
    organizer = HierarchyOrganizer(
        store,
        cleanup,
        embedder=embedding_provider,
        advisor=extraction_provider,
        batch_size=cfg.embeddings.batch_size,
        logger=log,
    )

    return TaxonomyPipeline(
        store=store,
        extractor=MetadataExtractor(
            extraction_provider,
            chunk_size=cfg.extraction.chunk_size,
            max_category_hints=cfg.extraction.max_category_hints,
            logger=log,
        ),
        resolver=CategoryResolver(store, logger=log),
        reconciler=EmbeddingReconciler(
            store, embedding_provider, batch_size=cfg.embeddings.batch_size, logger=log
        ),
        cleanup=cleanup,
        registry=JobRegistry(logger=log),
        geocoder=geocoder,
        organizer=organizer,
        logger=log,
    )


@contextmanager
def _session(args: argparse.Namespace) -> Iterator[tuple[AppConfig, SQLiteGraphStore, TaxonomyPipeline, RunLogger]]:
    cfg = load_config(args.config)
    with RunLogger.open(cfg.storage.log_path) as log:
        log.info(
            "command_started",
            command=args.command,
            config_path=str(args.config),
            config_sha256=config_sha256(cfg),
            offline=bool(args.offline),
        )
        try:
            with SQLiteGraphStore.open(cfg.storage.db_path) as store:
                pipeline = _build_pipeline(cfg, store, log, offline=bool(args.offline))
                yield cfg, store, pipeline, log
        except Exception as e:
            log.exception("command_failed", exc=e, command=args.command)
            raise
        log.info("command_finished", command=args.command)


def _read_items(path: str) -> list[dict[str, Any]]:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read input file: {p}") from e

    stripped = text.lstrip()
    try:
        if stripped.startswith("["):
            data = json.loads(stripped)
        else:
            data = [json.loads(line) for line in text.splitlines() if line.strip()]
    except ValueError as e:
        raise ConfigError(f"Input file is not valid JSON or JSONL: {p}: {e}") from e

    return [item for item in data if isinstance(item, dict)]


def _print_job(snapshot: dict[str, Any]) -> int:
    for key in ("status", "processed", "total"):
        print(f"{key}={snapshot.get(key)}")
    extra = {
        k: v
        for k, v in snapshot.items()
        if isinstance(v, int) and k not in ("processed", "total", "percent")
    }
    for key in sorted(extra):
        print(f"{key}={extra[key]}")
    if snapshot.get("notice"):
        print(f"notice={snapshot['notice']}")
    if snapshot.get("error"):
        _eprint(str(snapshot["error"]))
        return 3
    return 0


def _cmd_import(args: argparse.Namespace) -> int:
    if args.input:
        items = _read_items(args.input)
    elif args.offline:
        from .offline import OFFLINE_SAMPLE_POSTS

        items = list(OFFLINE_SAMPLE_POSTS)
    else:
        raise ConfigError("--input is required unless --offline is given")

    with _session(args) as (_, _, pipeline, _):
        result = pipeline.import_posts(items)
        print(f"imported={result.imported}")
        print(f"skipped={result.skipped}")
        if not args.no_embed and result.post_ids:
            embedded = asyncio.run(pipeline.embed_new_posts(result.post_ids))
            print(f"embedded={embedded.updated}")
    return 0


def _cmd_extract(args: argparse.Namespace) -> int:
    with _session(args) as (_, _, pipeline, _):

        async def _run() -> dict[str, Any]:
            pipeline.start_extraction(mode=args.mode, post_ids=args.post_ids, limit=args.limit)
            try:
                return await pipeline.registry.wait("extraction")
            finally:
                await pipeline.aclose()

        snapshot = asyncio.run(_run())
        progress = pipeline.registry.progress("extraction")
        batch_id = getattr(progress.result, "batch_id", None)
        if batch_id:
            print(f"batch_id={batch_id}")
        return _print_job(snapshot)


def _cmd_batch_status(args: argparse.Namespace) -> int:
    with _session(args) as (_, _, pipeline, _):
        _print_json(asyncio.run(pipeline.poll_batch(args.batch_id)))
    return 0


def _cmd_batch_cancel(args: argparse.Namespace) -> int:
    with _session(args) as (_, _, pipeline, _):
        asyncio.run(pipeline.cancel_batch(args.batch_id))
        print(f"cancel_requested={args.batch_id}")
    return 0


def _cmd_embeddings(args: argparse.Namespace) -> int:
    with _session(args) as (_, _, pipeline, _):

        async def _run() -> dict[str, Any]:
            pipeline.start_embeddings(skip_if_version2=not args.all)
            return await pipeline.registry.wait("embeddings")

        return _print_job(asyncio.run(_run()))


def _cmd_geocode(args: argparse.Namespace) -> int:
    with _session(args) as (_, _, pipeline, _):

        async def _run() -> dict[str, Any]:
            pipeline.start_geocoding(limit=args.limit)
            try:
                return await pipeline.registry.wait("geocoding")
            finally:
                await pipeline.aclose()

        return _print_job(asyncio.run(_run()))


def _cmd_cleanup(args: argparse.Namespace) -> int:
    with _session(args) as (cfg, store, pipeline, _):
        threshold = args.threshold or cfg.cleanup.min_post_threshold

        if args.action == "status":
            print(f"has_backup={str(store.has_snapshot()).lower()}")
            return 0

        if args.action == "analyze":
            proposal = pipeline.analyze_cleanup(threshold)
            _print_json(asdict(proposal))
            return 0

        if args.action == "revert":
            outcome = asyncio.run(pipeline.revert_cleanup())
            print(f"reverted={str(outcome.applied).lower()}")
            print(f"affected_posts={len(outcome.affected_post_ids)}")
            return 0

        if args.action == "commit":
            outcome = pipeline.commit_cleanup()
            print(f"committed={str(outcome.applied).lower()}")
            return 0

        config = CleanupConfig(
            min_post_threshold=threshold,
            reassign_orphans=cfg.cleanup.reassign_orphans and not args.no_reassign,
            dry_run=bool(args.dry_run),
            normalize_names=cfg.cleanup.normalize_names,
            merge_duplicates=cfg.cleanup.merge_duplicates,
            preserve_as_hashtags=cfg.cleanup.preserve_as_hashtags,
            embed_categories=cfg.cleanup.embed_categories,
            reassign_by_similarity=cfg.cleanup.reassign_by_similarity,
            semantic_merge=cfg.cleanup.semantic_merge,
            build_hierarchy=cfg.cleanup.build_hierarchy and not args.flat,
            other_categories=cfg.cleanup.other_categories,
            similarity_threshold=cfg.cleanup.similarity_threshold,
        )

        async def _run() -> dict[str, Any]:
            pipeline.start_cleanup(config)
            return await pipeline.registry.wait("cleanup")

        snapshot = asyncio.run(_run())
        for message in snapshot.get("messages") or []:
            print(f"message={message}")
        return _print_job(snapshot)


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        handler = getattr(args, "_handler")
        return int(handler(args))
    except ConfigError as e:
        _eprint(str(e))
        return 2
    except (LLMError, EmbeddingError, GeocodingError, StorageError, CleanupStateError) as e:
        _eprint(str(e))
        return 3
    except KeyboardInterrupt:
        _eprint("Interrupted")
        return 130
    except Exception as e:
        _eprint(f"Unexpected error: {e}")
        return 1
