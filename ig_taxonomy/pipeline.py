from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Literal, Mapping, Sequence

from .cleanup import CleanupConfig, CleanupProposal, LifecycleOutcome, TaxonomyCleanupEngine
from .errors import GeocodingError, StorageError
from .extractor import MetadataExtractor
from .geocoding import MapboxGeocoder
from .jobs import JobProgress, JobRegistry
from .llm_schema import Extraction
from .normalize import post_from_item
from .post import Post
from .reconciler import EmbeddingReconciler, RegenerateResult
from .reorganize import HierarchyOrganizer
from .resolver import CategoryResolver, CategoryWorkingSet
from .run_log import RunLogger
from .storage import SQLiteGraphStore

ExtractionMode = Literal["realtime", "batch"]
RESULTS_PROCESSING = "results_processing"


@dataclass(frozen=True)
class ImportResult:
    imported: int
    skipped: int
    post_ids: tuple[str, ...]


@dataclass(frozen=True)
class ApplyCounts:
    applied: int = 0
    categories_created: int = 0
    labels_skipped: int = 0
    labels_failed: int = 0


class TaxonomyPipeline:
    """
    Wires extraction, category resolution, embeddings, geocoding and cleanup
    together, with every long operation running as a registry-owned job.
    """

    def __init__(
        self,
        *,
        store: SQLiteGraphStore,
        extractor: MetadataExtractor,
        resolver: CategoryResolver,
        reconciler: EmbeddingReconciler,
        cleanup: TaxonomyCleanupEngine,
        registry: JobRegistry | None = None,
        geocoder: MapboxGeocoder | None = None,
        organizer: HierarchyOrganizer | None = None,
        logger: RunLogger | None = None,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._resolver = resolver
        self._reconciler = reconciler
        self._cleanup = cleanup
        self._logger = logger or RunLogger()
        self._registry = registry or JobRegistry(logger=self._logger)
        self._geocoder = geocoder
        self._organizer = organizer
        self._processing: set[str] = set()
        self._outcomes: dict[str, dict[str, Any]] = {}

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    def status(self, kind: str) -> dict[str, Any]:
        return self._registry.snapshot(kind)

    async def aclose(self) -> None:
        if self._geocoder is not None:
            await self._geocoder.aclose()

    # ----------------------------------------------------------------- import

    def import_posts(self, items: Iterable[Mapping[str, Any]]) -> ImportResult:
        posts: list[Post] = []
        skipped = 0
        for item in items:
            post = post_from_item(item)
            if post is None:
                skipped += 1
                continue
            posts.append(post)

        self._store.upsert_posts(posts)
        self._logger.info("import.done", imported=len(posts), skipped=skipped)
        return ImportResult(
            imported=len(posts), skipped=skipped, post_ids=tuple(p.id for p in posts)
        )

    async def embed_new_posts(self, post_ids: Sequence[str]) -> RegenerateResult:
        """Caption-only embeddings for freshly imported posts."""
        return await self._reconciler.embed_caption_only(post_ids)

    # ------------------------------------------------------------- extraction

    def _apply_extractions(
        self, extractions: Mapping[str, Extraction], ws: CategoryWorkingSet
    ) -> ApplyCounts:
        applied = created = skipped = failed = 0
        posts = self._store.get_posts(list(extractions))

        for post_id, extraction in extractions.items():
            post = posts.get(post_id)
            if post is None:
                self._logger.warning("extract.unknown_post", post_id=post_id)
                continue

            if post.last_edited_by == "user":
                self._logger.info("extract.keep_user_metadata", post_id=post_id)
            else:
                try:
                    self._store.update_post_metadata(
                        post_id,
                        extraction.metadata_updates(),
                        source="model",
                        reasons=extraction.reasons(),
                    )
                except StorageError as e:
                    self._logger.exception("extract.apply_failed", exc=e, post_id=post_id)
                    continue

            outcome = self._resolver.resolve(post_id, extraction.categories, ws)
            applied += 1
            created += len(outcome.created)
            skipped += len(outcome.skipped)
            failed += len(outcome.failed)

        return ApplyCounts(
            applied=applied,
            categories_created=created,
            labels_skipped=skipped,
            labels_failed=failed,
        )

    def _select_posts(self, post_ids: Sequence[str] | None, limit: int | None) -> list[Post]:
        if post_ids:
            found = self._store.get_posts(post_ids)
            return [found[p] for p in post_ids if p in found]
        return self._store.posts_pending_extraction(limit=limit)

    async def _refresh_after_extraction(self, post_ids: Sequence[str], progress: JobProgress) -> None:
        if not post_ids:
            return
        progress.update(step="embeddings", message="Refreshing embeddings for extracted posts...")
        result = await self._reconciler.regenerate(post_ids, skip_if_version2=False)
        progress.update(embeddings_updated=result.updated, embeddings_failed=result.failed)

        if self._geocoder is not None:
            progress.update(step="geocoding", message="Geocoding extracted locations...")
            wanted = set(post_ids)
            counts = await self._geocode_posts(
                [p for p in self._store.posts_needing_geocoding() if p.id in wanted]
            )
            progress.update(geocoded=counts[0], geocode_failed=counts[1])

    def start_extraction(
        self,
        *,
        mode: ExtractionMode = "realtime",
        post_ids: Sequence[str] | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        if mode not in ("realtime", "batch"):
            raise ValueError(f"Unknown extraction mode: {mode}")

        async def _job(progress: JobProgress) -> Any:
            posts = self._select_posts(post_ids, limit)
            progress.update(total=len(posts), message=f"Extracting metadata for {len(posts)} posts...")
            hints = self._resolver.new_working_set().names()

            if mode == "batch":
                if not posts:
                    progress.add_message("No posts to extract")
                    return None
                submission = await self._extractor.submit_batch(posts, hints)
                self._store.record_batch_submission(
                    submission.batch_id, request_count=submission.request_count
                )
                progress.update(
                    processed=submission.request_count,
                    submitted=submission.request_count,
                    message=f"Submitted batch {submission.batch_id}",
                )
                return submission

            def _on_chunk(completed: int, total: int) -> None:
                progress.update(processed=completed, total=total)

            extractions = await self._extractor.extract_batch(posts, hints, on_progress=_on_chunk)
            # Taxonomy may have changed during the model calls.
            counts = self._apply_extractions(extractions, self._resolver.new_working_set())
            progress.update(
                processed=len(posts),
                extracted=counts.applied,
                failed=len(posts) - counts.applied,
                categories_created=counts.categories_created,
                message=f"Extracted {counts.applied} of {len(posts)} posts",
            )
            await self._refresh_after_extraction(list(extractions), progress)
            return counts

        return self._registry.start("extraction", _job)

    async def poll_batch(self, batch_id: str) -> dict[str, Any]:
        """
        Status of a bulk extraction job.

        Once the job has ended its results are applied exactly once; the outcome
        is cached per batch id and every later poll returns it unchanged.
        """
        bid = (batch_id or "").strip()
        if not bid:
            raise ValueError("batch_id must be non-empty")

        cached = self._cached_outcome(bid)
        if cached is not None:
            return cached
        if bid in self._processing:
            return {"batch_id": bid, "status": RESULTS_PROCESSING}

        status = await self._extractor.poll_status(bid)
        if status.status != "ended":
            self._store.update_batch_status(bid, status.status)
            return {
                "batch_id": bid,
                "status": status.status,
                "completed": status.completed,
                "failed": status.failed,
                "total": status.total,
            }

        # Re-check after the await: another poll may have claimed the batch meanwhile.
        cached = self._cached_outcome(bid)
        if cached is not None:
            return cached
        if bid in self._processing:
            return {"batch_id": bid, "status": RESULTS_PROCESSING}

        self._processing.add(bid)
        try:
            outcome = await self._materialize(bid, total=status.total)
        finally:
            self._processing.discard(bid)

        self._outcomes[bid] = outcome
        self._store.record_batch_outcome(
            bid, status=outcome["status"], outcome=outcome, request_count=status.total
        )
        return outcome

    def _cached_outcome(self, batch_id: str) -> dict[str, Any] | None:
        cached = self._outcomes.get(batch_id)
        if cached is not None:
            return cached

        record = self._store.get_batch_job(batch_id)
        if record is not None and record.outcome is not None:
            self._outcomes[batch_id] = record.outcome
            return record.outcome
        return None

    async def _materialize(self, batch_id: str, *, total: int) -> dict[str, Any]:
        try:
            extractions = await self._extractor.fetch_results(batch_id)
            counts = self._apply_extractions(extractions, self._resolver.new_working_set())
            refreshed = await self._reconciler.regenerate(list(extractions), skip_if_version2=False)
        except Exception as e:
            self._logger.exception("extract.batch_materialize_failed", exc=e, batch_id=batch_id)
            return {"batch_id": batch_id, "status": "failed", "error": str(e)}

        self._logger.info(
            "extract.batch_applied",
            batch_id=batch_id,
            applied=counts.applied,
            categories_created=counts.categories_created,
        )
        return {
            "batch_id": batch_id,
            "status": "done",
            "total": total,
            "extracted": counts.applied,
            "failed": max(0, total - counts.applied),
            "categories_created": counts.categories_created,
            "embeddings_updated": refreshed.updated,
        }

    async def cancel_batch(self, batch_id: str) -> None:
        await self._extractor.cancel(batch_id)

    # ------------------------------------------------------------- embeddings

    def start_embeddings(
        self,
        *,
        post_ids: Sequence[str] | None = None,
        skip_if_version2: bool = True,
    ) -> dict[str, Any]:
        async def _job(progress: JobProgress) -> RegenerateResult:
            if post_ids:
                ids = list(post_ids)
            elif skip_if_version2:
                ids = self._reconciler.posts_needing_refresh()
            else:
                ids = self._store.categorized_post_ids()
            progress.update(total=len(ids), message=f"Regenerating embeddings for {len(ids)} posts...")

            def _on_batch(r: RegenerateResult) -> None:
                progress.update(
                    processed=r.processed, updated=r.updated, skipped=r.skipped, failed=r.failed
                )

            result = await self._reconciler.regenerate(
                ids, skip_if_version2=skip_if_version2, on_progress=_on_batch
            )
            progress.add_message(f"Updated {result.updated} embeddings")
            return result

        return self._registry.start("embeddings", _job)

    # -------------------------------------------------------------- geocoding

    async def _geocode_posts(self, posts: Sequence[Post], progress: JobProgress | None = None) -> tuple[int, int]:
        geocoder = self._geocoder
        if geocoder is None:
            return 0, 0

        done = failed = 0
        for i, post in enumerate(posts, start=1):
            try:
                result = await geocoder.geocode(post.location or "")
            except GeocodingError as e:
                failed += 1
                self._logger.exception("geocode.failed", exc=e, post_id=post.id)
            else:
                if result is not None:
                    self._store.update_post_coordinates(
                        post.id,
                        latitude=result.latitude,
                        longitude=result.longitude,
                        country=result.country,
                        city=result.city,
                        neighborhood=result.neighborhood,
                    )
                    done += 1
            if progress is not None:
                progress.update(processed=i, geocoded=done, failed=failed)
        return done, failed

    def start_geocoding(self, *, limit: int | None = None) -> dict[str, Any]:
        async def _job(progress: JobProgress) -> tuple[int, int]:
            if self._geocoder is None:
                raise GeocodingError("Geocoding is disabled")
            posts = self._store.posts_needing_geocoding(limit=limit)
            progress.update(total=len(posts), message=f"Geocoding {len(posts)} posts...")
            return await self._geocode_posts(posts, progress)

        return self._registry.start("geocoding", _job)

    # ---------------------------------------------------------------- cleanup

    def start_cleanup(self, config: CleanupConfig) -> dict[str, Any]:
        organizer = None if config.dry_run else self._organizer

        async def _job(progress: JobProgress) -> Any:
            # With a reorganization to follow, the engine covers 0-70%.
            scale = 0.7 if organizer is not None else 1.0

            def _on_progress(step: str, message: str, percent: int) -> None:
                progress.update(step=step, message=message, percent=int(percent * scale))

            def _on_reorganize(step: str, message: str, percent: int) -> None:
                if step != "done":
                    progress.update(step=step, message=message, percent=70 + int(percent * 0.29))

            result = self._cleanup.execute(config, on_progress=_on_progress)
            progress.update(
                processed=result.deleted_count,
                total=result.deleted_count,
                deleted=result.deleted_count,
                reassigned=result.reassigned_posts,
                orphaned=result.orphaned_posts,
                hashtags_added=result.hashtags_added,
                remaining=result.remaining_count,
            )

            affected = set(result.affected_post_ids)
            if organizer is not None:
                reorganized = await organizer.run(
                    config, removed_post_ids=result.affected_post_ids, on_progress=_on_reorganize
                )
                affected |= reorganized.affected_post_ids
                progress.update(
                    categories_embedded=reorganized.categories_embedded,
                    reassigned_by_similarity=reorganized.reassigned_by_similarity,
                    semantic_merges=reorganized.semantic_merges,
                    parents_applied=reorganized.parents_applied,
                    child_links=reorganized.child_links,
                    other_categories_created=reorganized.other_categories_created,
                )
                for step in reorganized.skipped_steps:
                    progress.add_message(f"Skipped {step} after a provider error")

            if not result.dry_run and affected:
                refreshed = await self._reconciler.regenerate(
                    sorted(affected), skip_if_version2=False
                )
                progress.update(embeddings_updated=refreshed.updated)
            return result

        return self._registry.start("cleanup", _job)

    def analyze_cleanup(self, min_post_threshold: int) -> CleanupProposal:
        return self._cleanup.analyze(min_post_threshold)

    async def revert_cleanup(self) -> LifecycleOutcome:
        outcome = self._cleanup.revert()
        if outcome.affected_post_ids:
            await self._reconciler.regenerate(outcome.affected_post_ids, skip_if_version2=False)
        return outcome

    def commit_cleanup(self) -> LifecycleOutcome:
        return self._cleanup.commit()
