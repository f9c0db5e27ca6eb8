from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from .embeddings import build_post_embedding_text
from .errors import EmbeddingError, StorageError
from .post import EMBEDDING_VERSION_CAPTION, EMBEDDING_VERSION_ENRICHED
from .run_log import RunLogger
from .storage import SQLiteGraphStore


class EmbeddingProvider(Protocol):
    async def embed_one(self, text: str) -> list[float]: ...

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]: ...


@dataclass(frozen=True)
class RegenerateResult:
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


ProgressFn = Callable[[RegenerateResult], None]


class EmbeddingReconciler:
    """
    Keeps post embeddings in step with their metadata.

    Posts move from version 0 (none) to 1 (caption only, at sync time) to 2
    (caption plus categories, place and tags). Writes never lower a version.
    """

    def __init__(
        self,
        store: SQLiteGraphStore,
        provider: EmbeddingProvider,
        *,
        batch_size: int = 100,
        logger: RunLogger | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store = store
        self._provider = provider
        self._batch_size = int(batch_size)
        self._logger = logger or RunLogger()

    def posts_needing_refresh(self) -> list[str]:
        return self._store.posts_needing_enriched_embeddings()

    async def regenerate(
        self,
        post_ids: Sequence[str],
        *,
        skip_if_version2: bool = True,
        on_progress: ProgressFn | None = None,
    ) -> RegenerateResult:
        return await self._run(
            post_ids,
            version=EMBEDDING_VERSION_ENRICHED,
            skip_at_or_above=EMBEDDING_VERSION_ENRICHED if skip_if_version2 else None,
            on_progress=on_progress,
        )

    async def embed_caption_only(
        self,
        post_ids: Sequence[str],
        *,
        on_progress: ProgressFn | None = None,
    ) -> RegenerateResult:
        """Sync-time embedding from caption and owner; enriched posts are left alone."""
        return await self._run(
            post_ids,
            version=EMBEDDING_VERSION_CAPTION,
            skip_at_or_above=EMBEDDING_VERSION_ENRICHED,
            on_progress=on_progress,
        )

    async def _run(
        self,
        post_ids: Sequence[str],
        *,
        version: int,
        skip_at_or_above: int | None,
        on_progress: ProgressFn | None,
    ) -> RegenerateResult:
        ids = list(dict.fromkeys(p for p in post_ids if p))
        processed = updated = skipped = failed = 0

        for start in range(0, len(ids), self._batch_size):
            batch = ids[start : start + self._batch_size]
            posts = self._store.get_posts(batch)
            names = (
                self._store.category_names_for_posts(batch)
                if version == EMBEDDING_VERSION_ENRICHED
                else {}
            )

            pending: list[str] = []
            texts: list[str] = []
            for pid in batch:
                post = posts.get(pid)
                if post is None or not (post.caption or "").strip():
                    skipped += 1
                    continue
                if skip_at_or_above is not None and post.embedding_version >= skip_at_or_above:
                    skipped += 1
                    continue
                pending.append(pid)
                texts.append(
                    build_post_embedding_text(
                        post,
                        names.get(pid, []),
                        caption_only=(version == EMBEDDING_VERSION_CAPTION),
                    )
                )

            if pending:
                try:
                    vectors = await self._provider.embed_many(texts)
                    written = self._store.set_post_embeddings(
                        {pid: vec for pid, vec in zip(pending, vectors) if vec},
                        version=version,
                    )
                except (EmbeddingError, StorageError) as e:
                    failed += len(pending)
                    self._logger.exception(
                        "embeddings.batch_failed",
                        exc=e,
                        batch_start=start,
                        batch_size=len(batch),
                    )
                else:
                    updated += written
                    if written < len(pending):
                        skipped += len(pending) - written

            processed += len(batch)
            result = RegenerateResult(
                processed=processed, updated=updated, skipped=skipped, failed=failed
            )
            self._logger.info(
                "embeddings.batch_done",
                version=version,
                processed=processed,
                total=len(ids),
                updated=updated,
                skipped=skipped,
                failed=failed,
            )
            if on_progress is not None:
                on_progress(result)

        return RegenerateResult(processed=processed, updated=updated, skipped=skipped, failed=failed)
