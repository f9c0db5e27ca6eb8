from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

from .errors import LLMError
from .llm import BatchPhase, BatchResultLine, PostForExtraction, ProviderBatchStatus
from .llm_schema import ChunkExtractionItem, Extraction
from .post import Post
from .run_log import RunLogger

ProgressFn = Callable[[int, int], None]


class ExtractionProvider(Protocol):
    async def extract_chunk(
        self, posts: Sequence[PostForExtraction], known_categories: Sequence[str]
    ) -> list[ChunkExtractionItem]: ...

    async def submit_batch(
        self, posts: Sequence[PostForExtraction], known_categories: Sequence[str]
    ) -> str: ...

    async def batch_status(self, batch_id: str) -> ProviderBatchStatus: ...

    async def batch_results(self, status: ProviderBatchStatus) -> list[BatchResultLine]: ...

    async def cancel_batch(self, batch_id: str) -> None: ...


@dataclass(frozen=True)
class BatchSubmission:
    batch_id: str
    request_count: int


@dataclass(frozen=True)
class BatchStatus:
    batch_id: str
    status: BatchPhase
    completed: int
    failed: int
    total: int


def _for_extraction(post: Post) -> PostForExtraction | None:
    caption = (post.caption or "").strip()
    if not caption:
        return None
    return PostForExtraction(post_id=post.id, caption=caption, owner_username=post.owner_username)


class MetadataExtractor:
    """
    Turns captions into `Extraction`s, either in realtime chunks or as a bulk job.

    A failed chunk is logged and its posts are left out of the result; callers
    treat missing post ids as "not extracted this run".
    """

    def __init__(
        self,
        provider: ExtractionProvider,
        *,
        chunk_size: int = 20,
        max_category_hints: int = 300,
        logger: RunLogger | None = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")

        self._provider = provider
        self._chunk_size = int(chunk_size)
        self._max_hints = max(0, int(max_category_hints))
        self._logger = logger or RunLogger()
        self._results: dict[str, dict[str, Extraction]] = {}

    def _hints(self, known: Sequence[str]) -> list[str]:
        return list(dict.fromkeys(n for n in known if (n or "").strip()))[: self._max_hints]

    def _prepare(self, posts: Sequence[Post]) -> list[PostForExtraction]:
        prepared: list[PostForExtraction] = []
        seen: set[str] = set()
        for post in posts:
            if post.id in seen:
                continue
            seen.add(post.id)

            item = _for_extraction(post)
            if item is None:
                self._logger.info("extract.skip", post_id=post.id, reason="empty_caption")
                continue
            prepared.append(item)
        return prepared

    async def extract_batch(
        self,
        posts: Sequence[Post],
        known_category_names: Sequence[str],
        *,
        on_progress: ProgressFn | None = None,
    ) -> dict[str, Extraction]:
        prepared = self._prepare(posts)
        hints = self._hints(known_category_names)
        total = len(prepared)
        out: dict[str, Extraction] = {}
        completed = 0

        for start in range(0, total, self._chunk_size):
            chunk = prepared[start : start + self._chunk_size]
            wanted = {p.post_id for p in chunk}

            try:
                items = await self._provider.extract_chunk(chunk, hints)
            except LLMError as e:
                self._logger.exception(
                    "extract.chunk_failed",
                    exc=e,
                    chunk_start=start,
                    chunk_size=len(chunk),
                )
                items = []

            for item in items:
                if item.post_id not in wanted:
                    self._logger.warning("extract.unexpected_post_id", post_id=item.post_id)
                    continue
                if item.post_id in out:
                    continue
                out[item.post_id] = item.extraction()

            missing = wanted - set(out)
            if items and missing:
                self._logger.warning(
                    "extract.missing_results",
                    chunk_start=start,
                    missing=sorted(missing),
                )

            completed += len(chunk)
            if on_progress is not None:
                on_progress(completed, total)

        return out

    async def submit_batch(
        self, posts: Sequence[Post], known_category_names: Sequence[str]
    ) -> BatchSubmission:
        prepared = self._prepare(posts)
        if not prepared:
            raise LLMError("No posts with captions to submit")

        batch_id = await self._provider.submit_batch(prepared, self._hints(known_category_names))
        self._logger.info("extract.batch_submitted", batch_id=batch_id, request_count=len(prepared))
        return BatchSubmission(batch_id=batch_id, request_count=len(prepared))

    async def poll_status(self, batch_id: str) -> BatchStatus:
        status = await self._provider.batch_status(batch_id)
        return BatchStatus(
            batch_id=status.batch_id,
            status=status.phase,
            completed=status.completed,
            failed=status.failed,
            total=status.total,
        )

    async def fetch_results(self, batch_id: str) -> dict[str, Extraction]:
        """
        Materialize the results of an ended bulk job.

        The first full materialization is cached for the lifetime of this
        extractor; later calls return the same mapping without network access.
        """
        cached = self._results.get(batch_id)
        if cached is not None:
            return cached

        status = await self._provider.batch_status(batch_id)
        if status.phase != "ended":
            raise LLMError(f"Batch {batch_id} has not ended (status={status.raw_status})")

        lines = await self._provider.batch_results(status)
        out: dict[str, Extraction] = {}
        for line in lines:
            if line.extraction is None:
                self._logger.warning(
                    "extract.batch_item_failed",
                    post_id=line.post_id,
                    batch_id=batch_id,
                    error=line.error,
                )
                continue
            out.setdefault(line.post_id, line.extraction)

        self._results[batch_id] = out
        self._logger.info(
            "extract.batch_materialized",
            batch_id=batch_id,
            results=len(out),
            failed=len(lines) - len(out),
        )
        return out

    async def cancel(self, batch_id: str) -> None:
        try:
            await self._provider.cancel_batch(batch_id)
        except LLMError as e:
            self._logger.exception("extract.batch_cancel_failed", exc=e, batch_id=batch_id)
            return
        self._logger.info("extract.batch_cancelled", batch_id=batch_id)
