from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Protocol, Sequence, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from .config_schema import OpenAIConfig
from .errors import LLMError
from .llm_schema import (
    CHUNK_JSON_SCHEMA,
    CHUNK_SCHEMA_NAME,
    EXTRACTION_JSON_SCHEMA,
    EXTRACTION_SCHEMA_NAME,
    HIERARCHY_JSON_SCHEMA,
    HIERARCHY_SCHEMA_NAME,
    MERGE_JSON_SCHEMA,
    MERGE_SCHEMA_NAME,
    ChunkExtraction,
    ChunkExtractionItem,
    ClusterMergePlan,
    Extraction,
    HierarchyPlan,
)
from .provider_retry import is_retryable_openai_exception
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

BatchPhase = Literal["submitted", "in_progress", "ended"]


class _AsyncOpenAIClient(Protocol):
    responses: Any
    files: Any
    batches: Any


_SYSTEM_INSTRUCTIONS = """\
You extract structured metadata from the captions of saved Instagram posts.

Use ONLY the caption and owner given. Do not guess at what the image shows.

For each post return:
- hashtags: topical keywords (without '#'), including ones implied by the caption
- location: the most specific place mentioned (city, region, or country), else ""
- venue: a named business or venue, else ""
- categories: 1-3 labels; use "Parent/Child" for a specific sub-topic
  (e.g. "Food/Italian", "Travel/Japan") or a single broad name ("Fitness")
- eventDate: an explicit event date or date range as written, else ""
- mentions: account handles (without '@')
- a short reason for each field

Prefer the existing category names listed when one fits. Keep names short,
in Title Case, and in English.
"""

_CHUNK_INSTRUCTIONS = (
    _SYSTEM_INSTRUCTIONS
    + "\nYou receive several posts. Return exactly one extraction per post, echoing its postId.\n"
)

_CHUNK_TEXT_FORMAT: dict[str, Any] = {
    "format": {
        "type": "json_schema",
        "name": CHUNK_SCHEMA_NAME,
        "strict": True,
        "schema": CHUNK_JSON_SCHEMA,
    }
}

_SINGLE_TEXT_FORMAT: dict[str, Any] = {
    "format": {
        "type": "json_schema",
        "name": EXTRACTION_SCHEMA_NAME,
        "strict": True,
        "schema": EXTRACTION_JSON_SCHEMA,
    }
}

_MERGE_INSTRUCTIONS = """\
You consolidate the category taxonomy of a personal collection of saved posts.

You receive clusters of category names that are already close in meaning. Each
cluster is identified by its first category name. Decide which clusters are
really the same topic and should become ONE category (synonyms, spelling
variants, singular/plural, a narrower name that adds nothing).

For each merge return the clusterIds involved (at least two), the canonicalName
the merged category should carry (short, Title Case, English) and a short reason.
Do not merge topics that are merely related. Return no merges if none apply.
"""

_HIERARCHY_INSTRUCTIONS = """\
You organize a flat list of categories into a two-level taxonomy.

Group categories under broad parents (e.g. "Food" over "Italian" and "Coffee").
A parent may be one of the given names or a new short name. Every child must be
one of the given names, spelled exactly as given. A parent never has a parent of
its own. Leave categories that fit no group out of every parent; they stay
standalone. Give a short reason per parent.
"""

_MERGE_TEXT_FORMAT: dict[str, Any] = {
    "format": {
        "type": "json_schema",
        "name": MERGE_SCHEMA_NAME,
        "strict": True,
        "schema": MERGE_JSON_SCHEMA,
    }
}

_HIERARCHY_TEXT_FORMAT: dict[str, Any] = {
    "format": {
        "type": "json_schema",
        "name": HIERARCHY_SCHEMA_NAME,
        "strict": True,
        "schema": HIERARCHY_JSON_SCHEMA,
    }
}

_DEFAULT_OPENAI_RETRY = RetryConfig()

_IN_FLIGHT_STATUSES = {"in_progress", "finalizing", "cancelling"}
_ENDED_STATUSES = {"completed", "failed", "expired", "cancelled"}


@dataclass(frozen=True)
class PostForExtraction:
    post_id: str
    caption: str
    owner_username: str | None = None


@dataclass(frozen=True)
class ProviderBatchStatus:
    batch_id: str
    raw_status: str
    phase: BatchPhase
    completed: int
    failed: int
    total: int
    output_file_id: str | None = None
    error_file_id: str | None = None


@dataclass(frozen=True)
class BatchResultLine:
    """One line of a finished bulk job: the post id and its extraction, or an error."""

    post_id: str
    extraction: Extraction | None
    error: str | None = None


def batch_phase(raw_status: str) -> BatchPhase:
    s = (raw_status or "").strip().lower()
    if s in _ENDED_STATUSES:
        return "ended"
    if s in _IN_FLIGHT_STATUSES:
        return "in_progress"
    return "submitted"


def _known_categories_hint(known: Sequence[str]) -> str:
    names = [n for n in known if (n or "").strip()]
    if not names:
        return "Existing categories: (none yet)"
    return "Existing categories: " + ", ".join(names)


def _post_payload(post: PostForExtraction) -> dict[str, Any]:
    return {
        "postId": post.post_id,
        "caption": post.caption,
        "owner": post.owner_username,
    }


def _build_chunk_message(posts: Sequence[PostForExtraction], known: Sequence[str]) -> str:
    payload = {"posts": [_post_payload(p) for p in posts]}
    return _known_categories_hint(known) + "\n\n" + json.dumps(
        payload, ensure_ascii=False, separators=(",", ":")
    )


def _build_single_message(post: PostForExtraction, known: Sequence[str]) -> str:
    return _known_categories_hint(known) + "\n\n" + json.dumps(
        _post_payload(post), ensure_ascii=False, separators=(",", ":")
    )


def _text_from_output(output: Any) -> str | None:
    for item in output or []:
        content = item.get("content") if isinstance(item, dict) else getattr(item, "content", None)
        for part in content or []:
            text = part.get("text") if isinstance(part, dict) else getattr(part, "text", None)
            if isinstance(text, str) and text.strip():
                return text.strip()
    return None


def _extract_output_text(response: Any) -> str:
    direct = getattr(response, "output_text", None)
    if isinstance(direct, str) and direct.strip():
        return direct.strip()

    text = _text_from_output(getattr(response, "output", None))
    if text:
        return text

    raise LLMError("OpenAI response did not include output text")


def parse_batch_output_line(line: str) -> BatchResultLine | None:
    """
    Parse one JSONL line of a Batch API output or error file.

    Returns None for blank lines or lines without a custom_id.
    """
    raw = (line or "").strip()
    if not raw:
        return None

    try:
        obj = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None

    post_id = str(obj.get("custom_id") or "").strip()
    if not post_id:
        return None

    err = obj.get("error")
    if err:
        message = err.get("message") if isinstance(err, dict) else str(err)
        return BatchResultLine(post_id=post_id, extraction=None, error=str(message or "error"))

    response = obj.get("response") or {}
    status_code = response.get("status_code")
    body = response.get("body") or {}
    if status_code is not None and int(status_code) != 200:
        return BatchResultLine(post_id=post_id, extraction=None, error=f"http_{status_code}")

    text = body.get("output_text") if isinstance(body.get("output_text"), str) else None
    text = text or _text_from_output(body.get("output"))
    if not text:
        return BatchResultLine(post_id=post_id, extraction=None, error="empty_output")

    try:
        return BatchResultLine(post_id=post_id, extraction=Extraction.model_validate_json(text))
    except ValidationError as e:
        return BatchResultLine(post_id=post_id, extraction=None, error=f"invalid_output: {e}")


class OpenAIExtractionProvider:
    """
    Structured-output extraction over the OpenAI Responses API.

    Realtime chunks go through `responses.create`; bulk jobs go through the Batch
    API with one `/v1/responses` request per post, keyed by post id.
    """

    def __init__(
        self,
        api_key: str,
        *,
        openai_cfg: OpenAIConfig,
        client: _AsyncOpenAIClient | None = None,
        retry: RetryConfig | None = None,
        on_retry: OnRetryFn | None = None,
        sleep_fn: SleepFn | None = None,
    ) -> None:
        key = (api_key or "").strip()
        if not key:
            raise ValueError("api_key must be a non-empty string")

        self._cfg = openai_cfg
        self._retry = retry or _DEFAULT_OPENAI_RETRY
        self._on_retry = on_retry
        self._sleep_fn = sleep_fn
        # Client-level retries are disabled so one policy applies everywhere.
        self._client: _AsyncOpenAIClient = client or AsyncOpenAI(api_key=key, max_retries=0)

    async def _call(self, fn: Callable[[], Awaitable[T]], *, operation: str) -> T:
        return await call_with_retries(
            fn,
            cfg=self._retry,
            is_retryable=is_retryable_openai_exception,
            operation=operation,
            on_retry=self._on_retry,
            sleep_fn=self._sleep_fn,
        )

    async def extract_chunk(
        self,
        posts: Sequence[PostForExtraction],
        known_categories: Sequence[str],
    ) -> list[ChunkExtractionItem]:
        """
        Extract metadata for several posts in one request.

        Items come back tagged with their postId; ordering is not relied upon.
        """
        if not posts:
            return []

        parsed = await self._structured(
            ChunkExtraction,
            instructions=_CHUNK_INSTRUCTIONS,
            message=_build_chunk_message(posts, known_categories),
            text_format=_CHUNK_TEXT_FORMAT,
        )
        return list(parsed.extractions)

    async def merge_clusters(self, clusters: Sequence[Sequence[str]]) -> ClusterMergePlan:
        """
        Ask which similarity clusters name the same topic.

        Each cluster is a list of category names; its id is its first name.
        """
        groups = [[n for n in c if (n or "").strip()] for c in clusters]
        groups = [g for g in groups if g]
        if not groups:
            return ClusterMergePlan()

        payload = {"clusters": [{"clusterId": g[0], "categories": g} for g in groups]}
        return await self._structured(
            ClusterMergePlan,
            instructions=_MERGE_INSTRUCTIONS,
            message=json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
            text_format=_MERGE_TEXT_FORMAT,
        )

    async def build_hierarchy(self, names: Sequence[str]) -> HierarchyPlan:
        """Ask for parent groups over a flat list of category names."""
        clean = [n for n in names if (n or "").strip()]
        if not clean:
            return HierarchyPlan()

        return await self._structured(
            HierarchyPlan,
            instructions=_HIERARCHY_INSTRUCTIONS,
            message=json.dumps({"categories": clean}, ensure_ascii=False, separators=(",", ":")),
            text_format=_HIERARCHY_TEXT_FORMAT,
        )

    async def _structured(
        self,
        model_cls: type[M],
        *,
        instructions: str,
        message: str,
        text_format: dict[str, Any],
    ) -> M:
        model = self._cfg.extraction_model

        async def _do_call() -> Any:
            return await self._client.responses.create(
                model=model,
                instructions=instructions,
                input=[{"role": "user", "content": message}],
                text=text_format,
                max_output_tokens=self._cfg.max_output_tokens,
            )

        try:
            response = await self._call(_do_call, operation=f"openai.responses.create:{model}")
        except Exception as e:
            raise LLMError(f"OpenAI call failed ({model}): {e}") from e

        raw = _extract_output_text(response)
        try:
            return model_cls.model_validate_json(raw)
        except ValidationError as e:
            raise LLMError(f"Failed to parse structured output ({model}): {e}") from e

    def build_batch_lines(
        self,
        posts: Sequence[PostForExtraction],
        known_categories: Sequence[str],
    ) -> list[str]:
        lines: list[str] = []
        for post in posts:
            request = {
                "custom_id": post.post_id,
                "method": "POST",
                "url": "/v1/responses",
                "body": {
                    "model": self._cfg.extraction_model,
                    "instructions": _SYSTEM_INSTRUCTIONS,
                    "input": [
                        {"role": "user", "content": _build_single_message(post, known_categories)}
                    ],
                    "text": _SINGLE_TEXT_FORMAT,
                    "max_output_tokens": self._cfg.batch_max_output_tokens,
                },
            }
            lines.append(json.dumps(request, ensure_ascii=False, separators=(",", ":")))
        return lines

    async def submit_batch(
        self,
        posts: Sequence[PostForExtraction],
        known_categories: Sequence[str],
    ) -> str:
        """Upload one request per post and start a bulk job; returns the batch id."""
        if not posts:
            raise LLMError("Cannot submit an empty batch")

        payload = ("\n".join(self.build_batch_lines(posts, known_categories)) + "\n").encode("utf-8")

        async def _upload() -> Any:
            return await self._client.files.create(
                file=("extraction_batch.jsonl", payload),
                purpose="batch",
            )

        try:
            uploaded = await self._call(_upload, operation="openai.files.create")
        except Exception as e:
            raise LLMError(f"Failed to upload batch input: {e}") from e

        file_id = str(getattr(uploaded, "id", "") or "").strip()
        if not file_id:
            raise LLMError("Batch input upload returned no file id")

        async def _create() -> Any:
            return await self._client.batches.create(
                input_file_id=file_id,
                endpoint="/v1/responses",
                completion_window=self._cfg.batch_completion_window,
            )

        try:
            batch = await self._call(_create, operation="openai.batches.create")
        except Exception as e:
            raise LLMError(f"Failed to create batch: {e}") from e

        batch_id = str(getattr(batch, "id", "") or "").strip()
        if not batch_id:
            raise LLMError("Batch creation returned no batch id")
        return batch_id

    async def batch_status(self, batch_id: str) -> ProviderBatchStatus:
        bid = (batch_id or "").strip()
        if not bid:
            raise ValueError("batch_id must be non-empty")

        async def _retrieve() -> Any:
            return await self._client.batches.retrieve(bid)

        try:
            batch = await self._call(_retrieve, operation="openai.batches.retrieve")
        except Exception as e:
            raise LLMError(f"Failed to retrieve batch {bid}: {e}") from e

        counts = getattr(batch, "request_counts", None)
        raw_status = str(getattr(batch, "status", "") or "")
        return ProviderBatchStatus(
            batch_id=bid,
            raw_status=raw_status,
            phase=batch_phase(raw_status),
            completed=int(getattr(counts, "completed", 0) or 0),
            failed=int(getattr(counts, "failed", 0) or 0),
            total=int(getattr(counts, "total", 0) or 0),
            output_file_id=getattr(batch, "output_file_id", None) or None,
            error_file_id=getattr(batch, "error_file_id", None) or None,
        )

    async def batch_results(self, status: ProviderBatchStatus) -> list[BatchResultLine]:
        """Download and parse the output and error files of an ended job."""
        if status.phase != "ended":
            raise LLMError(
                f"Batch {status.batch_id} is not finished (status={status.raw_status})"
            )

        results: list[BatchResultLine] = []
        for file_id in (status.output_file_id, status.error_file_id):
            if not file_id:
                continue

            async def _download(fid: str = file_id) -> Any:
                return await self._client.files.content(fid)

            try:
                content = await self._call(_download, operation="openai.files.content")
            except Exception as e:
                raise LLMError(f"Failed to download batch results {file_id}: {e}") from e

            text = getattr(content, "text", None)
            if not isinstance(text, str):
                raise LLMError(f"Batch results {file_id} were not text")

            for line in text.splitlines():
                parsed = parse_batch_output_line(line)
                if parsed is not None:
                    results.append(parsed)
        return results

    async def cancel_batch(self, batch_id: str) -> None:
        bid = (batch_id or "").strip()
        if not bid:
            raise ValueError("batch_id must be non-empty")

        async def _cancel() -> Any:
            return await self._client.batches.cancel(bid)

        try:
            await self._call(_cancel, operation="openai.batches.cancel")
        except Exception as e:
            raise LLMError(f"Failed to cancel batch {bid}: {e}") from e
