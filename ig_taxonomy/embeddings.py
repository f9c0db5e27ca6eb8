from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, Sequence, TypeVar

from openai import AsyncOpenAI

from .config_schema import OpenAIConfig
from .errors import EmbeddingError
from .post import Post
from .provider_retry import is_retryable_openai_exception
from .retry import OnRetryFn, RetryConfig, SleepFn, call_with_retries

T = TypeVar("T")

_DEFAULT_OPENAI_RETRY = RetryConfig()


class _EmbeddingsClient(Protocol):
    embeddings: Any


def build_post_embedding_text(
    post: Post,
    categories: Sequence[str] = (),
    *,
    caption_only: bool = False,
) -> str:
    """
    The text a post is embedded from.

    Caption-only text is what a freshly synced post gets; the enriched form adds
    categories, place, hashtags and mentions once extraction has run.
    """
    parts: list[str] = []

    caption = (post.caption or "").strip()
    if caption:
        parts.append(caption)

    owner = (post.owner_username or "").strip()
    if owner:
        parts.append(f"Posted by @{owner}")

    if caption_only:
        return "\n".join(parts)

    if categories:
        parts.append("Categories: " + ", ".join(categories))
    if post.location:
        parts.append(f"Location: {post.location}")
    if post.venue:
        parts.append(f"Venue: {post.venue}")
    if post.hashtags:
        parts.append("Tags: " + ", ".join(f"#{t}" for t in post.hashtags))
    if post.mentions:
        parts.append("Features: " + ", ".join(f"@{m}" for m in post.mentions))

    return "\n".join(parts)


class OpenAIEmbeddingProvider:
    """Order-preserving text embeddings; blank inputs map to empty vectors without a call."""

    def __init__(
        self,
        api_key: str,
        *,
        openai_cfg: OpenAIConfig,
        client: _EmbeddingsClient | None = None,
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
        self._client: _EmbeddingsClient = client or AsyncOpenAI(api_key=key, max_retries=0)

    async def _call(self, fn: Callable[[], Awaitable[T]], *, operation: str) -> T:
        return await call_with_retries(
            fn,
            cfg=self._retry,
            is_retryable=is_retryable_openai_exception,
            operation=operation,
            on_retry=self._on_retry,
            sleep_fn=self._sleep_fn,
        )

    async def embed_one(self, text: str) -> list[float]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        cleaned = [(t or "").strip() for t in texts]
        indices = [i for i, t in enumerate(cleaned) if t]
        out: list[list[float]] = [[] for _ in cleaned]
        if not indices:
            return out

        model = self._cfg.embedding_model
        inputs = [cleaned[i] for i in indices]

        async def _do_call() -> Any:
            return await self._client.embeddings.create(
                model=model,
                input=inputs,
                dimensions=self._cfg.embedding_dimensions,
            )

        try:
            response = await self._call(_do_call, operation=f"openai.embeddings.create:{model}")
        except Exception as e:
            raise EmbeddingError(f"Embedding request failed ({model}): {e}") from e

        data = list(getattr(response, "data", None) or [])
        if len(data) != len(inputs):
            raise EmbeddingError(
                f"Embedding response had {len(data)} vectors for {len(inputs)} inputs"
            )

        data.sort(key=lambda item: int(getattr(item, "index", 0)))
        for slot, item in zip(indices, data):
            vector = getattr(item, "embedding", None)
            if not vector:
                raise EmbeddingError("Embedding response contained an empty vector")
            out[slot] = [float(x) for x in vector]
        return out
