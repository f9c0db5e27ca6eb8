from __future__ import annotations

import unittest
from typing import Any

from ig_taxonomy.config_schema import OpenAIConfig
from ig_taxonomy.embeddings import OpenAIEmbeddingProvider, build_post_embedding_text
from ig_taxonomy.errors import EmbeddingError
from ig_taxonomy.post import Post
from ig_taxonomy.retry import NO_RETRY


class _Item:
    def __init__(self, index: int, embedding: list[float]) -> None:
        self.index = index
        self.embedding = embedding


class _Response:
    def __init__(self, data: list[_Item]) -> None:
        self.data = data


class _FakeEmbeddings:
    def __init__(self, *, shuffle: bool = False, drop: bool = False) -> None:
        self.calls: list[dict[str, Any]] = []
        self._shuffle = shuffle
        self._drop = drop

    async def create(self, **kwargs: Any) -> Any:
        self.calls.append(kwargs)
        data = [_Item(i, [float(len(t)), float(i)]) for i, t in enumerate(kwargs["input"])]
        if self._shuffle:
            data.reverse()
        if self._drop:
            data = data[:-1]
        return _Response(data)


class _FakeClient:
    def __init__(self, embeddings: _FakeEmbeddings) -> None:
        self.embeddings = embeddings


def _provider(fake: _FakeEmbeddings) -> OpenAIEmbeddingProvider:
    return OpenAIEmbeddingProvider(
        "sk-test",
        openai_cfg=OpenAIConfig(embedding_dimensions=2),
        client=_FakeClient(fake),  # type: ignore[arg-type]
        retry=NO_RETRY,
    )


class TestEmbeddingText(unittest.TestCase):
    def setUp(self) -> None:
        self.post = Post(
            id="p1",
            instagram_id="ig1",
            caption=" Pasta night ",
            owner_username="eats",
            location="Rome",
            venue="Da Enzo",
            hashtags=("pasta",),
            mentions=("chef",),
        )

    def test_caption_only(self) -> None:
        text = build_post_embedding_text(self.post, ["Italian"], caption_only=True)
        self.assertEqual(text, "Pasta night\nPosted by @eats")

    def test_enriched(self) -> None:
        text = build_post_embedding_text(self.post, ["Italian", "Food"])
        self.assertEqual(
            text.splitlines(),
            [
                "Pasta night",
                "Posted by @eats",
                "Categories: Italian, Food",
                "Location: Rome",
                "Venue: Da Enzo",
                "Tags: #pasta",
                "Features: @chef",
            ],
        )


class TestOpenAIEmbeddingProvider(unittest.IsolatedAsyncioTestCase):
    async def test_blank_inputs_skip_the_call(self) -> None:
        fake = _FakeEmbeddings()
        out = await _provider(fake).embed_many(["", "  "])
        self.assertEqual(out, [[], []])
        self.assertEqual(fake.calls, [])

    async def test_vectors_keep_input_order(self) -> None:
        fake = _FakeEmbeddings(shuffle=True)
        out = await _provider(fake).embed_many(["a", "", "ccc"])

        self.assertEqual(out, [[1.0, 0.0], [], [3.0, 1.0]])
        self.assertEqual(fake.calls[0]["input"], ["a", "ccc"])
        self.assertEqual(fake.calls[0]["dimensions"], 2)

    async def test_embed_one(self) -> None:
        self.assertEqual(await _provider(_FakeEmbeddings()).embed_one("xy"), [2.0, 0.0])

    async def test_short_response_raises(self) -> None:
        with self.assertRaises(EmbeddingError):
            await _provider(_FakeEmbeddings(drop=True)).embed_many(["a", "b"])


if __name__ == "__main__":
    unittest.main()
