from __future__ import annotations

import unittest
from typing import Sequence

from ig_taxonomy.errors import LLMError
from ig_taxonomy.extractor import MetadataExtractor
from ig_taxonomy.llm import BatchResultLine, PostForExtraction, ProviderBatchStatus
from ig_taxonomy.llm_schema import ChunkExtractionItem, Extraction
from ig_taxonomy.post import Post


def _item(post_id: str, *categories: str) -> ChunkExtractionItem:
    return ChunkExtractionItem.model_validate(
        {"postId": post_id, "categories": list(categories) or ["General"], "location": ""}
    )


def _posts(n: int) -> list[Post]:
    return [Post(id=f"p{i}", instagram_id=f"ig{i}", caption=f"caption {i}") for i in range(n)]


class _FakeProvider:
    def __init__(self, *, fail_on_call: int | None = None, phase: str = "ended") -> None:
        self.chunk_calls: list[list[str]] = []
        self.hints: list[list[str]] = []
        self.status_calls = 0
        self.result_calls = 0
        self.cancelled: list[str] = []
        self._fail_on_call = fail_on_call
        self._phase = phase

    async def extract_chunk(
        self, posts: Sequence[PostForExtraction], known_categories: Sequence[str]
    ) -> list[ChunkExtractionItem]:
        self.chunk_calls.append([p.post_id for p in posts])
        self.hints.append(list(known_categories))
        if self._fail_on_call == len(self.chunk_calls):
            raise LLMError("boom")
        # Out of order, plus one id nobody asked for.
        return [_item(p.post_id) for p in reversed(posts)] + [_item("stranger")]

    async def submit_batch(
        self, posts: Sequence[PostForExtraction], known_categories: Sequence[str]
    ) -> str:
        return "batch_1"

    async def batch_status(self, batch_id: str) -> ProviderBatchStatus:
        self.status_calls += 1
        return ProviderBatchStatus(
            batch_id=batch_id,
            raw_status="completed" if self._phase == "ended" else "in_progress",
            phase=self._phase,  # type: ignore[arg-type]
            completed=2,
            failed=1,
            total=3,
        )

    async def batch_results(self, status: ProviderBatchStatus) -> list[BatchResultLine]:
        self.result_calls += 1
        return [
            BatchResultLine(post_id="p0", extraction=Extraction(categories=["Food"])),
            BatchResultLine(post_id="p1", extraction=Extraction(categories=["Travel"])),
            BatchResultLine(post_id="p2", extraction=None, error="rate limited"),
        ]

    async def cancel_batch(self, batch_id: str) -> None:
        self.cancelled.append(batch_id)
        raise LLMError("already finished")


class TestMetadataExtractor(unittest.IsolatedAsyncioTestCase):
    async def test_posts_are_sent_in_chunks_of_twenty(self) -> None:
        provider = _FakeProvider()
        progress: list[tuple[int, int]] = []
        extractor = MetadataExtractor(provider)

        out = await extractor.extract_batch(
            _posts(45), ["Food", "food", ""], on_progress=lambda d, t: progress.append((d, t))
        )

        self.assertEqual([len(c) for c in provider.chunk_calls], [20, 20, 5])
        self.assertEqual(len(out), 45)
        self.assertNotIn("stranger", out)
        self.assertEqual(provider.hints[0], ["Food", "food"])
        self.assertEqual(progress, [(20, 45), (40, 45), (45, 45)])

    async def test_failed_chunk_posts_are_absent(self) -> None:
        provider = _FakeProvider(fail_on_call=2)
        extractor = MetadataExtractor(provider, chunk_size=10)

        out = await extractor.extract_batch(_posts(25), [])

        self.assertEqual(len(provider.chunk_calls), 3)
        self.assertEqual(len(out), 15)
        for i in range(10, 20):
            self.assertNotIn(f"p{i}", out)

    async def test_results_match_by_post_id(self) -> None:
        class _Tagged(_FakeProvider):
            async def extract_chunk(self, posts, known_categories):  # type: ignore[override]
                return [_item(p.post_id, f"Cat {p.post_id}") for p in reversed(posts)]

        out = await MetadataExtractor(_Tagged()).extract_batch(_posts(3), [])

        self.assertEqual(out["p0"].categories, ["Cat p0"])
        self.assertEqual(out["p2"].categories, ["Cat p2"])

    async def test_empty_captions_are_not_sent(self) -> None:
        provider = _FakeProvider()
        posts = [
            Post(id="a", instagram_id="ia", caption="  "),
            Post(id="b", instagram_id="ib", caption=None),
            Post(id="c", instagram_id="ic", caption="hello"),
            Post(id="c", instagram_id="ic", caption="hello"),
        ]

        out = await MetadataExtractor(provider).extract_batch(posts, [])

        self.assertEqual(provider.chunk_calls, [["c"]])
        self.assertEqual(set(out), {"c"})

    async def test_category_hints_are_capped(self) -> None:
        provider = _FakeProvider()
        extractor = MetadataExtractor(provider, max_category_hints=2)
        await extractor.extract_batch(_posts(1), ["A", "B", "C"])
        self.assertEqual(provider.hints[0], ["A", "B"])

    async def test_submit_requires_captions(self) -> None:
        extractor = MetadataExtractor(_FakeProvider())
        with self.assertRaises(LLMError):
            await extractor.submit_batch([Post(id="a", instagram_id="ia")], [])

        submission = await extractor.submit_batch(_posts(3), [])
        self.assertEqual(submission.batch_id, "batch_1")
        self.assertEqual(submission.request_count, 3)

    async def test_fetch_results_is_cached(self) -> None:
        provider = _FakeProvider()
        extractor = MetadataExtractor(provider)

        first = await extractor.fetch_results("batch_1")
        second = await extractor.fetch_results("batch_1")

        self.assertIs(first, second)
        self.assertEqual(set(first), {"p0", "p1"})
        self.assertEqual(provider.status_calls, 1)
        self.assertEqual(provider.result_calls, 1)

    async def test_fetch_results_before_end_raises(self) -> None:
        extractor = MetadataExtractor(_FakeProvider(phase="in_progress"))
        with self.assertRaises(LLMError):
            await extractor.fetch_results("batch_1")

        status = await extractor.poll_status("batch_1")
        self.assertEqual(status.status, "in_progress")
        self.assertEqual((status.completed, status.failed, status.total), (2, 1, 3))

    async def test_cancel_failure_is_logged_not_raised(self) -> None:
        provider = _FakeProvider()
        await MetadataExtractor(provider).cancel("batch_1")
        self.assertEqual(provider.cancelled, ["batch_1"])


if __name__ == "__main__":
    unittest.main()
