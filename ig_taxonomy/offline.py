from __future__ import annotations

import hashlib
import math
import re
from typing import Any, Sequence

from .llm import BatchResultLine, PostForExtraction, ProviderBatchStatus
from .llm_schema import ChunkExtractionItem, ClusterMergePlan, Extraction, HierarchyPlan
from .normalize import category_key

_HASHTAG_RE = re.compile(r"#(\w+)")
_MENTION_RE = re.compile(r"@([\w.]+)")
_PLACE_RE = re.compile(r"\b(?:in|at) ([A-Z][\w']+(?: [A-Z][\w']+)*)")

_KEYWORD_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("pasta", "Food/Italian"),
    ("pizza", "Food/Italian"),
    ("ramen", "Food/Japanese"),
    ("sushi", "Food/Japanese"),
    ("coffee", "Food/Coffee"),
    ("hike", "Travel/Hiking"),
    ("trail", "Travel/Hiking"),
    ("beach", "Travel/Beaches"),
    ("workout", "Fitness"),
    ("pull-up", "Fitness"),
    ("outfit", "Fashion/Outfits"),
)

OFFLINE_SAMPLE_POSTS: list[dict[str, Any]] = [
    {
        "id": "p1",
        "instagramId": "C0ffee001",
        "caption": "Best pasta in Rome, hands down. Thanks @trattoria.roma #foodie",
        "ownerUsername": "eats.daily",
        "savedAt": "2025-01-01T00:00:00Z",
    },
    {
        "id": "p2",
        "instagramId": "C0ffee002",
        "caption": "Wood-fired pizza night in Naples #pizza",
        "ownerUsername": "eats.daily",
        "savedAt": "2025-01-02T00:00:00Z",
    },
    {
        "id": "p3",
        "instagramId": "C0ffee003",
        "caption": "Sunrise hike on the ridge trail in Banff #hiking @parkscanada",
        "ownerUsername": "out.there",
        "savedAt": "2025-01-03T00:00:00Z",
    },
    {
        "id": "p4",
        "instagramId": "C0ffee004",
        "caption": "Tokyo ramen crawl, part 3 #ramen",
        "ownerUsername": "noodle.map",
        "savedAt": "2025-01-04T00:00:00Z",
    },
    {
        "id": "p5",
        "instagramId": "C0ffee005",
        "caption": "Quiet beach morning in Lisbon",
        "ownerUsername": "out.there",
        "savedAt": "2025-01-05T00:00:00Z",
    },
    {
        "id": "p6",
        "instagramId": "C0ffee006",
        "caption": "",
        "ownerUsername": "nobody",
        "savedAt": "2025-01-06T00:00:00Z",
    },
]


def offline_extraction(caption: str) -> Extraction:
    """Deterministic extraction from simple caption cues."""
    text = caption or ""
    lowered = text.lower()
    categories = [label for word, label in _KEYWORD_CATEGORIES if word in lowered] or ["General"]
    place = _PLACE_RE.search(text)

    return Extraction.model_validate(
        {
            "hashtags": _HASHTAG_RE.findall(text),
            "hashtagsReason": "offline_stub",
            "location": place.group(1) if place else "",
            "locationReason": "offline_stub",
            "venue": "",
            "categories": categories,
            "categoriesReason": "offline_stub",
            "eventDate": "",
            "mentions": _MENTION_RE.findall(text),
        }
    )


class OfflineExtractionProvider:
    """
    Network-free stand-in for the OpenAI extraction provider.

    Bulk jobs complete immediately and are kept in memory.
    """

    def __init__(self) -> None:
        self._batches: dict[str, list[PostForExtraction]] = {}
        self._cancelled: set[str] = set()

    async def extract_chunk(
        self, posts: Sequence[PostForExtraction], known_categories: Sequence[str]
    ) -> list[ChunkExtractionItem]:
        _ = known_categories
        out: list[ChunkExtractionItem] = []
        for post in posts:
            data = offline_extraction(post.caption).model_dump(by_alias=True)
            data["postId"] = post.post_id
            out.append(ChunkExtractionItem.model_validate(data))
        return out

    async def submit_batch(
        self, posts: Sequence[PostForExtraction], known_categories: Sequence[str]
    ) -> str:
        _ = known_categories
        digest = hashlib.sha256("|".join(p.post_id for p in posts).encode("utf-8")).hexdigest()
        batch_id = f"batch_offline_{digest[:12]}"
        self._batches[batch_id] = list(posts)
        return batch_id

    async def batch_status(self, batch_id: str) -> ProviderBatchStatus:
        posts = self._batches.get(batch_id, [])
        raw = "cancelled" if batch_id in self._cancelled else "completed"
        return ProviderBatchStatus(
            batch_id=batch_id,
            raw_status=raw,
            phase="ended",
            completed=len(posts),
            failed=0,
            total=len(posts),
            output_file_id=f"file_{batch_id}",
        )

    async def batch_results(self, status: ProviderBatchStatus) -> list[BatchResultLine]:
        return [
            BatchResultLine(post_id=p.post_id, extraction=offline_extraction(p.caption))
            for p in self._batches.get(status.batch_id, [])
        ]

    async def cancel_batch(self, batch_id: str) -> None:
        self._cancelled.add(batch_id)

    async def merge_clusters(self, clusters: Sequence[Sequence[str]]) -> ClusterMergePlan:
        """Merge clusters whose leading names use the same words in any order."""
        by_words: dict[frozenset[str], list[str]] = {}
        for cluster in clusters:
            if not cluster:
                continue
            words = frozenset(category_key(cluster[0]).split())
            by_words.setdefault(words, []).append(cluster[0])

        merges = [
            {"clusterIds": ids, "canonicalName": ids[0], "reason": "offline_stub"}
            for ids in by_words.values()
            if len(ids) > 1
        ]
        return ClusterMergePlan.model_validate({"merges": merges})

    async def build_hierarchy(self, names: Sequence[str]) -> HierarchyPlan:
        """Put "Italian Food" under "Food" when both names exist."""
        by_key = {category_key(n): n for n in names if (n or "").strip()}
        groups: dict[str, list[str]] = {}
        for key, name in by_key.items():
            words = key.split()
            if len(words) < 2:
                continue
            parent = by_key.get(words[-1])
            if parent is not None:
                groups.setdefault(parent, []).append(name)

        parents = [
            {"name": parent, "children": children, "reason": "offline_stub"}
            for parent, children in groups.items()
        ]
        return HierarchyPlan.model_validate({"parents": parents})


class OfflineEmbeddingProvider:
    """Deterministic unit vectors derived from a hash of the text."""

    def __init__(self, dimensions: int = 16) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self._dims = int(dimensions)

    def _vector(self, text: str) -> list[float]:
        seed = hashlib.sha256(text.encode("utf-8")).digest()
        raw = [(seed[i % len(seed)] / 255.0) - 0.5 for i in range(self._dims)]
        norm = math.sqrt(sum(x * x for x in raw)) or 1.0
        return [x / norm for x in raw]

    async def embed_one(self, text: str) -> list[float]:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._vector(t.strip()) if (t or "").strip() else [] for t in texts]
