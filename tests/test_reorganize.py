from __future__ import annotations

import unittest
from typing import Sequence

from ig_taxonomy.cleanup import CleanupConfig, TaxonomyCleanupEngine
from ig_taxonomy.errors import EmbeddingError, LLMError
from ig_taxonomy.llm_schema import ClusterMergePlan, HierarchyPlan
from ig_taxonomy.offline import OfflineExtractionProvider
from ig_taxonomy.post import Post
from ig_taxonomy.reorganize import (
    HierarchyOrganizer,
    cluster_categories,
    cosine_similarity,
    other_category_name,
)
from ig_taxonomy.run_log import RunLogger
from ig_taxonomy.storage import SQLiteGraphStore

_VECTORS: dict[str, list[float]] = {
    "Coffee": [1.0, 0.0, 0.0],
    "Cafes": [0.95, 0.1, 0.0],
    "Hiking": [0.0, 1.0, 0.0],
    "Pasta": [0.0, 0.0, 1.0],
}


class _NameEmbedder:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[list[str]] = []

    async def embed_one(self, text: str) -> list[float]:
        return (await self.embed_many([text]))[0]

    async def embed_many(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("embedding service down")
        return [list(_VECTORS.get(t, [0.1, 0.1, 0.1])) for t in texts]


class _ScriptedAdvisor:
    def __init__(
        self,
        merges: list[dict] | None = None,
        parents: list[dict] | None = None,
        *,
        fail_merge: bool = False,
    ) -> None:
        self.merges = merges or []
        self.parents = parents or []
        self.fail_merge = fail_merge
        self.clusters: list[list[str]] = []
        self.hierarchy_names: list[str] = []

    async def merge_clusters(self, clusters: Sequence[Sequence[str]]) -> ClusterMergePlan:
        self.clusters = [list(c) for c in clusters]
        if self.fail_merge:
            raise LLMError("OpenAI call failed (test): boom")
        return ClusterMergePlan.model_validate({"merges": self.merges})

    async def build_hierarchy(self, names: Sequence[str]) -> HierarchyPlan:
        self.hierarchy_names = list(names)
        return HierarchyPlan.model_validate({"parents": self.parents})


class _OrganizerCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.store = SQLiteGraphStore.open(":memory:")
        self.log = RunLogger()
        self.engine = TaxonomyCleanupEngine(self.store, logger=self.log)

    def tearDown(self) -> None:
        self.store.close()

    def _organizer(
        self, advisor: _ScriptedAdvisor | None = None, embedder: _NameEmbedder | None = None
    ) -> HierarchyOrganizer:
        return HierarchyOrganizer(
            self.store,
            self.engine,
            embedder=embedder or _NameEmbedder(),
            advisor=advisor or _ScriptedAdvisor(),
            logger=self.log,
        )

    def _post(self, pid: str) -> None:
        if self.store.get_post(pid) is None:
            self.store.upsert_post(Post(id=pid, instagram_id=f"ig_{pid}", caption="c"))

    def _category(self, name: str, post_ids: list[str]) -> str:
        cat = self.store.create_category(name)
        for pid in post_ids:
            self._post(pid)
            self.store.add_membership(pid, cat.id)
        return cat.id

    def _seed(self) -> dict[str, str]:
        return {
            "Coffee": self._category("Coffee", ["c1", "c2", "c3"]),
            "Cafes": self._category("Cafes", ["k1"]),
            "Hiking": self._category("Hiking", ["h1", "h2"]),
            "Pasta": self._category("Pasta", ["x1"]),
        }

    def _active(self) -> dict[str, str]:
        return {c.name: c.id for c in self.store.list_categories()}


class TestSimilarity(unittest.TestCase):
    def test_cosine_similarity(self) -> None:
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [2.0, 0.0]), 1.0)
        self.assertAlmostEqual(cosine_similarity([1.0, 0.0], [0.0, 3.0]), 0.0)
        self.assertEqual(cosine_similarity([], [1.0]), 0.0)
        self.assertEqual(cosine_similarity([0.0, 0.0], [1.0, 1.0]), 0.0)
        self.assertEqual(cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]), 0.0)

    def test_other_category_name(self) -> None:
        self.assertEqual(other_category_name("Food"), "Other Food")


class TestEmbedAndCluster(_OrganizerCase):
    async def test_only_missing_embeddings_are_generated(self) -> None:
        ids = self._seed()
        embedder = _NameEmbedder()
        organizer = self._organizer(embedder=embedder)

        self.assertEqual(await organizer.embed_categories(), 4)
        self.assertEqual(await organizer.embed_categories(), 0)
        self.assertEqual(len(embedder.calls), 1)

        coffee = self.store.get_category(ids["Coffee"])
        assert coffee is not None
        self.assertEqual(tuple(coffee.embedding or ()), (1.0, 0.0, 0.0))

        # A new name needs a new embedding.
        self.store.rename_category(ids["Coffee"], "Espresso")
        renamed = self.store.get_category(ids["Coffee"])
        assert renamed is not None
        self.assertIsNone(renamed.embedding)
        self.assertEqual(await organizer.embed_categories(), 1)
        self.assertEqual(embedder.calls[-1], ["Espresso"])

    async def test_embeddings_are_sent_in_batches(self) -> None:
        self._seed()
        embedder = _NameEmbedder()
        organizer = HierarchyOrganizer(
            self.store, self.engine, embedder=embedder, advisor=_ScriptedAdvisor(), batch_size=3
        )
        await organizer.embed_categories()
        self.assertEqual([len(c) for c in embedder.calls], [3, 1])

    async def test_clusters_group_close_names_largest_first(self) -> None:
        self._seed()
        self.store.create_category("Unembedded")
        await self._organizer().embed_categories()
        self.store.create_category("Late")

        clusters = cluster_categories(self.store.list_categories(), 0.78)

        self.assertEqual(
            [[c.name for c in cl.categories] for cl in clusters],
            [["Coffee", "Cafes"], ["Hiking"], ["Pasta"], ["Unembedded"]],
        )
        self.assertEqual(clusters[0].id, "Coffee")
        self.assertEqual(clusters[0].post_count, 4)

    async def test_threshold_controls_clustering(self) -> None:
        self._seed()
        await self._organizer().embed_categories()
        clusters = cluster_categories(self.store.list_categories(), 0.999)
        self.assertEqual(len(clusters), 4)


class TestSemanticMerge(_OrganizerCase):
    async def test_merges_follow_the_advisor(self) -> None:
        ids = self._seed()
        advisor = _ScriptedAdvisor(
            merges=[
                {"clusterIds": ["Coffee", "Pasta"], "canonicalName": "coffee", "reason": "r"},
                {"clusterIds": ["Hiking"], "canonicalName": "Hiking", "reason": "single"},
                {"clusterIds": ["Nope", "Hiking"], "canonicalName": "Hiking", "reason": "unknown"},
            ]
        )

        result = await self._organizer(advisor).run(
            CleanupConfig(build_hierarchy=False, other_categories=False)
        )

        self.assertEqual(advisor.clusters, [["Coffee", "Cafes"], ["Hiking"], ["Pasta"]])
        self.assertEqual(result.clusters, 3)
        self.assertEqual(result.semantic_merges, 2)
        self.assertEqual(set(self._active()), {"Coffee", "Hiking"})
        self.assertEqual(
            sorted(self.store.posts_in_category(ids["Coffee"])), ["c1", "c2", "c3", "k1", "x1"]
        )
        self.assertEqual(result.affected_post_ids, {"k1", "x1"})

    async def test_canonical_name_renames_the_first_member(self) -> None:
        ids = self._seed()
        advisor = _ScriptedAdvisor(
            merges=[{"clusterIds": ["Coffee", "Pasta"], "canonicalName": "Food And Drink", "reason": ""}]
        )

        await self._organizer(advisor).run(CleanupConfig(build_hierarchy=False))

        active = self._active()
        self.assertEqual(active["Food And Drink"], ids["Coffee"])
        self.assertNotIn("Pasta", active)
        self.assertNotIn("Cafes", active)

    async def test_canonical_name_of_another_category_becomes_the_keeper(self) -> None:
        ids = self._seed()
        advisor = _ScriptedAdvisor(
            merges=[{"clusterIds": ["Coffee", "Pasta"], "canonicalName": "hiking", "reason": ""}]
        )

        result = await self._organizer(advisor).run(CleanupConfig(build_hierarchy=False))

        self.assertEqual(result.semantic_merges, 3)
        self.assertEqual(set(self._active()), {"Hiking"})
        self.assertIn("c1", self.store.posts_in_category(ids["Hiking"]))

    async def test_advisor_failure_skips_the_merge_step_only(self) -> None:
        self._seed()
        advisor = _ScriptedAdvisor(
            parents=[{"name": "Drinks", "children": ["Coffee"], "reason": "r"}], fail_merge=True
        )

        result = await self._organizer(advisor).run(CleanupConfig())

        self.assertEqual(result.skipped_steps, ["semantic_merge"])
        self.assertEqual(result.parents_applied, 1)
        self.assertEqual(len(self.log.events("reorganize.merge_failed")), 1)

    async def test_embedding_failure_skips_similarity_steps(self) -> None:
        self._seed()
        advisor = _ScriptedAdvisor()

        result = await self._organizer(advisor, _NameEmbedder(fail=True)).run(CleanupConfig())

        self.assertEqual(result.skipped_steps, ["embed_categories"])
        self.assertEqual(result.clusters, 0)
        self.assertEqual(advisor.clusters, [])
        self.assertEqual(len(advisor.hierarchy_names), 4)


class TestHierarchy(_OrganizerCase):
    async def test_parents_are_created_or_promoted(self) -> None:
        ids = self._seed()
        advisor = _ScriptedAdvisor(
            parents=[
                {"name": "Outdoors", "children": ["hiking", "Unknown"], "reason": "nature"},
                {"name": "Coffee", "children": ["Cafes", "Coffee"], "reason": "drinks"},
                {"name": "Empty", "children": ["Nope"], "reason": "none"},
            ]
        )

        result = await self._organizer(advisor).run(
            CleanupConfig(semantic_merge=False, other_categories=False)
        )

        self.assertEqual(result.parents_applied, 2)
        self.assertEqual(result.child_links, 2)
        active = self._active()
        self.assertNotIn("Empty", active)

        outdoors = self.store.get_category(active["Outdoors"])
        assert outdoors is not None
        self.assertTrue(outdoors.is_parent)
        self.assertEqual(outdoors.description, "Parent category created during cleanup: nature")
        self.assertEqual(self.store.parent_of(ids["Hiking"]), outdoors.id)

        coffee = self.store.get_category(ids["Coffee"])
        assert coffee is not None
        self.assertTrue(coffee.is_parent)
        self.assertIsNone(coffee.parent_id)
        self.assertEqual(self.store.parent_of(ids["Cafes"]), ids["Coffee"])

    async def test_cycle_is_refused(self) -> None:
        ids = self._seed()
        self.store.set_is_parent(ids["Hiking"], True)
        self.store.set_parent(ids["Coffee"], ids["Hiking"])
        advisor = _ScriptedAdvisor(
            parents=[{"name": "Coffee", "children": ["Hiking", "Pasta"], "reason": ""}]
        )

        result = await self._organizer(advisor).run(
            CleanupConfig(semantic_merge=False, other_categories=False)
        )

        self.assertEqual(result.child_links, 1)
        self.assertEqual(self.store.parent_of(ids["Coffee"]), ids["Hiking"])
        self.assertIsNone(self.store.parent_of(ids["Hiking"]))
        self.assertEqual(self.store.parent_of(ids["Pasta"]), ids["Coffee"])
        self.assertEqual(len(self.log.events("reorganize.cycle_refused")), 1)

    async def test_parent_posts_move_to_other_or_drop_redundant_link(self) -> None:
        food = self._category("Food", ["f1", "f2"])
        pasta = self._category("Pasta", ["f1"])
        advisor = _ScriptedAdvisor(parents=[{"name": "Food", "children": ["Pasta"], "reason": ""}])

        result = await self._organizer(advisor).run(CleanupConfig(semantic_merge=False))

        self.assertEqual(result.other_categories_created, 1)
        self.assertEqual(result.redundant_parent_links_removed, 1)
        self.assertEqual(self.store.posts_in_category(food), [])
        self.assertEqual(self.store.posts_in_category(pasta), ["f1"])

        other = self.store.find_category_by_name("Other Food")
        assert other is not None
        self.assertEqual(other.parent_id, food)
        self.assertEqual(self.store.posts_in_category(other.id), ["f2"])
        self.assertEqual(
            other.description, "Catch-all for Food posts that don't fit specific subcategories"
        )
        self.assertEqual(result.affected_post_ids, {"f1", "f2"})

    async def test_other_step_can_be_switched_off(self) -> None:
        food = self._category("Food", ["f1", "f2"])
        self._category("Pasta", ["f1"])
        advisor = _ScriptedAdvisor(parents=[{"name": "Food", "children": ["Pasta"], "reason": ""}])

        result = await self._organizer(advisor).run(
            CleanupConfig(semantic_merge=False, other_categories=False)
        )

        self.assertEqual(result.other_categories_created, 0)
        self.assertEqual(self.store.posts_in_category(food), ["f1", "f2"])
        self.assertIsNone(self.store.find_category_by_name("Other Food"))


class TestSimilarityReassignment(_OrganizerCase):
    async def test_posts_without_categories_go_to_closest_category(self) -> None:
        ids = self._seed()
        for pid in ("o1", "o2", "o3"):
            self._post(pid)
        self.store.set_post_embedding("o1", [0.1, 0.9, 0.0], version=1)
        self.store.set_post_embedding("o3", [0.0, 0.0, 1.0], version=1)
        # o3 keeps an active category and is left alone.
        self.store.add_membership("o3", ids["Coffee"])

        result = await self._organizer().run(
            CleanupConfig(semantic_merge=False, build_hierarchy=False),
            removed_post_ids=["o1", "o2", "o3"],
        )

        self.assertEqual(result.reassigned_by_similarity, 1)
        self.assertIn("o1", self.store.posts_in_category(ids["Hiking"]))
        self.assertEqual(self.store.category_names_for_posts(["o2"])["o2"], [])
        self.assertEqual(self.store.category_names_for_posts(["o3"])["o3"], ["Coffee"])
        self.assertEqual(result.affected_post_ids, {"o1"})

    async def test_no_reassignment_when_orphans_are_kept(self) -> None:
        self._seed()
        self._post("o1")
        self.store.set_post_embedding("o1", [0.0, 1.0, 0.0], version=1)

        result = await self._organizer().run(
            CleanupConfig(reassign_orphans=False, semantic_merge=False, build_hierarchy=False),
            removed_post_ids=["o1"],
        )

        self.assertEqual(result.reassigned_by_similarity, 0)
        self.assertEqual(self.store.category_names_for_posts(["o1"])["o1"], [])


class TestRevert(_OrganizerCase):
    async def test_revert_undoes_cleanup_and_reorganization(self) -> None:
        self._category("Food", ["f1", "f2"])
        self._category("Pasta", ["f1", "p2"])
        self._category("Tiny", ["t1"])
        before = self.store.load_taxonomy_state()

        config = CleanupConfig(min_post_threshold=2, semantic_merge=False)
        self.engine.execute(config)
        advisor = _ScriptedAdvisor(
            parents=[
                {"name": "Food", "children": ["Pasta"], "reason": ""},
                {"name": "Meals", "children": ["Food"], "reason": "new"},
            ]
        )
        result = await self._organizer(advisor).run(config)
        self.assertEqual(result.parents_applied, 2)
        self.assertIsNotNone(self.store.find_category_by_name("Other Food"))

        self.assertTrue(self.engine.revert().applied)

        self.assertEqual(self.store.load_taxonomy_state(), before)
        self.assertIsNone(self.store.find_category_by_name("Meals"))
        self.assertIsNone(self.store.find_category_by_name("Other Food"))


class TestOfflineAdvisor(unittest.IsolatedAsyncioTestCase):
    async def test_offline_merges_reordered_names(self) -> None:
        plan = await OfflineExtractionProvider().merge_clusters(
            [["Street Food", "Snacks"], ["Hiking"], ["food street"], []]
        )
        self.assertEqual(len(plan.merges), 1)
        self.assertEqual(plan.merges[0].cluster_ids, ["Street Food", "food street"])
        self.assertEqual(plan.merges[0].canonical_name, "Street Food")

    async def test_offline_groups_by_trailing_word(self) -> None:
        plan = await OfflineExtractionProvider().build_hierarchy(
            ["Food", "Street Food", "Italian Food", "Hiking", "Trail Running"]
        )
        self.assertEqual(len(plan.parents), 1)
        self.assertEqual(plan.parents[0].name, "Food")
        self.assertEqual(plan.parents[0].children, ["Street Food", "Italian Food"])


if __name__ == "__main__":
    unittest.main()
