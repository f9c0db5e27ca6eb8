from __future__ import annotations

import unittest

from ig_taxonomy.cleanup import CleanupConfig, TaxonomyCleanupEngine, propose_cleanup
from ig_taxonomy.errors import CleanupStateError
from ig_taxonomy.post import Post
from ig_taxonomy.storage import SQLiteGraphStore


class _Seeded(unittest.TestCase):
    def setUp(self) -> None:
        self.store = SQLiteGraphStore.open(":memory:")
        self.engine = TaxonomyCleanupEngine(self.store)

    def tearDown(self) -> None:
        self.store.close()

    def _category(self, name: str, post_ids: list[str], *, parent: str | None = None) -> str:
        for pid in post_ids:
            if self.store.get_post(pid) is None:
                self.store.upsert_post(Post(id=pid, instagram_id=f"ig_{pid}", caption="c"))
        cat = self.store.create_category(name, is_parent=False)
        if parent is not None:
            self.store.set_is_parent(parent, True)
            self.store.set_parent(cat.id, parent)
        for pid in post_ids:
            self.store.add_membership(pid, cat.id)
        return cat.id

    def _active_names(self) -> set[str]:
        return {c.name for c in self.store.list_categories()}


class TestProposal(_Seeded):
    def test_small_root_category_is_orphaned(self) -> None:
        self._category("Food", ["f1", "f2"])
        self._category("Travel", [f"t{i}" for i in range(10)])

        proposal = self.engine.analyze(5)

        self.assertEqual([c.name for c in proposal.to_delete], ["Food"])
        self.assertEqual([c.name for c in proposal.to_keep], ["Travel"])
        self.assertEqual(proposal.to_delete[0].post_count, 2)
        self.assertIsNone(proposal.reassignments[0].target_id)
        self.assertEqual(proposal.orphaned_post_ids, ("f1", "f2"))

    def test_child_moves_to_surviving_parent(self) -> None:
        food = self._category("Food", [])
        self._category("Italian", ["i1"], parent=food)
        self._category("Japanese", ["j1", "j2", "j3"], parent=food)

        proposal = self.engine.analyze(2)

        self.assertEqual([c.name for c in proposal.to_delete], ["Italian"])
        self.assertEqual(proposal.reassignments[0].target_id, food)
        self.assertEqual(proposal.orphaned_post_ids, ())

    def test_post_kept_by_another_category_is_not_orphaned(self) -> None:
        self._category("Food", ["shared"])
        self._category("Travel", ["shared", "t1", "t2"])

        proposal = self.engine.analyze(2)
        self.assertEqual(proposal.orphaned_post_ids, ())

    def test_deepest_categories_are_listed_first(self) -> None:
        a = self._category("A", [])
        b = self._category("B", [], parent=a)
        self._category("C", ["p1"], parent=b)

        proposal = propose_cleanup(self.store.load_taxonomy_state(), 5)
        self.assertEqual([c.name for c in proposal.to_delete], ["C", "B", "A"])

    def test_threshold_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            self.engine.analyze(0)
        with self.assertRaises(ValueError):
            CleanupConfig(min_post_threshold=0)
        with self.assertRaises(ValueError):
            CleanupConfig(similarity_threshold=0.0)


class TestExecute(_Seeded):
    def test_dry_run_changes_nothing(self) -> None:
        self._category("Food", ["f1", "f2"])
        self._category("Travel", [f"t{i}" for i in range(10)])
        before = self.store.load_taxonomy_state()

        result = self.engine.execute(CleanupConfig(min_post_threshold=5, dry_run=True))

        self.assertTrue(result.dry_run)
        self.assertEqual(result.deleted_count, 1)
        self.assertEqual(result.orphaned_posts, 2)
        self.assertEqual(self.store.load_taxonomy_state(), before)
        self.assertFalse(self.engine.has_backup())

    def test_execute_archives_and_preserves_names_as_hashtags(self) -> None:
        self._category("street food", ["f1", "f2"])
        self._category("Travel", [f"t{i}" for i in range(10)])
        steps: list[tuple[str, int]] = []

        result = self.engine.execute(
            CleanupConfig(min_post_threshold=5),
            on_progress=lambda step, _msg, pct: steps.append((step, pct)),
        )

        self.assertEqual(result.deleted_count, 1)
        self.assertEqual(result.orphaned_posts, 2)
        self.assertEqual(result.hashtags_added, 2)
        self.assertEqual(result.affected_post_ids, ("f1", "f2"))
        self.assertEqual(self._active_names(), {"Travel"})

        f1 = self.store.get_post("f1")
        assert f1 is not None
        self.assertIn("StreetFood", tuple(f1.hashtags))

        self.assertTrue(self.engine.has_backup())
        percents = [p for _, p in steps]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(steps[-1], ("done", 100))

    def test_second_execute_is_refused_while_backup_exists(self) -> None:
        self._category("Food", ["f1"])
        self.engine.execute(CleanupConfig(min_post_threshold=5))

        with self.assertRaises(CleanupStateError):
            self.engine.execute(CleanupConfig(min_post_threshold=5))

    def test_reassigned_posts_land_on_parent(self) -> None:
        food = self._category("Food", [])
        self._category("Italian", ["i1"], parent=food)
        self._category("Japanese", ["j1", "j2", "j3"], parent=food)

        result = self.engine.execute(CleanupConfig(min_post_threshold=2))

        self.assertEqual(result.reassigned_posts, 1)
        self.assertEqual(self.store.posts_in_category(food), ["i1"])
        self.assertEqual(self.store.count_distinct_posts_under_subtree(food), 4)

    def test_no_reassign_leaves_posts_unlinked(self) -> None:
        food = self._category("Food", [])
        self._category("Italian", ["i1"], parent=food)
        self._category("Japanese", ["j1", "j2", "j3"], parent=food)

        result = self.engine.execute(
            CleanupConfig(min_post_threshold=2, reassign_orphans=False)
        )

        self.assertEqual(result.reassigned_posts, 0)
        self.assertEqual(result.orphaned_posts, 1)
        self.assertEqual(self.store.posts_in_category(food), [])

    def test_normalization_renames_and_merges(self) -> None:
        self._category("street food", ["a1"])
        self._category("coffee!", ["c1"])
        coffee = self._category("Coffee", ["c2", "c3"])

        result = self.engine.execute(CleanupConfig(min_post_threshold=1))

        self.assertEqual(result.renamed, 1)
        self.assertEqual(result.merged, 1)
        self.assertEqual(self._active_names(), {"Street Food", "Coffee"})
        self.assertEqual(self.store.posts_in_category(coffee), ["c1", "c2", "c3"])

    def test_plural_form_wins_stem_merge(self) -> None:
        self._category("Outfit", ["o1", "o2"])
        self._category("Outfits", ["o3"])

        result = self.engine.execute(CleanupConfig(min_post_threshold=1))

        self.assertEqual(result.merged, 1)
        cats = self.store.list_categories()
        self.assertEqual([c.name for c in cats], ["Outfits"])
        self.assertEqual(cats[0].post_count, 3)


class TestBackupLifecycle(_Seeded):
    def test_revert_restores_the_pre_cleanup_taxonomy(self) -> None:
        food = self._category("Food", [])
        self._category("Italian", ["i1"], parent=food)
        self._category("Japanese", ["j1", "j2", "j3"], parent=food)
        self._category("coffee", ["c1"])
        before = self.store.load_taxonomy_state()

        self.engine.execute(CleanupConfig(min_post_threshold=2))
        self.assertNotEqual(self.store.load_taxonomy_state(), before)

        outcome = self.engine.revert()

        self.assertTrue(outcome.applied)
        self.assertEqual(outcome.affected_post_ids, ("c1", "i1"))
        self.assertEqual(self.store.load_taxonomy_state(), before)
        self.assertFalse(self.engine.has_backup())

    def test_revert_without_backup_is_noop(self) -> None:
        self._category("Food", ["f1"])
        outcome = self.engine.revert()
        self.assertFalse(outcome.applied)
        self.assertEqual(self._active_names(), {"Food"})

    def test_commit_makes_deletions_final(self) -> None:
        self._category("Food", ["f1"])
        self._category("Travel", ["t1", "t2", "t3"])
        self.engine.execute(CleanupConfig(min_post_threshold=2))

        outcome = self.engine.commit()

        self.assertTrue(outcome.applied)
        self.assertFalse(self.engine.has_backup())
        names = {c.name for c in self.store.list_categories(include_archived=True)}
        self.assertEqual(names, {"Travel"})

        # Nothing left to revert to.
        self.assertFalse(self.engine.revert().applied)
        self.assertEqual(self._active_names(), {"Travel"})

    def test_new_cleanup_allowed_after_commit(self) -> None:
        self._category("Food", ["f1"])
        self._category("Travel", ["t1", "t2", "t3"])
        self.engine.execute(CleanupConfig(min_post_threshold=2))
        self.engine.commit()

        result = self.engine.execute(CleanupConfig(min_post_threshold=4))
        self.assertEqual(result.deleted_count, 1)
        self.assertEqual(self._active_names(), set())


if __name__ == "__main__":
    unittest.main()
