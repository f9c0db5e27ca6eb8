from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from ig_taxonomy.errors import CleanupStateError, StorageError
from ig_taxonomy.post import Post
from ig_taxonomy.snapshot import take_snapshot
from ig_taxonomy.storage import SQLiteGraphStore


def _post(pid: str, caption: str | None = "caption", **kw: object) -> Post:
    return Post(id=pid, instagram_id=f"ig_{pid}", caption=caption, **kw)  # type: ignore[arg-type]


class TestSQLiteGraphStore(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.store = SQLiteGraphStore.open(Path(self._td.name) / "state" / "db.sqlite")

    def tearDown(self) -> None:
        self.store.close()
        self._td.cleanup()

    def test_upsert_keeps_enrichment(self) -> None:
        self.store.upsert_post(_post("p1", hashtags=("a",)))
        self.store.update_post_metadata("p1", {"location": "Rome"}, source="model")
        self.store.upsert_post(_post("p1", caption="new caption"))

        post = self.store.get_post("p1")
        assert post is not None
        self.assertEqual(post.caption, "new caption")
        self.assertEqual(post.location, "Rome")
        self.assertEqual(tuple(post.hashtags), ("a",))
        self.assertEqual(post.last_edited_by, "model")

    def test_find_or_create_is_case_insensitive(self) -> None:
        food, created = self.store.find_or_create_category("Food")
        self.assertTrue(created)
        again, created_again = self.store.find_or_create_category("  food ")
        self.assertFalse(created_again)
        self.assertEqual(food.id, again.id)

        with self.assertRaises(StorageError):
            self.store.create_category("FOOD")

    def test_archived_name_does_not_block_new_category(self) -> None:
        old = self.store.create_category("Coffee")
        self.store.archive_category(old.id)
        new = self.store.create_category("coffee")
        self.assertNotEqual(old.id, new.id)

        with self.assertRaises(StorageError):
            self.store.unarchive_category(old.id)

    def test_set_parent_replaces_previous_parent(self) -> None:
        a = self.store.create_category("A")
        b = self.store.create_category("B")
        c = self.store.create_category("C")
        self.store.set_parent(c.id, a.id)
        self.store.set_parent(c.id, b.id)
        self.assertEqual(self.store.parent_of(c.id), b.id)
        self.assertEqual(self.store.children_of(a.id), [])

        with self.assertRaises(ValueError):
            self.store.set_parent(c.id, c.id)

        self.store.set_parent(c.id, None)
        self.assertIsNone(self.store.parent_of(c.id))

    def test_membership_is_idempotent(self) -> None:
        self.store.upsert_post(_post("p1"))
        cat = self.store.create_category("Travel")
        self.assertTrue(self.store.add_membership("p1", cat.id))
        self.assertFalse(self.store.add_membership("p1", cat.id))
        self.assertEqual(self.store.posts_in_category(cat.id), ["p1"])

        with self.assertRaises(StorageError):
            self.store.add_membership("missing", cat.id)

    def test_subtree_count_is_distinct(self) -> None:
        for pid in ("p1", "p2", "p3"):
            self.store.upsert_post(_post(pid))
        parent = self.store.create_category("P", is_parent=True)
        c1 = self.store.create_category("C1")
        c2 = self.store.create_category("C2")
        self.store.set_parent(c1.id, parent.id)
        self.store.set_parent(c2.id, parent.id)

        self.store.add_membership("p1", c1.id)
        self.store.add_membership("p1", c2.id)
        self.store.add_membership("p2", c2.id)
        self.store.add_membership("p3", parent.id)

        self.assertEqual(self.store.count_distinct_posts_under_subtree(parent.id), 3)
        self.assertEqual(self.store.count_distinct_posts_under_subtree(c2.id), 2)

        listed = {c.name: c.post_count for c in self.store.list_categories()}
        self.assertEqual(listed, {"P": 3, "C1": 1, "C2": 2})

    def test_embedding_writes_never_lower_version(self) -> None:
        self.store.upsert_post(_post("p1"))
        self.assertTrue(self.store.set_post_embedding("p1", [0.1, 0.2], version=2))
        self.assertFalse(self.store.set_post_embedding("p1", [0.3, 0.4], version=1))

        post = self.store.get_post("p1")
        assert post is not None
        self.assertEqual(post.embedding_version, 2)
        self.assertEqual(tuple(post.embedding or ()), (0.1, 0.2))

    def test_user_edit_resets_embedding_version(self) -> None:
        self.store.upsert_post(_post("p1"))
        self.store.set_post_embedding("p1", [0.1], version=2)
        self.store.update_post_metadata("p1", {"venue": "Cafe"}, source="user")

        post = self.store.get_post("p1")
        assert post is not None
        self.assertEqual(post.embedding_version, 1)
        self.assertEqual(post.last_edited_by, "user")

    def test_update_metadata_rejects_unknown_fields(self) -> None:
        self.store.upsert_post(_post("p1"))
        with self.assertRaises(ValueError):
            self.store.update_post_metadata("p1", {"embedding": [1]}, source="user")
        with self.assertRaises(StorageError):
            self.store.update_post_metadata("nope", {"venue": "x"}, source="model")

    def test_add_hashtag_skips_duplicates(self) -> None:
        self.store.upsert_post(_post("p1", hashtags=("StreetFood",)))
        self.store.upsert_post(_post("p2"))
        self.assertEqual(self.store.add_hashtag_to_posts(["p1", "p2"], "streetfood"), 1)

        p2 = self.store.get_post("p2")
        assert p2 is not None
        self.assertEqual(tuple(p2.hashtags), ("streetfood",))

    def test_category_embeddings_follow_the_name(self) -> None:
        cat = self.store.create_category("Coffee")
        self.assertEqual(self.store.set_category_embeddings({}), 0)
        self.assertEqual(self.store.set_category_embeddings({cat.id: [0.5, 0.5]}), 1)
        state = self.store.load_taxonomy_state()

        self.store.replace_taxonomy_state(state)
        kept = self.store.get_category(cat.id)
        assert kept is not None
        self.assertEqual(tuple(kept.embedding or ()), (0.5, 0.5))

        self.store.rename_category(cat.id, "Espresso")
        renamed = self.store.get_category(cat.id)
        assert renamed is not None
        self.assertIsNone(renamed.embedding)

        # Restoring the old name drops the embedding of the new one.
        self.store.set_category_embeddings({cat.id: [1.0, 0.0]})
        self.store.replace_taxonomy_state(state)
        restored = self.store.get_category(cat.id)
        assert restored is not None
        self.assertEqual(restored.name, "Coffee")
        self.assertIsNone(restored.embedding)

    def test_snapshot_is_single(self) -> None:
        self.assertFalse(self.store.has_snapshot())
        snap = take_snapshot(self.store.load_taxonomy_state())
        self.store.save_snapshot(snap)
        self.assertTrue(self.store.has_snapshot())

        with self.assertRaises(CleanupStateError):
            self.store.save_snapshot(snap)

        loaded = self.store.load_snapshot()
        assert loaded is not None
        self.assertEqual(loaded.created_at, snap.created_at)

        self.store.delete_snapshot()
        self.assertIsNone(self.store.load_snapshot())

    def test_batch_job_outcome_round_trip(self) -> None:
        self.store.record_batch_submission("batch_1", request_count=3)
        self.store.update_batch_status("batch_1", "in_progress")
        job = self.store.get_batch_job("batch_1")
        assert job is not None
        self.assertEqual(job.status, "in_progress")
        self.assertIsNone(job.outcome)

        self.store.record_batch_outcome("batch_1", status="done", outcome={"extracted": 3})
        job = self.store.get_batch_job("batch_1")
        assert job is not None
        self.assertEqual(job.status, "done")
        self.assertEqual(job.outcome, {"extracted": 3})

    def test_pending_and_refresh_queries(self) -> None:
        self.store.upsert_posts([_post("p1"), _post("p2"), _post("p3", caption=None)])
        cat = self.store.create_category("Travel")
        self.store.add_membership("p1", cat.id)

        pending = [p.id for p in self.store.posts_pending_extraction()]
        self.assertEqual(pending, ["p2"])
        self.assertEqual(self.store.posts_needing_enriched_embeddings(), ["p1"])

        self.store.update_post_metadata("p2", {"location": "Lisbon"}, source="model")
        self.assertEqual([p.id for p in self.store.posts_needing_geocoding()], ["p2"])
        self.store.update_post_coordinates("p2", latitude=38.7, longitude=-9.1, country="Portugal")
        self.assertEqual(self.store.posts_needing_geocoding(), [])


if __name__ == "__main__":
    unittest.main()
