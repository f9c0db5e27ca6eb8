from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Protocol, Sequence

from .cleanup import CleanupConfig, ProgressFn, TaxonomyCleanupEngine
from .errors import EmbeddingError, LLMError, StorageError
from .llm_schema import ClusterMergePlan, HierarchyPlan, ParentGroup
from .normalize import category_key
from .post import Category
from .reconciler import EmbeddingProvider
from .run_log import RunLogger
from .storage import SQLiteGraphStore
from .taxonomy import ancestors


class TaxonomyAdvisor(Protocol):
    async def merge_clusters(self, clusters: Sequence[Sequence[str]]) -> ClusterMergePlan: ...

    async def build_hierarchy(self, names: Sequence[str]) -> HierarchyPlan: ...


@dataclass(frozen=True)
class CategoryCluster:
    """Categories whose name embeddings are close; the first one names the cluster."""

    categories: tuple[Category, ...]

    @property
    def id(self) -> str:
        return self.categories[0].name

    @property
    def post_count(self) -> int:
        return sum(c.post_count for c in self.categories)


@dataclass
class ReorganizeResult:
    categories_embedded: int = 0
    reassigned_by_similarity: int = 0
    clusters: int = 0
    semantic_merges: int = 0
    parents_applied: int = 0
    child_links: int = 0
    other_categories_created: int = 0
    redundant_parent_links_removed: int = 0
    skipped_steps: list[str] = field(default_factory=list)
    affected_post_ids: set[str] = field(default_factory=set)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of two vectors; 0.0 when either is empty, zero or they differ in length."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def cluster_categories(categories: Sequence[Category], threshold: float) -> list[CategoryCluster]:
    """
    Greedy single pass: each unvisited category opens a cluster and pulls in
    every later unvisited category at or above `threshold` similarity to it.

    Categories without an embedding are left out. Clusters come back ordered by
    total post count, largest first.
    """
    ordered = sorted(
        (c for c in categories if c.embedding),
        key=lambda c: (-c.post_count, category_key(c.name), c.id),
    )

    visited: set[str] = set()
    clusters: list[CategoryCluster] = []
    for i, head in enumerate(ordered):
        if head.id in visited:
            continue
        visited.add(head.id)
        members = [head]
        for other in ordered[i + 1 :]:
            if other.id in visited:
                continue
            if cosine_similarity(head.embedding or (), other.embedding or ()) >= threshold:
                members.append(other)
                visited.add(other.id)
        clusters.append(CategoryCluster(categories=tuple(members)))

    clusters.sort(key=lambda c: -c.post_count)
    return clusters


def most_similar_category(
    vector: Sequence[float], candidates: Sequence[Category]
) -> Category | None:
    best: Category | None = None
    best_sim = -1.0
    for candidate in candidates:
        if not candidate.embedding:
            continue
        sim = cosine_similarity(vector, candidate.embedding)
        if sim > best_sim:
            best, best_sim = candidate, sim
    return best


def other_category_name(parent_name: str) -> str:
    return f"Other {parent_name}"


class HierarchyOrganizer:
    """
    Semantic reorganization that follows a cleanup execution.

    Steps, each behind its own switch on `CleanupConfig`: embed category names,
    move posts left without categories to the closest category, cluster names
    by similarity and let the advisor merge clusters, let the advisor group
    categories under parents, and give parents an "Other <Parent>" child for
    their directly linked posts. It mutates the store while the cleanup backup
    is outstanding, so `revert` undoes it together with the cleanup.
    """

    def __init__(
        self,
        store: SQLiteGraphStore,
        engine: TaxonomyCleanupEngine,
        *,
        embedder: EmbeddingProvider,
        advisor: TaxonomyAdvisor,
        batch_size: int = 100,
        logger: RunLogger | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store = store
        self._engine = engine
        self._embedder = embedder
        self._advisor = advisor
        self._batch_size = int(batch_size)
        self._logger = logger or RunLogger()

    async def run(
        self,
        config: CleanupConfig,
        *,
        removed_post_ids: Sequence[str] = (),
        on_progress: ProgressFn | None = None,
    ) -> ReorganizeResult:
        """
        Apply the enabled steps; `removed_post_ids` are posts whose categories
        the cleanup just removed, the candidates for similarity reassignment.
        """

        def _report(step: str, message: str, percent: int) -> None:
            self._logger.info("reorganize.progress", step=step, message=message, percent=percent)
            if on_progress is not None:
                on_progress(step, message, percent)

        result = ReorganizeResult()
        embeddings_ok = True

        if config.embed_categories:
            _report("embedding_categories", "Generating embeddings for categories...", 10)
            try:
                result.categories_embedded = await self.embed_categories()
            except EmbeddingError as e:
                embeddings_ok = False
                result.skipped_steps.append("embed_categories")
                self._logger.exception("reorganize.embed_failed", exc=e)

        if config.reassign_orphans and config.reassign_by_similarity and embeddings_ok:
            _report("reassigning", "Reassigning posts left without categories...", 25)
            result.reassigned_by_similarity = self.reassign_by_similarity(
                removed_post_ids, result.affected_post_ids
            )

        if config.semantic_merge and embeddings_ok:
            _report("clustering", "Clustering categories by name similarity...", 40)
            clusters = cluster_categories(
                self._store.list_categories(), config.similarity_threshold
            )
            result.clusters = len(clusters)
            if len(clusters) > 1:
                _report("semantic_merge", f"Identifying merges across {len(clusters)} clusters...", 50)
                try:
                    plan = await self._advisor.merge_clusters(
                        [[c.name for c in cluster.categories] for cluster in clusters]
                    )
                except LLMError as e:
                    result.skipped_steps.append("semantic_merge")
                    self._logger.exception("reorganize.merge_failed", exc=e)
                else:
                    result.semantic_merges = self.apply_merges(
                        plan, clusters, result.affected_post_ids
                    )

        applied: list[tuple[Category, list[Category]]] = []
        if config.build_hierarchy:
            names = [c.name for c in self._store.list_categories()]
            if names:
                _report("hierarchy", f"Grouping {len(names)} categories under parents...", 70)
                try:
                    hierarchy = await self._advisor.build_hierarchy(names)
                except LLMError as e:
                    result.skipped_steps.append("build_hierarchy")
                    self._logger.exception("reorganize.hierarchy_failed", exc=e)
                else:
                    for group in hierarchy.parents:
                        outcome = self.apply_parent_group(group)
                        if outcome is None:
                            continue
                        applied.append(outcome)
                        result.parents_applied += 1
                        result.child_links += len(outcome[1])

        if config.other_categories and applied:
            _report("other_categories", "Handling posts linked only to a parent...", 85)
            for parent, _children in applied:
                created, removed = self.settle_parent_posts(parent, result.affected_post_ids)
                result.other_categories_created += int(created)
                result.redundant_parent_links_removed += removed

        self._logger.info(
            "reorganize.done",
            categories_embedded=result.categories_embedded,
            reassigned=result.reassigned_by_similarity,
            clusters=result.clusters,
            semantic_merges=result.semantic_merges,
            parents=result.parents_applied,
            child_links=result.child_links,
            other_categories=result.other_categories_created,
            skipped_steps=result.skipped_steps,
        )
        _report("done", "Reorganization complete", 100)
        return result

    async def embed_categories(self) -> int:
        """Embed the names of active categories that have no embedding yet."""
        pending = [c for c in self._store.list_categories() if not c.embedding]
        stored = 0
        for start in range(0, len(pending), self._batch_size):
            batch = pending[start : start + self._batch_size]
            vectors = await self._embedder.embed_many([c.name for c in batch])
            if len(vectors) != len(batch):
                raise EmbeddingError(
                    f"Embedding count mismatch: sent {len(batch)}, got {len(vectors)}"
                )
            stored += self._store.set_category_embeddings(
                {c.id: v for c, v in zip(batch, vectors) if v}
            )
        return stored

    def reassign_by_similarity(self, post_ids: Sequence[str], affected: set[str]) -> int:
        """
        Link each post that has no active category left to the active category
        whose name embedding is closest to the post's embedding.
        """
        linked = self._store.category_names_for_posts(list(post_ids))
        orphans = [p for p, names in linked.items() if not names]
        if not orphans:
            return 0

        candidates = [c for c in self._store.list_categories() if c.embedding]
        if not candidates:
            return 0

        moved = 0
        posts = self._store.get_posts(orphans)
        for post_id in orphans:
            post = posts.get(post_id)
            if post is None or not post.embedding:
                continue
            best = most_similar_category(post.embedding, candidates)
            if best is None:
                continue
            if self._store.add_membership(post_id, best.id):
                moved += 1
                affected.add(post_id)
                self._logger.info(
                    "reorganize.post_reassigned", post_id=post_id, category_id=best.id, name=best.name
                )
        return moved

    def apply_merges(
        self, plan: ClusterMergePlan, clusters: Sequence[CategoryCluster], affected: set[str]
    ) -> int:
        by_id = {category_key(c.id): c for c in clusters}
        merged = 0

        for merge in plan.merges:
            if len(merge.cluster_ids) < 2:
                continue

            members: list[Category] = []
            for cluster_id in merge.cluster_ids:
                cluster = by_id.get(category_key(cluster_id))
                if cluster is None:
                    continue
                for category in cluster.categories:
                    current = self._store.get_category(category.id)
                    if current is not None and current.state == "active":
                        members.append(current)
            if len(members) < 2:
                continue

            keeper = self._pick_keeper(merge.canonical_name, members)
            for other in members:
                if other.id == keeper.id:
                    continue
                self._engine.merge_into(other, keeper, affected)
                merged += 1

            self._logger.info(
                "reorganize.semantic_merge",
                keeper_id=keeper.id,
                keeper_name=keeper.name,
                merged=[m.name for m in members if m.id != keeper.id],
                reason=merge.reason,
            )
        return merged

    def _pick_keeper(self, canonical_name: str, members: Sequence[Category]) -> Category:
        key = category_key(canonical_name)
        for member in members:
            if category_key(member.name) == key:
                return member

        existing = self._store.find_category_by_name(canonical_name)
        if existing is not None:
            return existing

        keeper = members[0]
        self._store.rename_category(keeper.id, canonical_name)
        self._logger.info(
            "reorganize.category_renamed",
            category_id=keeper.id,
            old_name=keeper.name,
            new_name=canonical_name,
        )
        return self._store.get_category(keeper.id) or keeper

    def apply_parent_group(self, group: ParentGroup) -> tuple[Category, list[Category]] | None:
        """
        Put the named children under `group.name`, creating the parent when no
        active category has that name. Groups without a known child are skipped.
        """
        parent_key = category_key(group.name)
        wanted = {category_key(n) for n in group.children} - {parent_key}
        children = [c for c in self._store.list_categories() if category_key(c.name) in wanted]
        if not children:
            self._logger.info("reorganize.parent_skipped", name=group.name)
            return None

        parent = self._store.find_category_by_name(group.name)
        if parent is None:
            try:
                parent = self._store.create_category(
                    group.name,
                    is_parent=True,
                    description=(
                        f"Parent category created during cleanup: {group.reason}"
                        if group.reason
                        else "Parent category created during cleanup"
                    ),
                )
            except StorageError as e:
                self._logger.exception("reorganize.parent_create_failed", exc=e, name=group.name)
                return None
            self._logger.info("reorganize.parent_created", category_id=parent.id, name=parent.name)
        else:
            self._store.set_is_parent(parent.id, True)

        parent_of = self._store.load_taxonomy_state().parent_of()
        linked: list[Category] = []
        for child in children:
            if child.id in ancestors(parent.id, parent_of):
                self._logger.warning(
                    "reorganize.cycle_refused", parent=parent.name, child=child.name
                )
                continue
            self._store.set_parent(child.id, parent.id)
            parent_of[child.id] = parent.id
            linked.append(child)

        self._logger.info(
            "reorganize.parent_applied",
            category_id=parent.id,
            name=parent.name,
            children=[c.name for c in linked],
        )
        return (self._store.get_category(parent.id) or parent), linked

    def settle_parent_posts(self, parent: Category, affected: set[str]) -> tuple[bool, int]:
        """
        Posts linked directly to `parent` either drop that link, when they also
        sit in one of its children, or move to its "Other <Parent>" child.

        Returns (whether an Other category was created, redundant links removed).
        """
        active = {c.id for c in self._store.list_categories()}
        child_ids = [cid for cid in self._store.children_of(parent.id) if cid in active]
        if not child_ids:
            return False, 0

        in_children: set[str] = set()
        for cid in child_ids:
            in_children.update(self._store.posts_in_category(cid))

        direct = self._store.posts_in_category(parent.id)
        redundant = [p for p in direct if p in in_children]
        stranded = [p for p in direct if p not in in_children]

        for post_id in redundant:
            self._store.remove_membership(post_id, parent.id)
        affected.update(redundant)

        created = False
        if stranded:
            name = other_category_name(parent.name)
            other = self._store.find_category_by_name(name)
            if other is None:
                other = self._store.create_category(
                    name,
                    description=f"Catch-all for {parent.name} posts that don't fit specific subcategories",
                )
                self._store.set_parent(other.id, parent.id)
                created = True
                self._logger.info("reorganize.other_created", category_id=other.id, name=name)

            for post_id in stranded:
                self._store.add_membership(post_id, other.id)
                self._store.remove_membership(post_id, parent.id)
            affected.update(stranded)

        if redundant or stranded:
            self._logger.info(
                "reorganize.parent_posts_settled",
                parent=parent.name,
                redundant_removed=len(redundant),
                moved_to_other=len(stranded),
            )
        return created, len(redundant)
