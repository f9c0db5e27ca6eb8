from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import Callable

from .errors import CleanupStateError
from .naming import category_hashtag, ends_with_plural_s, stem_key, title_case_name
from .normalize import category_key
from .post import Category
from .run_log import RunLogger
from .snapshot import committed_state, restored_state, take_snapshot
from .storage import SQLiteGraphStore
from .taxonomy import TaxonomyState, ancestors, depth_of, subtree_post_counts

ProgressFn = Callable[[str, str, int], None]


@dataclass(frozen=True)
class CleanupConfig:
    min_post_threshold: int = 3
    reassign_orphans: bool = True
    dry_run: bool = False
    normalize_names: bool = True
    merge_duplicates: bool = True
    preserve_as_hashtags: bool = True
    embed_categories: bool = True
    reassign_by_similarity: bool = True
    semantic_merge: bool = True
    build_hierarchy: bool = True
    other_categories: bool = True
    similarity_threshold: float = 0.78

    def __post_init__(self) -> None:
        if self.min_post_threshold < 1:
            raise ValueError("min_post_threshold must be >= 1")
        if not 0.0 < self.similarity_threshold <= 1.0:
            raise ValueError("similarity_threshold must be in (0, 1]")


@dataclass(frozen=True)
class CategorySummary:
    id: str
    name: str
    post_count: int
    parent_id: str | None = None


@dataclass(frozen=True)
class Reassignment:
    """Where a category's directly linked posts go when it is removed; no target means orphaned."""

    category_id: str
    category_name: str
    post_ids: tuple[str, ...]
    target_id: str | None
    target_name: str | None


@dataclass(frozen=True)
class CleanupProposal:
    threshold: int
    to_keep: tuple[CategorySummary, ...]
    to_delete: tuple[CategorySummary, ...]
    reassignments: tuple[Reassignment, ...]
    orphaned_post_ids: tuple[str, ...]


@dataclass(frozen=True)
class CleanupResult:
    dry_run: bool
    proposal: CleanupProposal
    deleted_count: int = 0
    reassigned_posts: int = 0
    orphaned_posts: int = 0
    hashtags_added: int = 0
    renamed: int = 0
    merged: int = 0
    remaining_count: int = 0
    parent_count: int = 0
    child_count: int = 0
    affected_post_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class LifecycleOutcome:
    """Result of revert/commit: whether a backup existed, and whose memberships changed."""

    applied: bool
    affected_post_ids: tuple[str, ...] = ()


def _pick_target(
    category_id: str,
    *,
    doomed: set[str],
    parent_of: dict[str, str],
    children: dict[str, list[str]],
    counts: dict[str, int],
    names: dict[str, str],
) -> str | None:
    for ancestor in ancestors(category_id, parent_of):
        if ancestor not in doomed and ancestor in counts:
            return ancestor

    parent = parent_of.get(category_id)
    if parent is None:
        return None

    siblings = [
        s for s in children.get(parent, []) if s != category_id and s not in doomed and s in counts
    ]
    if not siblings:
        return None
    return max(siblings, key=lambda s: (counts[s], names[s].casefold()))


def propose_cleanup(state: TaxonomyState, threshold: int) -> CleanupProposal:
    """
    Decide which active categories fall below `threshold` distinct posts.

    Each doomed category gets a target for its posts: the nearest surviving
    ancestor, else the surviving sibling with the most posts, else none.
    Deletions are listed deepest first.
    """
    if threshold < 1:
        raise ValueError("threshold must be >= 1")

    counts = subtree_post_counts(state)
    by_id = state.by_id()
    active = state.active_ids()
    names = {cid: by_id[cid].name for cid in active}
    parent_of = {c: p for c, p in state.parent_of().items() if c in active and p in active}
    children = state.children_of()
    by_category = state.posts_by_category()

    doomed = {cid for cid in active if counts.get(cid, 0) < threshold}

    def _summary(cid: str) -> CategorySummary:
        return CategorySummary(
            id=cid, name=names[cid], post_count=counts.get(cid, 0), parent_id=parent_of.get(cid)
        )

    ordered = sorted(
        doomed, key=lambda cid: (-depth_of(cid, parent_of), names[cid].casefold(), cid)
    )

    reassignments: list[Reassignment] = []
    for cid in ordered:
        target = _pick_target(
            cid,
            doomed=doomed,
            parent_of=parent_of,
            children=children,
            counts=counts,
            names=names,
        )
        reassignments.append(
            Reassignment(
                category_id=cid,
                category_name=names[cid],
                post_ids=tuple(sorted(by_category.get(cid, ()))),
                target_id=target,
                target_name=names.get(target) if target else None,
            )
        )

    # A post is orphaned when every category it sits in is removed without a target.
    surviving_links: dict[str, int] = defaultdict(int)
    for post_id, cid in state.memberships:
        if cid in active and cid not in doomed:
            surviving_links[post_id] += 1
    for r in reassignments:
        if r.target_id is not None:
            for post_id in r.post_ids:
                surviving_links[post_id] += 1

    orphaned = sorted(
        {p for r in reassignments if r.target_id is None for p in r.post_ids}
        - {p for p, n in surviving_links.items() if n > 0}
    )

    keep_ids = sorted(active - doomed, key=lambda cid: (names[cid].casefold(), cid))
    return CleanupProposal(
        threshold=int(threshold),
        to_keep=tuple(_summary(cid) for cid in keep_ids),
        to_delete=tuple(_summary(cid) for cid in ordered),
        reassignments=tuple(reassignments),
        orphaned_post_ids=tuple(orphaned),
    )


def _changed_posts(before: TaxonomyState, after: TaxonomyState) -> tuple[str, ...]:
    return tuple(sorted({p for p, _ in before.memberships ^ after.memberships}))


class TaxonomyCleanupEngine:
    """
    Prunes low-utilization categories behind a reversible backup.

    A real (non dry-run) execution always saves a snapshot first and refuses to
    run while one is outstanding; `revert` and `commit` both consume it.
    """

    def __init__(self, store: SQLiteGraphStore, *, logger: RunLogger | None = None) -> None:
        self._store = store
        self._logger = logger or RunLogger()

    def has_backup(self) -> bool:
        return self._store.has_snapshot()

    def analyze(self, min_post_threshold: int) -> CleanupProposal:
        return propose_cleanup(self._store.load_taxonomy_state(), min_post_threshold)

    def execute(
        self, config: CleanupConfig, *, on_progress: ProgressFn | None = None
    ) -> CleanupResult:
        def _report(step: str, message: str, percent: int) -> None:
            self._logger.info("cleanup.progress", step=step, message=message, percent=percent)
            if on_progress is not None:
                on_progress(step, message, percent)

        _report("analyzing", "Analyzing category utilization...", 5)
        state = self._store.load_taxonomy_state()
        proposal = propose_cleanup(state, config.min_post_threshold)
        _report(
            "proposed",
            f"Found {len(proposal.to_delete)} categories below {config.min_post_threshold} posts",
            10,
        )

        if config.dry_run:
            _report("done", "Dry run complete; nothing was changed", 100)
            return CleanupResult(
                dry_run=True,
                proposal=proposal,
                deleted_count=len(proposal.to_delete),
                reassigned_posts=sum(
                    len(r.post_ids) for r in proposal.reassignments if r.target_id is not None
                ),
                orphaned_posts=len(proposal.orphaned_post_ids),
                remaining_count=len(proposal.to_keep),
            )

        if self._store.has_snapshot():
            raise CleanupStateError("A cleanup backup already exists; revert or commit it first")

        _report("backup", "Creating backup of the current taxonomy...", 15)
        self._store.save_snapshot(take_snapshot(state))

        affected: set[str] = set()
        hashtags_added = 0
        reassigned = 0
        total = max(1, len(proposal.reassignments))

        for i, r in enumerate(proposal.reassignments, start=1):
            post_ids = self._store.posts_in_category(r.category_id)

            if config.preserve_as_hashtags and post_ids:
                tag = category_hashtag(r.category_name)
                if tag:
                    hashtags_added += self._store.add_hashtag_to_posts(post_ids, tag)

            if config.reassign_orphans and r.target_id is not None:
                for post_id in post_ids:
                    if self._store.add_membership(post_id, r.target_id):
                        reassigned += 1

            self._store.remove_category_memberships(r.category_id)
            self._store.archive_category(r.category_id)
            affected.update(post_ids)

            self._logger.info(
                "cleanup.category_removed",
                category_id=r.category_id,
                name=r.category_name,
                target_id=r.target_id if config.reassign_orphans else None,
                posts=len(post_ids),
            )
            _report(
                "deleting",
                f"Removed {i}/{len(proposal.reassignments)} categories",
                15 + int(45 * i / total),
            )

        renamed = merged = 0
        if config.normalize_names:
            _report("normalizing", "Normalizing category names...", 65)
            renamed, merged_by_rename = self._normalize_names(affected)
            merged += merged_by_rename

        if config.merge_duplicates:
            _report("merging", "Merging obvious duplicates (outfit/outfits, Coffee/coffee)...", 80)
            merged += self._merge_stem_duplicates(affected)

        final = self._store.load_taxonomy_state()
        active = final.active_ids()
        by_id = final.by_id()
        parent_of = final.parent_of()
        result = CleanupResult(
            dry_run=False,
            proposal=proposal,
            deleted_count=len(proposal.reassignments),
            reassigned_posts=reassigned,
            orphaned_posts=(
                len(proposal.orphaned_post_ids)
                if config.reassign_orphans
                else len({p for r in proposal.reassignments for p in r.post_ids})
            ),
            hashtags_added=hashtags_added,
            renamed=renamed,
            merged=merged,
            remaining_count=len(active),
            parent_count=sum(1 for cid in active if by_id[cid].is_parent),
            child_count=sum(1 for cid in active if parent_of.get(cid) in active),
            affected_post_ids=tuple(sorted(affected)),
        )
        _report(
            "done",
            f"Cleanup complete: {result.deleted_count} removed, {result.remaining_count} remaining",
            100,
        )
        return result

    def merge_into(self, source: Category, target: Category, affected: set[str]) -> None:
        """Move posts and children of `source` onto `target`, then archive `source`."""
        post_ids = self._store.posts_in_category(source.id)
        for post_id in post_ids:
            self._store.add_membership(post_id, target.id)
        self._store.remove_category_memberships(source.id)
        affected.update(post_ids)

        state = self._store.load_taxonomy_state()
        parent_of = state.parent_of()
        target_chain = set(ancestors(target.id, parent_of))
        for child_id in self._store.children_of(source.id):
            if child_id == target.id:
                grandparent = parent_of.get(source.id)
                self._store.set_parent(target.id, grandparent if grandparent != target.id else None)
            elif child_id not in target_chain:
                self._store.set_parent(child_id, target.id)

        if source.is_parent and not target.is_parent:
            self._store.set_is_parent(target.id, True)

        self._store.archive_category(source.id)
        self._logger.info(
            "cleanup.category_merged",
            source_id=source.id,
            source_name=source.name,
            target_id=target.id,
            target_name=target.name,
            posts=len(post_ids),
        )

    def _normalize_names(self, affected: set[str]) -> tuple[int, int]:
        renamed = merged = 0
        for category in self._store.list_categories():
            current = self._store.get_category(category.id)
            if current is None or current.state != "active":
                continue

            new_name = title_case_name(current.name)
            if new_name == current.name:
                continue

            existing = self._store.find_category_by_name(new_name)
            if existing is not None and existing.id != current.id:
                self.merge_into(current, existing, affected)
                merged += 1
                continue

            self._store.rename_category(current.id, new_name)
            renamed += 1
            self._logger.info(
                "cleanup.category_renamed",
                category_id=current.id,
                old_name=current.name,
                new_name=new_name,
            )
        return renamed, merged

    def _merge_stem_duplicates(self, affected: set[str]) -> int:
        groups: dict[str, list[Category]] = defaultdict(list)
        for category in self._store.list_categories():
            groups[stem_key(category.name)].append(category)

        merged = 0
        for key, group in sorted(groups.items()):
            if not key or len(group) < 2:
                continue

            has_plural = any(ends_with_plural_s(c.name) for c in group)
            has_singular = any(not ends_with_plural_s(c.name) for c in group)
            prefer_plural = has_plural and has_singular

            group.sort(
                key=lambda c: (
                    0 if (prefer_plural and ends_with_plural_s(c.name)) else 1,
                    -c.post_count,
                    len(c.name),
                    category_key(c.name),
                )
            )
            keeper = group[0]
            for other in group[1:]:
                self.merge_into(other, keeper, affected)
                merged += 1
        return merged

    def revert(self) -> LifecycleOutcome:
        """Restore the taxonomy saved by the last cleanup; a no-op without a backup."""
        snapshot = self._store.load_snapshot()
        if snapshot is None:
            self._logger.info("cleanup.revert_noop")
            return LifecycleOutcome(applied=False)

        current = self._store.load_taxonomy_state()
        target = restored_state(snapshot, current)
        self._store.replace_taxonomy_state(target, clear_snapshot=True)

        changed = _changed_posts(current, target)
        self._logger.info(
            "cleanup.reverted", snapshot_created_at=snapshot.created_at, affected_posts=len(changed)
        )
        return LifecycleOutcome(applied=True, affected_post_ids=changed)

    def commit(self) -> LifecycleOutcome:
        """Make the post-cleanup taxonomy final; a no-op without a backup."""
        snapshot = self._store.load_snapshot()
        if snapshot is None:
            self._logger.info("cleanup.commit_noop")
            return LifecycleOutcome(applied=False)

        current = self._store.load_taxonomy_state()
        target = committed_state(current)
        self._store.replace_taxonomy_state(target, clear_snapshot=True)

        deleted = len(current.categories) - len(target.categories)
        self._logger.info("cleanup.committed", deleted_categories=deleted)
        return LifecycleOutcome(applied=True, affected_post_ids=_changed_posts(current, target))
