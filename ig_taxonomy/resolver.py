from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .errors import StorageError
from .normalize import category_key, split_category_label
from .post import Category
from .run_log import RunLogger
from .storage import SQLiteGraphStore
from .taxonomy import ancestors


@dataclass
class CategoryWorkingSet:
    """
    Active categories known to one extraction pass, keyed case-insensitively.

    Loaded from the store at the start of a pass and extended as the pass
    creates categories; never reused across passes.
    """

    by_key: dict[str, Category] = field(default_factory=dict)
    parent_of: dict[str, str] = field(default_factory=dict)

    @classmethod
    def load(cls, store: SQLiteGraphStore) -> "CategoryWorkingSet":
        ws = cls()
        for category in store.list_categories():
            ws.add(category)
        return ws

    def add(self, category: Category) -> None:
        self.by_key[category_key(category.name)] = category
        if category.parent_id:
            self.parent_of[category.id] = category.parent_id

    def get(self, name: str) -> Category | None:
        return self.by_key.get(category_key(name))

    def discard(self, category: Category) -> None:
        self.by_key.pop(category_key(category.name), None)
        self.parent_of.pop(category.id, None)

    def names(self) -> list[str]:
        return sorted((c.name for c in self.by_key.values()), key=str.casefold)

    def mark_parent(self, category: Category) -> Category:
        if category.is_parent:
            return category
        updated = Category(
            id=category.id,
            name=category.name,
            is_parent=True,
            parent_id=category.parent_id,
            state=category.state,
            description=category.description,
            created_at=category.created_at,
        )
        self.by_key[category_key(category.name)] = updated
        return updated

    def would_cycle(self, child_id: str, parent_id: str) -> bool:
        """True if making parent_id the parent of child_id would close a loop."""
        if child_id == parent_id:
            return True
        return child_id in ancestors(parent_id, self.parent_of)


@dataclass(frozen=True)
class ResolveOutcome:
    linked_category_ids: tuple[str, ...] = ()
    created: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()


class CategoryResolver:
    """Turns extracted category labels into category nodes, parent edges and memberships."""

    def __init__(self, store: SQLiteGraphStore, *, logger: RunLogger | None = None) -> None:
        self._store = store
        self._logger = logger or RunLogger()

    def new_working_set(self) -> CategoryWorkingSet:
        return CategoryWorkingSet.load(self._store)

    def _find_or_create(
        self, name: str, ws: CategoryWorkingSet, *, is_parent: bool, created: list[str]
    ) -> Category:
        existing = ws.get(name)
        if existing is not None:
            current = self._store.get_category(existing.id)
            if current is None or current.state != "active":
                # Archived or merged away since the working set was loaded.
                ws.discard(existing)
                existing = None

        if existing is not None:
            if is_parent and not existing.is_parent:
                self._store.set_is_parent(existing.id, True)
                existing = ws.mark_parent(existing)
            return existing

        category, was_created = self._store.find_or_create_category(name, is_parent=is_parent)
        if was_created:
            created.append(category.name)
            self._logger.info(
                "resolve.category_created",
                category_id=category.id,
                name=category.name,
                is_parent=is_parent,
            )
        ws.add(category)
        return category

    def _resolve_label(
        self,
        post_id: str,
        label: str,
        ws: CategoryWorkingSet,
        created: list[str],
    ) -> str | None:
        parts = split_category_label(label)
        if parts is None:
            self._logger.warning(
                "resolve.label_skipped", post_id=post_id, label=label, reason="malformed_label"
            )
            return None

        parent_name, child_name = parts
        if parent_name is not None and category_key(parent_name) == category_key(child_name):
            self._logger.warning(
                "resolve.self_parent_ignored", post_id=post_id, label=label
            )
            parent_name = None

        child = self._find_or_create(child_name, ws, is_parent=False, created=created)

        if parent_name is not None:
            parent = self._find_or_create(parent_name, ws, is_parent=True, created=created)
            if ws.would_cycle(child.id, parent.id):
                self._logger.warning(
                    "resolve.cycle_prevented",
                    post_id=post_id,
                    label=label,
                    child_id=child.id,
                    parent_id=parent.id,
                )
            elif ws.parent_of.get(child.id) != parent.id:
                self._store.set_parent(child.id, parent.id)
                ws.parent_of[child.id] = parent.id

        self._store.add_membership(post_id, child.id)
        return child.id

    def resolve(
        self,
        post_id: str,
        labels: Sequence[str],
        ws: CategoryWorkingSet,
    ) -> ResolveOutcome:
        linked: list[str] = []
        created: list[str] = []
        skipped: list[str] = []
        failed: list[str] = []

        for label in labels:
            try:
                category_id = self._resolve_label(post_id, label, ws, created)
            except (StorageError, ValueError) as e:
                self._logger.exception("resolve.label_failed", exc=e, post_id=post_id, label=label)
                failed.append(label)
                continue

            if category_id is None:
                skipped.append(label)
            elif category_id not in linked:
                linked.append(category_id)

        return ResolveOutcome(
            linked_category_ids=tuple(linked),
            created=tuple(created),
            skipped=tuple(skipped),
            failed=tuple(failed),
        )

    def resolve_many(
        self, labels_by_post: Iterable[tuple[str, Sequence[str]]]
    ) -> dict[str, ResolveOutcome]:
        """Resolve a whole pass against one freshly loaded working set."""
        ws = self.new_working_set()
        return {post_id: self.resolve(post_id, labels, ws) for post_id, labels in labels_by_post}
