from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Iterable, Mapping

from .post import CategoryState


@dataclass(frozen=True)
class CategoryRow:
    id: str
    name: str
    is_parent: bool = False
    state: CategoryState = "active"
    description: str | None = None


@dataclass(frozen=True)
class TaxonomyState:
    """
    Whole-taxonomy view: category rows, CHILD_OF edges, BELONGS_TO edges, and the
    hashtags of every post (cleanup writes category names into hashtags).

    Edges are (child_id, parent_id) and (post_id, category_id) pairs.
    """

    categories: tuple[CategoryRow, ...] = ()
    parent_edges: frozenset[tuple[str, str]] = frozenset()
    memberships: frozenset[tuple[str, str]] = frozenset()
    hashtags: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    def by_id(self) -> dict[str, CategoryRow]:
        return {c.id: c for c in self.categories}

    def active_ids(self) -> set[str]:
        return {c.id for c in self.categories if c.state == "active"}

    def parent_of(self) -> dict[str, str]:
        out: dict[str, str] = {}
        for child, parent in sorted(self.parent_edges):
            out.setdefault(child, parent)
        return out

    def children_of(self, *, active_only: bool = True) -> dict[str, list[str]]:
        allowed = self.active_ids() if active_only else {c.id for c in self.categories}
        out: dict[str, list[str]] = defaultdict(list)
        for child, parent in self.parent_edges:
            if child in allowed and parent in allowed:
                out[parent].append(child)
        return dict(out)

    def posts_by_category(self) -> dict[str, set[str]]:
        out: dict[str, set[str]] = defaultdict(set)
        for post_id, category_id in self.memberships:
            out[category_id].add(post_id)
        return dict(out)


def descendants(category_id: str, children: Mapping[str, Iterable[str]]) -> set[str]:
    """All categories below category_id (excluding itself); tolerant of cycles."""
    seen: set[str] = set()
    stack = list(children.get(category_id, ()))
    while stack:
        current = stack.pop()
        if current in seen or current == category_id:
            continue
        seen.add(current)
        stack.extend(children.get(current, ()))
    return seen


def ancestors(category_id: str, parent_of: Mapping[str, str]) -> list[str]:
    """Parent chain from nearest to root; stops if a cycle is encountered."""
    out: list[str] = []
    seen = {category_id}
    current = parent_of.get(category_id)
    while current is not None and current not in seen:
        out.append(current)
        seen.add(current)
        current = parent_of.get(current)
    return out


def subtree_post_ids(state: TaxonomyState, category_id: str) -> set[str]:
    children = state.children_of()
    by_category = state.posts_by_category()
    posts: set[str] = set(by_category.get(category_id, ()))
    for desc in descendants(category_id, children):
        posts |= by_category.get(desc, set())
    return posts


def subtree_post_counts(state: TaxonomyState) -> dict[str, int]:
    """
    Distinct post count per active category, including all active descendants.

    A post linked to two categories in the same subtree counts once.
    """
    children = state.children_of()
    by_category = state.posts_by_category()
    counts: dict[str, int] = {}
    for category_id in state.active_ids():
        posts: set[str] = set(by_category.get(category_id, ()))
        for desc in descendants(category_id, children):
            posts |= by_category.get(desc, set())
        counts[category_id] = len(posts)
    return counts


def depth_of(category_id: str, parent_of: Mapping[str, str]) -> int:
    return len(ancestors(category_id, parent_of))
