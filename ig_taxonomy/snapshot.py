from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, ValidationError

from .errors import CleanupStateError
from .taxonomy import CategoryRow, TaxonomyState

SNAPSHOT_FORMAT_VERSION = 1


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class _CategoryPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    name: str
    is_parent: bool
    state: str = "active"
    description: str | None = None


class _SnapshotPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    format_version: int
    created_at: str
    categories: list[_CategoryPayload]
    parent_edges: list[tuple[str, str]]
    memberships: list[tuple[str, str]]
    hashtags: dict[str, list[str]]


@dataclass(frozen=True)
class CleanupSnapshot:
    """The reversible record of the taxonomy as it was before a cleanup ran."""

    created_at: str
    state: TaxonomyState

    def original_names(self) -> dict[str, str]:
        return {c.id: c.name for c in self.state.categories}

    def to_json(self) -> str:
        payload = _SnapshotPayload(
            format_version=SNAPSHOT_FORMAT_VERSION,
            created_at=self.created_at,
            categories=[
                _CategoryPayload(
                    id=c.id,
                    name=c.name,
                    is_parent=c.is_parent,
                    state=c.state,
                    description=c.description,
                )
                for c in self.state.categories
            ],
            parent_edges=sorted(self.state.parent_edges),
            memberships=sorted(self.state.memberships),
            hashtags={k: list(v) for k, v in sorted(self.state.hashtags.items())},
        )
        return payload.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "CleanupSnapshot":
        try:
            payload = _SnapshotPayload.model_validate_json(raw)
        except ValidationError as e:
            raise CleanupStateError(f"Stored cleanup snapshot could not be parsed: {e}") from e

        if payload.format_version != SNAPSHOT_FORMAT_VERSION:
            raise CleanupStateError(
                f"Unsupported cleanup snapshot format_version={payload.format_version}"
            )

        state = TaxonomyState(
            categories=tuple(
                CategoryRow(
                    id=c.id,
                    name=c.name,
                    is_parent=c.is_parent,
                    state="archived" if c.state == "archived" else "active",
                    description=c.description,
                )
                for c in payload.categories
            ),
            parent_edges=frozenset((a, b) for a, b in payload.parent_edges),
            memberships=frozenset((a, b) for a, b in payload.memberships),
            hashtags={k: tuple(v) for k, v in payload.hashtags.items()},
        )
        return cls(created_at=payload.created_at, state=state)


def take_snapshot(state: TaxonomyState, *, created_at: str | None = None) -> CleanupSnapshot:
    return CleanupSnapshot(created_at=(created_at or _utc_now_iso()), state=state)


def restored_state(snapshot: CleanupSnapshot, current: TaxonomyState) -> TaxonomyState:
    """
    The state a revert writes back.

    Categories created after the snapshot disappear, archived ones come back with
    their original names and parent flags, and every edge is the snapshot's edge.
    Posts synced after the snapshot keep their current hashtags.
    """
    hashtags = dict(current.hashtags)
    hashtags.update(snapshot.state.hashtags)

    return TaxonomyState(
        categories=snapshot.state.categories,
        parent_edges=snapshot.state.parent_edges,
        memberships=snapshot.state.memberships,
        hashtags=hashtags,
    )


def committed_state(current: TaxonomyState) -> TaxonomyState:
    """The state a commit writes back: archived categories and their edges are gone."""
    keep = current.active_ids()
    return TaxonomyState(
        categories=tuple(c for c in current.categories if c.id in keep),
        parent_edges=frozenset(
            (child, parent)
            for child, parent in current.parent_edges
            if child in keep and parent in keep
        ),
        memberships=frozenset((p, c) for p, c in current.memberships if c in keep),
        hashtags=dict(current.hashtags),
    )
