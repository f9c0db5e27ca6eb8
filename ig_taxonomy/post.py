from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Sequence

EMBEDDING_VERSION_NONE = 0
EMBEDDING_VERSION_CAPTION = 1
EMBEDDING_VERSION_ENRICHED = 2

EditSource = Literal["user", "model"]
CategoryState = Literal["active", "archived"]


@dataclass(frozen=True)
class Post:
    """A saved post plus the metadata enriched onto it by extraction and geocoding."""

    id: str
    instagram_id: str
    caption: str | None = None
    owner_username: str | None = None
    image_url: str | None = None
    timestamp: str | None = None
    saved_at: str | None = None

    hashtags: Sequence[str] = ()
    location: str | None = None
    venue: str | None = None
    event_date: str | None = None
    mentions: Sequence[str] = ()

    reasons: dict[str, str] = field(default_factory=dict)

    latitude: float | None = None
    longitude: float | None = None
    country: str | None = None
    city: str | None = None
    neighborhood: str | None = None

    embedding: Sequence[float] | None = None
    embedding_version: int = EMBEDDING_VERSION_NONE
    last_edited_by: EditSource | None = None
    last_edited_at: str | None = None


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    is_parent: bool = False
    parent_id: str | None = None
    state: CategoryState = "active"
    description: str | None = None
    embedding: Sequence[float] | None = None
    # Derived on read: distinct posts under this category's subtree.
    post_count: int = 0
    created_at: str | None = None
