from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .normalize import collapse_whitespace, dedupe_terms

EXTRACTION_SCHEMA_NAME = "ig_taxonomy_post_extraction"
CHUNK_SCHEMA_NAME = "ig_taxonomy_chunk_extraction"

_STRING_LIST: dict[str, Any] = {"type": "array", "items": {"type": "string"}}

# Hand-authored to stay within the JSON Schema subset accepted by Structured Outputs.
# Strict mode requires every property, so "none" is the empty string or empty list.
EXTRACTION_PROPERTIES: dict[str, Any] = {
    "hashtags": _STRING_LIST,
    "hashtagsReason": {"type": "string"},
    "location": {"type": "string"},
    "locationReason": {"type": "string"},
    "venue": {"type": "string"},
    "venueReason": {"type": "string"},
    "categories": _STRING_LIST,
    "categoriesReason": {"type": "string"},
    "eventDate": {"type": "string"},
    "eventDateReason": {"type": "string"},
    "mentions": _STRING_LIST,
    "mentionsReason": {"type": "string"},
}

EXTRACTION_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": EXTRACTION_PROPERTIES,
    "required": list(EXTRACTION_PROPERTIES),
}

CHUNK_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "extractions": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {"postId": {"type": "string"}, **EXTRACTION_PROPERTIES},
                "required": ["postId", *EXTRACTION_PROPERTIES],
            },
        }
    },
    "required": ["extractions"],
}


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    s = collapse_whitespace(value)
    if not s or s.casefold() in ("null", "none", "n/a"):
        return None
    return s


def _text_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError("must be a list of strings")
    return [v for v in value if isinstance(v, str)]


class Extraction(BaseModel):
    """
    Validated metadata for one post.

    Missing lists become [], missing or empty strings become None, hashtags lose
    a leading '#', mentions lose '@', and list entries are de-duplicated
    case-insensitively (first spelling wins).
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    hashtags: list[str] = Field(default_factory=list)
    hashtags_reason: str | None = Field(None, alias="hashtagsReason")
    location: str | None = None
    location_reason: str | None = Field(None, alias="locationReason")
    venue: str | None = None
    venue_reason: str | None = Field(None, alias="venueReason")
    categories: list[str] = Field(default_factory=list)
    categories_reason: str | None = Field(None, alias="categoriesReason")
    event_date: str | None = Field(None, alias="eventDate")
    event_date_reason: str | None = Field(None, alias="eventDateReason")
    mentions: list[str] = Field(default_factory=list)
    mentions_reason: str | None = Field(None, alias="mentionsReason")

    @field_validator(
        "location",
        "venue",
        "event_date",
        "hashtags_reason",
        "location_reason",
        "venue_reason",
        "categories_reason",
        "event_date_reason",
        "mentions_reason",
        mode="before",
    )
    @classmethod
    def _empty_text_is_none(cls, v: Any) -> str | None:
        return _optional_text(v)

    @field_validator("hashtags", mode="before")
    @classmethod
    def _clean_hashtags(cls, v: Any) -> list[str]:
        return dedupe_terms(_text_list(v), strip_prefix="#")

    @field_validator("mentions", mode="before")
    @classmethod
    def _clean_mentions(cls, v: Any) -> list[str]:
        return dedupe_terms(_text_list(v), strip_prefix="@")

    @field_validator("categories", mode="before")
    @classmethod
    def _clean_categories(cls, v: Any) -> list[str]:
        return dedupe_terms(collapse_whitespace(c) for c in _text_list(v))

    def metadata_updates(self) -> dict[str, Any]:
        """Column values for the post, in the shape the store expects."""
        return {
            "hashtags": list(self.hashtags),
            "location": self.location,
            "venue": self.venue,
            "event_date": self.event_date,
            "mentions": list(self.mentions),
        }

    def reasons(self) -> dict[str, str]:
        pairs = {
            "hashtags": self.hashtags_reason,
            "location": self.location_reason,
            "venue": self.venue_reason,
            "categories": self.categories_reason,
            "event_date": self.event_date_reason,
            "mentions": self.mentions_reason,
        }
        return {k: v for k, v in pairs.items() if v}


class ChunkExtractionItem(Extraction):
    post_id: str = Field(alias="postId", min_length=1)

    @field_validator("post_id", mode="before")
    @classmethod
    def _strip_post_id(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    def extraction(self) -> Extraction:
        data = self.model_dump(by_alias=True, exclude={"post_id"})
        return Extraction.model_validate(data)


class ChunkExtraction(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    extractions: list[ChunkExtractionItem] = Field(default_factory=list)


MERGE_SCHEMA_NAME = "ig_taxonomy_cluster_merges"
HIERARCHY_SCHEMA_NAME = "ig_taxonomy_category_hierarchy"

MERGE_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "merges": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "clusterIds": _STRING_LIST,
                    "canonicalName": {"type": "string"},
                    "reason": {"type": "string"},
                },
                "required": ["clusterIds", "canonicalName", "reason"],
            },
        }
    },
    "required": ["merges"],
}

HIERARCHY_JSON_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "parents": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string"},
                    "children": _STRING_LIST,
                    "reason": {"type": "string"},
                },
                "required": ["name", "children", "reason"],
            },
        }
    },
    "required": ["parents"],
}


class ClusterMerge(BaseModel):
    """Clusters (named by their canonical category) that should become one category."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    cluster_ids: list[str] = Field(default_factory=list, alias="clusterIds")
    canonical_name: str = Field(alias="canonicalName", min_length=1)
    reason: str | None = None

    @field_validator("cluster_ids", mode="before")
    @classmethod
    def _clean_ids(cls, v: Any) -> list[str]:
        return dedupe_terms(collapse_whitespace(s) for s in _text_list(v))

    @field_validator("canonical_name", mode="before")
    @classmethod
    def _clean_name(cls, v: Any) -> Any:
        return collapse_whitespace(v) if isinstance(v, str) else v

    @field_validator("reason", mode="before")
    @classmethod
    def _empty_reason(cls, v: Any) -> str | None:
        return _optional_text(v)


class ClusterMergePlan(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    merges: list[ClusterMerge] = Field(default_factory=list)


class ParentGroup(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    children: list[str] = Field(default_factory=list)
    reason: str | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _clean_name(cls, v: Any) -> Any:
        return collapse_whitespace(v) if isinstance(v, str) else v

    @field_validator("children", mode="before")
    @classmethod
    def _clean_children(cls, v: Any) -> list[str]:
        return dedupe_terms(collapse_whitespace(s) for s in _text_list(v))

    @field_validator("reason", mode="before")
    @classmethod
    def _empty_reason(cls, v: Any) -> str | None:
        return _optional_text(v)


class HierarchyPlan(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    parents: list[ParentGroup] = Field(default_factory=list)
