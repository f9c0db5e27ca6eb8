from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

from .post import Post

_WS_RE = re.compile(r"\s+")


def _coerce_str(value: Any) -> str | None:
    if isinstance(value, str):
        s = value.strip()
        return s if s else None
    return None


def _coerce_id(value: Any) -> str | None:
    if isinstance(value, str):
        v = value.strip()
        return v if v else None
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return None


def _coerce_str_list(value: Any, *, strip_prefix: str | None = None) -> list[str] | None:
    if value is None:
        return None

    def _norm(item: str) -> str | None:
        s = (item or "").strip()
        if strip_prefix and s.startswith(strip_prefix):
            s = s[len(strip_prefix) :].strip()
        return s or None

    if isinstance(value, str):
        normed = _norm(value)
        return [normed] if normed else []

    if isinstance(value, list):
        out: list[str] = []
        for item in value:
            if isinstance(item, str):
                normed = _norm(item)
                if normed:
                    out.append(normed)
        return out

    return None


def dedupe_terms(values: Iterable[str], *, strip_prefix: str | None = None) -> list[str]:
    """Strip, drop blanks and an optional prefix, and de-duplicate case-insensitively."""
    out: list[str] = []
    seen: set[str] = set()
    for item in values:
        term = (item or "").strip()
        if strip_prefix and term.startswith(strip_prefix):
            term = term[len(strip_prefix) :].strip()
        if not term:
            continue
        key = term.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(term)
    return out


def collapse_whitespace(value: str) -> str:
    return _WS_RE.sub(" ", value or "").strip()


def category_key(name: str) -> str:
    """Matching key for category names: case-insensitive, whitespace-collapsed."""
    return collapse_whitespace(name).casefold()


def split_category_label(label: str) -> tuple[str | None, str] | None:
    """
    Split a model label into (parent, child).

    "Food/Italian" -> ("Food", "Italian"); "Travel" -> (None, "Travel").
    Returns None for malformed labels (empty parts, or more than two levels).
    """
    raw = collapse_whitespace(label)
    if not raw:
        return None

    parts = [collapse_whitespace(p) for p in raw.split("/")]
    if any(not p for p in parts):
        return None
    if len(parts) == 1:
        return None, parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    return None


def post_from_item(item: Mapping[str, Any]) -> Post | None:
    """
    Best-effort conversion of a saved-post record (as exported by the browser
    collector) into a Post. Returns None when no usable id is present.
    """
    post_id = _coerce_id(item.get("id")) or _coerce_id(item.get("postId"))
    instagram_id = (
        _coerce_id(item.get("instagramId"))
        or _coerce_id(item.get("instagram_id"))
        or _coerce_id(item.get("shortCode"))
        or post_id
    )
    if not post_id or not instagram_id:
        return None

    caption = _coerce_str(item.get("caption"))

    owner_username = _coerce_str(item.get("ownerUsername")) or _coerce_str(
        item.get("owner_username")
    )
    owner_obj = item.get("owner")
    if owner_username is None and isinstance(owner_obj, Mapping):
        owner_username = _coerce_str(owner_obj.get("username"))

    hashtags = _coerce_str_list(item.get("hashtags"), strip_prefix="#") or []
    mentions = _coerce_str_list(item.get("mentions"), strip_prefix="@") or []

    return Post(
        id=post_id,
        instagram_id=instagram_id,
        caption=caption,
        owner_username=owner_username,
        image_url=_coerce_str(item.get("imageUrl")) or _coerce_str(item.get("image_url")),
        timestamp=_coerce_str(item.get("timestamp")),
        saved_at=_coerce_str(item.get("savedAt")) or _coerce_str(item.get("saved_at")),
        hashtags=tuple(dedupe_terms(hashtags)),
        mentions=tuple(dedupe_terms(mentions)),
    )
