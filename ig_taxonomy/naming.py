from __future__ import annotations

import re

FALLBACK_NAME = "General"

TITLECASE_STOP_WORDS = frozenset(
    {
        "a", "an", "and", "as", "at", "but", "by", "for", "from", "in", "into",
        "nor", "of", "on", "onto", "or", "over", "per", "so", "the", "to",
        "under", "via", "vs", "with", "yet",
    }
)

_DISALLOWED_RE = re.compile(r"[^\w\s\-'/]+")
_WS_RE = re.compile(r"\s+")
_ACRONYM_RE = re.compile(r"^[A-Z0-9]{2,}$")
_ALNUM_RE = re.compile(r"[^\W_]")
_TOKEN_SPLIT_RE = re.compile(r"([\-_/])")
_COMPARE_DROP_RE = re.compile(r"[^a-z0-9\s]")
_HASHTAG_SPLIT_RE = re.compile(r"[\s_\-]+")
_HASHTAG_DROP_RE = re.compile(r"[^A-Za-z0-9]")


def sanitize_name(name: str) -> str:
    """Drop symbols (keeping letters, digits, spaces, - _ ' /) and collapse whitespace."""
    cleaned = _DISALLOWED_RE.sub(" ", name or "")
    return _WS_RE.sub(" ", cleaned).strip()


def _title_segment(segment: str, first_word: bool) -> str:
    if not segment or _ACRONYM_RE.match(segment):
        return segment

    positions = [m.start() for m in _ALNUM_RE.finditer(segment)]
    if not positions:
        return segment

    head, tail = positions[0], positions[-1] + 1
    core = segment[head:tail].lower()
    if first_word or core not in TITLECASE_STOP_WORDS:
        core = core[:1].upper() + core[1:]
    return segment[:head] + core + segment[tail:]


def _title_token(token: str, first_word: bool) -> str:
    out: list[str] = []
    first_segment = True
    for part in _TOKEN_SPLIT_RE.split(token):
        if part in ("-", "_", "/"):
            out.append(part)
            continue
        out.append(_title_segment(part, first_word and first_segment))
        first_segment = False
    return "".join(out)


def title_case_name(name: str) -> str:
    """
    Normalize a category name for display.

    "street food of asia" -> "Street Food of Asia"; acronyms such as "USA" are
    kept; a name with nothing usable left becomes "General".
    """
    cleaned = sanitize_name(name)
    if not cleaned:
        return FALLBACK_NAME
    return " ".join(_title_token(tok, i == 0) for i, tok in enumerate(cleaned.split(" ")))


def comparison_key(name: str) -> str:
    lowered = (name or "").lower().strip().replace("’", "'")
    lowered = _WS_RE.sub(" ", lowered)
    return _COMPARE_DROP_RE.sub("", lowered)


def stem_key(name: str) -> str:
    """Cheap English plural folding: categories -> category, dishes -> dish, outfits -> outfit."""
    key = comparison_key(name)
    if key.endswith("ies") and len(key) > 4:
        return key[:-3] + "y"
    if key.endswith("es") and len(key) > 3:
        stem = key[:-2]
        if stem.endswith(("sh", "ch", "x", "s")):
            return stem
    if key.endswith("s") and len(key) > 2 and not key.endswith("ss"):
        return key[:-1]
    return key


def ends_with_plural_s(name: str) -> bool:
    key = comparison_key(name)
    return key.endswith("s") and len(key) > 2 and not key.endswith("ss")


def category_hashtag(name: str) -> str:
    """'street food' -> 'StreetFood'; used to keep a deleted category's name on its posts."""
    words = [w for w in _HASHTAG_SPLIT_RE.split(name or "") if w]
    joined = "".join(w[:1].upper() + w[1:].lower() for w in words)
    return _HASHTAG_DROP_RE.sub("", joined)
