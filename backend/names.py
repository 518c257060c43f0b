"""Name cleaning and normalization for matching free-text name references."""

import re

# "(alm)" / "(alm.)" marks a deceased person
_DECEASED_MARKER = re.compile(r"\(\s*alm\.?\s*\)", re.IGNORECASE)

# Leading titles: Bpk. (Bapak), Bu (Ibu), Hj. (Hajjah), H. (Haji)
_LEADING_TITLE = re.compile(r"^(?:bpk\.|bu\s|hj\.|h\.)\s*", re.IGNORECASE)

_WHITESPACE = re.compile(r"\s+")

PARENT_SEPARATOR = " - "


def clean_name(raw: str | None) -> str:
    """
    Strip honorifics and deceased markers from a name, keeping its case.

    Titles are stripped repeatedly so "Bpk. H. Ahmad (alm)" becomes "Ahmad".
    """
    if not raw:
        return ""

    name = str(raw)
    while True:
        stripped = _DECEASED_MARKER.sub("", name)
        stripped = _WHITESPACE.sub(" ", stripped).strip()
        stripped = _LEADING_TITLE.sub("", stripped).strip()
        if stripped == name:
            return stripped
        name = stripped


def normalize_name(raw: str | None) -> str:
    """Comparison key for a name: cleaned, lower-cased, single-spaced."""
    return clean_name(raw).lower()


def split_parent_names(raw: str | None) -> list[str]:
    """Split a "Name1 - Name2" parent field into its non-empty parts."""
    if not raw:
        return []
    return [part.strip() for part in str(raw).split(PARENT_SEPARATOR) if part.strip()]
