"""In-memory name lookup used while importing a batch of members."""

import logging
from dataclasses import dataclass
from typing import Any, Iterator

from names import clean_name, normalize_name

logger = logging.getLogger("silsilah.index")


@dataclass
class IndexedMember:
    """The parts of a member the resolver needs."""
    id: str
    name: str
    generation: int = 1
    parent_id: str | None = None
    spouse_id: str | None = None

    @classmethod
    def from_member(cls, member: Any) -> "IndexedMember":
        if isinstance(member, cls):
            return member
        return cls(
            id=member.id,
            name=member.name,
            generation=getattr(member, "generation", None) or 1,
            parent_id=getattr(member, "parent_id", None),
            spouse_id=getattr(member, "spouse_id", None),
        )


@dataclass(frozen=True)
class NameMatch:
    member_id: str
    method: str  # exact, cleaned, normalized, containment


class MemberIndex:
    """
    Resolves free-text name references to member ids.

    Lookup order: exact name, cleaned name, normalized name, then a
    containment scan over normalized names in insertion order. The
    containment step returns the first hit, not the closest one.

    Args:
        min_containment_ratio: reject containment matches where
            len(shorter) / len(longer) is below this (0.0 disables the check)
    """

    def __init__(self, min_containment_ratio: float = 0.0):
        self._members: dict[str, IndexedMember] = {}
        self._by_name: dict[str, str] = {}
        self._by_cleaned: dict[str, str] = {}
        self._by_normalized: dict[str, str] = {}
        self._normalized: dict[str, str] = {}
        self._min_ratio = min_containment_ratio

    def insert(self, member: Any) -> IndexedMember:
        """Register a member. Call right after creating it so later rows can refer to it."""
        entry = IndexedMember.from_member(member)
        self._members[entry.id] = entry

        normalized = normalize_name(entry.name)
        self._normalized[entry.id] = normalized

        # First member registered under a name keeps it
        self._by_name.setdefault(entry.name, entry.id)
        cleaned = clean_name(entry.name)
        if cleaned:
            self._by_cleaned.setdefault(cleaned, entry.id)
        if normalized:
            self._by_normalized.setdefault(normalized, entry.id)

        logger.debug(f"Indexed {entry.name!r} as {entry.id}")
        return entry

    def update(self, member_id: str, **links) -> None:
        """Update the cached parent_id/spouse_id of an indexed member."""
        entry = self._members[member_id]
        for key, value in links.items():
            if key not in ("parent_id", "spouse_id"):
                raise AttributeError(f"Cannot update {key} on an indexed member")
            setattr(entry, key, value)

    def get(self, member_id: str) -> IndexedMember | None:
        return self._members.get(member_id)

    def __contains__(self, member_id: str) -> bool:
        return member_id in self._members

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[IndexedMember]:
        return iter(self._members.values())

    def match_exact(self, raw_name: str | None) -> NameMatch | None:
        """Try the exact, cleaned and normalized lookups (no containment)."""
        if not raw_name or not str(raw_name).strip():
            return None

        raw_name = str(raw_name)
        if raw_name in self._by_name:
            return NameMatch(self._by_name[raw_name], "exact")

        cleaned = clean_name(raw_name)
        if cleaned in self._by_name:
            return NameMatch(self._by_name[cleaned], "cleaned")
        if cleaned in self._by_cleaned:
            return NameMatch(self._by_cleaned[cleaned], "cleaned")

        normalized = cleaned.lower()
        if normalized in self._by_normalized:
            return NameMatch(self._by_normalized[normalized], "normalized")

        return None

    def match(self, raw_name: str | None) -> NameMatch | None:
        """Resolve a name, reporting which lookup step succeeded."""
        found = self.match_exact(raw_name)
        if found or not raw_name:
            return found

        candidate = normalize_name(raw_name)
        if not candidate:
            return None

        for member_id, known in self._normalized.items():
            if not known:
                continue
            if known not in candidate and candidate not in known:
                continue
            ratio = min(len(known), len(candidate)) / max(len(known), len(candidate))
            if ratio < self._min_ratio:
                logger.debug(
                    f"Containment match {raw_name!r} -> {self._members[member_id].name!r} "
                    f"rejected (ratio {ratio:.2f} < {self._min_ratio:.2f})"
                )
                continue
            logger.warning(
                f"Fuzzy match: {raw_name!r} resolved to {self._members[member_id].name!r} by containment"
            )
            return NameMatch(member_id, "containment")

        return None

    def resolve(self, raw_name: str | None) -> str | None:
        """Return the member id a name refers to, or None."""
        found = self.match(raw_name)
        return found.member_id if found else None

    def resolve_exact(self, raw_name: str | None) -> str | None:
        found = self.match_exact(raw_name)
        return found.member_id if found else None
