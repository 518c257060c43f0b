"""Infer spouse and parent links for a batch of imported rows."""

import logging

from member_index import MemberIndex, NameMatch
from names import normalize_name, split_parent_names
from spreadsheet import ImportRow

logger = logging.getLogger("silsilah.relationships")

ROW_ORDER = "row_order"
REFERENCE_ONLY = "reference_only"

# How strongly a later generation's parent field points at a member
FIRST_PARENT = 2
OTHER_PARENT = 1
NOT_REFERENCED = 0


class RelationshipResolver:
    """
    Computes spouseId and parentId for import rows whose members are already
    created and indexed.

    Nothing here raises for an unresolved name: misses go to `diagnostics`,
    heuristic or fuzzy decisions worth a second look go to `review`.

    Args:
        index: MemberIndex holding every member of the batch (and, when merging,
            the members that existed before it)
        policy: how an evenly matched generation-2 couple is split,
            "row_order" (earlier row is the descendant) or "reference_only"
            (leave it unlinked)
        root_name: name of the generation-1 root, if known
    """

    def __init__(self, index: MemberIndex, policy: str = ROW_ORDER, root_name: str | None = None):
        if policy not in (ROW_ORDER, REFERENCE_ONLY):
            raise ValueError(f"Unknown generation-2 policy: {policy}")
        self.index = index
        self.policy = policy
        self.root_name = root_name
        self.diagnostics: list[str] = []
        self.review: list[str] = []
        # Members linked before this batch cannot be claimed again
        self._claimed: set[str] = {member.id for member in index if member.spouse_id}
        self._root_id: str | None = None
        self._root_searched = False

    # ========================================================================
    # Spouses
    # ========================================================================

    def resolve_spouses(self, rows: list[ImportRow]) -> list[tuple[str, str]]:
        """
        Pair each row with the member named in its spouse field.

        Returns (member_id, spouse_id) pairs, each couple once. A row whose
        member was already claimed as someone's spouse is skipped, so a couple
        listed from both sides is linked once.
        """
        pairs = []
        for row in rows:
            if row.member_id is None or not row.spouse_raw:
                continue
            if row.member_id in self._claimed:
                logger.debug(f"Skipping spouse field of {row.name!r}: already linked")
                continue

            found = self.index.match(row.spouse_raw)
            if found is None or found.member_id == row.member_id:
                self.diagnostics.append(f"spouse not found for {row.name!r}: {row.spouse_raw!r}")
                logger.warning(f"Could not find spouse {row.spouse_raw!r} for {row.name!r}")
                continue

            spouse = self.index.get(found.member_id)
            if found.member_id in self._claimed:
                self.diagnostics.append(
                    f"spouse {row.spouse_raw!r} for {row.name!r} is already linked to another member"
                )
                logger.warning(f"Spouse {spouse.name!r} for {row.name!r} is already taken")
                continue

            self._note_fuzzy(found, row.spouse_raw, f"spouse of {row.name!r}")
            self._claimed.update((row.member_id, found.member_id))
            self.index.update(row.member_id, spouse_id=found.member_id)
            self.index.update(found.member_id, spouse_id=row.member_id)
            pairs.append((row.member_id, found.member_id))
            logger.info(f"{row.name} <-> {spouse.name}")

        return pairs

    # ========================================================================
    # Parents
    # ========================================================================

    def resolve_parents(self, rows: list[ImportRow], spouse_of: dict[str, str]) -> list[tuple[str, str]]:
        """
        Work out each row's lineage parent.

        spouse_of maps member id to spouse id for every persisted couple (both
        directions); generation-2 rows use it to tell descendants from in-laws.
        Returns (member_id, parent_id) pairs.
        """
        in_batch = {row.member_id: row for row in rows if row.member_id is not None}
        strengths = self._reference_strengths(rows)
        links = []

        for row in rows:
            if row.member_id is None:
                continue
            current = self.index.get(row.member_id)
            if current is not None and current.parent_id:
                logger.debug(f"{row.name!r} already has a parent, leaving it")
                continue

            if row.generation <= 1:
                if row.parent_raw:
                    self.diagnostics.append(
                        f"parent {row.parent_raw!r} ignored for generation-1 member {row.name!r}"
                    )
                continue

            if row.parent_raw:
                parent_id = self._resolve_parent_field(row)
            elif row.generation == 2:
                parent_id = self._resolve_generation2(row, spouse_of, in_batch, strengths)
            else:
                parent_id = None

            if parent_id is None:
                continue

            self.index.update(row.member_id, parent_id=parent_id)
            links.append((row.member_id, parent_id))
            logger.info(f"{row.name} -> parent: {self.index.get(parent_id).name}")

        return links

    def find_root_id(self) -> str | None:
        """
        The generation-1 member that generation-2 descendants hang from.

        Uses root_name when it resolves to a generation-1 member, otherwise the
        first generation-1 member indexed.
        """
        if self._root_searched:
            return self._root_id
        self._root_searched = True

        if self.root_name:
            root_id = self.index.resolve(self.root_name)
            if root_id is not None and self.index.get(root_id).generation == 1:
                self._root_id = root_id
                return root_id
            self.diagnostics.append(
                f"root member {self.root_name!r} not found in generation 1, using the first generation-1 member"
            )

        for member in self.index:
            if member.generation == 1:
                self._root_id = member.id
                break
        return self._root_id

    def _resolve_parent_field(self, row: ImportRow) -> str | None:
        """First part of "Name1 - Name2" naming an older-generation member wins."""
        for part in split_parent_names(row.parent_raw):
            found = self.index.match(part)
            if found is None or found.member_id == row.member_id:
                continue
            candidate = self.index.get(found.member_id)
            if candidate.generation >= row.generation:
                logger.debug(
                    f"Parent candidate {candidate.name!r} (gen {candidate.generation}) rejected "
                    f"for {row.name!r} (gen {row.generation})"
                )
                continue
            self._note_fuzzy(found, part, f"parent of {row.name!r}")
            return found.member_id

        self.diagnostics.append(f"parent {row.parent_raw!r} for {row.name!r} not found")
        logger.warning(f"Could not find parent {row.parent_raw!r} for {row.name!r}")
        return None

    def _resolve_generation2(
        self,
        row: ImportRow,
        spouse_of: dict[str, str],
        in_batch: dict[str, ImportRow],
        strengths: dict[str, int],
    ) -> str | None:
        """Decide whether a generation-2 row with no parent field is a child of the root."""
        partner_id = spouse_of.get(row.member_id)
        partner = self.index.get(partner_id) if partner_id else None

        if partner is None or partner.generation != 2:
            return self._root_for(row)

        partner_row = in_batch.get(partner_id)
        if partner.parent_id or (partner_row is not None and partner_row.parent_raw):
            # The partner is the one with a lineage parent
            return None
        if partner_row is None:
            # Existing member from before this batch, nothing to weigh against
            return self._root_for(row)

        mine = strengths.get(normalize_name(row.name), NOT_REFERENCED)
        theirs = strengths.get(normalize_name(partner.name), NOT_REFERENCED)
        if mine != theirs:
            return self._root_for(row) if mine > theirs else None

        if self.policy == REFERENCE_ONLY:
            if row.position < partner_row.position:
                self.diagnostics.append(
                    f"couple {row.name!r} / {partner.name!r} is ambiguous: "
                    f"cannot tell which one descends from the root"
                )
            return None

        if row.position < partner_row.position:
            self.review.append(
                f"{row.name!r} taken as descendant and {partner.name!r} as in-law by row order"
            )
            return self._root_for(row)
        return None

    def _root_for(self, row: ImportRow) -> str | None:
        root_id = self.find_root_id()
        if root_id is None:
            self.diagnostics.append(f"no generation-1 root member to use as parent of {row.name!r}")
        return root_id

    @staticmethod
    def _reference_strengths(rows: list[ImportRow]) -> dict[str, int]:
        """
        Map normalized names to how they appear in generation-3+ parent fields.

        FIRST_PARENT when the name is the first part of some parent field,
        OTHER_PARENT when it only appears as a later part.
        """
        strengths: dict[str, int] = {}
        for row in rows:
            if row.generation <= 2 or not row.parent_raw:
                continue
            for i, part in enumerate(split_parent_names(row.parent_raw)):
                key = normalize_name(part)
                if not key:
                    continue
                strength = FIRST_PARENT if i == 0 else OTHER_PARENT
                if strength > strengths.get(key, NOT_REFERENCED):
                    strengths[key] = strength
        return strengths

    def _note_fuzzy(self, found: NameMatch, raw: str, context: str) -> None:
        if found.method == "containment":
            self.review.append(
                f"{raw!r} ({context}) matched {self.index.get(found.member_id).name!r} by containment"
            )
