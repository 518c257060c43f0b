"""Persistence operations for family members."""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from family_tree import detect_circular_ancestry
from models import MEMBER_FIELDS, Gender, Member, get_member_data

logger = logging.getLogger("silsilah.store")

_GENDER_CODES = {g.value for g in Gender}


class MemberNotFoundError(LookupError):
    def __init__(self, member_id: str):
        super().__init__(f"Member not found: {member_id}")
        self.member_id = member_id


class MemberValidationError(ValueError):
    """Input that would break a member invariant; nothing was written."""


class MemberStore:
    """
    Create/read/update/delete members through a SQLAlchemy session.

    Spouse links are always written as a pair in one commit, and deleting a
    member re-orphans its children instead of deleting them.
    """

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_member(self, member_id: str) -> Member | None:
        return self.db.query(Member).filter(Member.id == member_id).first()

    def require_member(self, member_id: str) -> Member:
        member = self.get_member(member_id)
        if member is None:
            raise MemberNotFoundError(member_id)
        return member

    def list_members(self, in_creation_order: bool = False) -> list[Member]:
        """All members ordered by generation, then name (or by creation time)."""
        query = self.db.query(Member)
        if in_creation_order:
            return query.order_by(Member.created_at.asc(), Member.id.asc()).all()
        return query.order_by(Member.generation.asc(), Member.name.asc()).all()

    def get_children(self, member_id: str) -> list[Member]:
        return (
            self.db.query(Member)
            .filter(Member.parent_id == member_id)
            .order_by(Member.generation.asc(), Member.name.asc())
            .all()
        )

    def count_members(self) -> int:
        return self.db.query(Member).count()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_member(self, fields: dict[str, Any]) -> Member:
        """
        Create a member from snake_case fields.

        parent_id and spouse_id are optional; a spouse is linked both ways.
        """
        values = self._clean_fields(fields)
        if not values.get("name"):
            raise MemberValidationError("Name is required")
        values.setdefault("gender", Gender.MALE.value)
        values.setdefault("generation", 1)

        parent_id = values.pop("parent_id", None)
        spouse_id = values.pop("spouse_id", None)

        member = Member(**values)
        if parent_id:
            self._check_parent(member, parent_id)
            member.parent_id = parent_id
        spouse = self._check_spouse(member, spouse_id) if spouse_id else None

        try:
            self.db.add(member)
            self.db.flush()
            if spouse is not None:
                self._pair(member, spouse)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(member)
        logger.debug(f"Created member {member.name!r} ({member.id})")
        return member

    def update_member(self, member_id: str, fields: dict[str, Any]) -> Member:
        """Apply a partial update. Keys absent from fields are left alone."""
        member = self.require_member(member_id)
        values = self._clean_fields(fields)
        if "name" in values and not values["name"]:
            raise MemberValidationError("Name is required")

        touch_parent = "parent_id" in values
        touch_spouse = "spouse_id" in values
        parent_id = values.pop("parent_id", None)
        spouse_id = values.pop("spouse_id", None)

        try:
            for key, value in values.items():
                setattr(member, key, value)

            if touch_parent and parent_id:
                self._check_parent(member, parent_id)
            elif not touch_parent and member.parent_id and "generation" in values:
                self._check_parent(member, member.parent_id)
            if "generation" in values:
                self._check_children(member)
            spouse = self._check_spouse(member, spouse_id) if touch_spouse and spouse_id else None

            if touch_parent:
                member.parent_id = parent_id or None
            if touch_spouse:
                if spouse is None:
                    self._unpair(member)
                elif member.spouse_id != spouse.id:
                    self._pair(member, spouse)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(member)
        return member

    def delete_member(self, member_id: str) -> None:
        """Delete a member, clearing its spouse's link and orphaning its children."""
        member = self.require_member(member_id)
        try:
            # The spouse, plus any one-sided links pointing at this member
            self.db.query(Member).filter(Member.spouse_id == member.id).update(
                {Member.spouse_id: None}, synchronize_session="fetch"
            )
            orphaned = self.db.query(Member).filter(Member.parent_id == member.id).update(
                {Member.parent_id: None}, synchronize_session="fetch"
            )
            self.db.delete(member)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Deleted member {member_id}, orphaned {orphaned} child(ren)")

    def clear_members(self) -> int:
        """Remove every member. Returns how many were deleted."""
        try:
            deleted = self._delete_all()
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Cleared {deleted} members")
        return deleted

    def backup_members(self) -> list[dict[str, Any]]:
        """Every member with ids and links, in creation order."""
        return [get_member_data(member) for member in self.list_members(in_creation_order=True)]

    def restore_members(self, records: list[dict[str, Any]]) -> int:
        """
        Replace every member with the members of a backup, keeping their ids.

        Members are created bare first and linked afterwards, in a single
        transaction, so a backup that fails validation leaves the store as it
        was. Links to ids that are not in the backup are dropped.
        """
        restored = [self._restore_values(record) for record in records]
        ids = [values["id"] for values, _ in restored]
        if len(set(ids)) != len(ids):
            raise MemberValidationError("Backup contains duplicate member ids")
        known = set(ids)

        try:
            deleted = self._delete_all()
            members = []
            for values, _ in restored:
                member = Member(**values)
                self.db.add(member)
                members.append(member)
            self.db.flush()

            for member, (_, links) in zip(members, restored):
                for key, target in links.items():
                    if target is None:
                        continue
                    if target not in known:
                        logger.warning(f"Dropping {key} of {member.name!r}: {target} is not in the backup")
                        continue
                    setattr(member, key, target)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Restored {len(members)} members, replacing {deleted}")
        return len(members)

    def link_spouses(self, member_id: str, spouse_id: str) -> None:
        """Link two members as a couple, unlinking any previous partners of either."""
        member = self.require_member(member_id)
        spouse = self._check_spouse(member, spouse_id)
        try:
            self._pair(member, spouse)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def set_parent(self, member_id: str, parent_id: str | None) -> None:
        member = self.require_member(member_id)
        if parent_id:
            self._check_parent(member, parent_id)
        try:
            member.parent_id = parent_id or None
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _delete_all(self) -> int:
        """Bulk-delete every member. No commit."""
        self.db.query(Member).update(
            {Member.parent_id: None, Member.spouse_id: None}, synchronize_session=False
        )
        deleted = self.db.query(Member).delete(synchronize_session=False)
        # Deleted rows must not linger in the identity map (restore reuses their ids)
        self.db.expunge_all()
        return deleted

    @staticmethod
    def _clean_fields(fields: dict[str, Any]) -> dict[str, Any]:
        """Accept snake_case or camelCase keys; blank strings become None."""
        allowed = set(MEMBER_FIELDS.values())
        values = {}
        for key, value in fields.items():
            key = MEMBER_FIELDS.get(key, key)
            if key not in allowed:
                raise MemberValidationError(f"Unknown field: {key}")
            if isinstance(value, str):
                value = value.strip() or None
            values[key] = value

        if "gender" in values:
            gender = values["gender"]
            if isinstance(gender, Gender):
                values["gender"] = gender.value
            elif gender not in _GENDER_CODES:
                raise MemberValidationError(f"Gender must be one of {sorted(_GENDER_CODES)}")
        if "generation" in values:
            generation = values["generation"]
            if generation is None:
                values["generation"] = 1
            elif not isinstance(generation, int) or isinstance(generation, bool) or generation < 1:
                raise MemberValidationError("Generation must be a positive integer")
        if "is_active" in values and values["is_active"] is None:
            values["is_active"] = True
        return values

    @classmethod
    def _restore_values(cls, record: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
        """Split a backup record into column values (id included) and its links."""
        member_id = record.get("id")
        if not member_id or not isinstance(member_id, str):
            raise MemberValidationError(f"Backup member without an id: {record.get('name')!r}")

        allowed = set(MEMBER_FIELDS.values())
        values = cls._clean_fields(
            {key: value for key, value in record.items() if MEMBER_FIELDS.get(key, key) in allowed}
        )
        if not values.get("name"):
            raise MemberValidationError(f"Backup member {member_id} has no name")
        values.setdefault("gender", Gender.MALE.value)
        values.setdefault("generation", 1)
        links = {"parent_id": values.pop("parent_id", None), "spouse_id": values.pop("spouse_id", None)}
        values["id"] = member_id

        for key, column in (("createdAt", "created_at"), ("updatedAt", "updated_at")):
            stamp = record.get(key)
            if not stamp:
                continue
            try:
                values[column] = datetime.fromisoformat(stamp)
            except (TypeError, ValueError):
                raise MemberValidationError(f"Backup member {member_id} has an invalid {key}: {stamp!r}")
        return values, links

    def _check_parent(self, member: Member, parent_id: str) -> Member:
        if member.id is not None and parent_id == member.id:
            raise MemberValidationError("A member cannot be their own parent")
        parent = self.get_member(parent_id)
        if parent is None:
            raise MemberValidationError(f"Parent not found: {parent_id}")
        if parent.generation >= (member.generation or 1):
            raise MemberValidationError(
                f"Parent must be from an earlier generation than {member.generation} "
                f"({parent.name} is generation {parent.generation})"
            )
        if member.id is not None:
            members_by_id = {m.id: m for m in self.db.query(Member).all()}
            if detect_circular_ancestry(members_by_id, member.id, parent_id):
                raise MemberValidationError(f"{parent.name} is a descendant of {member.name}")
        return parent

    def _check_children(self, member: Member) -> None:
        """Children must stay in a later generation than their parent."""
        child = (
            self.db.query(Member)
            .filter(Member.parent_id == member.id, Member.generation <= member.generation)
            .order_by(Member.generation.asc(), Member.name.asc())
            .first()
        )
        if child is not None:
            raise MemberValidationError(
                f"Generation {member.generation} is not earlier than child {child.name} "
                f"(generation {child.generation})"
            )

    def _check_spouse(self, member: Member, spouse_id: str) -> Member:
        if member.id is not None and spouse_id == member.id:
            raise MemberValidationError("A member cannot be their own spouse")
        spouse = self.get_member(spouse_id)
        if spouse is None:
            raise MemberValidationError(f"Spouse not found: {spouse_id}")
        return spouse

    def _pair(self, member: Member, spouse: Member) -> None:
        """Point two members at each other; previous partners are released. No commit."""
        for person in (member, spouse):
            if person.spouse_id and person.spouse_id not in (member.id, spouse.id):
                previous = self.get_member(person.spouse_id)
                if previous is not None and previous.spouse_id == person.id:
                    previous.spouse_id = None
        member.spouse_id = spouse.id
        spouse.spouse_id = member.id

    def _unpair(self, member: Member) -> None:
        if member.spouse_id:
            partner = self.get_member(member.spouse_id)
            if partner is not None and partner.spouse_id == member.id:
                partner.spouse_id = None
        member.spouse_id = None
