"""ORM model for family members."""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text

from database import Base


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class Gender(str, Enum):
    """Gender codes as stored (L = laki-laki, P = perempuan)."""
    MALE = "L"
    FEMALE = "P"


class Member(Base):
    """
    A person in the family.

    parent_id is the lineage (blood) parent. spouse_id is kept symmetric by
    MemberStore: both halves of a couple point at each other.
    """
    __tablename__ = "family_members"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=False, index=True)
    gender = Column(String(1), nullable=False, default=Gender.MALE.value)
    generation = Column(Integer, nullable=False, default=1, index=True)

    parent_id = Column(String, ForeignKey("family_members.id", ondelete="SET NULL"), nullable=True, index=True)
    spouse_id = Column(String, ForeignKey("family_members.id", ondelete="SET NULL"), nullable=True)

    birth_date = Column(String, nullable=True)
    birth_place = Column(String, nullable=True)
    photo = Column(String, nullable=True)
    job = Column(String, nullable=True)
    address = Column(Text, nullable=True)
    phone = Column(String, nullable=True)
    education = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    def __repr__(self) -> str:
        return f"<Member {self.id} {self.name!r} gen={self.generation}>"


# Fields a caller may set through create/update, keyed by their API (camelCase) name.
MEMBER_FIELDS = {
    "name": "name",
    "gender": "gender",
    "generation": "generation",
    "parentId": "parent_id",
    "spouseId": "spouse_id",
    "birthDate": "birth_date",
    "birthPlace": "birth_place",
    "photo": "photo",
    "job": "job",
    "address": "address",
    "phone": "phone",
    "education": "education",
    "notes": "notes",
    "isActive": "is_active",
}


def get_member_data(member: Member) -> dict:
    """Serialize a member to the camelCase dict used by the API and tree builder."""
    return {
        "id": member.id,
        "name": member.name,
        "gender": member.gender,
        "generation": member.generation,
        "parentId": member.parent_id,
        "spouseId": member.spouse_id,
        "birthDate": member.birth_date,
        "birthPlace": member.birth_place,
        "photo": member.photo,
        "job": member.job,
        "address": member.address,
        "phone": member.phone,
        "education": member.education,
        "notes": member.notes,
        "isActive": member.is_active,
        "createdAt": member.created_at.isoformat() if member.created_at else None,
        "updatedAt": member.updated_at.isoformat() if member.updated_at else None,
    }
