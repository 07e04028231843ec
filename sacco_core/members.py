"""
Member Directory Module

Mirrors the cooperative's member roster: name, committee role and savings
category. Identity and authentication live outside this package; the
directory only keeps what the ledger needs to compute targets and to split
year-end interest between committee and regular members.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import logging
import uuid

from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .errors import DuplicateError, NotFoundError, ValidationError


logger = logging.getLogger(__name__)


class MemberRole(Enum):
    """Role within the cooperative; every role except MEMBER sits on the committee"""
    MEMBER = "member"
    CHAIRPERSON = "chairperson"
    SECRETARY = "secretary"
    TREASURER = "treasurer"
    DISBURSER = "disburser"


class SavingsCategory(Enum):
    """Savings category that fixes a member's monthly target"""
    A = "A"
    B = "B"
    C = "C"
    NONE = "NONE"


@dataclass
class Member(StorageRecord):
    """Cooperative member"""
    name: str
    role: MemberRole = MemberRole.MEMBER
    category: SavingsCategory = SavingsCategory.NONE
    email: Optional[str] = None
    is_active: bool = True

    @property
    def is_committee(self) -> bool:
        return self.role != MemberRole.MEMBER


class MemberDirectory:
    """
    Registers members and answers roster questions for the other managers
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "members"

    def register_member(
        self,
        name: str,
        role: MemberRole = MemberRole.MEMBER,
        category: SavingsCategory = SavingsCategory.NONE,
        email: Optional[str] = None,
        member_id: Optional[str] = None
    ) -> Member:
        """
        Add a member to the directory

        Args:
            name: Display name
            role: Committee role, MEMBER for regular members
            category: Savings category (NONE until assigned)
            email: Optional contact address
            member_id: Identifier supplied by the identity layer; generated when omitted

        Returns:
            Created Member

        Raises:
            DuplicateError: a member with this id is already registered
        """
        if not name or not name.strip():
            raise ValidationError("Member name is required")

        now = datetime.now(timezone.utc)
        member = Member(
            id=member_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            role=role,
            category=category,
            email=email
        )

        with self.storage.atomic():
            if self.storage.exists(self.table_name, member.id):
                raise DuplicateError(f"Member {member.id} is already registered", code="DUPLICATE_MEMBER",
                                     member_id=member.id)
            self.storage.save(self.table_name, member.id, member.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.MEMBER_REGISTERED,
                entity_type="member",
                entity_id=member.id,
                metadata={"name": member.name, "role": role.value, "category": category.value}
            )

        logger.info(f"Registered member {member.id} ({role.value}, category {category.value})")
        return member

    def find_member(self, member_id: str) -> Optional[Member]:
        data = self.storage.load(self.table_name, member_id)
        return Member.from_dict(data) if data else None

    def get_member(self, member_id: str) -> Member:
        """Get member by ID, raising NotFoundError when missing"""
        member = self.find_member(member_id)
        if member is None:
            raise NotFoundError("member", member_id)
        return member

    def _update(self, member: Member, changes: dict) -> Member:
        member.updated_at = datetime.now(timezone.utc)
        with self.storage.atomic():
            self.storage.save(self.table_name, member.id, member.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.MEMBER_UPDATED,
                entity_type="member",
                entity_id=member.id,
                metadata=changes
            )
        return member

    def assign_category(self, member_id: str, category: SavingsCategory) -> Member:
        """Change a member's savings category; existing targets are not touched"""
        member = self.get_member(member_id)
        old = member.category
        member.category = category
        return self._update(member, {"old_category": old.value, "new_category": category.value})

    def set_role(self, member_id: str, role: MemberRole) -> Member:
        member = self.get_member(member_id)
        old = member.role
        member.role = role
        return self._update(member, {"old_role": old.value, "new_role": role.value})

    def deactivate(self, member_id: str) -> Member:
        """Exclude a member from future year-end distributions"""
        member = self.get_member(member_id)
        member.is_active = False
        return self._update(member, {"is_active": False})

    def list_members(self, active_only: bool = False) -> List[Member]:
        members = [Member.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if active_only:
            members = [m for m in members if m.is_active]
        members.sort(key=lambda m: (m.name, m.id))
        return members

    def committee_members(self) -> List[Member]:
        """Active members holding a committee role"""
        return [m for m in self.list_members(active_only=True) if m.is_committee]

    def regular_members(self) -> List[Member]:
        """Active members without a committee role"""
        return [m for m in self.list_members(active_only=True) if not m.is_committee]
