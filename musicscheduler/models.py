"""SQLAlchemy models for the music scheduler."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

EVENT_STATUSES = ("confirmed", "tentative", "cancelled", "pending", "error")
RECURRENCE_PATTERNS = ("weekly", "biweekly", "monthly", "quarterly", "custom")
ASSIGNMENT_STATUSES = ("PENDING", "ACCEPTED", "DECLINED")
USER_ROLES = (
    "DIRECTOR",
    "ASSOCIATE_DIRECTOR",
    "MUSICIAN",
    "PASTOR",
    "ASSOCIATE_PASTOR",
)
MANAGER_ROLES = frozenset({"DIRECTOR", "ASSOCIATE_DIRECTOR", "PASTOR"})
INVITATION_STATUSES = ("PENDING", "ACCEPTED", "EXPIRED")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


class Church(Base):
    __tablename__ = "churches"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(255), nullable=False)
    timezone_offset_minutes = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    users = relationship("User", back_populates="church")
    groups = relationship("Group", back_populates="church")
    event_types = relationship("EventType", back_populates="church")


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", "church_id", name="uq_users_email_church"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    church_id = Column(String(36), ForeignKey("churches.id"), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=False)
    password_hash = Column(String(255), nullable=True)
    role = Column(String(32), nullable=False, default="MUSICIAN")
    is_verified = Column(Boolean, default=False, nullable=False)
    phone = Column(String(32), nullable=True)
    pin = Column(String(8), nullable=True)
    invited_via = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    church = relationship("Church", back_populates="users")
    memberships = relationship(
        "GroupMember", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def can_manage(self) -> bool:
        return self.role in MANAGER_ROLES


class EventType(Base):
    __tablename__ = "event_types"
    __table_args__ = (UniqueConstraint("church_id", "name", name="uq_event_types_name"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    church_id = Column(String(36), ForeignKey("churches.id"), nullable=False)
    name = Column(String(120), nullable=False)
    color = Column(String(16), nullable=False, default="#3B82F6")

    church = relationship("Church", back_populates="event_types")


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    church_id = Column(String(36), ForeignKey("churches.id"), nullable=False)
    event_type_id = Column(String(36), ForeignKey("event_types.id"), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(255), nullable=True)
    start_time = Column(DateTime, nullable=False, index=True)
    end_time = Column(DateTime, nullable=True)
    status = Column(String(16), nullable=False, default="confirmed")
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurrence_pattern = Column(String(16), nullable=True)
    recurrence_interval_days = Column(Integer, nullable=True)
    recurrence_end = Column(Date, nullable=True)
    # Start of the latest occurrence ever materialized for a seed.
    recurrence_generated_through = Column(DateTime, nullable=True)
    parent_event_id = Column(
        String(36),
        ForeignKey("events.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = Column(DateTime, default=_now, nullable=False)
    last_modified = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    church = relationship("Church")
    event_type = relationship("EventType")
    assignments = relationship(
        "Assignment",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="Assignment.position",
    )

    @property
    def is_seed(self) -> bool:
        return bool(self.is_recurring) and self.parent_event_id is None

    @property
    def series_root_id(self) -> str | None:
        """Return the seed id for series members, ``None`` for one-off events."""
        if self.parent_event_id:
            return self.parent_event_id
        if self.is_recurring:
            return self.id
        return None

    @property
    def duration(self):
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (
        CheckConstraint(
            "user_id IS NULL OR group_id IS NULL", name="ck_assignments_user_or_group"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_name = Column(String(120), nullable=False)
    status = Column(String(16), nullable=False, default="PENDING")
    max_musicians = Column(Integer, nullable=False, default=1)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    group_id = Column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=True, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    assigned_at = Column(DateTime, nullable=True)
    responded_at = Column(DateTime, nullable=True)

    event = relationship("Event", back_populates="assignments")
    user = relationship("User")
    group = relationship("Group", back_populates="assignments")
    holders = relationship(
        "GroupAssignmentHolder",
        back_populates="assignment",
        cascade="all, delete-orphan",
    )

    @property
    def is_open(self) -> bool:
        return self.user_id is None and self.group_id is None

    @property
    def is_group_slot(self) -> bool:
        return self.group_id is not None


class Group(Base):
    __tablename__ = "groups"
    __table_args__ = (UniqueConstraint("church_id", "name", name="uq_groups_name"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    church_id = Column(String(36), ForeignKey("churches.id"), nullable=False)
    name = Column(String(120), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    church = relationship("Church", back_populates="groups")
    members = relationship(
        "GroupMember", back_populates="group", cascade="all, delete-orphan"
    )
    assignments = relationship(
        "Assignment",
        back_populates="group",
        cascade="all, delete-orphan",
    )

    @property
    def member_ids(self) -> set[str]:
        return {member.user_id for member in self.members}


class GroupMember(Base):
    __tablename__ = "group_members"
    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_group_members"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    group_id = Column(
        String(36), ForeignKey("groups.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    joined_at = Column(DateTime, default=_now, nullable=False)

    group = relationship("Group", back_populates="members")
    user = relationship("User", back_populates="memberships")


class GroupAssignmentHolder(Base):
    __tablename__ = "group_assignment_holders"
    __table_args__ = (
        UniqueConstraint("assignment_id", "user_id", name="uq_group_assignment_holders"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    assignment_id = Column(
        String(36), ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    assignment = relationship("Assignment", back_populates="holders")
    user = relationship("User")


class Invitation(Base):
    __tablename__ = "invitations"
    __table_args__ = (
        # Storage-level arbiter for concurrent invites of the same address.
        Index(
            "uq_invitations_pending_email_church",
            "email",
            "church_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    church_id = Column(String(36), ForeignKey("churches.id"), nullable=False)
    invited_by_id = Column(String(36), ForeignKey("users.id"), nullable=True)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    email = Column(String(255), nullable=False)
    first_name = Column(String(120), nullable=False)
    last_name = Column(String(120), nullable=False)
    phone = Column(String(32), nullable=True)
    token = Column(String(128), nullable=False, unique=True)
    status = Column(String(16), nullable=False, default="PENDING")
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    accepted_at = Column(DateTime, nullable=True)

    church = relationship("Church")
    invited_by = relationship("User", foreign_keys=[invited_by_id])
    user = relationship("User", foreign_keys=[user_id])

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.status == "EXPIRED":
            return True
        if self.status != "PENDING":
            return False
        return self.expires_at <= (now or utcnow())

    def effective_status(self, now: datetime | None = None) -> str:
        """Expiry is checked on read; a lapsed PENDING row reads as EXPIRED."""
        if self.status == "PENDING" and self.is_expired(now):
            return "EXPIRED"
        return self.status


class Activity(Base):
    __tablename__ = "activities"

    id = Column(String(36), primary_key=True, default=_uuid)
    church_id = Column(String(36), ForeignKey("churches.id"), nullable=False)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    activity_type = Column(String(48), nullable=False)
    description = Column(Text, nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False, index=True)
