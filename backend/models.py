# models.py — Database models for Task Fuss
# - Skeletons: stable identities for tasks and requirements
# - Snapshots: append-only versioned definitions keyed by (revision_uuid, skeleton_id)
# - Entries: per-day recorded values, pinned to the revision that judged them
# - 3-tier role system (admin, user, guest)

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Column, String, DateTime, Date, Boolean, Integer, Text,
    Enum as SQLEnum, ForeignKey, Index, UniqueConstraint, CheckConstraint, text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def today():
    return utcnow().date()


def new_uuid():
    return str(uuid.uuid4())


# ============================================================
# ENUMS
# ============================================================

class UserRole(str, PyEnum):
    ADMIN = "admin"
    USER = "user"
    GUEST = "guest"


class TaskStatus(str, PyEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"


class RequirementType(str, PyEnum):
    ATOM = "atom"
    CONDITION = "condition"


REQUIREMENT_TYPES = tuple(t.value for t in RequirementType)
STORED_DATA_TYPES = ("bool", "int", "float", "duration", "string", "none")
STORED_OPERATORS = ("==", ">=", ">", "<", "<=", "AND", "OR", "NAND", "NOR")


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


# ============================================================
# USERS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, unique=True, nullable=False, index=True)
    display_name = Column(String, nullable=True)
    password_hash = Column(String, nullable=False)
    role = Column(SQLEnum(UserRole), default=UserRole.USER, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    last_login_at = Column(DateTime(timezone=True), nullable=True)


# ============================================================
# TASKS
# ============================================================

class TaskSkeleton(Base):
    __tablename__ = "task_skeletons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(SQLEnum(TaskStatus), default=TaskStatus.ACTIVE, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class TaskSnapshot(Base):
    __tablename__ = "task_snapshots"
    __table_args__ = (
        # At most one current revision per task
        Index(
            "uq_task_snapshot_current", "skeleton_id",
            unique=True,
            postgresql_where=text("is_current"),
            sqlite_where=text("is_current"),
        ),
        Index("idx_task_snapshot_window", "skeleton_id", "effective_from"),
    )

    revision_uuid = Column(String(36), primary_key=True, default=new_uuid)
    skeleton_id = Column(Integer, ForeignKey("task_skeletons.id", ondelete="CASCADE"), primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    effective_from = Column(Date, default=today, nullable=False)
    is_current = Column(Boolean, default=False, nullable=False)


class TaskEntry(Base):
    __tablename__ = "task_entries"
    __table_args__ = (
        UniqueConstraint("task_id", "entry_date", name="uq_task_entry_day"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("task_skeletons.id", ondelete="CASCADE"), nullable=False)
    entry_date = Column(Date, nullable=False)
    completed = Column(Boolean, default=False, nullable=False)


# ============================================================
# REQUIREMENTS
# ============================================================

class RequirementSkeleton(Base):
    __tablename__ = "requirement_skeletons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(Integer, ForeignKey("task_skeletons.id", ondelete="CASCADE"), nullable=False, index=True)


class RequirementSnapshot(Base):
    __tablename__ = "requirement_snapshots"
    __table_args__ = (
        CheckConstraint(_in_list("type", REQUIREMENT_TYPES), name="ck_requirement_type"),
        CheckConstraint(
            "data_type IS NULL OR " + _in_list("data_type", STORED_DATA_TYPES),
            name="ck_requirement_data_type",
        ),
        CheckConstraint(
            "operator IS NULL OR " + _in_list("operator", STORED_OPERATORS),
            name="ck_requirement_operator",
        ),
        Index("idx_requirement_snapshot_parent", "revision_uuid", "parent_id"),
    )

    revision_uuid = Column(String(36), primary_key=True)
    skeleton_id = Column(Integer, ForeignKey("requirement_skeletons.id", ondelete="CASCADE"), primary_key=True)
    parent_id = Column(Integer, ForeignKey("requirement_skeletons.id", ondelete="CASCADE"), nullable=True)
    title = Column(String, nullable=False)
    type = Column(String(16), nullable=False)
    data_type = Column(String(16), nullable=True)
    operator = Column(String(8), nullable=True)
    target_value = Column(Text, nullable=True)
    sort_order = Column(Integer, default=0, nullable=False)


class RequirementEntry(Base):
    __tablename__ = "requirement_entries"
    __table_args__ = (
        UniqueConstraint("requirement_id", "entry_date", name="uq_requirement_entry_day"),
        Index("idx_requirement_entry_revision", "revision_uuid", "entry_date"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    requirement_id = Column(Integer, ForeignKey("requirement_skeletons.id", ondelete="CASCADE"), nullable=False)
    revision_uuid = Column(String(36), nullable=False)
    entry_date = Column(Date, nullable=False)
    value = Column(Text, nullable=False)
