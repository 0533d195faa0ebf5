# stores.py — Identity, definition and entry storage for tasks and requirements
# All functions take the caller's AsyncSession and never commit; the caller
# owns the transaction boundary.

import logging
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from access import AccessScope
from database import dialect_name
from exceptions import DuplicateError, NotFoundError, ValidationError
from models import (
    RequirementEntry, RequirementSkeleton, RequirementSnapshot,
    TaskEntry, TaskSkeleton, TaskSnapshot, TaskStatus,
)
from tree import RevisionTree

logger = logging.getLogger("taskfuss.stores")

_UPSERT_DIALECTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _upsert_insert(db: AsyncSession):
    name = dialect_name(db)
    try:
        return _UPSERT_DIALECTS[name]
    except KeyError:
        raise RuntimeError(f"upsert is not supported on the {name} dialect") from None


async def _flush_or_duplicate(db: AsyncSession, what: str) -> None:
    try:
        await db.flush()
    except IntegrityError as e:
        logger.error(f"Duplicate {what}: {e.orig}")
        raise DuplicateError(f"duplicate {what}") from e


# ============================================================
# IDENTITY
# ============================================================

async def get_task_skeleton(db: AsyncSession, task_id: int, for_update: bool = False) -> TaskSkeleton:
    stmt = select(TaskSkeleton).where(TaskSkeleton.id == task_id)
    if for_update:
        stmt = stmt.with_for_update()
    task = (await db.execute(stmt)).scalar_one_or_none()
    if task is None:
        raise NotFoundError(f"task {task_id} not found", task_id=task_id)
    return task


async def get_visible_task(db: AsyncSession, scope: AccessScope, task_id: int) -> TaskSkeleton:
    """Fetch a task through the caller's read filter; hidden tasks look missing."""
    stmt = scope.restrict(select(TaskSkeleton).where(TaskSkeleton.id == task_id), TaskSkeleton.owner_id)
    task = (await db.execute(stmt)).scalar_one_or_none()
    if task is None:
        raise NotFoundError(f"task {task_id} not found", task_id=task_id)
    return task


async def list_task_skeletons(
    db: AsyncSession, scope: AccessScope, show_active: bool = True, show_archived: bool = False,
) -> List[TaskSkeleton]:
    statuses = []
    if show_active:
        statuses.append(TaskStatus.ACTIVE)
    if show_archived:
        statuses.append(TaskStatus.ARCHIVED)
    if not statuses:
        return []
    stmt = select(TaskSkeleton).where(TaskSkeleton.status.in_(statuses)).order_by(TaskSkeleton.id)
    stmt = scope.restrict(stmt, TaskSkeleton.owner_id)
    return list((await db.execute(stmt)).scalars().all())


async def create_task_skeleton(db: AsyncSession, owner_id: int) -> TaskSkeleton:
    task = TaskSkeleton(owner_id=owner_id, status=TaskStatus.ACTIVE)
    db.add(task)
    await db.flush()
    return task


async def get_requirement_skeleton(db: AsyncSession, requirement_id: int) -> RequirementSkeleton:
    stmt = select(RequirementSkeleton).where(RequirementSkeleton.id == requirement_id)
    skeleton = (await db.execute(stmt)).scalar_one_or_none()
    if skeleton is None:
        raise NotFoundError(f"requirement {requirement_id} not found", requirement_id=requirement_id)
    return skeleton


async def create_requirement_skeleton(db: AsyncSession, task_id: int) -> RequirementSkeleton:
    skeleton = RequirementSkeleton(task_id=task_id)
    db.add(skeleton)
    await db.flush()
    return skeleton


async def requirement_ids_for_task(db: AsyncSession, task_id: int) -> set:
    stmt = select(RequirementSkeleton.id).where(RequirementSkeleton.task_id == task_id)
    return set((await db.execute(stmt)).scalars().all())


def set_task_status(task: TaskSkeleton, status: TaskStatus) -> bool:
    """Move a task between active and archived. Returns False when already there."""
    try:
        status = TaskStatus(status)
    except ValueError:
        raise ValidationError(f"unknown task status: {status}", status=str(status)) from None
    if task.status == status:
        return False
    task.status = status
    return True


async def delete_task(db: AsyncSession, task_id: int) -> None:
    await db.execute(delete(TaskSkeleton).where(TaskSkeleton.id == task_id))


# ============================================================
# DEFINITIONS
# ============================================================

async def add_task_snapshot(db: AsyncSession, snapshot: TaskSnapshot) -> TaskSnapshot:
    db.add(snapshot)
    await _flush_or_duplicate(db, f"task snapshot {snapshot.revision_uuid}")
    return snapshot


async def add_requirement_snapshots(
    db: AsyncSession, snapshots: Sequence[RequirementSnapshot],
) -> Sequence[RequirementSnapshot]:
    db.add_all(snapshots)
    await _flush_or_duplicate(db, "requirement snapshot")
    return snapshots


async def get_task_snapshot(db: AsyncSession, revision_uuid: str, task_id: int) -> TaskSnapshot:
    stmt = select(TaskSnapshot).where(
        TaskSnapshot.revision_uuid == revision_uuid,
        TaskSnapshot.skeleton_id == task_id,
    )
    snapshot = (await db.execute(stmt)).scalar_one_or_none()
    if snapshot is None:
        raise NotFoundError(
            f"revision {revision_uuid} of task {task_id} not found",
            task_id=task_id, revision_uuid=revision_uuid,
        )
    return snapshot


async def list_task_snapshots(db: AsyncSession, task_id: int) -> List[TaskSnapshot]:
    stmt = (
        select(TaskSnapshot)
        .where(TaskSnapshot.skeleton_id == task_id)
        .order_by(TaskSnapshot.effective_from.desc(), TaskSnapshot.created_at.desc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def get_requirement_snapshot(db: AsyncSession, revision_uuid: str, skeleton_id: int) -> RequirementSnapshot:
    stmt = select(RequirementSnapshot).where(
        RequirementSnapshot.revision_uuid == revision_uuid,
        RequirementSnapshot.skeleton_id == skeleton_id,
    )
    snapshot = (await db.execute(stmt)).scalar_one_or_none()
    if snapshot is None:
        raise NotFoundError(
            f"requirement {skeleton_id} has no definition in revision {revision_uuid}",
            requirement_id=skeleton_id, revision_uuid=revision_uuid,
        )
    return snapshot


async def get_children(db: AsyncSession, revision_uuid: str, parent_id: int) -> List[RequirementSnapshot]:
    stmt = (
        select(RequirementSnapshot)
        .where(RequirementSnapshot.revision_uuid == revision_uuid, RequirementSnapshot.parent_id == parent_id)
        .order_by(RequirementSnapshot.sort_order, RequirementSnapshot.skeleton_id)
    )
    return list((await db.execute(stmt)).scalars().all())


async def get_revision_tree(db: AsyncSession, revision_uuid: str) -> RevisionTree:
    stmt = select(RequirementSnapshot).where(RequirementSnapshot.revision_uuid == revision_uuid)
    snapshots = (await db.execute(stmt)).scalars().all()
    if not snapshots:
        raise NotFoundError(f"revision {revision_uuid} has no requirements", revision_uuid=revision_uuid)
    return RevisionTree(revision_uuid, snapshots)


# ============================================================
# ENTRIES
# ============================================================

async def upsert_requirement_entry(
    db: AsyncSession,
    requirement_id: int,
    entry_date: date,
    revision_uuid: str,
    value: str,
) -> RequirementEntry:
    """Insert or overwrite the entry for (requirement_id, entry_date) and return the stored row."""
    insert = _upsert_insert(db)
    stmt = insert(RequirementEntry.__table__).values(
        requirement_id=requirement_id,
        entry_date=entry_date,
        revision_uuid=revision_uuid,
        value=value,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["requirement_id", "entry_date"],
        set_={"revision_uuid": stmt.excluded.revision_uuid, "value": stmt.excluded.value},
    )
    await db.execute(stmt)

    fetch = (
        select(RequirementEntry)
        .where(
            RequirementEntry.requirement_id == requirement_id,
            RequirementEntry.entry_date == entry_date,
        )
        .execution_options(populate_existing=True)
    )
    return (await db.execute(fetch)).scalar_one()


async def upsert_task_entry(db: AsyncSession, task_id: int, entry_date: date, completed: bool) -> TaskEntry:
    insert = _upsert_insert(db)
    stmt = insert(TaskEntry.__table__).values(task_id=task_id, entry_date=entry_date, completed=completed)
    stmt = stmt.on_conflict_do_update(
        index_elements=["task_id", "entry_date"],
        set_={"completed": stmt.excluded.completed},
    )
    await db.execute(stmt)

    fetch = (
        select(TaskEntry)
        .where(TaskEntry.task_id == task_id, TaskEntry.entry_date == entry_date)
        .execution_options(populate_existing=True)
    )
    return (await db.execute(fetch)).scalar_one()


async def get_entries_for_date(
    db: AsyncSession,
    requirement_ids: Iterable[int],
    revision_uuid: str,
    entry_date: date,
) -> Dict[int, RequirementEntry]:
    ids = list(requirement_ids)
    if not ids:
        return {}
    stmt = (
        select(RequirementEntry)
        .where(
            RequirementEntry.requirement_id.in_(ids),
            RequirementEntry.revision_uuid == revision_uuid,
            RequirementEntry.entry_date == entry_date,
        )
        .execution_options(populate_existing=True)
    )
    return {e.requirement_id: e for e in (await db.execute(stmt)).scalars().all()}


async def get_requirement_entry(db: AsyncSession, scope: AccessScope, entry_id: int) -> RequirementEntry:
    stmt = (
        select(RequirementEntry)
        .join(RequirementSkeleton, RequirementSkeleton.id == RequirementEntry.requirement_id)
        .join(TaskSkeleton, TaskSkeleton.id == RequirementSkeleton.task_id)
        .where(RequirementEntry.id == entry_id)
    )
    stmt = scope.restrict(stmt, TaskSkeleton.owner_id)
    entry = (await db.execute(stmt)).scalar_one_or_none()
    if entry is None:
        raise NotFoundError(f"entry {entry_id} not found", entry_id=entry_id)
    return entry


async def list_requirement_entries(
    db: AsyncSession,
    scope: AccessScope,
    start_date: date,
    end_date: date,
    show_archived: bool = False,
    task_id: Optional[int] = None,
) -> List[RequirementEntry]:
    stmt = (
        select(RequirementEntry)
        .join(RequirementSkeleton, RequirementSkeleton.id == RequirementEntry.requirement_id)
        .join(TaskSkeleton, TaskSkeleton.id == RequirementSkeleton.task_id)
        .where(RequirementEntry.entry_date >= start_date, RequirementEntry.entry_date <= end_date)
        .order_by(RequirementEntry.entry_date, RequirementEntry.requirement_id)
    )
    if not show_archived:
        stmt = stmt.where(TaskSkeleton.status == TaskStatus.ACTIVE)
    if task_id is not None:
        stmt = stmt.where(TaskSkeleton.id == task_id)
    stmt = scope.restrict(stmt, TaskSkeleton.owner_id)
    return list((await db.execute(stmt)).scalars().all())


async def list_task_entries(db: AsyncSession, task_id: int, start_date: date, end_date: date) -> List[TaskEntry]:
    stmt = (
        select(TaskEntry)
        .where(
            TaskEntry.task_id == task_id,
            TaskEntry.entry_date >= start_date,
            TaskEntry.entry_date <= end_date,
        )
        .order_by(TaskEntry.entry_date)
    )
    return list((await db.execute(stmt)).scalars().all())
