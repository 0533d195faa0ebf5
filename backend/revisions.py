# revisions.py — Revision resolution and the task definition lifecycle
# A revision is one task snapshot plus the requirement snapshots written with
# it under the same revision_uuid. Snapshots are append-only: changing a task
# writes a new revision and moves the is_current marker, it never edits rows.

import logging
from datetime import date
from typing import List, Literal, Optional, Set, Tuple

from pydantic import BaseModel, Field
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

import stores
from access import AccessScope
from coercion import DATA_TYPES, validate
from database import transaction
from evaluator import ATOM_OPERATORS, BOOLEAN_OPERATORS, ORDERING_OPERATORS
from exceptions import NotFoundError, ValidationError
from logging_system import log_audit
from models import RequirementSnapshot, TaskSkeleton, TaskSnapshot, TaskStatus, new_uuid, today
from tree import MAX_TREE_DEPTH, RevisionTree

logger = logging.getLogger("taskfuss.revisions")


# ============================================================
# DEFINITION SCHEMAS
# ============================================================

class RequirementDefinition(BaseModel):
    id: Optional[int] = None  # reuse an existing requirement of the same task
    title: str = Field(..., min_length=1, max_length=300)
    type: Literal["atom", "condition"]
    data_type: Optional[str] = None
    operator: Optional[str] = None
    target_value: Optional[str] = None
    sort_order: int = 0
    operands: List["RequirementDefinition"] = Field(default_factory=list)


class TaskDefinition(BaseModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    effective_from: Optional[date] = None
    requirement: RequirementDefinition


def _check_atom(node: RequirementDefinition) -> None:
    if node.operands:
        raise ValidationError(f"atom '{node.title}' cannot have operands")
    if node.data_type not in DATA_TYPES:
        raise ValidationError(
            f"atom '{node.title}' needs a data_type of {', '.join(DATA_TYPES)}",
            data_type=node.data_type,
        )
    if node.operator not in ATOM_OPERATORS:
        raise ValidationError(
            f"atom '{node.title}' needs an operator of {', '.join(ATOM_OPERATORS)}",
            operator=node.operator,
        )
    if node.operator in ORDERING_OPERATORS and node.data_type not in ("int", "duration"):
        raise ValidationError(
            f"operator {node.operator} only compares int or duration values, not {node.data_type}",
            operator=node.operator, data_type=node.data_type,
        )
    if node.target_value is None:
        raise ValidationError(f"atom '{node.title}' needs a target_value")
    validate(node.target_value, node.data_type)


def _check_condition(node: RequirementDefinition) -> None:
    if (node.operator or "").upper() not in BOOLEAN_OPERATORS:
        raise ValidationError(
            f"condition '{node.title}' needs an operator of {', '.join(BOOLEAN_OPERATORS)}",
            operator=node.operator,
        )
    if not node.operands:
        raise ValidationError(f"condition '{node.title}' needs at least one operand")
    if node.target_value is not None:
        raise ValidationError(f"condition '{node.title}' cannot have a target_value")
    if node.data_type not in (None, "none"):
        raise ValidationError(f"condition '{node.title}' cannot have a data_type")


def validate_definition(root: RequirementDefinition) -> Set[int]:
    """Check a requirement tree before anything is written.

    Returns the existing requirement ids the tree reuses.
    """
    reused: Set[int] = set()
    stack = [(root, 1)]
    while stack:
        node, depth = stack.pop()
        if depth > MAX_TREE_DEPTH:
            raise ValidationError(f"requirement tree is deeper than {MAX_TREE_DEPTH} levels")
        if node.id is not None:
            if node.id in reused:
                raise ValidationError(f"requirement {node.id} appears more than once", requirement_id=node.id)
            reused.add(node.id)
        if node.type == "atom":
            _check_atom(node)
        else:
            _check_condition(node)
            stack.extend((child, depth + 1) for child in node.operands)
    return reused


# ============================================================
# RESOLUTION
# ============================================================

async def resolve_snapshot(db: AsyncSession, task_id: int, on_date: date) -> TaskSnapshot:
    """Return the task snapshot whose validity window covers ``on_date``.

    A window opens at the snapshot's effective_from and lasts until the next
    one opens. Dates before the first window fall back to the earliest
    revision.
    """
    covering = (
        select(TaskSnapshot)
        .where(TaskSnapshot.skeleton_id == task_id, TaskSnapshot.effective_from <= on_date)
        .order_by(TaskSnapshot.effective_from.desc(), TaskSnapshot.created_at.desc())
        .limit(1)
    )
    snapshot = (await db.execute(covering)).scalar_one_or_none()
    if snapshot is not None:
        return snapshot

    earliest = (
        select(TaskSnapshot)
        .where(TaskSnapshot.skeleton_id == task_id)
        .order_by(TaskSnapshot.effective_from.asc(), TaskSnapshot.created_at.asc())
        .limit(1)
    )
    snapshot = (await db.execute(earliest)).scalar_one_or_none()
    if snapshot is None:
        raise NotFoundError(f"task {task_id} has no revisions", task_id=task_id)
    return snapshot


async def get_current_snapshot(db: AsyncSession, task_id: int) -> TaskSnapshot:
    stmt = select(TaskSnapshot).where(TaskSnapshot.skeleton_id == task_id, TaskSnapshot.is_current.is_(True))
    snapshot = (await db.execute(stmt)).scalar_one_or_none()
    if snapshot is None:
        raise NotFoundError(f"task {task_id} has no current revision", task_id=task_id)
    return snapshot


async def set_current_revision(db: AsyncSession, task_id: int, revision_uuid: str) -> TaskSnapshot:
    """Clear the old current flag and set it on ``revision_uuid``, in the caller's transaction.

    The task row is locked first so concurrent calls for one task serialize.
    """
    await stores.get_task_skeleton(db, task_id, for_update=True)
    target = await stores.get_task_snapshot(db, revision_uuid, task_id)

    await db.execute(
        update(TaskSnapshot)
        .where(TaskSnapshot.skeleton_id == task_id, TaskSnapshot.is_current.is_(True))
        .values(is_current=False)
    )
    await db.execute(
        update(TaskSnapshot)
        .where(TaskSnapshot.skeleton_id == task_id, TaskSnapshot.revision_uuid == revision_uuid)
        .values(is_current=True)
    )
    await db.refresh(target)
    return target


# ============================================================
# LIFECYCLE
# ============================================================

async def _write_revision(
    db: AsyncSession,
    task: TaskSkeleton,
    definition: TaskDefinition,
    known_ids: Set[int],
) -> Tuple[TaskSnapshot, RevisionTree]:
    revision_uuid = new_uuid()
    task_snapshot = await stores.add_task_snapshot(db, TaskSnapshot(
        revision_uuid=revision_uuid,
        skeleton_id=task.id,
        title=definition.title,
        description=definition.description,
        effective_from=definition.effective_from or today(),
        is_current=False,
    ))

    snapshots = []
    stack = [(definition.requirement, None)]
    while stack:
        node, parent_id = stack.pop()
        if node.id is None:
            skeleton_id = (await stores.create_requirement_skeleton(db, task.id)).id
        elif node.id in known_ids:
            skeleton_id = node.id
        else:
            raise ValidationError(
                f"requirement {node.id} does not belong to task {task.id}",
                requirement_id=node.id, task_id=task.id,
            )
        is_condition = node.type == "condition"
        snapshots.append(RequirementSnapshot(
            revision_uuid=revision_uuid,
            skeleton_id=skeleton_id,
            parent_id=parent_id,
            title=node.title,
            type=node.type,
            data_type="none" if is_condition else node.data_type,
            operator=node.operator.upper() if is_condition else node.operator,
            target_value=None if is_condition else node.target_value,
            sort_order=node.sort_order,
        ))
        stack.extend((child, skeleton_id) for child in reversed(node.operands))

    await stores.add_requirement_snapshots(db, snapshots)
    task_snapshot = await set_current_revision(db, task.id, revision_uuid)
    return task_snapshot, RevisionTree(revision_uuid, snapshots)


async def create_task(
    db: AsyncSession, scope: AccessScope, definition: TaskDefinition,
) -> Tuple[TaskSkeleton, TaskSnapshot, RevisionTree]:
    """Create a task skeleton and its first revision in one transaction."""
    scope.ensure_can_write(scope.user_id)
    validate_definition(definition.requirement)

    async with transaction(db):
        task = await stores.create_task_skeleton(db, owner_id=scope.user_id)
        snapshot, tree = await _write_revision(db, task, definition, known_ids=set())

    logger.info(f"Created task {task.id} at revision {snapshot.revision_uuid}")
    log_audit("task.create", f"task:{task.id}", metadata={"revision_uuid": snapshot.revision_uuid})
    return task, snapshot, tree


async def revise_task(
    db: AsyncSession, scope: AccessScope, task_id: int, definition: TaskDefinition,
) -> Tuple[TaskSkeleton, TaskSnapshot, RevisionTree]:
    """Write a new revision of an existing task and make it current."""
    task = await stores.get_visible_task(db, scope, task_id)
    scope.ensure_can_write(task.owner_id)
    validate_definition(definition.requirement)

    async with transaction(db):
        known_ids = await stores.requirement_ids_for_task(db, task.id)
        snapshot, tree = await _write_revision(db, task, definition, known_ids)

    logger.info(f"Revised task {task.id} to revision {snapshot.revision_uuid}")
    log_audit("task.revise", f"task:{task.id}", metadata={"revision_uuid": snapshot.revision_uuid})
    return task, snapshot, tree


async def make_current(db: AsyncSession, scope: AccessScope, task_id: int, revision_uuid: str) -> TaskSnapshot:
    task = await stores.get_visible_task(db, scope, task_id)
    scope.ensure_can_write(task.owner_id)

    async with transaction(db):
        snapshot = await set_current_revision(db, task.id, revision_uuid)

    log_audit("task.set_current", f"task:{task.id}", metadata={"revision_uuid": revision_uuid})
    return snapshot


async def change_status(db: AsyncSession, scope: AccessScope, task_id: int, status: TaskStatus) -> TaskSkeleton:
    """Archive or reactivate a task; its revisions and entries are untouched."""
    task = await stores.get_visible_task(db, scope, task_id)
    scope.ensure_can_write(task.owner_id)

    async with transaction(db):
        changed = stores.set_task_status(task, status)
        await db.flush()

    if changed:
        log_audit("task.status", f"task:{task.id}", metadata={"status": task.status.value})
    return task


async def remove_task(db: AsyncSession, scope: AccessScope, task_id: int) -> None:
    task = await stores.get_visible_task(db, scope, task_id)
    scope.ensure_can_write(task.owner_id)

    async with transaction(db):
        await stores.delete_task(db, task.id)

    logger.info(f"Deleted task {task_id}")
    log_audit("task.delete", f"task:{task_id}")
