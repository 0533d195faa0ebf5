# routers/tasks.py — Task definitions, revisions and status
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

import stores
from access import AccessScope
from auth import get_access_scope
from database import get_db_session
from deadline import with_deadline
from models import TaskSkeleton, TaskSnapshot, TaskStatus, today
from revisions import (
    TaskDefinition, change_status, create_task, get_current_snapshot, make_current, remove_task,
    resolve_snapshot, revise_task,
)
from tree import RevisionTree

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


# ── Schemas ──────────────────────────────────────────────────

class RevisionOut(BaseModel):
    revision_uuid: str
    title: str
    description: Optional[str] = None
    effective_from: date
    created_at: Optional[datetime] = None
    is_current: bool


class TaskOut(BaseModel):
    id: int
    owner_id: int
    status: TaskStatus
    created_at: Optional[datetime] = None
    revision: RevisionOut
    requirement: Optional[Dict[str, Any]] = None


class StatusUpdate(BaseModel):
    status: TaskStatus


class CompletionOut(BaseModel):
    date: date
    completed: bool


def _revision_out(snapshot: TaskSnapshot) -> RevisionOut:
    return RevisionOut(
        revision_uuid=snapshot.revision_uuid,
        title=snapshot.title,
        description=snapshot.description,
        effective_from=snapshot.effective_from,
        created_at=snapshot.created_at,
        is_current=snapshot.is_current,
    )


def _task_out(
    task: TaskSkeleton,
    snapshot: TaskSnapshot,
    tree: Optional[RevisionTree] = None,
    values: Optional[Dict[int, str]] = None,
) -> TaskOut:
    return TaskOut(
        id=task.id,
        owner_id=task.owner_id,
        status=task.status,
        created_at=task.created_at,
        revision=_revision_out(snapshot),
        requirement=tree.to_nested(entries=values) if tree is not None else None,
    )


async def _task_list(db: AsyncSession, scope: AccessScope, archived: bool) -> List[TaskOut]:
    tasks = await stores.list_task_skeletons(db, scope, show_active=True, show_archived=archived)
    return [_task_out(task, await get_current_snapshot(db, task.id)) for task in tasks]


async def _task_view(db: AsyncSession, scope: AccessScope, task_id: int, on: Optional[date]) -> TaskOut:
    task = await stores.get_visible_task(db, scope, task_id)
    if on is None:
        snapshot = await get_current_snapshot(db, task.id)
        tree = await stores.get_revision_tree(db, snapshot.revision_uuid)
        return _task_out(task, snapshot, tree)

    snapshot = await resolve_snapshot(db, task.id, on)
    tree = await stores.get_revision_tree(db, snapshot.revision_uuid)
    entries = await stores.get_entries_for_date(db, tree.nodes.keys(), snapshot.revision_uuid, on)
    return _task_out(task, snapshot, tree, {rid: e.value for rid, e in entries.items()})


async def _status_change(db: AsyncSession, scope: AccessScope, task_id: int, status: TaskStatus) -> TaskOut:
    task = await change_status(db, scope, task_id, status)
    return _task_out(task, await get_current_snapshot(db, task.id))


async def _revision_history(db: AsyncSession, scope: AccessScope, task_id: int) -> List[RevisionOut]:
    task = await stores.get_visible_task(db, scope, task_id)
    return [_revision_out(s) for s in await stores.list_task_snapshots(db, task.id)]


async def _completions(
    db: AsyncSession, scope: AccessScope, task_id: int, start_date: date, end_date: date,
) -> List[CompletionOut]:
    task = await stores.get_visible_task(db, scope, task_id)
    rows = await stores.list_task_entries(db, task.id, start_date, end_date)
    return [CompletionOut(date=row.entry_date, completed=row.completed) for row in rows]


# ── Endpoints ────────────────────────────────────────────────

@router.post("", response_model=TaskOut, status_code=201)
async def create(
    definition: TaskDefinition,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Create a task together with its first requirement tree"""
    task, snapshot, tree = await with_deadline(create_task(db, scope, definition))
    return _task_out(task, snapshot, tree)


@router.get("", response_model=List[TaskOut])
async def list_tasks(
    archived: bool = Query(False, description="Include archived tasks"),
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    return await with_deadline(_task_list(db, scope, archived))


@router.get("/{task_id}", response_model=TaskOut)
async def get_task(
    task_id: int,
    on: Optional[date] = Query(None, description="Show the revision governing this date, with that day's entries"),
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    return await with_deadline(_task_view(db, scope, task_id, on))


@router.put("/{task_id}", response_model=TaskOut)
async def revise(
    task_id: int,
    definition: TaskDefinition,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Write a new revision; earlier revisions and their entries stay as they were"""
    task, snapshot, tree = await with_deadline(revise_task(db, scope, task_id, definition))
    return _task_out(task, snapshot, tree)


@router.get("/{task_id}/revisions", response_model=List[RevisionOut])
async def list_revisions(
    task_id: int,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    return await with_deadline(_revision_history(db, scope, task_id))


@router.post("/{task_id}/revisions/{revision_uuid}/current", response_model=RevisionOut)
async def set_current(
    task_id: int,
    revision_uuid: str,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    snapshot = await with_deadline(make_current(db, scope, task_id, revision_uuid))
    return _revision_out(snapshot)


@router.patch("/{task_id}/status", response_model=TaskOut)
async def update_status(
    task_id: int,
    update: StatusUpdate,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Archive or reactivate a task"""
    return await with_deadline(_status_change(db, scope, task_id, update.status))


@router.delete("/{task_id}", status_code=204)
async def delete(
    task_id: int,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Delete a task with all of its revisions and entries"""
    await with_deadline(remove_task(db, scope, task_id))
    return Response(status_code=204)


@router.get("/{task_id}/completions", response_model=List[CompletionOut])
async def list_completions(
    task_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Per-day completion of the task, as last derived from its root requirement"""
    end_date = end_date or today()
    start_date = start_date or end_date
    return await with_deadline(_completions(db, scope, task_id, start_date, end_date))
