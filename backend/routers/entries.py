# routers/entries.py — Requirement entries: leaf writes with propagation, reads
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

import stores
from access import AccessScope
from auth import get_access_scope
from database import get_db_session
from deadline import with_deadline
from models import RequirementEntry, today
from propagation import evaluate_stored_entry, upsert_leaf_entry

router = APIRouter(prefix="/api/v1/entries", tags=["Entries"])


# ── Schemas ──────────────────────────────────────────────────

class EntryWrite(BaseModel):
    date: date
    value: str = Field(..., max_length=1000)


class EntryOut(BaseModel):
    id: int
    requirement_id: int
    revision_uuid: str
    date: date
    value: str


class EntryDetail(EntryOut):
    satisfied: bool


def _entry_out(entry: RequirementEntry) -> EntryOut:
    return EntryOut(
        id=entry.id,
        requirement_id=entry.requirement_id,
        revision_uuid=entry.revision_uuid,
        date=entry.entry_date,
        value=entry.value,
    )


async def _entry_detail(db: AsyncSession, scope: AccessScope, entry_id: int) -> EntryDetail:
    entry = await stores.get_requirement_entry(db, scope, entry_id)
    satisfied = await evaluate_stored_entry(db, entry)
    return EntryDetail(**_entry_out(entry).model_dump(), satisfied=satisfied)


# ── Endpoints ────────────────────────────────────────────────

@router.put("/requirements/{requirement_id}", response_model=List[EntryOut], status_code=202)
async def record_entry(
    requirement_id: int,
    data: EntryWrite,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """Record a leaf value for a day; returns every entry written, leaf first and root last"""
    chain = await with_deadline(upsert_leaf_entry(db, scope, requirement_id, data.date, data.value))
    return [_entry_out(e) for e in chain]


@router.get("", response_model=List[EntryOut])
async def list_entries(
    start_date: Optional[date] = Query(None, description="Defaults to end_date"),
    end_date: Optional[date] = Query(None, description="Defaults to today"),
    archived: bool = Query(False, description="Include entries of archived tasks"),
    task_id: Optional[int] = None,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    end_date = end_date or today()
    start_date = start_date or end_date
    entries = await with_deadline(stores.list_requirement_entries(
        db, scope, start_date, end_date, show_archived=archived, task_id=task_id,
    ))
    return [_entry_out(e) for e in entries]


@router.get("/{entry_id}", response_model=EntryDetail)
async def get_entry(
    entry_id: int,
    scope: AccessScope = Depends(get_access_scope),
    db: AsyncSession = Depends(get_db_session),
):
    """One entry, judged against the revision it was recorded under"""
    return await with_deadline(_entry_detail(db, scope, entry_id))
