import uuid
from datetime import date
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from worklog.core.rbac.context import ActorContext
from worklog.core.timesheets import service
from worklog.core.timesheets.schemas import (
    EntryCreate, EntryUpdate, EntryRead,
    SubmitRequest, ApproveRequest, RejectRequest, ApprovalEventRead,
    VALID_ENTRY_STATUSES,
)
from worklog.dependencies import get_db, get_current_user

router = APIRouter(tags=["timesheets"])


# ── Entries ───────────────────────────────────────────────────────────────────

@router.post("/timesheets/entries", response_model=EntryRead, status_code=201)
async def create_entry(
    data: EntryCreate,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.create_entry(db, ctx, data)


@router.get("/timesheets/entries", response_model=list[EntryRead])
async def list_entries(
    owner_id: uuid.UUID | None = Query(None),
    status: VALID_ENTRY_STATUSES | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_entries(db, ctx, owner_id, status, date_from, date_to)


@router.get("/timesheets/entries/{entry_id}", response_model=EntryRead)
async def get_entry(
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.get_entry(db, ctx, entry_id)


@router.patch("/timesheets/entries/{entry_id}", response_model=EntryRead)
async def update_entry(
    entry_id: uuid.UUID,
    data: EntryUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.update_entry(db, ctx, entry_id, data)


@router.delete("/timesheets/entries/{entry_id}", status_code=204)
async def delete_entry(
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    await service.delete_entry(db, ctx, entry_id)


@router.get("/timesheets/entries/{entry_id}/events", response_model=list[ApprovalEventRead])
async def list_approval_events(
    entry_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_approval_events(db, ctx, entry_id)


# ── Approval ──────────────────────────────────────────────────────────────────

@router.post("/timesheets/submit", response_model=list[EntryRead])
async def submit_entries(
    body: SubmitRequest,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.submit_entries(db, ctx, body.entry_ids)


@router.get("/timesheets/pending", response_model=list[EntryRead])
async def list_pending(
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.list_pending_for_actor(db, ctx)


@router.post("/timesheets/entries/{entry_id}/approve", response_model=EntryRead)
async def approve_entry(
    entry_id: uuid.UUID,
    body: ApproveRequest,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.approve_entry(db, ctx, entry_id, body.comment, body.adjustment)


@router.post("/timesheets/entries/{entry_id}/reject", response_model=EntryRead)
async def reject_entry(
    entry_id: uuid.UUID,
    body: RejectRequest,
    db: AsyncSession = Depends(get_db),
    ctx: ActorContext = Depends(get_current_user),
):
    return await service.reject_entry(db, ctx, entry_id, body.reason)
