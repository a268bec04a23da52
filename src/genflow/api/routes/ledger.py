"""Usage ledger API: balance and credit movement history of an owner."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from genflow.api.dependencies import get_job_service
from genflow.models.ledger import LedgerEntryType
from genflow.services.jobs import JobService

router = APIRouter(prefix="/api/ledger", tags=["ledger"])


class LedgerEntryResponse(BaseModel):
    id: UUID
    job_id: Optional[UUID]
    entry_type: LedgerEntryType
    amount: int
    note: Optional[str]
    created_at: datetime


class LedgerResponse(BaseModel):
    owner: str
    balance: int
    entries: list[LedgerEntryResponse]


@router.get("/{owner}", response_model=LedgerResponse)
async def get_ledger(
    owner: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    job_service: JobService = Depends(get_job_service),
) -> LedgerResponse:
    balance = await job_service.get_balance(owner)
    entries = await job_service.list_ledger_entries(owner, limit=limit, offset=offset)
    return LedgerResponse(
        owner=owner,
        balance=balance,
        entries=[
            LedgerEntryResponse(
                id=entry.id,
                job_id=entry.job_id,
                entry_type=entry.entry_type,
                amount=entry.amount,
                note=entry.note,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
    )
