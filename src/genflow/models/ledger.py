"""Usage ledger entities - owner balances and per-job credit movements."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

from genflow.core.timezone import UTCDateTime, utcnow


class LedgerEntryType(str, Enum):
    DEBIT = "debit"
    REFUND = "refund"
    DEPOSIT = "deposit"


class UserBalance(SQLModel, table=True):
    """Current usage-credit balance of an owner."""

    __tablename__ = "user_balances"  # type: ignore[assignment]

    owner: str = Field(primary_key=True, max_length=255)
    balance: int = Field(default=0, ge=0)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class LedgerEntry(SQLModel, table=True):
    """Single credit movement.

    (job_id, entry_type) is unique, so a job has at most one debit and one refund.
    Deposits carry no job_id.
    """

    __tablename__ = "ledger_entries"  # type: ignore[assignment]
    __table_args__ = (UniqueConstraint("job_id", "entry_type", name="uq_ledger_job_entry"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner: str = Field(max_length=255, index=True)
    job_id: Optional[UUID] = Field(default=None, index=True)
    entry_type: LedgerEntryType
    amount: int = Field(ge=0)
    note: Optional[str] = Field(default=None, max_length=255)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
