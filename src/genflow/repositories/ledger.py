"""Usage ledger repository.

Balances change only through conditional UPDATE statements and every movement
is recorded as a LedgerEntry. Debits and refunds are keyed by job id.
"""

from uuid import UUID

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.core.timezone import utcnow
from genflow.models.ledger import LedgerEntry, LedgerEntryType, UserBalance
from genflow.services.exceptions import InsufficientBalance

logger = structlog.get_logger(__name__)


class LedgerRepository:
    """Repository for UserBalance and LedgerEntry entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_balance(self, owner: str) -> int:
        """Current balance of owner (0 for unknown owners)."""
        result = await self.session.execute(
            select(UserBalance.balance).where(UserBalance.owner == owner)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none() or 0

    async def deposit(self, owner: str, amount: int, note: str | None = None) -> int:
        """Credit owner's balance outside of any job (top-up, redeem code).

        Args:
            owner: Owner to credit
            amount: Positive number of units
            note: Free-form audit note

        Returns:
            New balance

        Raises:
            ValueError: If amount is not positive
        """
        if amount <= 0:
            raise ValueError("Deposit amount must be positive")

        existing = await self.session.get(UserBalance, owner)
        if existing is None:
            self.session.add(UserBalance(owner=owner, balance=0))
            await self.session.flush()

        await self._credit(owner, amount)
        self.session.add(
            LedgerEntry(owner=owner, entry_type=LedgerEntryType.DEPOSIT, amount=amount, note=note)
        )
        await self.session.flush()
        return await self.get_balance(owner)

    async def debit(self, owner: str, amount: int, job_id: UUID) -> LedgerEntry:
        """Charge owner for a job.

        The balance check and decrement are one statement:
        UPDATE user_balances SET balance = balance - :amount
        WHERE owner = :owner AND balance >= :amount

        Args:
            owner: Requesting user
            amount: Job cost units
            job_id: Idempotence key

        Returns:
            The debit entry (the existing one if job_id was already debited)

        Raises:
            InsufficientBalance: If the balance does not cover amount
        """
        existing = await self._get_entry(job_id, LedgerEntryType.DEBIT)
        if existing is not None:
            return existing

        # Free jobs need no balance row; the entry still records the charge
        if amount > 0:
            result = await self.session.execute(
                update(UserBalance)
                .where(
                    UserBalance.owner == owner,  # type: ignore[arg-type]
                    UserBalance.balance >= amount,  # type: ignore[arg-type]
                )
                .values(balance=UserBalance.balance - amount, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:  # type: ignore[attr-defined]
                raise InsufficientBalance(owner, amount, await self.get_balance(owner))

        entry = LedgerEntry(
            owner=owner, job_id=job_id, entry_type=LedgerEntryType.DEBIT, amount=amount
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def refund(self, job_id: UUID, note: str | None = None) -> LedgerEntry | None:
        """Return a job's debit to its owner, at most once.

        Args:
            job_id: Job whose debit is returned
            note: Audit note (typically the failure reason)

        Returns:
            The new refund entry, or None if the job was already refunded or
            never debited
        """
        if await self._get_entry(job_id, LedgerEntryType.REFUND) is not None:
            logger.info("ledger.refund_skipped", job_id=str(job_id), reason="already_refunded")
            return None

        debit = await self._get_entry(job_id, LedgerEntryType.DEBIT)
        if debit is None:
            logger.warning("ledger.refund_skipped", job_id=str(job_id), reason="no_debit")
            return None

        # Unique (job_id, entry_type) rejects a concurrent second refund
        entry = LedgerEntry(
            owner=debit.owner,
            job_id=job_id,
            entry_type=LedgerEntryType.REFUND,
            amount=debit.amount,
            note=note[:255] if note else None,
        )
        self.session.add(entry)
        await self.session.flush()
        await self._credit(debit.owner, debit.amount)
        return entry

    async def list_entries(
        self, owner: str, limit: int = 50, offset: int = 0
    ) -> list[LedgerEntry]:
        """Retrieve owner's ledger entries, newest first."""
        result = await self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.owner == owner)  # type: ignore[arg-type]
            .order_by(LedgerEntry.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def entries_for_job(self, job_id: UUID) -> list[LedgerEntry]:
        result = await self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.job_id == job_id)  # type: ignore[arg-type]
            .order_by(LedgerEntry.created_at.asc())  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def _get_entry(self, job_id: UUID, entry_type: LedgerEntryType) -> LedgerEntry | None:
        result = await self.session.execute(
            select(LedgerEntry).where(
                LedgerEntry.job_id == job_id,  # type: ignore[arg-type]
                LedgerEntry.entry_type == entry_type,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def _credit(self, owner: str, amount: int) -> None:
        await self.session.execute(
            update(UserBalance)
            .where(UserBalance.owner == owner)  # type: ignore[arg-type]
            .values(balance=UserBalance.balance + amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
