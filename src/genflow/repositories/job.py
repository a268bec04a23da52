"""GenerationJob repository for the job store.

Provides data access for jobs. Every state change is a single conditional
UPDATE keyed by job id and expected state(s), so concurrent writers resolve to
exactly one winner and the loser's update affects zero rows.
"""

from datetime import datetime
from typing import Any, Iterable
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from genflow.models.job import (
    GenerationJob,
    JobState,
    ProviderKind,
    check_transition,
)


class GenerationJobRepository:
    """Repository for GenerationJob entities.

    Worker queries use FOR UPDATE SKIP LOCKED where the backend supports it;
    ownership of a job for submission or retrieval is then taken with a
    compare-and-set lease on next_attempt_at.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, job: GenerationJob) -> GenerationJob:
        """Persist new job to database.

        Args:
            job: GenerationJob entity to persist (state must be pending)

        Returns:
            Persisted job
        """
        if job.state != JobState.PENDING:
            raise ValueError(f"New jobs must start pending, got {job.state.value}")
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> GenerationJob | None:
        """Retrieve job by identifier.

        Args:
            job_id: Job's unique identifier

        Returns:
            GenerationJob if found, None otherwise
        """
        result = await self.session.execute(
            select(GenerationJob).where(GenerationJob.id == job_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_remote_id(self, kind: ProviderKind, remote_id: str) -> GenerationJob | None:
        """Retrieve job by provider-assigned identifier.

        Remote ids are only unique within a provider family.
        """
        result = await self.session.execute(
            select(GenerationJob).where(
                GenerationJob.provider_kind == kind,  # type: ignore[arg-type]
                GenerationJob.remote_id == remote_id,  # type: ignore[arg-type]
            )
        )
        return result.scalars().first()

    async def list_by_owner(
        self,
        owner: str,
        state: JobState | None = None,
        kind: ProviderKind | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[GenerationJob]:
        """Retrieve an owner's jobs, newest first, optionally filtered.

        Args:
            owner: Requesting user identifier
            state: Only jobs in this state
            kind: Only jobs of this provider family
            limit: Maximum number of jobs to return
            offset: Number of jobs to skip

        Returns:
            List of jobs ordered by created_at (newest first)
        """
        stmt = select(GenerationJob).where(GenerationJob.owner == owner)  # type: ignore[arg-type]
        if state is not None:
            stmt = stmt.where(GenerationJob.state == state)  # type: ignore[arg-type]
        if kind is not None:
            stmt = stmt.where(GenerationJob.provider_kind == kind)  # type: ignore[arg-type]
        stmt = (
            stmt.order_by(GenerationJob.created_at.desc())  # type: ignore[attr-defined]
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_due_pending(
        self, kind: ProviderKind, now: datetime, limit: int = 20
    ) -> list[GenerationJob]:
        """Retrieve pending jobs whose backoff/lease has expired (oldest first).

        Query explanation:
        - WHERE provider_kind = :kind AND state = 'pending'
        - AND (next_attempt_at IS NULL OR next_attempt_at <= :now)
        - ORDER BY created_at ASC: FIFO
        - FOR UPDATE SKIP LOCKED: skip rows another worker is reading
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.provider_kind == kind,  # type: ignore[arg-type]
                GenerationJob.state == JobState.PENDING,  # type: ignore[arg-type]
                _lease_expired(now),
            )
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def get_stale_submitted(
        self, kind: ProviderKind, polled_before: datetime, limit: int = 50
    ) -> list[GenerationJob]:
        """Retrieve submitted jobs not polled since polled_before.

        Served by the (provider_kind, state) index. Least recently polled first.
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.provider_kind == kind,  # type: ignore[arg-type]
                GenerationJob.state == JobState.SUBMITTED,  # type: ignore[arg-type]
                or_(
                    GenerationJob.last_polled_at.is_(None),  # type: ignore[union-attr]
                    GenerationJob.last_polled_at <= polled_before,  # type: ignore[operator]
                ),
            )
            .order_by(GenerationJob.last_polled_at.asc().nulls_first())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_due_for_retrieval(
        self, kind: ProviderKind, now: datetime, max_rounds: int, limit: int = 20
    ) -> list[GenerationJob]:
        """Retrieve succeeded jobs awaiting asset retrieval.

        Jobs that exhausted max_rounds stay succeeded but are no longer picked up.
        """
        result = await self.session.execute(
            select(GenerationJob)
            .where(
                GenerationJob.provider_kind == kind,  # type: ignore[arg-type]
                GenerationJob.state == JobState.SUCCEEDED,  # type: ignore[arg-type]
                GenerationJob.retrieval_attempts < max_rounds,  # type: ignore[arg-type]
                _lease_expired(now),
            )
            .order_by(GenerationJob.created_at.asc())  # type: ignore[attr-defined]
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def count_by_state(self, kind: ProviderKind) -> dict[JobState, int]:
        """Count a provider's jobs per state (startup diagnostics)."""
        result = await self.session.execute(
            select(GenerationJob.state, func.count())
            .where(GenerationJob.provider_kind == kind)  # type: ignore[arg-type]
            .group_by(GenerationJob.state)
        )
        return {state: count for state, count in result.all()}

    async def transition(
        self,
        job_id: UUID,
        from_states: Iterable[JobState],
        to_state: JobState,
        **values: Any,
    ) -> bool:
        """Atomically move a job along one state machine edge.

        Executes UPDATE ... WHERE id = :job_id AND state IN (:from_states).

        Args:
            job_id: Job to transition
            from_states: States the caller expects the job to be in
            to_state: Target state
            **values: Additional columns written with the transition

        Returns:
            True if this call performed the transition, False if the job was no
            longer in any of from_states (another writer won)

        Raises:
            InvalidStateTransition: If any from_state -> to_state is not an edge
        """
        expected = list(from_states)
        for state in expected:
            check_transition(state, to_state)

        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.state.in_(expected),  # type: ignore[attr-defined]
            )
            .values(state=to_state, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def update_if_state(self, job_id: UUID, state: JobState, **values: Any) -> bool:
        """Write non-state columns only while the job is still in state.

        Returns:
            True if the row was updated
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.state == state,  # type: ignore[arg-type]
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def claim(
        self, job_id: UUID, state: JobState, now: datetime, lease_until: datetime
    ) -> bool:
        """Take a work lease on a job in state whose previous lease expired.

        Returns:
            True if this caller now owns the job until lease_until
        """
        result = await self.session.execute(
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,  # type: ignore[arg-type]
                GenerationJob.state == state,  # type: ignore[arg-type]
                _lease_expired(now),
            )
            .values(next_attempt_at=lease_until)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]


def _lease_expired(now: datetime):
    return or_(
        GenerationJob.next_attempt_at.is_(None),  # type: ignore[union-attr]
        GenerationJob.next_attempt_at <= now,  # type: ignore[operator]
    )
