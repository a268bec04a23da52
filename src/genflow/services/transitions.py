"""Shared job transition logic.

The dispatcher, the status reconciler, notification intake and the asset
retriever change job state only through JobTransitions. Each method runs one
compare-and-set inside its own unit of work; a False return means another
writer already moved the job and the caller must do nothing further.
"""

from typing import Any, Awaitable, Callable, Iterable
from uuid import UUID

import structlog

from genflow.core.timezone import utcnow
from genflow.models.job import AssetDescriptor, GenerationJob, JobState, ProviderKind
from genflow.services.events import EventPublisher
from genflow.services.providers.base import RemoteState, RemoteStatus
from genflow.uow import UnitOfWork

logger = structlog.get_logger(__name__)

UowFactory = Callable[[], Awaitable[UnitOfWork]]

EMPTY_RESULT_REASON = "Provider reported success without any output"
DEFAULT_FAILURE_REASON = "Generation failed at the provider"


def job_event_payload(job: GenerationJob) -> dict[str, Any]:
    """Client-facing event body for a job."""
    return {
        "provider_kind": job.provider_kind.value,
        "progress": job.progress,
        "failure_reason": job.failure_reason,
        "assets": [asset.to_record() for asset in job.assets],
    }


class JobTransitions:
    """Compare-and-set transitions plus their side effects (refund, events)."""

    def __init__(self, kind: ProviderKind, uow_factory: UowFactory, publisher: EventPublisher):
        self.kind = kind
        self.uow_factory = uow_factory
        self.publisher = publisher
        self._succeeded_listeners: list[Callable[[UUID], None]] = []

    def subscribe_succeeded(self, listener: Callable[[UUID], None]) -> None:
        """Register a callback invoked after a job enters succeeded."""
        self._succeeded_listeners.append(listener)

    async def mark_submitted(self, job_id: UUID, remote_id: str) -> bool:
        async with await self.uow_factory() as uow:
            won = await uow.jobs.transition(
                job_id,
                [JobState.PENDING],
                JobState.SUBMITTED,
                remote_id=remote_id,
                last_polled_at=utcnow(),
                next_attempt_at=None,
            )
            job = await uow.jobs.get_by_id(job_id) if won else None

        if job is not None:
            logger.info("job.submitted", job_id=str(job_id), provider=self.kind.value, remote_id=remote_id)
            await self._publish(job)
        return job is not None

    async def fail(
        self, job_id: UUID, from_states: Iterable[JobState], reason: str, **values: Any
    ) -> bool:
        """Move a job to failed and refund it in the same transaction."""
        async with await self.uow_factory() as uow:
            won = await uow.jobs.transition(
                job_id,
                from_states,
                JobState.FAILED,
                failure_reason=reason[:1000],
                next_attempt_at=None,
                **values,
            )
            job = None
            if won:
                await uow.ledger.refund(job_id, note=reason)
                job = await uow.jobs.get_by_id(job_id)

        if job is None:
            logger.debug("job.fail_skipped", job_id=str(job_id), reason="state_changed")
            return False

        logger.info("job.failed", job_id=str(job_id), provider=self.kind.value, reason=reason)
        await self._publish(job)
        return True

    async def apply_remote_status(self, job_id: UUID, status: RemoteStatus, source: str) -> bool:
        """Apply a provider status (from poll or push) to a submitted job.

        Args:
            job_id: Job the status belongs to
            status: Status reported by the adapter
            source: "poll" or "push", for logs only

        Returns:
            True if the job changed state
        """
        if status.state == RemoteState.SUCCEEDED:
            if not status.assets:
                return await self.fail(job_id, [JobState.SUBMITTED], EMPTY_RESULT_REASON)
            return await self._mark_succeeded(job_id, status.assets, source)

        if status.state == RemoteState.FAILED:
            return await self.fail(
                job_id, [JobState.SUBMITTED], status.failure_reason or DEFAULT_FAILURE_REASON
            )

        values: dict[str, Any] = {"last_polled_at": utcnow()}
        if status.progress is not None:
            values["progress"] = status.progress
        async with await self.uow_factory() as uow:
            updated = await uow.jobs.update_if_state(job_id, JobState.SUBMITTED, **values)
            job = await uow.jobs.get_by_id(job_id) if updated and status.progress is not None else None

        if job is not None:
            await self._publish(job)
        return False

    async def record_poll_attempt(self, job_id: UUID) -> None:
        """Move a submitted job to the back of the stale queue without changing state."""
        async with await self.uow_factory() as uow:
            await uow.jobs.update_if_state(job_id, JobState.SUBMITTED, last_polled_at=utcnow())

    async def mark_completed(self, job_id: UUID, local_assets: list[AssetDescriptor]) -> bool:
        async with await self.uow_factory() as uow:
            won = await uow.jobs.transition(
                job_id,
                [JobState.SUCCEEDED],
                JobState.COMPLETED,
                result_assets=[asset.to_record() for asset in local_assets],
                completed_at=utcnow(),
                next_attempt_at=None,
            )
            job = await uow.jobs.get_by_id(job_id) if won else None

        if job is not None:
            logger.info(
                "job.completed", job_id=str(job_id), provider=self.kind.value, assets=len(local_assets)
            )
            await self._publish(job)
        return job is not None

    async def _mark_succeeded(
        self, job_id: UUID, assets: list[AssetDescriptor], source: str
    ) -> bool:
        async with await self.uow_factory() as uow:
            won = await uow.jobs.transition(
                job_id,
                [JobState.SUBMITTED],
                JobState.SUCCEEDED,
                result_assets=[asset.to_record() for asset in assets],
                progress=100,
                last_polled_at=utcnow(),
                next_attempt_at=None,
            )
            job = await uow.jobs.get_by_id(job_id) if won else None

        if job is None:
            logger.debug("job.succeed_skipped", job_id=str(job_id), source=source)
            return False

        logger.info(
            "job.succeeded",
            job_id=str(job_id),
            provider=self.kind.value,
            source=source,
            assets=len(assets),
        )
        await self._publish(job)
        for listener in self._succeeded_listeners:
            listener(job_id)
        return True

    async def _publish(self, job: GenerationJob) -> None:
        await self.publisher.publish(job.owner, job.id, job.state, job_event_payload(job))
