"""Dispatcher: submits pending jobs to their provider exactly once.

A job is first claimed with a lease on next_attempt_at (compare-and-set), so
concurrent dispatchers in any number of processes never submit it twice. The
claim happens after the provider semaphore is acquired; the lease therefore
only has to cover one bounded submit call.
"""

import asyncio
from typing import Optional

import structlog

from genflow.core.config import Settings
from genflow.core.timezone import seconds_from_now, utcnow
from genflow.models.job import GenerationJob, JobState
from genflow.services.exceptions import ProviderRejected, ProviderUnavailable
from genflow.services.providers.base import ProviderAdapter, call_adapter
from genflow.services.transitions import JobTransitions, UowFactory

logger = structlog.get_logger(__name__)

# Extra lease time on top of the provider timeout for the surrounding DB writes
LEASE_MARGIN_SECONDS = 30


def submit_backoff(attempts: int, base: float, maximum: float) -> float:
    """Delay before the next submit attempt after `attempts` transient failures."""
    return min(base * 2 ** (attempts - 1), maximum)


class Dispatcher:
    def __init__(
        self,
        adapter: ProviderAdapter,
        uow_factory: UowFactory,
        transitions: JobTransitions,
        semaphore: asyncio.Semaphore,
        settings: Settings,
    ):
        self.adapter = adapter
        self.uow_factory = uow_factory
        self.transitions = transitions
        self.semaphore = semaphore
        self.settings = settings
        self.wake_event = asyncio.Event()

    @property
    def kind(self):
        return self.adapter.kind

    def notify(self) -> None:
        """Wake the dispatch loop (a job was just created)."""
        self.wake_event.set()

    async def run_once(self) -> int:
        """Dispatch one batch of due pending jobs.

        Uses a short-lived session to select due jobs (FOR UPDATE SKIP LOCKED
        on PostgreSQL), closes it, then processes each job with its own units
        of work so one job's failure cannot roll back another's changes.

        Returns:
            Number of jobs picked up
        """
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.get_due_pending(
                self.kind, utcnow(), limit=self.settings.dispatch_batch_size
            )

        if not jobs:
            return 0

        results = await asyncio.gather(*(self.dispatch(job) for job in jobs), return_exceptions=True)

        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.error(
                    "dispatch.unexpected_error",
                    job_id=str(job.id),
                    provider=self.kind.value,
                    error=str(result),
                    error_type=type(result).__name__,
                    exc_info=result,
                )
        return len(jobs)

    async def dispatch(self, job: GenerationJob) -> Optional[str]:
        """Claim and submit one job.

        Returns:
            The remote id if this call submitted the job, None otherwise
        """
        timeout = self.settings.provider_timeout_seconds

        async with self.semaphore:
            async with await self.uow_factory() as uow:
                claimed = await uow.jobs.claim(
                    job.id,
                    JobState.PENDING,
                    utcnow(),
                    seconds_from_now(timeout + LEASE_MARGIN_SECONDS),
                )
            if not claimed:
                logger.debug("dispatch.claim_lost", job_id=str(job.id), provider=self.kind.value)
                return None

            attempt_number = job.submit_attempts + 1
            logger.info(
                "dispatch.submitting",
                job_id=str(job.id),
                provider=self.kind.value,
                attempt_number=attempt_number,
            )
            try:
                remote_id = await call_adapter(self.adapter.submit(job.request_params), timeout)

            except ProviderRejected as e:
                logger.warning(
                    "dispatch.rejected",
                    job_id=str(job.id),
                    provider=self.kind.value,
                    reason=e.reason,
                    detail=e.detail,
                )
                await self.transitions.fail(job.id, [JobState.PENDING], e.reason)
                return None

            except ProviderUnavailable as e:
                await self._handle_unavailable(job, attempt_number, e)
                return None

        if not await self.transitions.mark_submitted(job.id, remote_id):
            # Only possible if the job was altered outside the engine while leased
            logger.error(
                "dispatch.orphaned_remote_job",
                job_id=str(job.id),
                provider=self.kind.value,
                remote_id=remote_id,
                alert=True,
            )
            return None
        return remote_id

    async def _handle_unavailable(
        self, job: GenerationJob, attempt_number: int, error: ProviderUnavailable
    ) -> None:
        max_attempts = self.settings.submit_max_attempts

        if attempt_number >= max_attempts:
            logger.error(
                "dispatch.retries_exhausted",
                job_id=str(job.id),
                provider=self.kind.value,
                attempts=attempt_number,
                error=str(error),
                alert=True,
            )
            await self.transitions.fail(
                job.id,
                [JobState.PENDING],
                f"Provider unavailable after {attempt_number} attempts",
                submit_attempts=attempt_number,
            )
            return

        delay = submit_backoff(
            attempt_number,
            self.settings.submit_backoff_base_seconds,
            self.settings.submit_backoff_max_seconds,
        )
        async with await self.uow_factory() as uow:
            await uow.jobs.update_if_state(
                job.id,
                JobState.PENDING,
                submit_attempts=attempt_number,
                next_attempt_at=seconds_from_now(delay),
            )

        logger.warning(
            "dispatch.retry_scheduled",
            job_id=str(job.id),
            provider=self.kind.value,
            attempt_number=attempt_number,
            retry_in_seconds=delay,
            error=str(error),
        )
