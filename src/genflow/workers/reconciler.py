"""Status reconciler: polls submitted jobs whose status has gone stale.

Covers providers that never call back, callbacks lost in transit and jobs
left submitted across a restart. Poll errors never fail a job; the job is
simply polled again on a later sweep.
"""

import asyncio

import structlog

from genflow.core.config import Settings
from genflow.core.timezone import seconds_ago
from genflow.models.job import GenerationJob
from genflow.services.exceptions import ProviderError
from genflow.services.providers.base import ProviderAdapter, call_adapter
from genflow.services.transitions import JobTransitions, UowFactory

logger = structlog.get_logger(__name__)


class StatusReconciler:
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

    @property
    def kind(self):
        return self.adapter.kind

    async def find_stale(self) -> list[GenerationJob]:
        """Submitted jobs not polled within the staleness threshold."""
        async with await self.uow_factory() as uow:
            return await uow.jobs.get_stale_submitted(
                self.kind,
                seconds_ago(self.settings.staleness_seconds),
                limit=self.settings.reconcile_batch_size,
            )

    async def run_once(self) -> int:
        """Poll one batch of stale jobs.

        Returns:
            Number of jobs whose state changed
        """
        jobs = await self.find_stale()
        if not jobs:
            return 0

        logger.debug("reconcile.sweep", provider=self.kind.value, stale_jobs=len(jobs))
        results = await asyncio.gather(*(self.reconcile(job) for job in jobs), return_exceptions=True)

        changed = 0
        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.error(
                    "reconcile.unexpected_error",
                    job_id=str(job.id),
                    provider=self.kind.value,
                    error=str(result),
                    error_type=type(result).__name__,
                    exc_info=result,
                )
            elif result:
                changed += 1
        return changed

    async def reconcile(self, job: GenerationJob) -> bool:
        """Poll one job and apply the reported status.

        Returns:
            True if the job changed state
        """
        if not job.remote_id:
            logger.error("reconcile.missing_remote_id", job_id=str(job.id), provider=self.kind.value)
            return False

        async with self.semaphore:
            try:
                status = await call_adapter(
                    self.adapter.poll(job.remote_id), self.settings.provider_timeout_seconds
                )
            except ProviderError as e:
                logger.warning(
                    "reconcile.poll_failed",
                    job_id=str(job.id),
                    provider=self.kind.value,
                    remote_id=job.remote_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                status = None

        if status is None:
            # Erroring jobs rotate behind the rest of the backlog
            await self.transitions.record_poll_attempt(job.id)
            return False
        return await self.transitions.apply_remote_status(job.id, status, source="poll")
