"""Asset retriever: downloads generated media and completes jobs.

Runs for every job entering succeeded (spawned task) and from a periodic
sweep that picks up jobs whose earlier round failed or was interrupted by a
restart. Retrieval failures never fail or refund a job: the generation itself
succeeded, so the job stays succeeded and an operational alert is raised once
all rounds are used up.
"""

import asyncio
from typing import Optional
from uuid import UUID

import httpx
import structlog

from genflow.core.config import Settings
from genflow.core.timezone import seconds_from_now, utcnow
from genflow.models.job import AssetDescriptor, AssetLocation, GenerationJob, JobState, ProviderKind
from genflow.services.exceptions import AssetRetrievalFailure
from genflow.services.storage import AssetStorage
from genflow.services.transitions import JobTransitions, UowFactory

logger = structlog.get_logger(__name__)

# Upper bound for a single backoff sleep between download attempts
MAX_DOWNLOAD_BACKOFF_SECONDS = 30.0


class AssetRetriever:
    def __init__(
        self,
        kind: ProviderKind,
        uow_factory: UowFactory,
        transitions: JobTransitions,
        storage: AssetStorage,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize retriever.

        Args:
            kind: Provider family whose jobs this retriever completes
            uow_factory: Factory producing units of work
            transitions: Shared transition logic
            storage: Destination for downloaded assets
            settings: Download timeouts, attempts and round limits
            transport: Optional httpx transport (tests inject MockTransport)
        """
        self.kind = kind
        self.uow_factory = uow_factory
        self.transitions = transitions
        self.storage = storage
        self.settings = settings
        self.transport = transport
        self.download_semaphore = asyncio.Semaphore(settings.asset_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self.completed_count = 0

    def trigger(self, job_id: UUID) -> None:
        """Start retrieval for a job that just entered succeeded."""
        task = asyncio.create_task(self.retrieve(job_id), name=f"retrieve-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                "asset_retrieval.task_crashed",
                provider=self.kind.value,
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
                exc_info=exc,
            )

    async def drain(self) -> None:
        """Wait for all spawned retrieval tasks to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def pending_tasks(self) -> list[asyncio.Task]:
        return [task for task in self._tasks if not task.done()]

    async def run_once(self) -> int:
        """Sweep succeeded jobs that are due for a retrieval round.

        Returns:
            Number of jobs completed by this sweep
        """
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.get_due_for_retrieval(
                self.kind,
                utcnow(),
                max_rounds=self.settings.asset_retrieval_max_rounds,
                limit=self.settings.dispatch_batch_size,
            )

        if not jobs:
            return 0

        results = await asyncio.gather(*(self.retrieve(job.id) for job in jobs), return_exceptions=True)
        completed = 0
        for job, result in zip(jobs, results):
            if isinstance(result, Exception):
                logger.error(
                    "asset_retrieval.unexpected_error",
                    job_id=str(job.id),
                    provider=self.kind.value,
                    error=str(result),
                    error_type=type(result).__name__,
                    exc_info=result,
                )
            elif result:
                completed += 1
        return completed

    async def retrieve(self, job_id: UUID) -> bool:
        """Run one retrieval round for a job.

        Returns:
            True if the job was moved to completed by this call
        """
        job = await self._claim(job_id)
        if job is None:
            return False

        assets = job.assets
        results = await asyncio.gather(
            *(self._retrieve_asset(job, asset) for asset in assets), return_exceptions=True
        )

        failure: Optional[AssetRetrievalFailure] = None
        retrieved: list[AssetDescriptor] = []
        for asset, result in zip(assets, results):
            if isinstance(result, AssetRetrievalFailure):
                failure = failure or result
                retrieved.append(asset)
            elif isinstance(result, BaseException):
                raise result
            else:
                retrieved.append(result)

        if failure is not None:
            # Stored assets are kept so the next round only fetches the rest
            await self._schedule_next_round(job, failure, retrieved)
            return False

        completed = await self.transitions.mark_completed(job.id, retrieved)
        if completed:
            self.completed_count += 1
        return completed

    async def _claim(self, job_id: UUID) -> Optional[GenerationJob]:
        # Claim first, read second: the write takes the row before anything is read
        async with await self.uow_factory() as uow:
            claimed = await uow.jobs.claim(
                job_id, JobState.SUCCEEDED, utcnow(), seconds_from_now(self._lease_seconds())
            )
            job = await uow.jobs.get_by_id(job_id) if claimed else None

        if job is None:
            logger.debug("asset_retrieval.claim_lost", job_id=str(job_id), provider=self.kind.value)
        return job

    def _lease_seconds(self) -> float:
        # Worst case for one asset; assets of a job download concurrently
        per_asset = self.settings.asset_download_attempts * (
            self.settings.asset_download_timeout_seconds + MAX_DOWNLOAD_BACKOFF_SECONDS
        )
        return per_asset + 60

    async def _retrieve_asset(self, job: GenerationJob, asset: AssetDescriptor) -> AssetDescriptor:
        if asset.location == AssetLocation.LOCAL:
            return asset

        data, header_type = await self._download(job, asset.url)
        content_type = asset.content_type or header_type
        try:
            reference = await self.storage.store(data, content_type)
        except OSError as e:
            raise AssetRetrievalFailure(f"Storing asset failed: {e}") from e

        return AssetDescriptor(
            url=reference,
            location=AssetLocation.LOCAL,
            content_type=content_type,
            title=asset.title,
        )

    async def _download(self, job: GenerationJob, url: str) -> tuple[bytes, Optional[str]]:
        """Download url with bounded exponential backoff.

        Raises:
            AssetRetrievalFailure: If every attempt failed
        """
        attempts = self.settings.asset_download_attempts
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                async with self.download_semaphore:
                    async with httpx.AsyncClient(
                        timeout=self.settings.asset_download_timeout_seconds,
                        follow_redirects=True,
                        transport=self.transport,
                    ) as client:
                        response = await client.get(url)
                if response.status_code >= 400:
                    raise AssetRetrievalFailure(f"HTTP {response.status_code} from {url}")
                if not response.content:
                    raise AssetRetrievalFailure(f"Empty body from {url}")
                return response.content, response.headers.get("content-type")

            except (httpx.HTTPError, AssetRetrievalFailure) as e:
                last_error = e
                logger.warning(
                    "asset_retrieval.download_failed",
                    job_id=str(job.id),
                    provider=self.kind.value,
                    url=url,
                    attempt_number=attempt,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                if attempt < attempts:
                    await asyncio.sleep(
                        min(
                            self.settings.asset_backoff_base_seconds * 2 ** (attempt - 1),
                            MAX_DOWNLOAD_BACKOFF_SECONDS,
                        )
                    )

        raise AssetRetrievalFailure(
            f"Download failed after {attempts} attempts: {last_error}"
        ) from last_error

    async def _schedule_next_round(
        self, job: GenerationJob, error: AssetRetrievalFailure, assets: list[AssetDescriptor]
    ) -> None:
        rounds = job.retrieval_attempts + 1
        max_rounds = self.settings.asset_retrieval_max_rounds

        if rounds >= max_rounds:
            next_attempt_at = None
            logger.critical(
                "asset_retrieval.exhausted",
                job_id=str(job.id),
                provider=self.kind.value,
                rounds=rounds,
                error=str(error),
                alert=True,
            )
        else:
            next_attempt_at = seconds_from_now(self.settings.retrieval_interval_seconds * rounds)
            logger.warning(
                "asset_retrieval.round_failed",
                job_id=str(job.id),
                provider=self.kind.value,
                round=rounds,
                retry_in_seconds=self.settings.retrieval_interval_seconds * rounds,
                error=str(error),
            )

        async with await self.uow_factory() as uow:
            await uow.jobs.update_if_state(
                job.id,
                JobState.SUCCEEDED,
                retrieval_attempts=rounds,
                next_attempt_at=next_attempt_at,
                result_assets=[asset.to_record() for asset in assets],
            )
