"""Inbound job operations: create, fetch and list generation jobs."""

from datetime import datetime
from typing import Any, Callable, Mapping, Optional
from uuid import UUID

import structlog
from pydantic import BaseModel, Field

from genflow.models.job import AssetDescriptor, GenerationJob, JobState, ProviderKind
from genflow.models.ledger import LedgerEntry
from genflow.services.events import EventPublisher
from genflow.services.exceptions import InvalidParams, JobNotFound
from genflow.services.providers.base import ProviderAdapter
from genflow.services.transitions import UowFactory, job_event_payload

logger = structlog.get_logger(__name__)


class JobSnapshot(BaseModel):
    """Read-only view of a job returned to callers."""

    id: UUID
    owner: str
    provider_kind: ProviderKind
    state: JobState
    request_params: dict[str, Any]
    result_assets: list[AssetDescriptor]
    cost_units: int
    progress: int
    failure_reason: Optional[str] = None
    created_at: datetime
    last_polled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: GenerationJob) -> "JobSnapshot":
        return cls(
            id=job.id,
            owner=job.owner,
            provider_kind=job.provider_kind,
            state=job.state,
            request_params=job.request_params,
            result_assets=job.assets,
            cost_units=job.cost_units,
            progress=job.progress,
            # Only failed jobs expose a reason
            failure_reason=job.failure_reason if job.state == JobState.FAILED else None,
            created_at=job.created_at,
            last_polled_at=job.last_polled_at,
            completed_at=job.completed_at,
        )


class JobFilter(BaseModel):
    state: Optional[JobState] = None
    provider_kind: Optional[ProviderKind] = None
    limit: int = Field(default=50, ge=1, le=200)
    offset: int = Field(default=0, ge=0)


class JobService:
    """Create and query jobs on behalf of the external HTTP layer."""

    def __init__(
        self,
        adapters: Mapping[ProviderKind, ProviderAdapter],
        uow_factory: UowFactory,
        publisher: EventPublisher,
        on_created: Optional[Callable[[ProviderKind], None]] = None,
    ):
        """Initialize service.

        Args:
            adapters: Adapters of the enabled provider families
            uow_factory: Factory producing units of work
            publisher: Event publisher for the initial pending event
            on_created: Called with the provider kind after a job is committed
                (wakes that provider's dispatcher)
        """
        self.adapters = adapters
        self.uow_factory = uow_factory
        self.publisher = publisher
        self.on_created = on_created

    async def create_job(
        self, owner: str, provider_kind: ProviderKind | str, request_params: dict[str, Any]
    ) -> UUID:
        """Validate, debit and persist a new pending job.

        The debit and the job insert share one transaction: when the balance
        does not cover the cost, nothing is written.

        Raises:
            InvalidParams: Unknown/disabled provider or invalid parameters
            InsufficientBalance: Owner cannot pay for the job
        """
        if not owner or not owner.strip():
            raise InvalidParams("owner is required")
        try:
            kind = ProviderKind(provider_kind)
        except ValueError as e:
            raise InvalidParams(f"Unknown provider kind: {provider_kind}") from e

        adapter = self.adapters.get(kind)
        if adapter is None:
            raise InvalidParams(f"Provider {kind.value} is not enabled")

        params = adapter.validate_params(request_params or {})
        cost = adapter.cost_units(params)

        job = GenerationJob(owner=owner, provider_kind=kind, request_params=params, cost_units=cost)
        async with await self.uow_factory() as uow:
            await uow.ledger.debit(owner, cost, job.id)
            await uow.jobs.add(job)

        logger.info(
            "job.created", job_id=str(job.id), owner=owner, provider=kind.value, cost_units=cost
        )
        await self.publisher.publish(owner, job.id, job.state, job_event_payload(job))
        if self.on_created is not None:
            self.on_created(kind)
        return job.id

    async def get_job(self, job_id: UUID) -> JobSnapshot:
        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_id(job_id)
        if job is None:
            raise JobNotFound(f"Job {job_id} not found")
        return JobSnapshot.from_job(job)

    async def list_jobs(self, owner: str, job_filter: Optional[JobFilter] = None) -> list[JobSnapshot]:
        job_filter = job_filter or JobFilter()
        async with await self.uow_factory() as uow:
            jobs = await uow.jobs.list_by_owner(
                owner,
                state=job_filter.state,
                kind=job_filter.provider_kind,
                limit=job_filter.limit,
                offset=job_filter.offset,
            )
        return [JobSnapshot.from_job(job) for job in jobs]

    async def get_balance(self, owner: str) -> int:
        async with await self.uow_factory() as uow:
            return await uow.ledger.get_balance(owner)

    async def list_ledger_entries(
        self, owner: str, limit: int = 50, offset: int = 0
    ) -> list[LedgerEntry]:
        async with await self.uow_factory() as uow:
            return await uow.ledger.list_entries(owner, limit=limit, offset=offset)

    async def deposit(self, owner: str, amount: int, note: Optional[str] = None) -> int:
        """Credit owner's balance (top-ups from the payment layer)."""
        async with await self.uow_factory() as uow:
            balance = await uow.ledger.deposit(owner, amount, note)
        logger.info("ledger.deposit", owner=owner, amount=amount, balance=balance)
        return balance
