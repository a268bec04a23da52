"""JobService tests: creation, debits and read-only queries."""

from uuid import uuid4

import pytest
from conftest import OWNER, balance_of, fund, ledger_for, load_job

from genflow.models.job import JobState, ProviderKind
from genflow.models.ledger import LedgerEntryType
from genflow.services.exceptions import InsufficientBalance, InvalidParams, JobNotFound
from genflow.services.jobs import JobFilter, JobService


@pytest.mark.asyncio
class TestCreateJob:
    async def test_create_debits_and_persists_pending_job(self, job_service, uow_factory, events):
        await fund(uow_factory, amount=25)

        job_id = await job_service.create_job(OWNER, "image_a", {"prompt": "a paper crane"})

        job = await load_job(uow_factory, job_id)
        assert job.state == JobState.PENDING
        assert job.cost_units == 10
        assert job.request_params == {"prompt": "a paper crane"}
        assert await balance_of(uow_factory) == 15

        entries = await ledger_for(uow_factory, job_id)
        assert [(entry.entry_type, entry.amount) for entry in entries] == [(LedgerEntryType.DEBIT, 10)]

        assert events[-1]["job_id"] == str(job_id)
        assert events[-1]["state"] == "pending"

    async def test_insufficient_balance_creates_nothing(self, job_service, uow_factory):
        await fund(uow_factory, amount=5)

        with pytest.raises(InsufficientBalance) as exc_info:
            await job_service.create_job(OWNER, ProviderKind.IMAGE_A, {"prompt": "a paper crane"})

        assert (exc_info.value.required, exc_info.value.available) == (10, 5)
        assert await job_service.list_jobs(OWNER) == []
        assert await balance_of(uow_factory) == 5

    async def test_owner_without_balance_is_rejected(self, job_service):
        with pytest.raises(InsufficientBalance):
            await job_service.create_job("stranger", ProviderKind.IMAGE_A, {"prompt": "hello"})

    async def test_free_job_for_owner_without_balance(self, job_service, fake_adapter, uow_factory):
        fake_adapter.cost = 0

        job_id = await job_service.create_job("newcomer", ProviderKind.IMAGE_A, {"prompt": "hello"})

        assert (await load_job(uow_factory, job_id)).state == JobState.PENDING
        assert await balance_of(uow_factory, "newcomer") == 0
        entries = await ledger_for(uow_factory, job_id)
        assert [(entry.entry_type, entry.amount) for entry in entries] == [(LedgerEntryType.DEBIT, 0)]

    @pytest.mark.parametrize(
        "owner,kind,params",
        [
            ("", "image_a", {"prompt": "x"}),
            (OWNER, "hologram", {"prompt": "x"}),
            (OWNER, "video", {"prompt": "x"}),
            (OWNER, "image_a", {}),
        ],
    )
    async def test_invalid_requests(self, job_service, uow_factory, owner, kind, params):
        await fund(uow_factory)

        with pytest.raises(InvalidParams):
            await job_service.create_job(owner, kind, params)

        assert await balance_of(uow_factory) == 100

    async def test_on_created_wakes_dispatcher(self, fake_adapter, uow_factory, publisher):
        woken = []
        service = JobService(
            {fake_adapter.kind: fake_adapter}, uow_factory, publisher, on_created=woken.append
        )
        await fund(uow_factory)

        await service.create_job(OWNER, ProviderKind.IMAGE_A, {"prompt": "a paper crane"})

        assert woken == [ProviderKind.IMAGE_A]


@pytest.mark.asyncio
class TestQueries:
    async def test_get_unknown_job(self, job_service):
        with pytest.raises(JobNotFound):
            await job_service.get_job(uuid4())

    async def test_failure_reason_only_exposed_on_failed_jobs(self, job_service, uow_factory):
        await fund(uow_factory)
        job_id = await job_service.create_job(OWNER, ProviderKind.IMAGE_A, {"prompt": "a paper crane"})
        async with await uow_factory() as uow:
            await uow.jobs.update_if_state(job_id, JobState.PENDING, failure_reason="stale note")

        assert (await job_service.get_job(job_id)).failure_reason is None

        async with await uow_factory() as uow:
            await uow.jobs.transition(
                job_id, [JobState.PENDING], JobState.FAILED, failure_reason="Generation failed at the provider"
            )

        snapshot = await job_service.get_job(job_id)
        assert snapshot.state == JobState.FAILED
        assert snapshot.failure_reason == "Generation failed at the provider"

    async def test_list_jobs_newest_first_with_filters(self, job_service, uow_factory):
        await fund(uow_factory)
        first = await job_service.create_job(OWNER, ProviderKind.IMAGE_A, {"prompt": "one"})
        second = await job_service.create_job(OWNER, ProviderKind.IMAGE_A, {"prompt": "two"})
        async with await uow_factory() as uow:
            await uow.jobs.transition(first, [JobState.PENDING], JobState.SUBMITTED, remote_id="r-1")

        listed = await job_service.list_jobs(OWNER)
        pending = await job_service.list_jobs(OWNER, JobFilter(state=JobState.PENDING))
        paged = await job_service.list_jobs(OWNER, JobFilter(limit=1, offset=1))

        assert [job.id for job in listed] == [second, first]
        assert [job.id for job in pending] == [second]
        assert [job.id for job in paged] == [first]

    async def test_deposit_and_ledger_history(self, job_service, uow_factory):
        assert await job_service.deposit(OWNER, 40, note="card top-up") == 40
        await job_service.create_job(OWNER, ProviderKind.IMAGE_A, {"prompt": "a paper crane"})

        entries = await job_service.list_ledger_entries(OWNER)

        assert await job_service.get_balance(OWNER) == 30
        assert {entry.entry_type for entry in entries} == {LedgerEntryType.DEPOSIT, LedgerEntryType.DEBIT}
