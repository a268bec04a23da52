"""Dispatcher tests: exactly-once submission, rejection refunds, retry backoff."""

import asyncio

import pytest
from conftest import OWNER, balance_of, fund, ledger_for, load_job

from genflow.models.job import JobState
from genflow.models.ledger import LedgerEntryType
from genflow.services.exceptions import ProviderRejected, ProviderUnavailable
from genflow.workers.dispatcher import submit_backoff


def test_submit_backoff_doubles_up_to_maximum():
    assert [submit_backoff(n, 2.0, 60.0) for n in range(1, 7)] == [2, 4, 8, 16, 32, 60]


@pytest.mark.asyncio
class TestDispatcher:
    async def test_pending_job_is_submitted(self, engine, job_service, fake_adapter, uow_factory, events):
        await fund(uow_factory)
        job_id = await job_service.create_job(OWNER, engine.kind, {"prompt": "a lantern"})

        picked = await engine.dispatcher.run_once()

        job = await load_job(uow_factory, job_id)
        assert picked == 1
        assert job.state == JobState.SUBMITTED
        assert job.remote_id == "remote-1"
        assert job.next_attempt_at is None
        assert job.last_polled_at is not None
        assert fake_adapter.submitted == [{"prompt": "a lantern"}]
        assert [event["state"] for event in events] == ["pending", "submitted"]

    async def test_rejection_fails_job_and_nets_balance_to_zero(
        self, engine, job_service, fake_adapter, uow_factory
    ):
        await fund(uow_factory, amount=10)
        fake_adapter.submit_results = [ProviderRejected("Provider rejected the request", "bad size")]
        job_id = await job_service.create_job(OWNER, engine.kind, {"prompt": "a lantern"})
        assert await balance_of(uow_factory) == 0

        await engine.dispatcher.run_once()

        job = await load_job(uow_factory, job_id)
        assert job.state == JobState.FAILED
        assert job.failure_reason == "Provider rejected the request"
        assert await balance_of(uow_factory) == 10
        entry_types = sorted(entry.entry_type for entry in await ledger_for(uow_factory, job_id))
        assert entry_types == [LedgerEntryType.DEBIT, LedgerEntryType.REFUND]

    async def test_transient_failure_schedules_retry(self, engine, job_service, fake_adapter, uow_factory, settings):
        settings.submit_backoff_base_seconds = 60
        await fund(uow_factory)
        fake_adapter.submit_results = [ProviderUnavailable("Rate limit exceeded")]
        job_id = await job_service.create_job(OWNER, engine.kind, {"prompt": "a lantern"})

        await engine.dispatcher.run_once()

        job = await load_job(uow_factory, job_id)
        assert job.state == JobState.PENDING
        assert job.submit_attempts == 1
        assert job.next_attempt_at is not None
        # Backoff hides the job from the next sweep
        assert await engine.dispatcher.run_once() == 0
        assert len(fake_adapter.submitted) == 1

    async def test_retry_exhaustion_fails_and_refunds(self, engine, job_service, fake_adapter, uow_factory):
        await fund(uow_factory, amount=10)
        fake_adapter.submit_results = [ProviderUnavailable("Service unavailable (503)")] * 3
        job_id = await job_service.create_job(OWNER, engine.kind, {"prompt": "a lantern"})

        for _ in range(3):
            await engine.dispatcher.run_once()

        job = await load_job(uow_factory, job_id)
        assert job.state == JobState.FAILED
        assert job.submit_attempts == 3
        assert job.failure_reason == "Provider unavailable after 3 attempts"
        assert await balance_of(uow_factory) == 10
        assert len(fake_adapter.submitted) == 3

    async def test_transient_then_success(self, engine, job_service, fake_adapter, uow_factory):
        await fund(uow_factory)
        fake_adapter.submit_results = [ProviderUnavailable("Network error"), "remote-ok"]
        job_id = await job_service.create_job(OWNER, engine.kind, {"prompt": "a lantern"})

        await engine.dispatcher.run_once()
        await engine.dispatcher.run_once()

        job = await load_job(uow_factory, job_id)
        assert job.state == JobState.SUBMITTED
        assert job.remote_id == "remote-ok"
        assert await balance_of(uow_factory) == 90

    async def test_slow_submit_counts_as_transient(
        self, engine, job_service, fake_adapter, uow_factory, settings
    ):
        settings.provider_timeout_seconds = 0.05
        settings.submit_backoff_base_seconds = 60
        fake_adapter.submit_delay = 1.0
        await fund(uow_factory)
        job_id = await job_service.create_job(OWNER, engine.kind, {"prompt": "a lantern"})

        await engine.dispatcher.run_once()

        job = await load_job(uow_factory, job_id)
        assert job.state == JobState.PENDING
        assert job.submit_attempts == 1

    async def test_concurrent_dispatch_submits_once(self, engine, job_service, fake_adapter, uow_factory):
        await fund(uow_factory)
        fake_adapter.submit_delay = 0.05
        job_id = await job_service.create_job(OWNER, engine.kind, {"prompt": "a lantern"})
        job = await load_job(uow_factory, job_id)

        results = await asyncio.gather(engine.dispatcher.dispatch(job), engine.dispatcher.dispatch(job))

        assert sorted(results, key=lambda r: r is None) == ["remote-1", None]
        assert len(fake_adapter.submitted) == 1
        assert (await load_job(uow_factory, job_id)).state == JobState.SUBMITTED

