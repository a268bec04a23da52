"""Notification intake tests: pushed callbacks converge with polling."""

import asyncio

import pytest
from conftest import balance_of, create_submitted_job, fund, ledger_for, load_job, notification

from genflow.models.job import JobState
from genflow.models.ledger import LedgerEntryType
from genflow.services.notification_intake import IntakeResult
from genflow.services.providers.base import RemoteState, RemoteStatus


@pytest.mark.asyncio
class TestNotificationIntake:
    async def test_push_before_sweep_completes_job(self, engine, job_service, fake_adapter, uow_factory):
        await fund(uow_factory)
        job_id, remote_id = await create_submitted_job(job_service, engine, uow_factory)

        result = await engine.handle_notification(
            notification({"id": remote_id, "state": "succeeded", "urls": ["https://cdn.test/x.png"]})
        )
        await engine.retriever.drain()

        assert result == IntakeResult.APPLIED
        assert (await load_job(uow_factory, job_id)).state == JobState.COMPLETED
        # The sweep finds nothing left to poll
        assert await engine.reconciler.run_once() == 0
        assert fake_adapter.polled == []

    async def test_duplicate_push_after_completion_is_ignored(self, engine, job_service, uow_factory):
        await fund(uow_factory)
        job_id, remote_id = await create_submitted_job(job_service, engine, uow_factory)
        payload = {"id": remote_id, "state": "succeeded", "urls": ["https://cdn.test/x.png"]}

        await engine.handle_notification(notification(payload))
        await engine.retriever.drain()
        completed = await load_job(uow_factory, job_id)

        duplicate = await engine.handle_notification(notification(payload))

        job = await load_job(uow_factory, job_id)
        assert duplicate == IntakeResult.IGNORED
        assert job.state == JobState.COMPLETED
        assert job.result_assets == completed.result_assets

    async def test_malformed_payload_is_dropped(self, engine, job_service, uow_factory):
        await fund(uow_factory)
        job_id, remote_id = await create_submitted_job(job_service, engine, uow_factory)

        unsigned = await engine.handle_notification(
            notification({"id": remote_id, "state": "failed"}, authenticated=False)
        )
        garbled = await engine.handle_notification(notification({"state": "succeeded"}))

        assert unsigned == IntakeResult.DROPPED
        assert garbled == IntakeResult.DROPPED
        assert (await load_job(uow_factory, job_id)).state == JobState.SUBMITTED

    async def test_unknown_remote_id_is_ignored(self, engine):
        result = await engine.handle_notification(
            notification({"id": "never-submitted", "state": "succeeded", "urls": ["https://cdn.test/x.png"]})
        )

        assert result == IntakeResult.IGNORED

    async def test_progress_push_keeps_job_submitted(self, engine, job_service, uow_factory):
        await fund(uow_factory)
        job_id, remote_id = await create_submitted_job(job_service, engine, uow_factory)

        result = await engine.handle_notification(
            notification({"id": remote_id, "state": "in_progress", "progress": 70})
        )

        job = await load_job(uow_factory, job_id)
        assert result == IntakeResult.IGNORED
        assert job.state == JobState.SUBMITTED
        assert job.progress == 70

    async def test_poll_and_push_failure_race_refunds_once(
        self, engine, job_service, fake_adapter, uow_factory
    ):
        await fund(uow_factory)
        job_id, remote_id = await create_submitted_job(job_service, engine, uow_factory)
        fake_adapter.poll_results[remote_id] = [
            RemoteStatus(remote_id, RemoteState.FAILED, failure_reason="Generation failed at the provider")
        ]

        push, poll = await asyncio.gather(
            engine.handle_notification(notification({"id": remote_id, "state": "failed"})),
            engine.reconciler.run_once(),
        )

        job = await load_job(uow_factory, job_id)
        entries = await ledger_for(uow_factory, job_id)
        assert job.state == JobState.FAILED
        assert [entry.entry_type for entry in entries].count(LedgerEntryType.DEBIT) == 1
        assert [entry.entry_type for entry in entries].count(LedgerEntryType.REFUND) == 1
        assert await balance_of(uow_factory) == 100
        # Exactly one of the two observers performed the transition
        assert (push == IntakeResult.APPLIED) + poll == 1

    async def test_duplicate_concurrent_pushes_retrieve_once(self, engine, job_service, uow_factory):
        await fund(uow_factory)
        job_id, remote_id = await create_submitted_job(job_service, engine, uow_factory)
        payload = {"id": remote_id, "state": "succeeded", "urls": ["https://cdn.test/x.png"]}

        await asyncio.gather(
            engine.handle_notification(notification(payload)),
            engine.handle_notification(notification(payload)),
        )
        await engine.retriever.drain()

        job = await load_job(uow_factory, job_id)
        assert job.state == JobState.COMPLETED
        assert len(job.assets) == 1
        assert engine.retriever.completed_count == 1
