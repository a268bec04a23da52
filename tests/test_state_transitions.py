"""State machine tests for GenerationJob.

Tests focus on the job lifecycle:
- Valid edges: pending -> submitted -> succeeded -> completed, and -> failed
- Invalid edges are rejected with clear error messages
- Compare-and-set transitions resolve concurrent writers to one winner
"""

import pytest

from genflow.models.job import (
    ALLOWED_TRANSITIONS,
    GenerationJob,
    InvalidStateTransition,
    JobState,
    ProviderKind,
    check_transition,
)
from genflow.repositories.job import GenerationJobRepository


def make_job(**fields) -> GenerationJob:
    values = {
        "owner": "alice",
        "provider_kind": ProviderKind.IMAGE_A,
        "request_params": {"prompt": "a lighthouse"},
        "cost_units": 10,
    }
    values.update(fields)
    return GenerationJob(**values)


def test_happy_path_edges_are_allowed():
    check_transition(JobState.PENDING, JobState.SUBMITTED)
    check_transition(JobState.SUBMITTED, JobState.SUCCEEDED)
    check_transition(JobState.SUCCEEDED, JobState.COMPLETED)


def test_failed_reachable_only_before_success():
    check_transition(JobState.PENDING, JobState.FAILED)
    check_transition(JobState.SUBMITTED, JobState.FAILED)

    with pytest.raises(InvalidStateTransition):
        check_transition(JobState.SUCCEEDED, JobState.FAILED)


def test_terminal_states_have_no_edges():
    assert ALLOWED_TRANSITIONS[JobState.FAILED] == frozenset()
    assert ALLOWED_TRANSITIONS[JobState.COMPLETED] == frozenset()
    assert JobState.FAILED.is_terminal
    assert JobState.COMPLETED.is_terminal
    assert not JobState.SUCCEEDED.is_terminal


def test_invalid_transition_message_lists_allowed_targets():
    job = make_job()

    with pytest.raises(InvalidStateTransition) as exc_info:
        job.ensure_transition(JobState.COMPLETED)

    message = str(exc_info.value)
    assert "pending" in message
    assert "completed" in message
    assert "failed, submitted" in message


@pytest.mark.asyncio
async def test_transition_is_compare_and_set(session):
    """The second writer expecting the old state loses without error."""
    repo = GenerationJobRepository(session)
    job = await repo.add(make_job())

    first = await repo.transition(job.id, [JobState.PENDING], JobState.SUBMITTED, remote_id="r-1")
    second = await repo.transition(job.id, [JobState.PENDING], JobState.FAILED)
    await session.commit()

    assert first is True
    assert second is False

    stored = await repo.get_by_id(job.id)
    await session.refresh(stored)
    assert stored.state == JobState.SUBMITTED
    assert stored.remote_id == "r-1"


@pytest.mark.asyncio
async def test_transition_rejects_non_edges_before_writing(session):
    repo = GenerationJobRepository(session)
    job = await repo.add(make_job())

    with pytest.raises(InvalidStateTransition):
        await repo.transition(job.id, [JobState.PENDING], JobState.COMPLETED)


@pytest.mark.asyncio
async def test_new_jobs_must_start_pending(session):
    repo = GenerationJobRepository(session)

    with pytest.raises(ValueError, match="pending"):
        await repo.add(make_job(state=JobState.SUBMITTED))
