"""Provider-pushed completion callbacks.

Callbacks arrive out of band from the reconciler sweep and converge on the
same transitions. Every outcome is acknowledged to the provider: a dropped or
ignored callback must not cause redelivery storms or surface as a job failure.
"""

from enum import Enum

import structlog

from genflow.models.job import JobState
from genflow.services.exceptions import MalformedNotification
from genflow.services.providers.base import ProviderAdapter, RawNotification
from genflow.services.transitions import JobTransitions, UowFactory

logger = structlog.get_logger(__name__)


class IntakeResult(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    DROPPED = "dropped"


class NotificationIntake:
    def __init__(
        self, adapter: ProviderAdapter, uow_factory: UowFactory, transitions: JobTransitions
    ):
        self.adapter = adapter
        self.uow_factory = uow_factory
        self.transitions = transitions

    async def handle(self, raw: RawNotification) -> IntakeResult:
        """Authenticate, attribute and apply one callback.

        Returns:
            APPLIED if the job changed state, IGNORED for unknown or already
            advanced jobs (idempotent redelivery), DROPPED for malformed or
            unauthenticated payloads
        """
        kind = self.adapter.kind
        try:
            status = self.adapter.parse_notification(raw)
        except MalformedNotification as e:
            logger.warning("notification.dropped", provider=kind.value, error=str(e))
            return IntakeResult.DROPPED

        async with await self.uow_factory() as uow:
            job = await uow.jobs.get_by_remote_id(kind, status.remote_id)

        if job is None:
            logger.info(
                "notification.ignored",
                provider=kind.value,
                remote_id=status.remote_id,
                reason="unknown_remote_id",
            )
            return IntakeResult.IGNORED

        if job.state != JobState.SUBMITTED:
            logger.info(
                "notification.ignored",
                provider=kind.value,
                job_id=str(job.id),
                state=job.state.value,
                reason="not_submitted",
            )
            return IntakeResult.IGNORED

        changed = await self.transitions.apply_remote_status(job.id, status, source="push")
        logger.info(
            "notification.handled",
            provider=kind.value,
            job_id=str(job.id),
            remote_state=status.state.value,
            changed=changed,
        )
        return IntakeResult.APPLIED if changed else IntakeResult.IGNORED
