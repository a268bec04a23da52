"""GenerationJob entity - externally executed generation request with lifecycle state."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import JSON, Column, Index
from sqlmodel import Field, SQLModel

from genflow.core.timezone import UTCDateTime, utcnow


class ProviderKind(str, Enum):
    """Provider family executing a job."""

    IMAGE_A = "image_a"
    IMAGE_B = "image_b"
    IMAGE_C = "image_c"
    MUSIC = "music"
    VIDEO = "video"


class JobState(str, Enum):
    """Job lifecycle state."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    COMPLETED = "completed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.FAILED, JobState.COMPLETED)


# Edges of the job state machine; every component transitions through these
ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.SUBMITTED, JobState.FAILED}),
    JobState.SUBMITTED: frozenset({JobState.SUCCEEDED, JobState.FAILED}),
    JobState.SUCCEEDED: frozenset({JobState.COMPLETED}),
    JobState.FAILED: frozenset(),
    JobState.COMPLETED: frozenset(),
}


class InvalidStateTransition(Exception):
    """Raised when attempting a transition that is not an edge of the state machine."""

    pass


def check_transition(current: JobState, target: JobState) -> None:
    """Validate a single state machine edge.

    Raises:
        InvalidStateTransition: If target is not reachable from current in one step
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        allowed = ", ".join(sorted(s.value for s in ALLOWED_TRANSITIONS[current])) or "none"
        raise InvalidStateTransition(
            f"Cannot move job from {current.value} to {target.value}. "
            f"Allowed from {current.value}: {allowed}."
        )


class AssetLocation(str, Enum):
    REMOTE = "remote"
    LOCAL = "local"


class AssetDescriptor(BaseModel):
    """One generated media artifact, remote before retrieval and local after."""

    url: str
    location: AssetLocation = AssetLocation.REMOTE
    content_type: Optional[str] = None
    title: Optional[str] = None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class GenerationJob(SQLModel, table=True):
    """GenerationJob tracks one user request executed by an external provider."""

    __tablename__ = "generation_jobs"  # type: ignore[assignment]
    __table_args__ = (Index("ix_generation_jobs_provider_state", "provider_kind", "state"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner: str = Field(max_length=255, index=True)
    provider_kind: ProviderKind
    remote_id: Optional[str] = Field(default=None, max_length=255, index=True)
    state: JobState = Field(default=JobState.PENDING)
    request_params: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    result_assets: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    cost_units: int = Field(ge=0)
    progress: int = Field(default=0, ge=0, le=100)
    failure_reason: Optional[str] = Field(default=None, max_length=1000)

    submit_attempts: int = Field(default=0, ge=0)
    retrieval_attempts: int = Field(default=0, ge=0)
    # Backoff deadline and work lease for dispatch and retrieval
    next_attempt_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    last_polled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def assets(self) -> list[AssetDescriptor]:
        return [AssetDescriptor.model_validate(item) for item in self.result_assets or []]

    def ensure_transition(self, target: JobState) -> None:
        """Validate that target is reachable from the current state.

        Raises:
            InvalidStateTransition: If the edge is not part of the state machine
        """
        check_transition(self.state, target)
