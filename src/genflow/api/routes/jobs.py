"""Generation job API endpoints.

- POST /api/jobs - Create a job (debits the owner's balance)
- GET /api/jobs/{job_id} - Fetch a job snapshot
- GET /api/jobs?owner=... - List an owner's jobs, newest first

Authentication is handled by the outer HTTP layer; owner is taken as given.
"""

from typing import Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from genflow.api.dependencies import get_job_service
from genflow.models.job import JobState, ProviderKind
from genflow.services.exceptions import InsufficientBalance, InvalidParams, JobNotFound
from genflow.services.jobs import JobFilter, JobService, JobSnapshot

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/jobs", tags=["jobs"])


# Request/Response Models


class CreateJobRequest(BaseModel):
    owner: str = Field(..., min_length=1, max_length=255, description="Requesting user")
    provider_kind: ProviderKind = Field(..., description="Provider family to run the job on")
    params: dict[str, Any] = Field(default_factory=dict, description="Provider parameters")


class CreateJobResponse(BaseModel):
    job_id: UUID
    state: JobState


class JobListResponse(BaseModel):
    jobs: list[JobSnapshot]
    total: int = Field(..., description="Number of jobs in this page")
    offset: int
    limit: int


@router.post("", response_model=CreateJobResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    request: CreateJobRequest,
    job_service: JobService = Depends(get_job_service),
) -> CreateJobResponse:
    """Create a pending generation job.

    Returns:
        201 with the job id

    Raises:
        HTTPException 402: Balance does not cover the job cost
        HTTPException 422: Invalid parameters or provider not enabled
    """
    try:
        job_id = await job_service.create_job(request.owner, request.provider_kind, request.params)
    except InsufficientBalance as e:
        logger.info(
            "job.create_rejected",
            owner=request.owner,
            reason="insufficient_balance",
            required=e.required,
            available=e.available,
        )
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "Insufficient balance",
                "required": e.required,
                "available": e.available,
            },
        )
    except InvalidParams as e:
        logger.info("job.create_rejected", owner=request.owner, reason="invalid_params")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return CreateJobResponse(job_id=job_id, state=JobState.PENDING)


@router.get("/{job_id}", response_model=JobSnapshot)
async def get_job(
    job_id: UUID,
    job_service: JobService = Depends(get_job_service),
) -> JobSnapshot:
    try:
        return await job_service.get_job(job_id)
    except JobNotFound:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Job {job_id} not found")


@router.get("", response_model=JobListResponse)
async def list_jobs(
    owner: str = Query(..., min_length=1, max_length=255),
    state: Optional[JobState] = Query(default=None),
    provider_kind: Optional[ProviderKind] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    job_service: JobService = Depends(get_job_service),
) -> JobListResponse:
    jobs = await job_service.list_jobs(
        owner,
        JobFilter(state=state, provider_kind=provider_kind, limit=limit, offset=offset),
    )
    return JobListResponse(jobs=jobs, total=len(jobs), offset=offset, limit=limit)
