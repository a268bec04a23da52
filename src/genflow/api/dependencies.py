"""FastAPI dependencies exposing lifespan-built components to routes.

Everything is constructed once in the application lifespan and stored on
app.state; routes never build services themselves.
"""

from fastapi import Request

from genflow.engine import GenerationOrchestrator
from genflow.services.jobs import JobService


def get_job_service(request: Request) -> JobService:
    """Get the JobService from app state.

    Example:
        >>> @router.get("/endpoint")
        >>> async def endpoint(job_service: JobService = Depends(get_job_service)):
        ...     return await job_service.get_job(job_id)
    """
    return request.app.state.job_service


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    return request.app.state.orchestrator
