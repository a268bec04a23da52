"""Provider callback endpoints.

Every provider family posts completion callbacks to /webhooks/{provider_kind}.
The raw body and headers are handed to the provider's notification intake,
which authenticates the payload. Callbacks are always acknowledged with 200 so
providers do not retry payloads that can never be applied.
"""

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, status

from genflow.api.dependencies import get_orchestrator
from genflow.engine import GenerationOrchestrator
from genflow.models.job import ProviderKind
from genflow.services.providers.base import RawNotification

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post("/{provider_kind}")
async def receive_provider_callback(
    provider_kind: ProviderKind,
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """Receive a provider callback.

    Returns:
        200 {"status": "applied" | "ignored" | "dropped"}

    Raises:
        HTTPException 404: Provider family is not enabled
    """
    if provider_kind not in orchestrator.engines:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Provider {provider_kind.value} is not enabled",
        )

    # Raw bytes exactly as received; signatures are computed over them
    raw_body = await request.body()
    raw = RawNotification(body=raw_body, headers=dict(request.headers))

    result = await orchestrator.handle_notification(provider_kind, raw)
    logger.debug("webhook.processed", provider=provider_kind.value, result=result.value)
    return {"status": result.value}
