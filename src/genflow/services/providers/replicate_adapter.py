"""Replicate adapter (image_b) with error classification.

The Replicate SDK is synchronous, so every call runs in a worker thread.
Predictions are created with a completion webhook; callbacks are signed with
the Standard Webhooks scheme.
"""

import asyncio
import json
from typing import Any, Optional

import httpx
import replicate
import structlog
from pydantic import BaseModel, Field
from replicate.exceptions import ReplicateError

from genflow.core.config import ProviderConfig
from genflow.models.job import ProviderKind
from genflow.services.exceptions import (
    InvalidParams,
    MalformedNotification,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
)
from genflow.services.providers.base import (
    RawNotification,
    RemoteState,
    RemoteStatus,
    failed_status,
    remote_asset,
)
from genflow.services.signature import validate_webhook_standard_signature

logger = structlog.get_logger(__name__)

IN_PROGRESS_STATUSES = {"starting", "processing"}
FAILED_STATUSES = {"failed", "canceled"}


class ReplicateParams(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    negative_prompt: Optional[str] = Field(default=None, max_length=1000)
    width: int = Field(default=1024, ge=256, le=2048)
    height: int = Field(default=1024, ge=256, le=2048)
    num_outputs: int = Field(default=1, ge=1, le=4)
    seed: Optional[int] = None


def classify_error(exception: Exception) -> ProviderError:
    """Classify an SDK or network exception.

    Classification rules:
        - Timeout errors -> ProviderUnavailable
        - 429 (rate limit) -> ProviderUnavailable
        - 5xx (service unavailable) -> ProviderUnavailable
        - 401/403 (authentication) -> ProviderRejected
        - Content policy violations -> ProviderRejected
        - Connection errors -> ProviderUnavailable
        - Other errors -> ProviderRejected
    """
    error_message = str(exception)
    error_message_lower = error_message.lower()
    status = getattr(exception, "status", None)

    # Check for timeout errors
    if isinstance(exception, (httpx.TimeoutException, TimeoutError)) or "timeout" in error_message_lower:
        return ProviderUnavailable("Request timed out", error_message)

    # Check for rate limiting
    if status == 429 or "429" in error_message or "rate limit" in error_message_lower:
        return ProviderUnavailable("Rate limit exceeded", error_message)

    # Check for service unavailability
    if (isinstance(status, int) and status >= 500) or "service unavailable" in error_message_lower:
        return ProviderUnavailable("Service unavailable", error_message)

    # Check for authentication issues
    if (
        status in (401, 403)
        or "unauthorized" in error_message_lower
        or "forbidden" in error_message_lower
        or "invalid api token" in error_message_lower
    ):
        return ProviderRejected("Provider refused the request", error_message)

    # Check for content policy violations
    if (
        "content policy" in error_message_lower
        or "nsfw" in error_message_lower
        or "safety" in error_message_lower
    ):
        return ProviderRejected("Prompt rejected by the provider's content policy", error_message)

    # Check for connection errors (network layer)
    if isinstance(exception, (httpx.TransportError, ConnectionError, OSError)):
        return ProviderUnavailable("Network error", error_message)

    return ProviderRejected("Provider rejected the request", error_message)


class ReplicateAdapter:
    kind = ProviderKind.IMAGE_B

    def __init__(
        self,
        config: ProviderConfig,
        model_version: str,
        timeout: float = 30.0,
        client: Any = None,
    ):
        """Initialize adapter.

        Args:
            config: Provider credentials and callback settings
            model_version: "owner/model" for official models or "owner/model:version"
            timeout: SDK HTTP timeout in seconds
            client: Preconfigured replicate.Client (tests inject a fake)
        """
        self.config = config
        self.model_version = model_version
        self.client = client or replicate.Client(
            api_token=config.api_key,
            base_url=config.api_url or None,
            timeout=httpx.Timeout(timeout),
        )

    def validate_params(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            model = ReplicateParams.model_validate(params)
        except ValueError as e:
            raise InvalidParams(f"Invalid image_b parameters: {e}") from e
        return model.model_dump(mode="json", exclude_none=True)

    def cost_units(self, params: dict[str, Any]) -> int:
        return self.config.cost_units * int(params.get("num_outputs", 1))

    async def submit(self, params: dict[str, Any]) -> str:
        inputs = ReplicateParams.model_validate(params).model_dump(exclude_none=True)

        def _create() -> Any:
            kwargs: dict[str, Any] = {"input": inputs}
            if self.config.callback_url:
                kwargs["webhook"] = self.config.callback_url
                kwargs["webhook_events_filter"] = ["completed"]
            if ":" in self.model_version:
                version = self.model_version.split(":", 1)[1]
                return self.client.predictions.create(version=version, **kwargs)
            return self.client.models.predictions.create(model=self.model_version, **kwargs)

        try:
            prediction = await asyncio.to_thread(_create)
        except (ReplicateError, httpx.HTTPError, ConnectionError, OSError) as e:
            raise classify_error(e) from e
        return str(prediction.id)

    async def poll(self, remote_id: str) -> RemoteStatus:
        try:
            prediction = await asyncio.to_thread(self.client.predictions.get, remote_id)
        except (ReplicateError, httpx.HTTPError, ConnectionError, OSError) as e:
            raise classify_error(e) from e
        try:
            return self._to_status(
                str(prediction.id or remote_id),
                prediction.status,
                prediction.output,
                prediction.error,
            )
        except ValueError as e:
            raise ProviderUnavailable("Provider returned an unreadable status", str(e)) from e

    def parse_notification(self, raw: RawNotification) -> RemoteStatus:
        if not validate_webhook_standard_signature(
            raw.body,
            raw.header("webhook-id"),
            raw.header("webhook-timestamp"),
            raw.header("webhook-signature"),
            self.config.webhook_secret,
        ):
            raise MalformedNotification("Invalid or missing webhook-signature")

        try:
            payload = json.loads(raw.body)
            remote_id = str(payload["id"])
            status = payload["status"]
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedNotification(f"Cannot decode prediction callback: {e}") from e

        try:
            return self._to_status(remote_id, status, payload.get("output"), payload.get("error"))
        except ValueError as e:
            raise MalformedNotification(str(e)) from e

    def _to_status(
        self, remote_id: str, status: str, output: Any, error: Any
    ) -> RemoteStatus:
        if status == "succeeded":
            # Output format varies by model: a URL or a list of URLs
            if isinstance(output, list):
                urls = [str(item) for item in output if item]
            elif output:
                urls = [str(output)]
            else:
                urls = []
            assets = [remote_asset(url, "image/png") for url in urls]
            return RemoteStatus(remote_id, RemoteState.SUCCEEDED, assets=assets, progress=100)
        if status in FAILED_STATUSES:
            return failed_status(self.kind, remote_id, str(error) if error else status)
        if status in IN_PROGRESS_STATUSES:
            return RemoteStatus(remote_id, RemoteState.IN_PROGRESS)
        raise ValueError(f"unknown prediction status {status!r}")
