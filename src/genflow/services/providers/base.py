"""Provider adapter contract and shared HTTP plumbing.

An adapter encapsulates one provider family's wire protocol: submit a job,
poll its remote status, and parse a pushed completion callback. Adapters never
touch the job store; all state changes happen in the engine.
"""

import asyncio
import json
import mimetypes
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Mapping, Protocol, TypeVar
from urllib.parse import urlparse

import httpx
import structlog
from pydantic import BaseModel, ValidationError

from genflow.core.config import ProviderConfig
from genflow.models.job import AssetDescriptor, ProviderKind
from genflow.services.exceptions import (
    InvalidParams,
    MalformedNotification,
    ProviderRejected,
    ProviderUnavailable,
)
from genflow.services.signature import validate_hmac_signature

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RemoteState(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RemoteStatus:
    """Provider-side status snapshot of one remote job."""

    remote_id: str
    state: RemoteState
    assets: list[AssetDescriptor] = field(default_factory=list)
    failure_reason: str | None = None
    progress: int | None = None


@dataclass
class RawNotification:
    """Callback exactly as received: raw body bytes plus request headers."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None


class ProviderAdapter(Protocol):
    """Common contract for generation providers."""

    kind: ProviderKind

    def validate_params(self, params: dict[str, Any]) -> dict[str, Any]:
        """Validate and normalize request parameters; raise InvalidParams."""

    def cost_units(self, params: dict[str, Any]) -> int:
        """Units charged for a job with these (validated) parameters."""

    async def submit(self, params: dict[str, Any]) -> str:
        """Submit a generation job and return the provider job identifier."""

    async def poll(self, remote_id: str) -> RemoteStatus:
        """Return the latest status supplied by the provider. Idempotent."""

    def parse_notification(self, raw: RawNotification) -> RemoteStatus:
        """Authenticate and decode a pushed callback; raise MalformedNotification."""


CONTENT_POLICY_MARKERS = ("nsfw", "safety", "content policy", "banned", "inappropriate", "moderation")


def public_failure_reason(raw_reason: str | None) -> str:
    """Map raw provider failure text to a user-safe reason.

    Raw provider payloads are logged, never shown to clients.
    """
    lowered = (raw_reason or "").lower()
    if any(marker in lowered for marker in CONTENT_POLICY_MARKERS):
        return "Prompt rejected by the provider's content policy"
    return "Generation failed at the provider"


def failed_status(kind: ProviderKind, remote_id: str, raw_reason: str | None) -> RemoteStatus:
    """Build a FAILED status, logging the raw provider reason."""
    logger.warning(
        "provider.remote_failed", provider=kind.value, remote_id=remote_id, detail=raw_reason
    )
    return RemoteStatus(
        remote_id, RemoteState.FAILED, failure_reason=public_failure_reason(raw_reason)
    )


def parse_progress(value: Any) -> int | None:
    """Parse provider progress ("45%", 45, "0.45") into 0-100."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = re.search(r"\d+(?:\.\d+)?", str(value))
        if not match:
            return None
        number = float(match.group())
    if 0 < number < 1 and not str(value).endswith("%"):
        number *= 100
    return max(0, min(100, int(number)))


def guess_content_type(url: str, default: str = "application/octet-stream") -> str:
    content_type, _ = mimetypes.guess_type(urlparse(url).path)
    return content_type or default


def remote_asset(url: str, default_type: str, title: str | None = None) -> AssetDescriptor:
    return AssetDescriptor(url=url, content_type=guess_content_type(url, default_type), title=title)


class HttpProviderAdapter:
    """Base class for relay-style providers speaking JSON over HTTP.

    Subclasses set kind, params_model and implement _submit_request,
    _poll_request and _parse_status.
    """

    kind: ProviderKind
    params_model: type[BaseModel]
    signature_header = "X-Genflow-Signature"

    def __init__(
        self,
        config: ProviderConfig,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize adapter.

        Args:
            config: Provider URL, credentials and callback settings
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject MockTransport)
        """
        self.config = config
        self.timeout = timeout
        self.transport = transport

    # Contract

    def validate_params(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            model = self.params_model.model_validate(params)
        except ValidationError as e:
            raise InvalidParams(f"Invalid {self.kind.value} parameters: {e}") from e
        return model.model_dump(mode="json", exclude_none=True)

    def cost_units(self, params: dict[str, Any]) -> int:
        return self.config.cost_units

    async def submit(self, params: dict[str, Any]) -> str:
        return await self._submit_request(self.params_model.model_validate(params))

    async def poll(self, remote_id: str) -> RemoteStatus:
        payload = await self._poll_request(remote_id)
        try:
            status = self._parse_status(payload)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderUnavailable("Provider returned an unreadable status", str(e)) from e
        if not status.remote_id:
            status.remote_id = remote_id
        return status

    def parse_notification(self, raw: RawNotification) -> RemoteStatus:
        signature = raw.header(self.signature_header)
        if not validate_hmac_signature(raw.body, signature, self.config.webhook_secret):
            raise MalformedNotification(f"Invalid or missing {self.signature_header} signature")

        try:
            payload = json.loads(raw.body)
        except ValueError as e:
            raise MalformedNotification(f"Callback body is not JSON: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedNotification("Callback body is not a JSON object")

        try:
            status = self._parse_status(payload)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise MalformedNotification(f"Cannot decode callback: {e}") from e

        if not status.remote_id:
            raise MalformedNotification("Callback does not identify a remote job")
        return status

    # Subclass hooks

    async def _submit_request(self, params: Any) -> str:
        raise NotImplementedError

    async def _poll_request(self, remote_id: str) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_status(self, payload: dict[str, Any]) -> RemoteStatus:
        raise NotImplementedError

    # HTTP plumbing

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}"}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a request and classify failures.

        Raises:
            ProviderUnavailable: Timeout, connection error, 429, 5xx, invalid JSON
            ProviderRejected: 400, 401, 403, 404, 422 and other 4xx
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.config.api_url,
                timeout=self.timeout,
                headers=self._headers(),
                transport=self.transport,
            ) as client:
                response = await client.request(method, path, json=json_body, params=params)
        except httpx.TimeoutException as e:
            raise ProviderUnavailable(
                f"Request timeout after {self.timeout}s", str(e)
            ) from e
        except httpx.HTTPError as e:
            raise ProviderUnavailable("Network error", str(e)) from e

        # Error classification
        if response.status_code == 429:
            raise ProviderUnavailable("Rate limit exceeded", response.text[:500])
        elif response.status_code >= 500:
            raise ProviderUnavailable(
                f"Service unavailable ({response.status_code})", response.text[:500]
            )
        elif response.status_code in (401, 403):
            raise ProviderRejected("Provider refused the request", response.text[:500])
        elif response.status_code >= 400:
            raise ProviderRejected("Provider rejected the request parameters", response.text[:500])

        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderUnavailable("Provider returned invalid JSON", response.text[:500]) from e
        if not isinstance(payload, dict):
            raise ProviderUnavailable("Provider returned unexpected JSON", response.text[:500])
        return payload


async def call_adapter(awaitable: Awaitable[T], timeout: float) -> T:
    """Await an adapter call, bounding it with timeout.

    Raises:
        ProviderUnavailable: If the call does not finish in time
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProviderUnavailable(f"Provider call exceeded {timeout}s") from e
