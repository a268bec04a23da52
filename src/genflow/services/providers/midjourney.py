"""MidJourney proxy adapter (image_a).

Speaks the midjourney-proxy relay protocol: imagine submissions return a task
id in "result", task status is fetched from /mj/task/{id}/fetch and the proxy
pushes the same task object to the notify hook.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from genflow.models.job import ProviderKind
from genflow.services.exceptions import ProviderRejected, ProviderUnavailable
from genflow.services.providers.base import (
    HttpProviderAdapter,
    RemoteState,
    RemoteStatus,
    failed_status,
    parse_progress,
    remote_asset,
)

# Proxy submit result codes
SUBMIT_SUCCESS = 1
SUBMIT_EXISTED = 21
SUBMIT_IN_QUEUE = 22
SUBMIT_QUEUE_FULL = 23
SUBMIT_BANNED_PROMPT = 24

IN_PROGRESS_STATUSES = {"NOT_START", "SUBMITTED", "MODAL", "IN_PROGRESS"}
FAILED_STATUSES = {"FAILURE", "CANCEL"}


class MidjourneyParams(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    negative_prompt: Optional[str] = Field(default=None, max_length=1000)
    aspect_ratio: Optional[str] = Field(default=None, pattern=r"^\d{1,2}:\d{1,2}$")
    stylize: Optional[int] = Field(default=None, ge=0, le=1000)
    image_urls: list[str] = Field(default_factory=list, max_length=5)


class MidjourneyAdapter(HttpProviderAdapter):
    kind = ProviderKind.IMAGE_A
    params_model = MidjourneyParams

    def _headers(self) -> dict[str, str]:
        return {"mj-api-secret": self.config.api_key}

    async def _submit_request(self, params: MidjourneyParams) -> str:
        body: dict[str, Any] = {
            "prompt": build_prompt(params),
            "base64Array": [],
            "state": "",
        }
        if params.image_urls:
            # Reference images are passed as prompt prefixes
            body["prompt"] = " ".join(params.image_urls) + " " + body["prompt"]
        if self.config.callback_url:
            body["notifyHook"] = self.config.callback_url

        payload = await self._request("POST", "/mj/submit/imagine", json_body=body)
        code = payload.get("code")
        description = payload.get("description") or ""

        if code in (SUBMIT_SUCCESS, SUBMIT_EXISTED, SUBMIT_IN_QUEUE) and payload.get("result"):
            return str(payload["result"])
        if code == SUBMIT_QUEUE_FULL:
            raise ProviderUnavailable("Provider queue is full", description)
        if code == SUBMIT_BANNED_PROMPT:
            raise ProviderRejected("Prompt rejected by the provider's content policy", description)
        raise ProviderRejected("Provider rejected the request", f"code={code} {description}")

    async def _poll_request(self, remote_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/mj/task/{remote_id}/fetch")

    def _parse_status(self, payload: dict[str, Any]) -> RemoteStatus:
        remote_id = str(payload.get("id") or "")
        status = str(payload["status"]).upper()

        if status == "SUCCESS":
            image_url = payload.get("imageUrl")
            assets = [remote_asset(image_url, "image/png")] if image_url else []
            return RemoteStatus(remote_id, RemoteState.SUCCEEDED, assets=assets, progress=100)
        if status in FAILED_STATUSES:
            return failed_status(self.kind, remote_id, payload.get("failReason"))
        if status in IN_PROGRESS_STATUSES or status == "":
            return RemoteStatus(
                remote_id, RemoteState.IN_PROGRESS, progress=parse_progress(payload.get("progress"))
            )
        raise ValueError(f"unknown task status {status!r}")


def build_prompt(params: MidjourneyParams) -> str:
    """Append MidJourney flags to the prompt text."""
    parts = [params.prompt.strip()]
    if params.aspect_ratio:
        parts.append(f"--ar {params.aspect_ratio}")
    if params.stylize is not None:
        parts.append(f"--s {params.stylize}")
    if params.negative_prompt:
        parts.append(f"--no {params.negative_prompt.strip()}")
    return " ".join(parts)
