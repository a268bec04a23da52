"""Suno relay adapter (music)."""

from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from genflow.models.job import AssetDescriptor, ProviderKind
from genflow.services.exceptions import ProviderRejected
from genflow.services.providers.base import (
    HttpProviderAdapter,
    RemoteState,
    RemoteStatus,
    failed_status,
    parse_progress,
    remote_asset,
)

IN_PROGRESS_STATUSES = {"NOT_START", "SUBMITTED", "QUEUED", "IN_PROGRESS", "STREAMING"}


class SunoParams(BaseModel):
    prompt: str = Field(default="", max_length=3000)
    title: Optional[str] = Field(default=None, max_length=120)
    tags: Optional[str] = Field(default=None, max_length=200)
    model: str = "chirp-v3-5"
    custom: bool = False
    instrumental: bool = False

    @model_validator(mode="after")
    def require_content(self) -> "SunoParams":
        if not self.prompt.strip() and not (self.instrumental and self.tags):
            raise ValueError("prompt is required unless an instrumental track is described by tags")
        if self.custom and not self.title:
            raise ValueError("custom mode requires a title")
        return self


class SunoAdapter(HttpProviderAdapter):
    kind = ProviderKind.MUSIC
    params_model = SunoParams

    async def _submit_request(self, params: SunoParams) -> str:
        body: dict[str, Any] = {
            "prompt": params.prompt,
            "mv": params.model,
            "title": params.title or "",
            "tags": params.tags or "",
            "custom": params.custom,
            "make_instrumental": params.instrumental,
        }
        if self.config.callback_url:
            body["notify_hook"] = self.config.callback_url

        payload = await self._request("POST", "/suno/submit/music", json_body=body)
        if payload.get("code") != "success" or not payload.get("data"):
            raise ProviderRejected("Provider rejected the request", str(payload.get("message")))
        return str(payload["data"])

    async def _poll_request(self, remote_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/suno/fetch/{remote_id}")

    def _parse_status(self, payload: dict[str, Any]) -> RemoteStatus:
        task = payload if "task_id" in payload else payload["data"]
        remote_id = str(task.get("task_id") or "")
        status = str(task["status"]).upper()

        if status == "SUCCESS":
            assets: list[AssetDescriptor] = []
            for clip in task.get("data") or []:
                if clip.get("audio_url"):
                    assets.append(remote_asset(clip["audio_url"], "audio/mpeg", clip.get("title")))
                if clip.get("image_url"):
                    assets.append(remote_asset(clip["image_url"], "image/jpeg", clip.get("title")))
            return RemoteStatus(remote_id, RemoteState.SUCCEEDED, assets=assets, progress=100)
        if status == "FAILURE":
            return failed_status(self.kind, remote_id, task.get("fail_reason"))
        if status in IN_PROGRESS_STATUSES:
            return RemoteStatus(
                remote_id, RemoteState.IN_PROGRESS, progress=parse_progress(task.get("progress"))
            )
        raise ValueError(f"unknown task status {status!r}")
