"""Luma relay adapter (video).

Generations are created with POST /luma/generations and read back from
GET /luma/generations/{id}. A finished generation carries a video and a
thumbnail; both are retrieved.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

from genflow.models.job import AssetDescriptor, ProviderKind
from genflow.services.exceptions import ProviderRejected
from genflow.services.providers.base import (
    HttpProviderAdapter,
    RemoteState,
    RemoteStatus,
    failed_status,
    remote_asset,
)

IN_PROGRESS_STATES = {"pending", "queued", "dreaming", "processing"}


class LumaParams(BaseModel):
    prompt: str = Field(min_length=1, max_length=2000)
    aspect_ratio: str = Field(default="16:9", pattern=r"^\d{1,2}:\d{1,2}$")
    expand_prompt: bool = True
    loop: bool = False
    image_url: Optional[str] = None
    image_end_url: Optional[str] = None


class LumaAdapter(HttpProviderAdapter):
    kind = ProviderKind.VIDEO
    params_model = LumaParams

    async def _submit_request(self, params: LumaParams) -> str:
        body: dict[str, Any] = {
            "user_prompt": params.prompt,
            "aspect_ratio": params.aspect_ratio,
            "expand_prompt": params.expand_prompt,
            "loop": params.loop,
        }
        if params.image_url:
            body["image_url"] = params.image_url
        if params.image_end_url:
            body["image_end_url"] = params.image_end_url
        if self.config.callback_url:
            body["notify_hook"] = self.config.callback_url

        payload = await self._request("POST", "/luma/generations", json_body=body)
        if not payload.get("id"):
            raise ProviderRejected("Provider did not accept the generation", str(payload)[:500])
        return str(payload["id"])

    async def _poll_request(self, remote_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/luma/generations/{remote_id}")

    def _parse_status(self, payload: dict[str, Any]) -> RemoteStatus:
        remote_id = str(payload.get("id") or "")
        state = str(payload["state"]).lower()

        if state == "completed":
            assets: list[AssetDescriptor] = []
            video = payload.get("video") or {}
            video_url = video.get("download_url") or video.get("url")
            if video_url:
                assets.append(remote_asset(video_url, "video/mp4"))
            thumbnail = (payload.get("thumbnail") or {}).get("url")
            if thumbnail:
                assets.append(remote_asset(thumbnail, "image/jpeg"))
            return RemoteStatus(remote_id, RemoteState.SUCCEEDED, assets=assets, progress=100)
        if state == "failed":
            return failed_status(self.kind, remote_id, payload.get("failure_reason"))
        if state in IN_PROGRESS_STATES:
            return RemoteStatus(remote_id, RemoteState.IN_PROGRESS)
        raise ValueError(f"unknown generation state {state!r}")
