"""Kie task API adapter (image_c).

Jobs are created with POST /api/v1/jobs/createTask and read back from
GET /api/v1/jobs/recordInfo?taskId=... Results arrive as a JSON-encoded
"resultJson" string holding "resultUrls". Envelopes carry an application
level "code" in addition to the HTTP status.
"""

import json
from typing import Any, Literal

from pydantic import BaseModel, Field

from genflow.core.config import ProviderConfig
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

# Envelope codes that mean "try again later"
TRANSIENT_CODES = {429, 455, 500, 501, 503}

IN_PROGRESS_STATES = {"waiting", "queuing", "generating"}


class KieParams(BaseModel):
    prompt: str = Field(min_length=1, max_length=5000)
    size: Literal["1:1", "3:2", "2:3"] = "1:1"
    n: int = Field(default=1, ge=1, le=4)
    image_urls: list[str] = Field(default_factory=list, max_length=5)


class KieAdapter(HttpProviderAdapter):
    kind = ProviderKind.IMAGE_C
    params_model = KieParams

    def __init__(self, config: ProviderConfig, model: str, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.model = model

    def cost_units(self, params: dict[str, Any]) -> int:
        # Charged per generated image
        return self.config.cost_units * int(params.get("n", 1))

    async def _submit_request(self, params: KieParams) -> str:
        task_input: dict[str, Any] = {"prompt": params.prompt, "size": params.size, "n": params.n}
        if params.image_urls:
            task_input["filesUrl"] = params.image_urls
        body: dict[str, Any] = {"model": self.model, "input": task_input}
        if self.config.callback_url:
            body["callBackUrl"] = self.config.callback_url

        data = self._unwrap(await self._request("POST", "/api/v1/jobs/createTask", json_body=body))
        task_id = data.get("taskId")
        if not task_id:
            raise ProviderRejected("Provider did not accept the task", json.dumps(data)[:500])
        return str(task_id)

    async def _poll_request(self, remote_id: str) -> dict[str, Any]:
        return await self._request("GET", "/api/v1/jobs/recordInfo", params={"taskId": remote_id})

    def _parse_status(self, payload: dict[str, Any]) -> RemoteStatus:
        record = payload["data"] if "data" in payload else payload
        if not isinstance(record, dict):
            raise TypeError("task record is not an object")
        remote_id = str(record.get("taskId") or "")
        state = str(record["state"]).lower()

        if state == "success":
            urls = parse_result_urls(record.get("resultJson"))
            return RemoteStatus(
                remote_id,
                RemoteState.SUCCEEDED,
                assets=[remote_asset(url, "image/png") for url in urls],
                progress=100,
            )
        if state == "fail":
            detail = f"{record.get('failCode') or ''} {record.get('failMsg') or ''}".strip()
            return failed_status(self.kind, remote_id, detail or None)
        if state in IN_PROGRESS_STATES:
            return RemoteStatus(
                remote_id, RemoteState.IN_PROGRESS, progress=parse_progress(record.get("progress"))
            )
        raise ValueError(f"unknown task state {state!r}")

    @staticmethod
    def _unwrap(payload: dict[str, Any]) -> dict[str, Any]:
        """Check the envelope code and return its data object."""
        code = payload.get("code")
        message = str(payload.get("msg") or "")
        if code in TRANSIENT_CODES:
            raise ProviderUnavailable(f"Provider busy (code {code})", message)
        if code != 200:
            raise ProviderRejected("Provider rejected the request", f"code={code} {message}")
        data = payload.get("data")
        return data if isinstance(data, dict) else {}


def parse_result_urls(result_json: Any) -> list[str]:
    """Extract resultUrls from the (usually string-encoded) resultJson field."""
    if not result_json:
        return []
    parsed = json.loads(result_json) if isinstance(result_json, str) else result_json
    urls = parsed.get("resultUrls") or []
    return [str(url) for url in urls if url]
