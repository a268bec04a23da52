"""Replicate adapter tests with a fake SDK client."""

import base64
import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import httpx
import pytest
from replicate.exceptions import ReplicateError

from genflow.core.config import ProviderConfig
from genflow.models.job import ProviderKind
from genflow.services.exceptions import (
    InvalidParams,
    MalformedNotification,
    ProviderRejected,
    ProviderUnavailable,
)
from genflow.services.providers.base import RawNotification, RemoteState
from genflow.services.providers.replicate_adapter import ReplicateAdapter, classify_error

SIGNING_KEY = b"replicate-signing-key"
SECRET = "whsec_" + base64.b64encode(SIGNING_KEY).decode()


class FakePredictions:
    def __init__(self):
        self.created: list[dict] = []
        self.predictions: dict[str, SimpleNamespace] = {}
        self.error: Exception | None = None

    def create(self, **kwargs):
        if self.error:
            raise self.error
        self.created.append(kwargs)
        return SimpleNamespace(id=f"pred-{len(self.created)}")

    def get(self, prediction_id):
        if self.error:
            raise self.error
        return self.predictions[prediction_id]


class FakeClient:
    def __init__(self):
        self.predictions = FakePredictions()
        self.models = SimpleNamespace(predictions=self.predictions)


def make_adapter(model_version="stability-ai/sdxl", callback_url=None):
    config = ProviderConfig(
        kind=ProviderKind.IMAGE_B,
        api_url="https://api.replicate.com",
        api_key="r8_token",
        webhook_secret=SECRET,
        concurrency=5,
        cost_units=5,
        callback_url=callback_url,
    )
    client = FakeClient()
    return ReplicateAdapter(config, model_version=model_version, client=client), client


def prediction(status, output=None, error=None, prediction_id="pred-1"):
    return SimpleNamespace(id=prediction_id, status=status, output=output, error=error)


def signed_callback(payload: dict, webhook_id="msg_1", timestamp=None) -> RawNotification:
    timestamp = timestamp or str(int(time.time()))
    body = json.dumps(payload).encode()
    content = f"{webhook_id}.{timestamp}.".encode() + body
    signature = base64.b64encode(hmac.new(SIGNING_KEY, content, hashlib.sha256).digest()).decode()
    return RawNotification(
        body=body,
        headers={
            "webhook-id": webhook_id,
            "webhook-timestamp": timestamp,
            "webhook-signature": f"v1,{signature}",
        },
    )


class TestClassifyError:
    def test_rate_limit_and_server_errors_are_transient(self):
        assert isinstance(classify_error(ReplicateError(status=429, detail="slow down")), ProviderUnavailable)
        assert isinstance(classify_error(ReplicateError(status=503, detail="overloaded")), ProviderUnavailable)
        assert isinstance(classify_error(httpx.ReadTimeout("read timeout")), ProviderUnavailable)
        assert isinstance(classify_error(ConnectionError("reset by peer")), ProviderUnavailable)

    def test_auth_and_content_policy_are_permanent(self):
        assert isinstance(classify_error(ReplicateError(status=401, detail="Unauthorized")), ProviderRejected)
        policy = classify_error(Exception("NSFW content detected"))
        assert isinstance(policy, ProviderRejected)
        assert policy.reason == "Prompt rejected by the provider's content policy"

    def test_unknown_errors_are_permanent(self):
        assert isinstance(classify_error(ValueError("invalid input: width")), ProviderRejected)


@pytest.mark.asyncio
class TestReplicateAdapter:
    async def test_submit_official_model_with_webhook(self):
        adapter, client = make_adapter(callback_url="https://app.test/webhooks/image_b")

        remote_id = await adapter.submit(adapter.validate_params({"prompt": "a koi pond", "num_outputs": 2}))

        assert remote_id == "pred-1"
        created = client.predictions.created[0]
        assert created["model"] == "stability-ai/sdxl"
        assert created["input"]["prompt"] == "a koi pond"
        assert created["webhook"] == "https://app.test/webhooks/image_b"
        assert created["webhook_events_filter"] == ["completed"]

    async def test_submit_pinned_version(self):
        adapter, client = make_adapter(model_version="stability-ai/sdxl:abc123")

        await adapter.submit({"prompt": "a koi pond"})

        assert client.predictions.created[0]["version"] == "abc123"
        assert "webhook" not in client.predictions.created[0]

    async def test_submit_errors_are_classified(self):
        adapter, client = make_adapter()
        client.predictions.error = ReplicateError(status=429, detail="rate limited")

        with pytest.raises(ProviderUnavailable):
            await adapter.submit({"prompt": "a koi pond"})

    async def test_poll_output_shapes(self):
        adapter, client = make_adapter()
        client.predictions.predictions = {
            "list": prediction("succeeded", ["https://r.test/0.png", "https://r.test/1.png"], prediction_id="list"),
            "single": prediction("succeeded", "https://r.test/only.webp", prediction_id="single"),
            "running": prediction("processing", prediction_id="running"),
            "failed": prediction("failed", error="NSFW content detected", prediction_id="failed"),
        }

        listed = await adapter.poll("list")
        single = await adapter.poll("single")
        running = await adapter.poll("running")
        failed = await adapter.poll("failed")

        assert len(listed.assets) == 2
        assert single.assets[0].url == "https://r.test/only.webp"
        assert running.state == RemoteState.IN_PROGRESS
        assert failed.state == RemoteState.FAILED
        assert failed.failure_reason == "Prompt rejected by the provider's content policy"

    async def test_poll_unknown_status_is_transient(self):
        adapter, client = make_adapter()
        client.predictions.predictions = {"pred-1": prediction("mystery")}

        with pytest.raises(ProviderUnavailable):
            await adapter.poll("pred-1")

    async def test_parse_signed_callback(self):
        adapter, _ = make_adapter()

        status = adapter.parse_notification(
            signed_callback({"id": "pred-9", "status": "succeeded", "output": ["https://r.test/9.png"]})
        )

        assert status.remote_id == "pred-9"
        assert status.state == RemoteState.SUCCEEDED

    async def test_unsigned_callback_is_malformed(self):
        adapter, _ = make_adapter()
        raw = signed_callback({"id": "pred-9", "status": "succeeded"})
        raw.headers = {**raw.headers, "webhook-signature": "v1,Zm9yZ2Vk"}

        with pytest.raises(MalformedNotification):
            adapter.parse_notification(raw)

    async def test_replayed_callback_is_malformed(self):
        adapter, _ = make_adapter()
        raw = signed_callback({"id": "pred-9", "status": "succeeded"}, timestamp="1700000000")

        with pytest.raises(MalformedNotification):
            adapter.parse_notification(raw)


def test_cost_scales_with_outputs():
    adapter, _ = make_adapter()

    params = adapter.validate_params({"prompt": "a koi pond", "num_outputs": 3})

    assert adapter.cost_units(params) == 15
    with pytest.raises(InvalidParams):
        adapter.validate_params({"prompt": "a koi pond", "num_outputs": 9})
