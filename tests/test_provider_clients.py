"""External client tests (WaveSpeed, Replicate error classification, Supabase Storage, Grok).

HTTP clients are exercised against httpx.MockTransport, so no network access is needed.
Tests focus on:
- Status translation through explicit tables (unknown strings are errors)
- Classification of HTTP failures into transient vs permanent errors
- Request shape: references first, target image last
"""

import json
from uuid import uuid4

import httpx
import pytest
from fakes import FakeStorage

from atelier.models.job import Job
from atelier.models.prompt_job import PromptOperation
from atelier.services.exceptions import (
    PromptProviderRejected,
    PromptProviderUnavailable,
    ProviderRecordNotFound,
    ProviderRejected,
    ProviderUnavailable,
    StorageAuthError,
    StorageObjectNotFound,
    StorageUnavailable,
    UnrecognizedProviderState,
)
from atelier.services.generation.base import ProviderStatus, translate_status
from atelier.services.generation.replicate_client import REPLICATE_STATUSES, classify_error
from atelier.services.generation.wavespeed_client import WaveSpeedProvider
from atelier.services.prompting.grok_client import GrokPromptProvider
from atelier.services.storage.supabase_storage import SupabaseStorage


def make_job(prompt="a cat") -> Job:
    return Job(
        id=uuid4(),
        owner_id="owner-1",
        row_id="row-1",
        request_payload={
            "ref_paths": ["a.png", "c.png"],
            "target_path": "b.png",
            "prompt": prompt,
            "width": 2048,
            "height": 1024,
            "options": {"seed": 7},
        },
    )


def wavespeed(handler) -> WaveSpeedProvider:
    return WaveSpeedProvider(
        FakeStorage(),
        api_key="test-key",
        base_url="https://ws.test",
        transport=httpx.MockTransport(handler),
    )


# Status translation


def test_translate_status_maps_known_strings_case_insensitively():
    assert translate_status(REPLICATE_STATUSES, "Processing", "replicate") == ProviderStatus.RUNNING
    assert translate_status(REPLICATE_STATUSES, "canceled", "replicate") == ProviderStatus.FAILED


def test_translate_status_rejects_unknown_strings():
    with pytest.raises(UnrecognizedProviderState, match="'exploded'"):
        translate_status(REPLICATE_STATUSES, "exploded", "replicate")

    with pytest.raises(UnrecognizedProviderState):
        translate_status(REPLICATE_STATUSES, None, "replicate")


# Replicate error classification


class FakeHTTPError(Exception):
    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


@pytest.mark.parametrize(
    "exception, expected",
    [
        (httpx.ReadTimeout("read timed out"), ProviderUnavailable),
        (FakeHTTPError("Too many requests", status=429), ProviderUnavailable),
        (FakeHTTPError("Bad gateway", status=502), ProviderUnavailable),
        (FakeHTTPError("Prediction not found", status=404), ProviderRecordNotFound),
        (FakeHTTPError("Unauthorized", status=401), ProviderRejected),
        (ConnectionError("connection reset"), ProviderUnavailable),
        (FakeHTTPError("Invalid input: width", status=422), ProviderRejected),
    ],
)
def test_classify_error(exception, expected):
    assert isinstance(classify_error(exception), expected)


# WaveSpeed provider


@pytest.mark.asyncio
async def test_wavespeed_submit_sends_references_then_target():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"code": 200, "data": {"id": "ws-123"}})

    provider = wavespeed(handler)
    request_id = await provider.submit(make_job())

    assert request_id == "ws-123"
    assert captured["url"] == "https://ws.test/api/v3/bytedance/seedream-v4/edit"
    assert captured["auth"] == "Bearer test-key"
    body = captured["body"]
    assert [url.split("?")[0] for url in body["images"]] == [
        "https://storage.test/a.png",
        "https://storage.test/c.png",
        "https://storage.test/b.png",
    ]
    assert body["size"] == "2048*1024"
    assert body["seed"] == 7
    assert body["prompt"] == "a cat"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, expected",
    [
        (429, ProviderUnavailable),
        (503, ProviderUnavailable),
        (400, ProviderRejected),
        (401, ProviderRejected),
    ],
)
async def test_wavespeed_submit_classifies_http_errors(status_code, expected):
    provider = wavespeed(lambda request: httpx.Response(status_code, text="nope"))

    with pytest.raises(expected):
        await provider.submit(make_job())


@pytest.mark.asyncio
async def test_wavespeed_submit_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    with pytest.raises(ProviderUnavailable):
        await wavespeed(handler).submit(make_job())


@pytest.mark.asyncio
async def test_wavespeed_submit_without_prompt_is_rejected():
    provider = wavespeed(lambda request: httpx.Response(200, json={"data": {"id": "x"}}))

    with pytest.raises(ProviderRejected, match="no prompt"):
        await provider.submit(make_job(prompt=None))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "data, expected_status",
    [
        ({"status": "created"}, ProviderStatus.RUNNING),
        ({"status": "processing"}, ProviderStatus.RUNNING),
        ({"status": "completed", "outputs": ["https://cdn.test/o.png"]}, ProviderStatus.SUCCEEDED),
        ({"status": "failed", "error": "NSFW"}, ProviderStatus.FAILED),
    ],
)
async def test_wavespeed_poll_translates_status(data, expected_status):
    def handler(request):
        assert request.url.path == "/api/v3/predictions/ws-1/result"
        return httpx.Response(200, json={"data": data})

    state = await wavespeed(handler).poll_status("ws-1")

    assert state.status == expected_status
    if expected_status == ProviderStatus.SUCCEEDED:
        assert state.outputs == ("https://cdn.test/o.png",)
    if expected_status == ProviderStatus.FAILED:
        assert state.reason == "NSFW"


@pytest.mark.asyncio
async def test_wavespeed_poll_missing_prediction():
    provider = wavespeed(lambda request: httpx.Response(404, text="not found"))

    with pytest.raises(ProviderRecordNotFound):
        await provider.poll_status("ws-1")


@pytest.mark.asyncio
async def test_wavespeed_poll_unknown_status():
    provider = wavespeed(lambda request: httpx.Response(200, json={"data": {"status": "weird"}}))

    with pytest.raises(UnrecognizedProviderState):
        await provider.poll_status("ws-1")


# Supabase storage


def supabase(handler) -> SupabaseStorage:
    return SupabaseStorage(
        base_url="https://sb.test",
        service_key="service-key",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_sign_path_returns_absolute_url():
    def handler(request):
        assert request.url.path == "/storage/v1/object/sign/inputs/a.png"
        assert json.loads(request.content) == {"expiresIn": 600}
        return httpx.Response(200, json={"signedURL": "/object/sign/inputs/a.png?token=t"})

    url = await supabase(handler).sign_path("a.png", 600)

    assert url == "https://sb.test/storage/v1/object/sign/inputs/a.png?token=t"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code, text, expected",
    [
        (404, "missing", StorageObjectNotFound),
        (400, '{"error":"not_found"}', StorageObjectNotFound),
        (403, "denied", StorageAuthError),
        (503, "down", StorageUnavailable),
    ],
)
async def test_sign_path_classifies_errors(status_code, text, expected):
    storage = supabase(lambda request: httpx.Response(status_code, text=text))

    with pytest.raises(expected):
        await storage.sign_path("uploads/a.png", 600)


@pytest.mark.asyncio
async def test_save_output_downloads_and_uploads():
    uploads = []

    def handler(request):
        if request.url.host == "cdn.test":
            return httpx.Response(200, content=b"png-bytes", headers={"content-type": "image/png"})
        uploads.append(request)
        return httpx.Response(200, json={"Key": "outputs/x"})

    path = await supabase(handler).save_output("https://cdn.test/out.png", "owner-1")

    assert path.startswith("outputs/owner-1/")
    assert path.endswith(".png")
    assert len(uploads) == 1
    assert uploads[0].url.path == f"/storage/v1/object/{path}"
    assert uploads[0].content == b"png-bytes"


# Grok prompt provider


def grok(handler, models=("model-a", "model-b")) -> GrokPromptProvider:
    return GrokPromptProvider(
        api_key="xai-key",
        base_url="https://grok.test/v1",
        models=models,
        transport=httpx.MockTransport(handler),
    )


def completion(text: str) -> httpx.Response:
    return httpx.Response(200, json={"choices": [{"message": {"content": text}}]})


@pytest.mark.asyncio
async def test_grok_falls_back_to_next_model():
    seen = []

    def handler(request):
        model = json.loads(request.content)["model"]
        seen.append(model)
        if model == "model-a":
            return httpx.Response(429, text="rate limited")
        return completion("  A watercolor landscape  ")

    text = await grok(handler).generate(["https://storage.test/a.png"])

    assert text == "A watercolor landscape"
    assert seen == ["model-a", "model-b"]


@pytest.mark.asyncio
async def test_grok_auth_failure_is_permanent():
    with pytest.raises(PromptProviderRejected):
        await grok(lambda request: httpx.Response(401)).generate(["https://x"])


@pytest.mark.asyncio
async def test_grok_all_models_failing_is_transient():
    with pytest.raises(PromptProviderUnavailable, match="All prompt models failed"):
        await grok(lambda request: completion("")).generate(["https://x"])


@pytest.mark.asyncio
async def test_grok_enhance_includes_existing_prompt_and_images():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return completion("better prompt")

    await grok(handler, models=("model-a",)).generate(
        ["https://ref", "https://target"],
        operation=PromptOperation.ENHANCE,
        existing_prompt="a cat",
        instructions="make it blue",
    )

    content = bodies[0]["messages"][1]["content"]
    assert "Current prompt: a cat" in content[0]["text"]
    assert "make it blue" in content[0]["text"]
    assert [part["image_url"]["url"] for part in content[1:]] == ["https://ref", "https://target"]
