import asyncio
import base64
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from garment_studio.core.exceptions import sanitize_error_text
from garment_studio.pipeline.schemas import (
    CutoutProfile,
    FailureKind,
    HarmonizationMode,
    ImageRef,
    StageFailure,
    StageName,
    StageRequest,
    StageSuccess,
)
from garment_studio.pipeline.stages import (
    GUARDRAIL_SUFFIX,
    HARMONIZATION_PROMPTS,
    HARMONIZATION_STEPS,
    HARMONIZATION_STRENGTH,
    CutoutStage,
    EditStage,
    HarmonizeStage,
    classify_upstream_error,
)
from tests.fakes import (
    CUTOUT_IMAGE_URL,
    CUTOUT_URL,
    EDITED_BYTES,
    FAL_EDIT_URL,
    GEMINI_URL,
    HARMONIZE_URL,
    HARMONIZED_IMAGE_URL,
    POLL_URL,
    PREDICTIONS_URL,
    TEST_SECRETS,
    UPSCALED_IMAGE_URL,
    gemini_image_payload,
    gemini_text_payload,
)


def body(request: httpx.Request) -> dict:
    return json.loads(request.content)


def stage_request(image: ImageRef, **params) -> StageRequest:
    return StageRequest(image=image, params=params, timeout=30)


# =============================================================================
# Cutout
# =============================================================================

@pytest.mark.asyncio
async def test_cutout_success(real_stages, upstream, source_image):
    upstream.add("POST", CUTOUT_URL, httpx.Response(200, json={"image": {"url": CUTOUT_IMAGE_URL}}))

    result = await real_stages[StageName.CUTOUT].execute(
        stage_request(source_image, profile=CutoutProfile.MATTING)
    )

    assert isinstance(result, StageSuccess)
    assert result.image.url == CUTOUT_IMAGE_URL
    request = upstream.calls(CUTOUT_URL)[0]
    assert request.headers["Authorization"] == f"Key {TEST_SECRETS['FAL_KEY']}"
    assert body(request)["model"] == "Matting"
    assert body(request)["image_url"].startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_cutout_reads_output_url_variant(real_stages, upstream, source_image):
    upstream.add("POST", CUTOUT_URL, httpx.Response(200, json={"output": {"url": CUTOUT_IMAGE_URL}}))

    result = await real_stages[StageName.CUTOUT].execute(stage_request(source_image))

    assert isinstance(result, StageSuccess)
    assert result.image.url == CUTOUT_IMAGE_URL


@pytest.mark.asyncio
async def test_cutout_without_image_is_upstream_error(real_stages, upstream, source_image):
    upstream.add("POST", CUTOUT_URL, httpx.Response(200, json={"status": "ok"}))

    result = await real_stages[StageName.CUTOUT].execute(stage_request(source_image))

    assert isinstance(result, StageFailure)
    assert result.kind == FailureKind.UPSTREAM_ERROR
    assert result.code == "malformed_response"


@pytest.mark.asyncio
async def test_cutout_network_timeout(real_stages, upstream, source_image):
    upstream.add("POST", CUTOUT_URL, httpx.ReadTimeout("timed out"))

    result = await real_stages[StageName.CUTOUT].execute(stage_request(source_image))

    assert isinstance(result, StageFailure)
    assert result.kind == FailureKind.TIMEOUT
    assert result.code == "request_timeout"


# =============================================================================
# Edit
# =============================================================================

@pytest.mark.asyncio
async def test_edit_appends_guardrail_suffix(real_stages, upstream, source_image):
    upstream.add("POST", GEMINI_URL, httpx.Response(200, json=gemini_image_payload()))

    result = await real_stages[StageName.EDIT].execute(
        stage_request(source_image, instruction="Ghost mannequin on white")
    )

    assert isinstance(result, StageSuccess)
    assert result.provider == "gemini"
    assert result.image.data == EDITED_BYTES
    request = upstream.calls(GEMINI_URL)[0]
    assert request.headers["x-goog-api-key"] == TEST_SECRETS["GEMINI_API_KEY"]
    parts = body(request)["contents"][0]["parts"]
    assert parts[0]["text"] == f"Ghost mannequin on white\n\n{GUARDRAIL_SUFFIX}"
    assert base64.b64decode(parts[1]["inline_data"]["data"]) == source_image.data


@pytest.mark.asyncio
async def test_edit_downloads_remote_input(real_stages, upstream):
    png = b"\x89PNG fake bytes"
    upstream.add("GET", CUTOUT_IMAGE_URL, httpx.Response(200, content=png, headers={"content-type": "image/png"}))
    upstream.add("POST", GEMINI_URL, httpx.Response(200, json=gemini_image_payload()))

    result = await real_stages[StageName.EDIT].execute(
        stage_request(ImageRef.remote(CUTOUT_IMAGE_URL), instruction="x")
    )

    assert isinstance(result, StageSuccess)
    sent = body(upstream.calls(GEMINI_URL)[0])["contents"][0]["parts"][1]["inline_data"]
    assert base64.b64decode(sent["data"]) == png


@pytest.mark.asyncio
async def test_build_prompt_truncates_long_instructions(real_stages, settings):
    edit = real_stages[StageName.EDIT]

    prompt = edit.build_prompt("a" * (settings.MAX_INSTRUCTION_LENGTH + 500))

    assert prompt == "a" * settings.MAX_INSTRUCTION_LENGTH + "\n\n" + GUARDRAIL_SUFFIX


@pytest.mark.asyncio
async def test_edit_policy_rejection_makes_no_call(real_stages, upstream, source_image):
    result = await real_stages[StageName.EDIT].execute(
        stage_request(source_image, instruction="Put this on a child model")
    )

    assert isinstance(result, StageFailure)
    assert result.kind == FailureKind.POLICY_REJECTED
    assert not result.retryable
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_edit_text_only_response(real_stages, upstream, source_image):
    upstream.add("POST", GEMINI_URL, httpx.Response(200, json=gemini_text_payload("I cannot do that.")))

    result = await real_stages[StageName.EDIT].execute(stage_request(source_image, instruction="x"))

    assert isinstance(result, StageFailure)
    assert result.kind == FailureKind.UPSTREAM_ERROR
    assert result.code == "no_image"
    assert result.message == "I cannot do that."


@pytest.mark.asyncio
async def test_edit_quota_error_is_classified_and_sanitized(real_stages, upstream, source_image):
    upstream.add("POST", GEMINI_URL, httpx.Response(429, json={
        "error": {
            "status": "RESOURCE_EXHAUSTED",
            "message": (
                f"Quota exceeded for key={TEST_SECRETS['GEMINI_API_KEY']}, "
                "see https://ai.google.dev/gemini-api/docs/rate-limits"
            ),
        }
    }))

    result = await real_stages[StageName.EDIT].execute(stage_request(source_image, instruction="x"))

    assert isinstance(result, StageFailure)
    assert result.code == "quota_exceeded"
    assert result.http_status == 429
    assert TEST_SECRETS["GEMINI_API_KEY"] not in result.message
    assert "https://" not in result.message
    assert "RESOURCE_EXHAUSTED" in result.message


@pytest.mark.asyncio
async def test_edit_invalid_argument_is_invalid_input(real_stages, upstream, source_image):
    upstream.add("POST", GEMINI_URL, httpx.Response(400, json={
        "error": {"status": "INVALID_ARGUMENT", "message": "Unable to process input image."}
    }))

    result = await real_stages[StageName.EDIT].execute(stage_request(source_image, instruction="x"))

    assert result.code == "invalid_input"


@pytest.mark.asyncio
async def test_edit_secondary_provider_recovers_text_only(settings, http, upstream, source_image):
    settings = settings.model_copy(update={"EDIT_FALLBACK_ENABLED": True})
    edit = EditStage(settings, http)
    upstream.add("POST", GEMINI_URL, httpx.Response(200, json=gemini_text_payload()))
    upstream.add("POST", FAL_EDIT_URL, httpx.Response(200, json={"images": [{"url": "https://cdn.example.com/nb.png"}]}))

    result = await edit.execute(stage_request(source_image, instruction="Ghost mannequin"))

    assert isinstance(result, StageSuccess)
    assert result.provider == "fal-nano-banana"
    assert result.image.url == "https://cdn.example.com/nb.png"
    fal_body = body(upstream.calls(FAL_EDIT_URL)[0])
    assert fal_body["prompt"].endswith(GUARDRAIL_SUFFIX)
    assert fal_body["image_urls"][0].startswith("data:image/png;base64,")


@pytest.mark.asyncio
async def test_edit_secondary_provider_not_used_for_quota(settings, http, upstream, source_image):
    settings = settings.model_copy(update={"EDIT_FALLBACK_ENABLED": True})
    edit = EditStage(settings, http)
    upstream.add("POST", GEMINI_URL, httpx.Response(429, json={"error": {"message": "quota"}}))

    result = await edit.execute(stage_request(source_image, instruction="x"))

    assert result.code == "quota_exceeded"
    assert upstream.calls(FAL_EDIT_URL) == []


@pytest.mark.asyncio
async def test_edit_secondary_provider_disabled_by_default(real_stages, upstream, source_image):
    upstream.add("POST", GEMINI_URL, httpx.Response(200, json=gemini_text_payload()))

    result = await real_stages[StageName.EDIT].execute(stage_request(source_image, instruction="x"))

    assert isinstance(result, StageFailure)
    assert upstream.calls(FAL_EDIT_URL) == []


@pytest.mark.asyncio
async def test_edit_both_providers_fail(settings, http, upstream, source_image):
    settings = settings.model_copy(update={"EDIT_FALLBACK_ENABLED": True})
    edit = EditStage(settings, http)
    upstream.add("POST", GEMINI_URL, httpx.Response(200, json=gemini_text_payload("no")))
    upstream.add("POST", FAL_EDIT_URL, httpx.Response(500, json={"detail": "overloaded"}))

    result = await edit.execute(stage_request(source_image, instruction="x"))

    assert isinstance(result, StageFailure)
    assert result.message.startswith("Both edit providers failed.")
    assert "overloaded" in result.message


# =============================================================================
# Harmonize
# =============================================================================

@pytest.mark.asyncio
async def test_harmonize_sends_fixed_strength(real_stages, upstream):
    upstream.add("POST", HARMONIZE_URL, httpx.Response(200, json={"images": [{"url": HARMONIZED_IMAGE_URL}]}))

    result = await real_stages[StageName.HARMONIZE].execute(
        stage_request(ImageRef.remote(CUTOUT_IMAGE_URL), mode=HarmonizationMode.SHADOW)
    )

    assert isinstance(result, StageSuccess)
    assert result.image.url == HARMONIZED_IMAGE_URL
    sent = body(upstream.calls(HARMONIZE_URL)[0])
    assert sent == {
        "image_url": CUTOUT_IMAGE_URL,
        "prompt": HARMONIZATION_PROMPTS[HarmonizationMode.SHADOW],
        "strength": HARMONIZATION_STRENGTH,
        "num_inference_steps": HARMONIZATION_STEPS,
    }
    assert HARMONIZATION_STRENGTH == 0.3


@pytest.mark.asyncio
async def test_harmonize_http_error(real_stages, upstream, source_image):
    upstream.add("POST", HARMONIZE_URL, httpx.Response(503, text="unavailable"))

    result = await real_stages[StageName.HARMONIZE].execute(stage_request(source_image))

    assert isinstance(result, StageFailure)
    assert result.code == "http_error"
    assert result.http_status == 503


# =============================================================================
# Upscale
# =============================================================================

@pytest.mark.asyncio
async def test_upscale_submits_and_polls(real_stages, upstream):
    upstream.add("POST", PREDICTIONS_URL, httpx.Response(
        201, json={"id": "job-123", "urls": {"get": POLL_URL}}
    ))
    upstream.add(
        "GET", POLL_URL,
        httpx.Response(200, json={"status": "starting"}),
        httpx.Response(200, json={"status": "succeeded", "output": UPSCALED_IMAGE_URL}),
    )

    result = await real_stages[StageName.UPSCALE].execute(
        stage_request(ImageRef.remote(HARMONIZED_IMAGE_URL), scale=2)
    )

    assert isinstance(result, StageSuccess)
    assert result.image.url == UPSCALED_IMAGE_URL
    submit = upstream.calls(PREDICTIONS_URL, method="POST")[0]
    assert submit.headers["Authorization"] == f"Token {TEST_SECRETS['REPLICATE_API_TOKEN']}"
    assert body(submit)["input"] == {"image": HARMONIZED_IMAGE_URL, "scale": 2, "face_enhance": False}
    assert len(upstream.calls(POLL_URL, method="GET")) == 2


@pytest.mark.asyncio
async def test_upscale_poll_budget_exhausted(real_stages, upstream, settings, source_image):
    upstream.add("POST", PREDICTIONS_URL, httpx.Response(201, json={"id": "job-123", "urls": {"get": POLL_URL}}))
    upstream.add("GET", POLL_URL, httpx.Response(200, json={"status": "processing"}))

    result = await real_stages[StageName.UPSCALE].execute(stage_request(source_image))

    assert isinstance(result, StageFailure)
    assert result.kind == FailureKind.TIMEOUT
    assert result.code == "poll_budget_exhausted"
    assert len(upstream.calls(POLL_URL, method="GET")) == settings.UPSCALE_POLL_MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_upscale_job_failed(real_stages, upstream, source_image):
    upstream.add("POST", PREDICTIONS_URL, httpx.Response(201, json={"id": "job-123", "urls": {"get": POLL_URL}}))
    upstream.add("GET", POLL_URL, httpx.Response(200, json={"status": "failed", "error": "bad input"}))

    result = await real_stages[StageName.UPSCALE].execute(stage_request(source_image))

    assert result.kind == FailureKind.UPSTREAM_ERROR
    assert result.code == "job_failed"
    assert result.message == "bad input"


@pytest.mark.asyncio
async def test_upscale_missing_poll_url(real_stages, upstream, source_image):
    upstream.add("POST", PREDICTIONS_URL, httpx.Response(201, json={"id": "job-123"}))

    result = await real_stages[StageName.UPSCALE].execute(stage_request(source_image))

    assert result.kind == FailureKind.UPSTREAM_ERROR
    assert result.code == "malformed_response"
    assert upstream.calls(POLL_URL) == []


@pytest.mark.asyncio
async def test_upscale_poll_urls_not_an_object(real_stages, upstream, source_image):
    upstream.add("POST", PREDICTIONS_URL, httpx.Response(201, json={"id": "j", "urls": "https://x/get"}))

    result = await real_stages[StageName.UPSCALE].execute(stage_request(source_image))

    assert isinstance(result, StageFailure)
    assert result.code == "malformed_response"
    assert upstream.calls(POLL_URL) == []


# =============================================================================
# Stage contract: malformed payloads, unexpected errors, own timeout
# =============================================================================

@pytest.mark.asyncio
async def test_edit_non_image_mime_type_is_malformed(real_stages, upstream, source_image):
    upstream.add("POST", GEMINI_URL, httpx.Response(
        200, json=gemini_image_payload(mime_type="application/octet-stream")
    ))

    result = await real_stages[StageName.EDIT].execute(stage_request(source_image, instruction="x"))

    assert isinstance(result, StageFailure)
    assert result.kind == FailureKind.UPSTREAM_ERROR
    assert result.code == "malformed_response"


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {"candidates": [{"content": "not an object"}]},
    {"candidates": [{"content": {"parts": "nope"}}]},
    {"candidates": "nope", "promptFeedback": "blocked"},
])
async def test_edit_odd_response_shapes_fail_cleanly(real_stages, upstream, source_image, payload):
    upstream.add("POST", GEMINI_URL, httpx.Response(200, json=payload))

    result = await real_stages[StageName.EDIT].execute(stage_request(source_image, instruction="x"))

    assert isinstance(result, StageFailure)
    assert result.code == "no_image"


@pytest.mark.asyncio
async def test_unexpected_client_error_becomes_failure(settings, http, source_image):
    client = MagicMock()
    client.harmonize = AsyncMock(side_effect=KeyError("images"))
    stage = HarmonizeStage(settings, http, client=client)

    result = await stage.execute(stage_request(source_image, mode=HarmonizationMode.RELIGHT))

    assert isinstance(result, StageFailure)
    assert result.kind == FailureKind.UPSTREAM_ERROR
    assert result.code == "malformed_response"
    assert result.message == "Harmonize service returned an unexpected response"


@pytest.mark.asyncio
async def test_stage_bounded_by_its_own_timeout(settings, http, source_image):
    async def hang(*_args):
        await asyncio.sleep(10)

    client = MagicMock()
    client.remove_background = AsyncMock(side_effect=hang)
    stage = CutoutStage(settings, http, client=client)

    result = await stage.execute(StageRequest(image=source_image, params={}, timeout=0.05))

    assert isinstance(result, StageFailure)
    assert result.kind == FailureKind.TIMEOUT
    assert result.code == "stage_timeout"


# =============================================================================
# Error classification / sanitizing
# =============================================================================

@pytest.mark.parametrize("message,status,expected", [
    ("anything", 429, "quota_exceeded"),
    ("RESOURCE_EXHAUSTED - Quota exceeded", 403, "quota_exceeded"),
    ("INVALID_ARGUMENT - bad image", 400, "invalid_input"),
    ("Image too large", 413, "invalid_input"),
    ("Internal error", 500, "http_error"),
    ("returned a non-JSON response", None, "malformed_response"),
])
def test_classify_upstream_error(message, status, expected):
    assert classify_upstream_error(message, status) == expected


def test_sanitize_error_text():
    text = (
        "failed calling https://api.example.com/v1?token=abc123 with "
        "Authorization: Key sekret-value and data:image/png;base64,AAAA"
    )

    cleaned = sanitize_error_text(text, secrets=["sekret-value"])

    assert "https://" not in cleaned
    assert "abc123" not in cleaned
    assert "sekret-value" not in cleaned
    assert "AAAA" not in cleaned
    assert len(sanitize_error_text("x" * 2000)) == 500
