import base64
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from garment_studio.pipeline.schemas import (
    FailureKind,
    ImageRef,
    PipelineOutcome,
    PipelineState,
    StageFailure,
    StageLogEntry,
    StageName,
)
from garment_studio.pipeline.tasks import (
    batch_status,
    build_request,
    decode_image,
    process_batch,
    process_edit_job,
)
from tests.fakes import make_png

PNG_B64 = base64.b64encode(make_png()).decode()


def done_outcome(request, url="https://cdn.example.com/final.png"):
    return PipelineOutcome(
        run_id=request.run_id,
        state=PipelineState.DONE,
        image=ImageRef.remote(url),
        log=[StageLogEntry(stage=StageName.EDIT, status="success", provider="gemini")],
    )


def failed_outcome(request):
    failure = StageFailure(
        kind=FailureKind.UPSTREAM_ERROR, message="Edit service returned no image", retryable=True, code="no_image"
    )
    return PipelineOutcome(
        run_id=request.run_id,
        state=PipelineState.FAILED,
        failure=failure,
        failed_stage=StageName.EDIT,
        log=[StageLogEntry(stage=StageName.EDIT, status="failure", failure=failure)],
    )


def patched_orchestrator(run):
    orchestrator = MagicMock()
    orchestrator.run = AsyncMock(side_effect=run)
    return patch("garment_studio.pipeline.tasks.build_orchestrator", return_value=orchestrator)


def test_decode_image_accepts_data_url():
    ref = decode_image(f"data:image/webp;base64,{PNG_B64}")

    assert ref.mime_type == "image/webp"
    assert ref.data == make_png()


def test_decode_image_rejects_garbage():
    with pytest.raises(ValueError):
        decode_image("not base64 !!")
    with pytest.raises(ValueError):
        decode_image("")


def test_build_request_options():
    request = build_request(
        PNG_B64,
        "x" * 5000,
        stages="cutout,edit",
        options={"upscale_factor": 3, "harmonization_mode": "shadow"},
    )

    assert len(request.instruction) == 4000
    assert request.enabled_stages == {StageName.CUTOUT, StageName.EDIT}
    assert request.upscale_factor == 3
    assert request.harmonization_mode.value == "shadow"


def test_process_edit_job_returns_summary():
    with patched_orchestrator(lambda request: done_outcome(request)) as build:
        result = process_edit_job.apply(kwargs={
            "image_base64": PNG_B64,
            "prompt": "Ghost mannequin",
            "run_id": "run-1",
        }).get()

    assert result["run_id"] == "run-1"
    assert result["state"] == "Done"
    assert result["image_url"] == "https://cdn.example.com/final.png"
    assert result["provider"] == "gemini"
    build.assert_called_once()


def test_process_batch_isolates_failures():
    calls = []

    def run(request):
        calls.append(request)
        if len(calls) == 2:
            return failed_outcome(request)
        return done_outcome(request)

    images = [
        {"id": "a", "image_base64": PNG_B64, "mime_type": "image/png"},
        {"id": "b", "image_base64": PNG_B64, "mime_type": "image/png"},
        {"id": "c", "image_base64": "!!corrupt!!", "mime_type": "image/png"},
        {"id": "d", "image_base64": PNG_B64, "mime_type": "image/png"},
    ]

    with patched_orchestrator(run):
        result = process_batch.apply(kwargs={"images": images, "batch_id": "batch-1"}).get()

    assert result["batch_id"] == "batch-1"
    assert result["status"] == "partial"
    statuses = {item["id"]: item["status"] for item in result["results"]}
    assert statuses == {"a": "done", "b": "error", "c": "error", "d": "done"}
    assert result["results"][1]["failed_stage"] == "edit"
    # Corrupt item never reaches the pipeline; the one after it still runs
    assert len(calls) == 3
    assert all(request.instruction == "Ghost mannequin on neutral background" for request in calls)


def test_process_batch_all_failed():
    with patched_orchestrator(lambda request: failed_outcome(request)):
        result = process_batch.apply(kwargs={
            "images": [{"id": "a", "image_base64": PNG_B64}],
            "prompt": "Flat lay on marble",
        }).get()

    assert result["status"] == "failed"
    assert result["results"][0]["error"] == "Edit service returned no image"


def test_batch_status():
    assert batch_status([{"status": "done"}, {"status": "done"}]) == "completed"
    assert batch_status([{"status": "done"}, {"status": "error"}]) == "partial"
    assert batch_status([{"status": "error"}]) == "failed"
