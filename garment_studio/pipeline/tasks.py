"""
Celery Tasks for the Edit Pipeline

- process_edit_job: one full pipeline run from a base64 image
- process_batch: sequential runs over a batch with per-item failure isolation

Tasks are never retried: generative calls are not idempotent, so a failed
run is reported rather than re-issued.
"""

import asyncio
import base64
import binascii
import traceback
import uuid
from typing import Any, Dict, List, Optional, Union

import httpx

from garment_studio.core.celery_app import celery_app
from garment_studio.core.config import settings
from garment_studio.core.logging import get_logger, set_run_context, clear_run_context
from garment_studio.pipeline.orchestrator import build_orchestrator
from garment_studio.pipeline.schemas import (
    ImageRef,
    PipelineOutcome,
    PipelineRequest,
    parse_stage_names,
)

logger = get_logger(__name__)


def decode_image(image_base64: str, mime_type: Optional[str] = None) -> ImageRef:
    """Inline ImageRef from a raw base64 payload or a ``data:`` URL."""
    if image_base64.startswith("data:"):
        header, _, image_base64 = image_base64.partition(",")
        mime_type = header[len("data:"):].split(";", 1)[0] or mime_type
    try:
        data = base64.b64decode(image_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image: {e}")
    if not data:
        raise ValueError("Image payload is empty")
    return ImageRef.inline(data, mime_type or "image/png")


def build_request(
    image_base64: str,
    prompt: str,
    mime_type: Optional[str] = None,
    stages: Optional[Union[str, List[str]]] = None,
    options: Optional[Dict[str, Any]] = None,
    run_id: Optional[str] = None,
) -> PipelineRequest:
    options = options or {}
    fields: Dict[str, Any] = {
        "source": decode_image(image_base64, mime_type),
        "instruction": (prompt or "")[:settings.MAX_INSTRUCTION_LENGTH],
        "enabled_stages": parse_stage_names(stages),
    }
    for key in ("cutout_profile", "harmonization_mode", "upscale_factor", "deadline_seconds"):
        if options.get(key) is not None:
            fields[key] = options[key]
    if run_id:
        fields["run_id"] = run_id
    return PipelineRequest(**fields)


async def _run_one(request: PipelineRequest) -> PipelineOutcome:
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as http:
        return await build_orchestrator(settings, http).run(request)


# =============================================================================
# Single Edit
# =============================================================================

@celery_app.task(
    bind=True,
    name="garment_studio.pipeline.tasks.process_edit_job",
    max_retries=0,
)
def process_edit_job(
    self,
    image_base64: str,
    prompt: str,
    mime_type: Optional[str] = None,
    stages: Optional[Union[str, List[str]]] = None,
    options: Optional[Dict[str, Any]] = None,
    run_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Run one pipeline end to end.

    Returns:
        The outcome summary (run_id, state, image_url, stages, fallbacks, ...)
    """
    run_id = run_id or self.request.id or str(uuid.uuid4())
    set_run_context(run_id)

    try:
        request = build_request(image_base64, prompt, mime_type, stages, options, run_id)
        logger.info("task_edit_started", stages=sorted(s.value for s in request.enabled_stages))

        outcome = asyncio.run(_run_one(request))

        logger.info("task_edit_completed", state=outcome.state.value)
        return outcome.summary()

    except Exception as e:
        logger.error(
            "task_edit_unexpected_error",
            error=str(e),
            traceback=traceback.format_exc()
        )
        raise

    finally:
        clear_run_context()


# =============================================================================
# Batch
# =============================================================================

def batch_status(results: List[Dict[str, Any]]) -> str:
    """completed when every item is done, failed when none is, partial otherwise."""
    done = sum(1 for item in results if item["status"] == "done")
    if done == len(results):
        return "completed"
    if done == 0:
        return "failed"
    return "partial"


async def _run_batch(
    batch_id: str,
    prompt: str,
    images: List[Dict[str, Any]],
    stages: Optional[Union[str, List[str]]],
    options: Optional[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    results = []
    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as http:
        orchestrator = build_orchestrator(settings, http)

        for index, item in enumerate(images):
            item_id = str(item.get("id") or index)
            try:
                request = build_request(
                    item.get("image_base64") or "",
                    prompt,
                    item.get("mime_type"),
                    stages,
                    options,
                )
                logger.info("batch_item_started", batch_id=batch_id, item_id=item_id)
                outcome = await orchestrator.run(request)
            except Exception as e:
                # One bad item never stops the batch
                logger.error(
                    "batch_item_failed",
                    batch_id=batch_id,
                    item_id=item_id,
                    error=str(e),
                    traceback=traceback.format_exc()
                )
                results.append({"id": item_id, "status": "error", "error": str(e) or "Processing failed"})
                continue

            summary = outcome.summary()
            if outcome.succeeded:
                results.append({
                    "id": item_id,
                    "status": "done",
                    "run_id": outcome.run_id,
                    "image_url": summary["image_url"],
                    "fallbacks": summary["fallbacks"],
                })
            else:
                logger.warning(
                    "batch_item_failed",
                    batch_id=batch_id,
                    item_id=item_id,
                    state=outcome.state.value,
                    failed_stage=summary["failed_stage"],
                )
                results.append({
                    "id": item_id,
                    "status": "error",
                    "run_id": outcome.run_id,
                    "error": summary["error"] or "Processing failed",
                    "failed_stage": summary["failed_stage"],
                })

    return results


@celery_app.task(
    bind=True,
    name="garment_studio.pipeline.tasks.process_batch",
    max_retries=0,
)
def process_batch(
    self,
    images: List[Dict[str, Any]],
    prompt: Optional[str] = None,
    stages: Optional[Union[str, List[str]]] = None,
    options: Optional[Dict[str, Any]] = None,
    batch_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Process a batch of images one after another.

    Args:
        images: Items of the form {id, image_base64, mime_type}
        prompt: Edit instruction shared by every item

    Returns:
        {batch_id, status: completed|partial|failed, results: [...]}
    """
    batch_id = batch_id or self.request.id or str(uuid.uuid4())
    prompt = (prompt or "").strip() or settings.DEFAULT_BATCH_PROMPT

    logger.info("task_batch_started", batch_id=batch_id, items=len(images))

    results = asyncio.run(_run_batch(batch_id, prompt, images, stages, options))
    status = batch_status(results)

    logger.info(
        "task_batch_completed",
        batch_id=batch_id,
        status=status,
        done=sum(1 for item in results if item["status"] == "done"),
        failed=sum(1 for item in results if item["status"] != "done"),
    )
    return {"batch_id": batch_id, "status": status, "results": results}
