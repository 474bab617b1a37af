"""
Edit Endpoint - Synchronous Pipeline Run

POST /api/v1/edit - Upload a garment photo with an instruction and receive
the edited image once every enabled stage has run:
1. Input validation (file type, size, decodable image)
2. Pipeline run (cutout -> edit -> harmonize -> upscale)
3. Failed or cancelled runs map to an error status via PipelineFailedError
"""

import asyncio
import io
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, Field

from garment_studio.api.dependencies import get_orchestrator
from garment_studio.core.config import Settings, get_settings
from garment_studio.core.exceptions import PipelineFailedError, ValidationError
from garment_studio.core.logging import get_logger
from garment_studio.pipeline.orchestrator import PipelineOrchestrator
from garment_studio.pipeline.schemas import (
    CutoutProfile,
    HarmonizationMode,
    ImageRef,
    PipelineRequest,
    StageLogEntry,
    parse_stage_names,
)

logger = get_logger(__name__)
router = APIRouter()

DISCONNECT_POLL_SECONDS = 0.5


# =============================================================================
# Response Schemas
# =============================================================================

class EditResponse(BaseModel):
    """Successful pipeline run."""
    run_id: str
    image_url: str = Field(..., description="Remote URL or data URL of the final image")
    provider: Optional[str] = Field(None, description="Provider that served the edit stage")
    stages: List[StageLogEntry]
    fallbacks: List[str] = Field(default_factory=list, description="Best-effort stages that passed their input through")
    duration_ms: int = 0


# =============================================================================
# Validation
# =============================================================================

def validate_upload(data: bytes, content_type: Optional[str], max_bytes: int) -> str:
    """
    Check an uploaded image and return its MIME type.

    Raises:
        ValidationError: wrong type, empty, too large or undecodable
    """
    if not content_type or not content_type.startswith("image/"):
        raise ValidationError("Unsupported file type.", details={"image_error": True})
    if not data:
        raise ValidationError("Uploaded image is empty.", details={"image_error": True})
    if len(data) > max_bytes:
        raise ValidationError(
            f"Image too large. Maximum {max_bytes // (1024 * 1024)}MB.",
            details={"image_error": True, "size_bytes": len(data)},
        )

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError):
        raise ValidationError("Invalid or corrupted image.", details={"image_error": True})

    return content_type


async def watch_disconnect(request: Request, cancel_event: asyncio.Event):
    """Set ``cancel_event`` once the client goes away."""
    while not cancel_event.is_set():
        if await request.is_disconnected():
            logger.info("client_disconnected")
            cancel_event.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=EditResponse)
async def edit_image(
    request: Request,
    image: Optional[UploadFile] = File(None),
    prompt: str = Form(""),
    stages: Optional[str] = Form(None, description="Comma-separated stages, e.g. 'cutout,edit'"),
    cutout_profile: CutoutProfile = Form(CutoutProfile.GENERAL_LIGHT),
    mode: HarmonizationMode = Form(HarmonizationMode.RELIGHT),
    scale: Optional[int] = Form(None),
    orchestrator: PipelineOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
):
    """
    Run the pipeline on an uploaded image.

    Returns the final image as a URL (or data URL) together with the
    per-stage log. Best-effort stages that failed are listed in
    ``fallbacks``; their input image was passed through unchanged.
    """
    if image is None:
        raise ValidationError("Missing image file.", details={"image_error": True})

    data = await image.read()
    mime_type = validate_upload(data, image.content_type, settings.MAX_IMAGE_SIZE_BYTES)

    instruction = (prompt or "")[:settings.MAX_INSTRUCTION_LENGTH]

    try:
        pipeline_request = PipelineRequest(
            source=ImageRef.inline(data, mime_type),
            instruction=instruction,
            enabled_stages=parse_stage_names(stages),
            cutout_profile=cutout_profile,
            harmonization_mode=mode,
            upscale_factor=scale,
        )
    except ValueError as e:
        raise ValidationError(f"Invalid request: {e}")

    logger.info(
        "edit_request_received",
        run_id=pipeline_request.run_id,
        prompt_length=len(instruction),
        image_size_bytes=len(data),
        stages=sorted(stage.value for stage in pipeline_request.enabled_stages),
    )

    cancel_event = asyncio.Event()
    watcher = asyncio.ensure_future(watch_disconnect(request, cancel_event))
    try:
        outcome = await orchestrator.run(pipeline_request, cancel_event=cancel_event)
    finally:
        watcher.cancel()

    if not outcome.succeeded:
        raise PipelineFailedError.from_outcome(outcome)

    summary = outcome.summary()
    return EditResponse(
        run_id=outcome.run_id,
        image_url=summary["image_url"],
        provider=outcome.provider,
        stages=outcome.log,
        fallbacks=summary["fallbacks"],
        duration_ms=outcome.duration_ms,
    )
