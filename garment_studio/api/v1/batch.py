"""
Batch Endpoints - Background Processing

POST /api/v1/batch - Queue images for sequential processing by a worker
GET  /api/v1/batch/{task_id} - Task state and per-item results
"""

from typing import Any, Dict, List, Optional

from celery.result import AsyncResult
from fastapi import APIRouter
from pydantic import BaseModel, Field, field_validator

from garment_studio.core.celery_app import celery_app
from garment_studio.core.config import settings
from garment_studio.core.exceptions import ValidationError
from garment_studio.core.logging import get_logger
from garment_studio.pipeline.schemas import StageName, parse_stage_names
from garment_studio.pipeline.tasks import process_batch

logger = get_logger(__name__)
router = APIRouter()

MAX_BATCH_ITEMS = 50


# =============================================================================
# Request/Response Schemas
# =============================================================================

class BatchImage(BaseModel):
    """One image in a batch."""
    id: Optional[str] = None
    image_base64: str = Field(..., description="Base64 encoded image or data URL")
    mime_type: str = Field(default="image/png")

    @field_validator("image_base64")
    @classmethod
    def validate_image_size(cls, v: str) -> str:
        """Validate that the base64 image doesn't exceed the maximum size."""
        decoded_size_bytes = len(v) * 3 / 4  # Approximate decoded size
        if decoded_size_bytes > settings.MAX_IMAGE_SIZE_BYTES:
            raise ValueError(
                f"Image size ({decoded_size_bytes / (1024 * 1024):.2f}MB) exceeds maximum "
                f"({settings.MAX_IMAGE_SIZE_BYTES // (1024 * 1024)}MB)"
            )
        return v


class BatchRequest(BaseModel):
    """Request to process a batch of images with one instruction."""
    prompt: Optional[str] = Field(None, description="Defaults to a ghost mannequin edit")
    images: List[BatchImage] = Field(..., min_length=1, max_length=MAX_BATCH_ITEMS)
    stages: Optional[List[str]] = None


class BatchResponse(BaseModel):
    task_id: str
    status: str
    items: int


class BatchStatusResponse(BaseModel):
    task_id: str
    state: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=BatchResponse, status_code=202)
async def create_batch(request: BatchRequest):
    """Queue a batch; items run one after another and fail independently."""
    try:
        stages = parse_stage_names(request.stages)
    except ValueError as e:
        raise ValidationError(str(e))
    if StageName.EDIT not in stages:
        raise ValidationError("The edit stage cannot be disabled")

    task = process_batch.delay(
        images=[image.model_dump() for image in request.images],
        prompt=request.prompt,
        stages=sorted(stage.value for stage in stages),
    )

    logger.info("batch_dispatched", task_id=task.id, items=len(request.images))

    return BatchResponse(task_id=task.id, status="queued", items=len(request.images))


@router.get("/{task_id}", response_model=BatchStatusResponse)
async def get_batch_status(task_id: str):
    """Celery task state; the batch result once the task has finished."""
    result = AsyncResult(task_id, app=celery_app)
    response = BatchStatusResponse(task_id=task_id, state=result.state)

    if result.successful():
        response.result = result.result
    elif result.failed():
        response.error = str(result.result)

    return response
