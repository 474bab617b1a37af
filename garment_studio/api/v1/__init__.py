"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- POST /api/v1/edit - Synchronous pipeline run on an uploaded image
- POST /api/v1/batch - Queue a batch of images for background processing
- GET  /api/v1/batch/{task_id} - Batch task state and results
- GET  /api/v1/metrics - Prometheus metrics
"""

from fastapi import APIRouter

from garment_studio.api.v1.edit import router as edit_router
from garment_studio.api.v1.batch import router as batch_router
from garment_studio.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(edit_router, prefix="/edit", tags=["edit"])
api_v1_router.include_router(batch_router, prefix="/batch", tags=["batch"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
