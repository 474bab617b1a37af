"""
FastAPI Dependencies

The orchestrator is built per request over the process-wide settings and
the shared httpx client opened in the application lifespan.
"""

from fastapi import Depends, Request

from garment_studio.core.config import Settings, get_settings
from garment_studio.pipeline.orchestrator import PipelineOrchestrator, build_orchestrator


def get_orchestrator(
    request: Request,
    settings: Settings = Depends(get_settings),
) -> PipelineOrchestrator:
    """Returns an orchestrator wired to the production stages."""
    return build_orchestrator(settings, getattr(request.app.state, "http", None))
