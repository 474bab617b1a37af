from typing import AsyncGenerator, Dict
from unittest.mock import MagicMock

import httpx
import pytest

from garment_studio.core.config import Settings
from garment_studio.pipeline.orchestrator import PipelineOrchestrator
from garment_studio.pipeline.schemas import STAGE_ORDER, ImageRef, StageName
from garment_studio.pipeline.stages import build_default_stages
from tests.fakes import TEST_SECRETS, FakeUpstream, make_png, make_stage, no_sleep


@pytest.fixture
def settings() -> Settings:
    return Settings(**TEST_SECRETS, UPSCALE_POLL_INTERVAL_SECONDS=0.0)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def http(upstream) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        yield client


@pytest.fixture
def source_image() -> ImageRef:
    return ImageRef.inline(make_png(), "image/png")


@pytest.fixture
def real_stages(settings, http) -> Dict[StageName, object]:
    return build_default_stages(settings, http, sleep=no_sleep)


@pytest.fixture
def real_orchestrator(settings, real_stages) -> PipelineOrchestrator:
    return PipelineOrchestrator(real_stages, settings)


@pytest.fixture
def fake_stages() -> Dict[StageName, MagicMock]:
    return {name: make_stage(name) for name in STAGE_ORDER}
