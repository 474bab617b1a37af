import pytest
from httpx import AsyncClient, ASGITransport
from typing import AsyncGenerator

from garment_studio.api.dependencies import get_orchestrator
from garment_studio.main import app
from garment_studio.pipeline.orchestrator import build_orchestrator
from tests.fakes import no_sleep


@pytest.fixture
async def client(settings, http) -> AsyncGenerator[AsyncClient, None]:
    # Upstream services are served by the FakeUpstream behind ``http``
    app.dependency_overrides[get_orchestrator] = lambda: build_orchestrator(settings, http, sleep=no_sleep)
    try:
        async with app.router.lifespan_context(app):
            async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
                yield ac
    finally:
        app.dependency_overrides.clear()
