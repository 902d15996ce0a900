from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport

from cutout_orders.api.dependencies import build_orchestrator
from cutout_orders.core.storage import StorageFactory
from cutout_orders.main import app


@pytest.fixture
async def client(http_client) -> AsyncGenerator[AsyncClient, None]:
    # Trigger lifespan events (startup/shutdown), then route the pipeline's
    # outbound calls through the fake upstream
    StorageFactory.reset()
    async with app.router.lifespan_context(app):
        app.state.orchestrator = build_orchestrator(http_client, app.state.order_store, app.state.storage)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac
    StorageFactory.reset()
