"""
API Dependencies

Builds the long-lived pipeline components once per application and
exposes them to routes through FastAPI Depends().
"""

from typing import Optional

import httpx
from fastapi import Request

from cutout_orders.core.config import settings
from cutout_orders.core.logging import get_logger
from cutout_orders.core.storage import IStorage, StorageFactory
from cutout_orders.modules.orders.repository import IOrderStore, InMemoryOrderStore, SQLOrderStore
from cutout_orders.pipeline.matting import MattingClient
from cutout_orders.pipeline.orchestrator import FulfillmentOrchestrator
from cutout_orders.pipeline.persistence import ArtifactStore

logger = get_logger(__name__)


def build_http_client() -> httpx.AsyncClient:
    """Shared client for the matting API and the overlay asset."""
    return httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS, follow_redirects=True)


def build_order_store() -> IOrderStore:
    """Get the document store implementation based on settings."""
    backend = settings.ORDER_STORE_BACKEND.lower()
    if backend == "memory":
        return InMemoryOrderStore()
    if backend == "sql":
        from cutout_orders.core.database import async_session_maker
        return SQLOrderStore(async_session_maker)
    raise RuntimeError(f"Unsupported ORDER_STORE_BACKEND: {settings.ORDER_STORE_BACKEND}")


def build_orchestrator(
    http_client: httpx.AsyncClient,
    store: IOrderStore,
    storage: Optional[IStorage] = None
) -> FulfillmentOrchestrator:
    """Wire the orchestrator with its collaborators."""
    return FulfillmentOrchestrator(
        store=store,
        artifacts=ArtifactStore(storage or StorageFactory.get_storage()),
        matting=MattingClient(http_client),
        http_client=http_client,
    )


def get_order_store(request: Request) -> IOrderStore:
    return request.app.state.order_store


def get_orchestrator(request: Request) -> FulfillmentOrchestrator:
    return request.app.state.orchestrator


def get_app_storage(request: Request) -> IStorage:
    return request.app.state.storage
