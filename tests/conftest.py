import io
import os
import tempfile
from typing import Callable, Dict, List

OVERLAY_URL = "https://assets.test/watermark.png"

# Settings are read at import time; point them at throwaway locations first
os.environ.setdefault("ORDER_STORE_BACKEND", "memory")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("LOCAL_STORAGE_PATH", tempfile.mkdtemp(prefix="cutout-storage-"))
os.environ.setdefault("LOG_FORMAT_JSON", "false")
os.environ["OVERLAY_URL"] = OVERLAY_URL

import httpx
import pytest
from PIL import Image

from cutout_orders.core.config import settings
from cutout_orders.core.storage import LocalStorage
from cutout_orders.modules.orders.models import Order, OrderRef
from cutout_orders.modules.orders.repository import InMemoryOrderStore
from cutout_orders.pipeline.matting import MattingClient
from cutout_orders.pipeline.orchestrator import FulfillmentOrchestrator
from cutout_orders.pipeline.persistence import ArtifactStore


def make_png(width: int, height: int, color=(255, 0, 0, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def png_factory() -> Callable[..., bytes]:
    return make_png


class FakeUpstream:
    """
    httpx transport handler standing in for the matting API and overlay host.

    Set matting_response / overlay_response to change what they return.
    """

    def __init__(self):
        self.matting_response = httpx.Response(200, content=make_png(500, 500))
        self.overlay_response = httpx.Response(200, content=make_png(32, 32, (0, 0, 255, 128)))
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if str(request.url) == settings.REMOVEBG_API_URL:
            return self._fresh(self.matting_response)
        if str(request.url) == OVERLAY_URL:
            return self._fresh(self.overlay_response)
        return httpx.Response(404)

    @staticmethod
    def _fresh(response: httpx.Response) -> httpx.Response:
        # A Response is bound to one request; hand out a copy per call
        return httpx.Response(response.status_code, headers=response.headers, content=response.content)

    @property
    def matting_calls(self) -> int:
        return sum(1 for r in self.requests if str(r.url) == settings.REMOVEBG_API_URL)

    @property
    def network_calls(self) -> int:
        return len(self.requests)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
async def http_client(upstream):
    async with httpx.AsyncClient(transport=httpx.MockTransport(upstream)) as client:
        yield client


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(base_path=str(tmp_path / "storage"), base_url="http://cdn.test", secret="test-secret")


@pytest.fixture
def order_store() -> InMemoryOrderStore:
    return InMemoryOrderStore()


@pytest.fixture
def orchestrator_factory(order_store, storage, http_client) -> Callable[..., FulfillmentOrchestrator]:
    """Build an orchestrator over the fake upstream; keyword args override the defaults."""

    def _build(deterministic_paths: bool = False, thumbnail_size=(96, 96), sign_after_upload: bool = True):
        return FulfillmentOrchestrator(
            store=order_store,
            artifacts=ArtifactStore(storage, deterministic_paths=deterministic_paths),
            matting=MattingClient(http_client, api_key="test-key"),
            http_client=http_client,
            overlay_url=OVERLAY_URL,
            thumbnail_size=thumbnail_size,
            sign_after_upload=sign_after_upload,
        )

    return _build


@pytest.fixture
def orchestrator(orchestrator_factory) -> FulfillmentOrchestrator:
    return orchestrator_factory()


@pytest.fixture
def create_order(order_store) -> Callable:
    """Create a PENDING order document and return its ref."""

    async def _create(owner_id: str, order_id: str, payload: Dict) -> OrderRef:
        ref = OrderRef(owner_id=owner_id, order_id=order_id)
        await order_store.create(ref, Order.model_validate(payload))
        return ref

    return _create


@pytest.fixture
def stored_files(storage) -> Callable[[], List[str]]:
    """Paths of every object currently in local storage."""

    def _list() -> List[str]:
        return sorted(
            str(p.relative_to(storage.base_path))
            for p in storage.base_path.rglob("*")
            if p.is_file()
        )

    return _list
