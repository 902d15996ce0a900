import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from PIL import Image
from prometheus_client import REGISTRY

from cutout_orders.core.exceptions import InvalidInput, MissingReference, StorageWriteError
from cutout_orders.modules.orders.models import OrderEvent, OrderFailure, OrderState, OrderSuccess
from cutout_orders.pipeline.orchestrator import gather_or_cancel

PAYLOAD = {"userId": "u1", "originalURL": "https://x/img.jpg", "fileName": "cat"}


def _event(payload=None, owner_id="u1", order_id="o1") -> OrderEvent:
    return OrderEvent(order_id=order_id, owner_id=owner_id, payload=PAYLOAD if payload is None else payload)


# =============================================================================
# Success path
# =============================================================================

@pytest.mark.asyncio
async def test_fulfill_success(orchestrator, create_order, order_store, storage, stored_files, upstream):
    ref = await create_order("u1", "o1", PAYLOAD)

    outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderSuccess)
    assert upstream.matting_calls == 1

    files = stored_files()
    assert len(files) == 3
    assert [f.split("/")[:2] for f in files] == [["privates", "u1"], ["thumbnails", "u1"], ["watermarks", "u1"]]
    assert all(f.split("/")[2].startswith("cat_") and f.endswith(".png") for f in files)

    order = await order_store.get(ref)
    assert order.state is OrderState.SUCCESS
    assert order.error is None
    assert order.watermark_url == outcome.urls.watermark_url
    assert order.thumbnail_url == outcome.urls.thumbnail_url
    assert order.watermark_url.startswith("http://cdn.test/static/storage/watermarks/u1/cat_")
    assert order.thumbnail_url.startswith("http://cdn.test/static/storage/thumbnails/u1/cat_")

    assert order_store.private_images["users/u1/private_images/o1"]["url"] == outcome.private_url

    thumbnail = Image.open(storage.open_path(files[1]))
    assert thumbnail.size == (96, 96)
    watermark = Image.open(storage.open_path(files[2]))
    assert watermark.size == (500, 500)


@pytest.mark.asyncio
async def test_fulfill_sends_original_url_to_matting(orchestrator, create_order, upstream):
    await create_order("u1", "o1", PAYLOAD)

    await orchestrator.fulfill(_event())

    matting_request = upstream.requests[0]
    assert matting_request.method == "POST"
    assert b"https%3A%2F%2Fx%2Fimg.jpg" in matting_request.content
    assert matting_request.headers["X-Api-Key"] == "test-key"


@pytest.mark.asyncio
async def test_deterministic_paths_use_order_id(orchestrator_factory, create_order, stored_files):
    orchestrator = orchestrator_factory(deterministic_paths=True)
    await create_order("u1", "o1", PAYLOAD)

    outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderSuccess)
    assert stored_files() == [
        "privates/u1/cat_o1.png",
        "thumbnails/u1/cat_o1.png",
        "watermarks/u1/cat_o1.png",
    ]


@pytest.mark.asyncio
async def test_parallel_upload_and_sign(orchestrator_factory, create_order, stored_files):
    orchestrator = orchestrator_factory(sign_after_upload=False)
    await create_order("u1", "o1", PAYLOAD)

    outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderSuccess)
    assert len(stored_files()) == 3


@pytest.mark.asyncio
async def test_custom_thumbnail_box(orchestrator_factory, create_order, storage, upstream, png_factory):
    upstream.matting_response = httpx.Response(200, content=png_factory(400, 200))
    orchestrator = orchestrator_factory(deterministic_paths=True, thumbnail_size=(64, 64))
    await create_order("u1", "o1", PAYLOAD)

    await orchestrator.fulfill(_event())

    thumbnail = Image.open(storage.open_path("thumbnails/u1/cat_o1.png"))
    assert thumbnail.size == (64, 32)


# =============================================================================
# Failure paths
# =============================================================================

@pytest.mark.asyncio
async def test_empty_matting_body_marks_error(orchestrator, create_order, order_store, stored_files, upstream):
    upstream.matting_response = httpx.Response(200, content=b"")
    ref = await create_order("u1", "o1", PAYLOAD)

    outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderFailure)
    assert outcome.stage == "matting"
    assert stored_files() == []

    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error.startswith("matting: ")
    assert order.watermark_url is None
    assert order.thumbnail_url is None


@pytest.mark.asyncio
async def test_matting_http_error_marks_error(orchestrator, create_order, order_store, upstream):
    upstream.matting_response = httpx.Response(402, json={"errors": [{"title": "Insufficient credits"}]})
    ref = await create_order("u1", "o1", PAYLOAD)

    await orchestrator.fulfill(_event())

    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert "402" in order.error


@pytest.mark.asyncio
async def test_owner_mismatch_skips_matting(orchestrator, create_order, order_store, stored_files, upstream):
    payload = dict(PAYLOAD, userId="u2")
    ref = await create_order("u1", "o1", payload)

    outcome = await orchestrator.fulfill(_event(payload))

    assert isinstance(outcome, OrderFailure)
    assert upstream.matting_calls == 0
    assert stored_files() == []

    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error.startswith("authorize: ")
    assert "u2" in order.error


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["userId", "originalURL", "fileName"])
async def test_missing_field_makes_no_network_calls(orchestrator, create_order, order_store, upstream, missing):
    payload = {k: v for k, v in PAYLOAD.items() if k != missing}
    ref = await create_order("u1", "o1", payload)

    await orchestrator.fulfill(_event(payload))

    assert upstream.network_calls == 0
    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error.startswith("validate: ")
    assert missing in order.error


@pytest.mark.asyncio
async def test_blank_field_is_missing(orchestrator, create_order, order_store, upstream):
    payload = dict(PAYLOAD, fileName="   ")
    ref = await create_order("u1", "o1", payload)

    await orchestrator.fulfill(_event(payload))

    assert upstream.network_calls == 0
    assert (await order_store.get(ref)).error.startswith("validate: ")


@pytest.mark.asyncio
@pytest.mark.parametrize("field", ["userId", "fileName"])
async def test_slash_in_path_field_fails_validation(orchestrator, create_order, order_store, upstream, field):
    payload = dict(PAYLOAD, **{field: "u1/../other"})
    ref = await create_order("u1", "o1", payload)

    await orchestrator.fulfill(_event(payload))

    assert upstream.network_calls == 0
    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error.startswith("validate: ")
    assert field in order.error


@pytest.mark.asyncio
async def test_overlay_unavailable_marks_error(orchestrator, create_order, order_store, stored_files, upstream):
    upstream.overlay_response = httpx.Response(404)
    ref = await create_order("u1", "o1", PAYLOAD)

    outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderFailure)
    assert outcome.stage == "derive"
    # The private mirror is written before derivation
    assert [f.split("/")[0] for f in stored_files()] == ["privates"]

    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error.startswith("derive: watermark: ")
    assert order.watermark_url is None
    assert order.thumbnail_url is None


@pytest.mark.asyncio
async def test_thumbnail_failure_marks_error(orchestrator, create_order, order_store, stored_files):
    ref = await create_order("u1", "o1", PAYLOAD)

    with patch("cutout_orders.pipeline.orchestrator.resize", side_effect=InvalidInput("bad box")):
        outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderFailure)
    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error == "derive: thumbnail: bad box"
    assert not any(f.startswith(("thumbnails/", "watermarks/")) for f in stored_files())


@pytest.mark.asyncio
async def test_undecodable_matting_output_marks_error(orchestrator, create_order, order_store, upstream):
    upstream.matting_response = httpx.Response(200, content=b"not an image")
    ref = await create_order("u1", "o1", PAYLOAD)

    await orchestrator.fulfill(_event())

    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error.startswith("derive: ")


@pytest.mark.asyncio
async def test_storage_write_failure_marks_error(orchestrator, create_order, order_store, storage, upstream):
    storage.upload = AsyncMock(side_effect=StorageWriteError("disk full", path="privates/u1/cat.png"))
    ref = await create_order("u1", "o1", PAYLOAD)

    outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderFailure)
    assert upstream.matting_calls == 1
    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error == "private_mirror: disk full"


@pytest.mark.asyncio
async def test_derivative_upload_failure_marks_error(orchestrator, create_order, order_store, storage):
    real_upload = storage.upload

    async def upload(path, file_data, content_type="image/png"):
        if path.startswith("thumbnails/"):
            raise StorageWriteError("bucket unavailable", path=path)
        return await real_upload(path, file_data, content_type=content_type)

    storage.upload = upload
    ref = await create_order("u1", "o1", PAYLOAD)

    await orchestrator.fulfill(_event())

    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error == "persist: bucket unavailable"
    assert order.watermark_url is None


@pytest.mark.asyncio
async def test_sidecar_failure_marks_error(orchestrator, create_order, order_store):
    order_store.set_private_image = AsyncMock(side_effect=MissingReference("store down"))
    ref = await create_order("u1", "o1", PAYLOAD)

    await orchestrator.fulfill(_event())

    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.error.startswith("private_mirror: ")
    assert "store down" in order.error


@pytest.mark.asyncio
async def test_unexpected_exception_marks_error(orchestrator, create_order, order_store):
    orchestrator.matting.remove_background = AsyncMock(side_effect=RuntimeError("kaboom"))
    ref = await create_order("u1", "o1", PAYLOAD)

    outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderFailure)
    assert (await order_store.get(ref)).error == "matting: kaboom"


# =============================================================================
# Document store edge cases
# =============================================================================

@pytest.mark.asyncio
async def test_missing_order_document_raises(orchestrator, upstream):
    with pytest.raises(MissingReference):
        await orchestrator.fulfill(_event())

    assert upstream.network_calls == 0


@pytest.mark.asyncio
async def test_terminal_write_failure_propagates(orchestrator, create_order, order_store):
    ref = await create_order("u1", "o1", PAYLOAD)
    order_store.update = AsyncMock(side_effect=MissingReference("store down", path=ref.path))

    with pytest.raises(MissingReference):
        await orchestrator.fulfill(_event())


@pytest.mark.asyncio
async def test_redelivered_event_is_skipped(orchestrator, create_order, order_store, stored_files, upstream):
    ref = await create_order("u1", "o1", PAYLOAD)
    first = await orchestrator.fulfill(_event())

    second = await orchestrator.fulfill(_event())

    assert isinstance(second, OrderSuccess)
    assert second.urls == first.urls
    assert upstream.matting_calls == 1
    assert len(stored_files()) == 3
    assert (await order_store.get(ref)).state is OrderState.SUCCESS


@pytest.mark.asyncio
async def test_redelivered_error_keeps_diagnostic(orchestrator, create_order, upstream):
    payload = dict(PAYLOAD, userId="u2")
    await create_order("u1", "o1", payload)
    first = await orchestrator.fulfill(_event(payload))

    second = await orchestrator.fulfill(_event(payload))

    assert isinstance(second, OrderFailure)
    assert second.diagnostic == first.diagnostic


@pytest.mark.asyncio
async def test_concurrent_deliveries_agree_on_outcome(orchestrator, create_order, order_store):
    ref = await create_order("u1", "o1", PAYLOAD)
    before = REGISTRY.get_sample_value("cutout_orders_total", {"status": "success", "failure_stage": "none"}) or 0

    first, second = await asyncio.gather(orchestrator.fulfill(_event()), orchestrator.fulfill(_event()))

    stored = await order_store.get(ref)
    assert stored.state is OrderState.SUCCESS
    for outcome in (first, second):
        assert isinstance(outcome, OrderSuccess)
        assert outcome.urls.watermark_url == stored.watermark_url
        assert outcome.urls.thumbnail_url == stored.thumbnail_url
    after = REGISTRY.get_sample_value("cutout_orders_total", {"status": "success", "failure_stage": "none"})
    assert after - before == 1


@pytest.mark.asyncio
async def test_order_finalized_elsewhere_returns_stored_outcome(orchestrator, create_order, order_store, png_factory):
    ref = await create_order("u1", "o1", PAYLOAD)

    async def matting_then_finalized_elsewhere(image_url):
        await order_store.update(ref, {"state": OrderState.ERROR, "error": "matting: other worker"})
        return png_factory(100, 100)

    orchestrator.matting.remove_background = matting_then_finalized_elsewhere

    outcome = await orchestrator.fulfill(_event())

    assert isinstance(outcome, OrderFailure)
    assert outcome.diagnostic == "matting: other worker"
    order = await order_store.get(ref)
    assert order.state is OrderState.ERROR
    assert order.watermark_url is None


@pytest.mark.asyncio
async def test_orders_are_independent(orchestrator, create_order, order_store, upstream):
    good = await create_order("u1", "o1", PAYLOAD)
    bad_payload = dict(PAYLOAD, userId="u9")
    bad = await create_order("u1", "o2", bad_payload)

    await asyncio.gather(
        orchestrator.fulfill(_event()),
        orchestrator.fulfill(_event(bad_payload, order_id="o2")),
    )

    assert (await order_store.get(good)).state is OrderState.SUCCESS
    assert (await order_store.get(bad)).state is OrderState.ERROR


# =============================================================================
# gather_or_cancel
# =============================================================================

@pytest.mark.asyncio
async def test_gather_or_cancel_keeps_order():
    async def value(v, delay):
        await asyncio.sleep(delay)
        return v

    assert await gather_or_cancel(value("a", 0.02), value("b", 0)) == ["a", "b"]


@pytest.mark.asyncio
async def test_gather_or_cancel_cancels_siblings():
    cancelled = []

    async def slow():
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    async def boom():
        await asyncio.sleep(0)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await gather_or_cancel(slow(), boom())

    assert cancelled == [True]
