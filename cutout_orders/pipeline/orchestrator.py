"""
Fulfillment Orchestrator

Brings one order from PENDING to a terminal state:

    RECEIVED -> AUTHORIZED -> MATTED -> PRIVATE_SAVED -> DERIVED -> PERSISTED -> DONE

with a direct transition to FAILED from any step.

Derivation (watermark, thumbnail) and persistence (upload + sign of both
derivatives) are parallel fan-outs joined with fail-fast semantics. Any
OrderFulfillmentError turns into a single ERROR write on the order;
MissingReference from the document store propagates to the trigger.
"""

import asyncio
import time
import traceback
from typing import Any, Awaitable, List, Optional, Tuple

import httpx

from cutout_orders.core.config import settings
from cutout_orders.core.exceptions import (
    AuthorizationError,
    DerivationError,
    InvalidInput,
    MissingField,
    MissingReference,
    OrderFulfillmentError,
    StorageWriteError,
)
from cutout_orders.core.logging import get_logger, LogContext
from cutout_orders.core.metrics import (
    active_orders_gauge,
    record_order_completion,
    track_stage_latency,
)
from cutout_orders.modules.orders.models import (
    ArtifactKind,
    DerivativeURLs,
    OrderEvent,
    OrderFailure,
    OrderOutcome,
    OrderRef,
    OrderState,
    OrderSuccess,
    PipelineState,
)
from cutout_orders.modules.orders.repository import IOrderStore
from cutout_orders.modules.orders.state_machine import OrderStateMachine
from cutout_orders.pipeline.matting import MattingClient
from cutout_orders.pipeline.persistence import ArtifactStore
from cutout_orders.pipeline.transforms import fetch_overlay, overlay, resize

logger = get_logger(__name__)

REQUIRED_FIELDS = ("userId", "originalURL", "fileName")
# Fields used as storage path segments
PATH_FIELDS = ("userId", "fileName")


async def gather_or_cancel(*aws: Awaitable[Any]) -> List[Any]:
    """
    Run awaitables concurrently and return their results in order.

    The first failure cancels the siblings still in flight, waits for them
    to finish and is re-raised.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class _Progress:
    """Tracks the current step and last reached state of one invocation."""

    def __init__(self, log_context: LogContext):
        self.log_context = log_context
        self.state = PipelineState.RECEIVED
        self.step = "validate"
        # Set when another invocation finalized the order first
        self.superseded = False

    def begin(self, step: str):
        self.step = step
        self.log_context.set_stage(step)

    def reach(self, state: PipelineState):
        logger.info("pipeline_state_changed", from_state=self.state.value, to_state=state.value)
        self.state = state


class FulfillmentOrchestrator:
    """
    Drives every other component for one order; nothing calls back into it.

    Args:
        store: Order document store
        artifacts: Artifact upload/sign helper
        matting: Background removal API client
        http_client: Client used to fetch the watermark tile
        overlay_url: Watermark tile URL
        thumbnail_size: (width, height) bounding box for thumbnails
        sign_after_upload: Sign each derivative only once its upload finished;
            when False the two uploads and two signatures all run in parallel
    """

    def __init__(
        self,
        store: IOrderStore,
        artifacts: ArtifactStore,
        matting: MattingClient,
        http_client: httpx.AsyncClient,
        overlay_url: Optional[str] = None,
        thumbnail_size: Optional[Tuple[int, int]] = None,
        sign_after_upload: Optional[bool] = None
    ):
        self.store = store
        self.state_machine = OrderStateMachine(store)
        self.artifacts = artifacts
        self.matting = matting
        self.http_client = http_client
        self.overlay_url = overlay_url or settings.OVERLAY_URL
        self.thumbnail_size = thumbnail_size or (settings.THUMBNAIL_WIDTH, settings.THUMBNAIL_HEIGHT)
        self.sign_after_upload = settings.SIGN_AFTER_UPLOAD if sign_after_upload is None else sign_after_upload

    # =========================================================================
    # Entry point
    # =========================================================================

    async def fulfill(self, event: OrderEvent) -> OrderOutcome:
        """
        Process one order-creation event.

        Returns the outcome written to the order. Raises MissingReference
        if the order document cannot be read or written.
        """
        ref = event.ref

        with LogContext(order_id=event.order_id, stage="received") as log_context:
            logger.info("order_received", owner_id=event.owner_id)

            existing = await self.store.get(ref)
            if existing is None:
                raise MissingReference(f"No order document at {ref.path}", path=ref.path)
            if existing.state.is_terminal:
                # At-least-once delivery: the order was finalized by an earlier attempt
                logger.info("order_redelivery_skipped", state=existing.state.value)
                return self._outcome_from_document(existing)

            progress = _Progress(log_context)
            start_time = time.time()
            active_orders_gauge.inc()
            try:
                outcome = await self._run(event, progress)
            except MissingReference:
                raise
            except OrderFulfillmentError as e:
                outcome = await self._fail(ref, progress, e.message, type(e).__name__)
            except Exception as e:
                logger.error(
                    "order_unexpected_error",
                    error=str(e),
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc()
                )
                outcome = await self._fail(ref, progress, str(e) or type(e).__name__, type(e).__name__)
            finally:
                active_orders_gauge.dec()

            if progress.superseded:
                logger.info("order_finalized_concurrently", state=outcome.state.value)
                return outcome

            duration = time.time() - start_time
            if isinstance(outcome, OrderSuccess):
                record_order_completion("success", duration=duration)
                logger.info("order_fulfilled", duration_ms=int(duration * 1000))
            else:
                record_order_completion("error", failure_stage=outcome.stage or "unknown", duration=duration)

            return outcome

    async def _fail(self, ref: OrderRef, progress: _Progress, message: str, error_type: str) -> OrderOutcome:
        failed_step = progress.step
        diagnostic = f"{failed_step}: {message}"
        logger.warning("order_failed", failed_step=failed_step, error_type=error_type, error=message)

        progress.reach(PipelineState.FAILED)
        if not await self.state_machine.mark_error(ref, diagnostic):
            return await self._stored_outcome(ref, progress)
        return OrderFailure(diagnostic=diagnostic, stage=failed_step)

    async def _stored_outcome(self, ref: OrderRef, progress: _Progress) -> OrderOutcome:
        """Outcome written by the invocation that won the terminal write."""
        progress.superseded = True
        order = await self.store.get(ref)
        if order is None:
            raise MissingReference(f"No order document at {ref.path}", path=ref.path)
        return self._outcome_from_document(order)

    @staticmethod
    def _outcome_from_document(order) -> OrderOutcome:
        if order.state is OrderState.SUCCESS:
            return OrderSuccess(
                urls=DerivativeURLs(
                    watermark_url=order.watermark_url or "",
                    thumbnail_url=order.thumbnail_url or ""
                )
            )
        return OrderFailure(diagnostic=order.error or "")

    # =========================================================================
    # Pipeline steps
    # =========================================================================

    async def _run(self, event: OrderEvent, progress: _Progress) -> OrderOutcome:
        ref = event.ref

        progress.begin("validate")
        user_id, original_url, file_name = self._extract_fields(event)

        # Runs before matting so that a foreign order never costs an API call
        progress.begin("authorize")
        self._authorize(event, user_id)
        progress.reach(PipelineState.AUTHORIZED)

        progress.begin("matting")
        with track_stage_latency("matting"):
            image = await self.matting.remove_background(original_url)
        progress.reach(PipelineState.MATTED)

        progress.begin("private_mirror")
        with track_stage_latency("private_mirror"):
            private_url = await self._save_private(ref, user_id, file_name, image)
        progress.reach(PipelineState.PRIVATE_SAVED)

        progress.begin("derive")
        with track_stage_latency("derive"):
            watermark, thumbnail = await self._derive(image)
        progress.reach(PipelineState.DERIVED)

        progress.begin("persist")
        with track_stage_latency("persist"):
            urls = await self._persist(ref, user_id, file_name, watermark, thumbnail)
        progress.reach(PipelineState.PERSISTED)

        progress.begin("finalize")
        if not await self.state_machine.mark_success(ref, urls):
            return await self._stored_outcome(ref, progress)
        progress.reach(PipelineState.DONE)

        return OrderSuccess(urls=urls, private_url=private_url)

    @staticmethod
    def _extract_fields(event: OrderEvent) -> Tuple[str, str, str]:
        values = []
        for field in REQUIRED_FIELDS:
            value = event.payload.get(field)
            if not isinstance(value, str) or not value.strip():
                raise MissingField(field, stage="validate")
            if field in PATH_FIELDS and "/" in value:
                raise InvalidInput(f"'{field}' must not contain '/'", stage="validate")
            values.append(value)
        return values[0], values[1], values[2]

    @staticmethod
    def _authorize(event: OrderEvent, user_id: str):
        if user_id != event.owner_id:
            raise AuthorizationError(
                f"userId '{user_id}' does not match the order owner '{event.owner_id}'",
                stage="authorize"
            )

    async def _save_private(self, ref: OrderRef, user_id: str, file_name: str, image: bytes) -> str:
        path = self.artifacts.path_for(ArtifactKind.PRIVATE, user_id, file_name, ref.order_id)
        url = await self.artifacts.upload_and_sign(path, image)
        try:
            await self.store.set_private_image(ref, url)
        except MissingReference as e:
            raise StorageWriteError(
                f"Private image record not written: {e.message}",
                path=ref.private_image_path,
                stage="private_mirror"
            )
        return url

    async def _derive(self, image: bytes) -> List[bytes]:
        width, height = self.thumbnail_size

        async def watermark_branch() -> bytes:
            try:
                overlay_buffer = await fetch_overlay(self.http_client, self.overlay_url)
                return await asyncio.to_thread(overlay, image, overlay_buffer)
            except Exception as e:
                raise DerivationError(f"watermark: {e}", branch="watermark", stage="derive") from e

        async def thumbnail_branch() -> bytes:
            try:
                return await asyncio.to_thread(resize, width, height, image)
            except Exception as e:
                raise DerivationError(f"thumbnail: {e}", branch="thumbnail", stage="derive") from e

        return await gather_or_cancel(watermark_branch(), thumbnail_branch())

    async def _persist(
        self,
        ref: OrderRef,
        user_id: str,
        file_name: str,
        watermark: bytes,
        thumbnail: bytes
    ) -> DerivativeURLs:
        watermark_path = self.artifacts.path_for(ArtifactKind.WATERMARK, user_id, file_name, ref.order_id)
        thumbnail_path = self.artifacts.path_for(ArtifactKind.THUMBNAIL, user_id, file_name, ref.order_id)

        if self.sign_after_upload:
            watermark_url, thumbnail_url = await gather_or_cancel(
                self.artifacts.upload_and_sign(watermark_path, watermark),
                self.artifacts.upload_and_sign(thumbnail_path, thumbnail),
            )
        else:
            _, _, watermark_url, thumbnail_url = await gather_or_cancel(
                self.artifacts.upload(watermark_path, watermark),
                self.artifacts.upload(thumbnail_path, thumbnail),
                self.artifacts.sign(watermark_path),
                self.artifacts.sign(thumbnail_path),
            )

        return DerivativeURLs(watermark_url=watermark_url, thumbnail_url=thumbnail_url)
