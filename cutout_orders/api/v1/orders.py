"""
Orders Endpoints - Trigger Receiver

POST /api/v1/orders/{owner_id}                      - Create a PENDING order and fulfill it in the background
POST /api/v1/orders/{owner_id}/{order_id}/events    - Deliver a creation event for an existing order
GET  /api/v1/orders/{owner_id}/{order_id}           - Read the order document
"""

import uuid
from typing import Optional, Dict, Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from cutout_orders.api.dependencies import get_orchestrator, get_order_store
from cutout_orders.core.exceptions import MissingReference
from cutout_orders.core.logging import get_logger
from cutout_orders.modules.orders.models import (
    Order,
    OrderEvent,
    OrderOutcome,
    OrderRef,
    OrderSuccess,
)
from cutout_orders.modules.orders.repository import IOrderStore
from cutout_orders.pipeline.orchestrator import FulfillmentOrchestrator

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class CreateOrderRequest(BaseModel):
    """Order record as written by the submitter."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: Optional[str] = Field(default=None, alias="userId")
    original_url: Optional[str] = Field(default=None, alias="originalURL")
    file_name: Optional[str] = Field(default=None, alias="fileName")


class OutcomeResponse(BaseModel):
    """Terminal outcome of one fulfillment invocation."""
    order_id: str
    state: str
    error: Optional[str] = None
    watermark_url: Optional[str] = None
    thumbnail_url: Optional[str] = None


def _outcome_response(order_id: str, outcome: OrderOutcome) -> OutcomeResponse:
    if isinstance(outcome, OrderSuccess):
        return OutcomeResponse(
            order_id=order_id,
            state=outcome.state.value,
            watermark_url=outcome.urls.watermark_url,
            thumbnail_url=outcome.urls.thumbnail_url,
        )
    return OutcomeResponse(order_id=order_id, state=outcome.state.value, error=outcome.diagnostic)


async def _fulfill_in_background(orchestrator: FulfillmentOrchestrator, event: OrderEvent):
    try:
        await orchestrator.fulfill(event)
    except MissingReference as e:
        # Nothing left to mark; the order stays PENDING for out-of-band reconciliation
        logger.error("background_fulfillment_failed", order_id=event.order_id, error=e.message)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/{owner_id}", response_model=Order, response_model_by_alias=True, status_code=202)
async def create_order(
    owner_id: str,
    request: CreateOrderRequest,
    background_tasks: BackgroundTasks,
    store: IOrderStore = Depends(get_order_store),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator)
):
    """
    Create an order under the owner's namespace and start fulfillment.

    The order is returned in PENDING state; poll GET for the outcome.
    """
    order_id = uuid.uuid4().hex
    ref = OrderRef(owner_id=owner_id, order_id=order_id)

    order = await store.create(
        ref,
        Order(
            user_id=request.user_id,
            original_url=request.original_url,
            file_name=request.file_name,
        )
    )
    logger.info("order_created", order_id=order_id, owner_id=owner_id)

    event = OrderEvent(
        order_id=order_id,
        owner_id=owner_id,
        payload=request.model_dump(by_alias=True, exclude_none=True)
    )
    background_tasks.add_task(_fulfill_in_background, orchestrator, event)

    return order


@router.post("/{owner_id}/{order_id}/events", response_model=OutcomeResponse)
async def deliver_order_event(
    owner_id: str,
    order_id: str,
    payload: Dict[str, Any] = Body(...),
    orchestrator: FulfillmentOrchestrator = Depends(get_orchestrator)
):
    """
    Run the pipeline for an order-creation event and wait for the outcome.

    Responds 200 with the terminal outcome, including ERROR outcomes. A
    document store failure surfaces as 503 so the event source redelivers.
    """
    event = OrderEvent(order_id=order_id, owner_id=owner_id, payload=payload)
    outcome = await orchestrator.fulfill(event)
    return _outcome_response(order_id, outcome)


@router.get("/{owner_id}/{order_id}", response_model=Order, response_model_by_alias=True)
async def get_order(
    owner_id: str,
    order_id: str,
    store: IOrderStore = Depends(get_order_store)
):
    """Read an order document."""
    order = await store.get(OrderRef(owner_id=owner_id, order_id=order_id))
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return order
