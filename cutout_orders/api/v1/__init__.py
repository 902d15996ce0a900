"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /api/v1/orders/* - Order creation, trigger events and status
- /api/v1/metrics  - Prometheus metrics
"""

from fastapi import APIRouter

from cutout_orders.api.v1.orders import router as orders_router
from cutout_orders.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(orders_router, prefix="/orders", tags=["orders"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
