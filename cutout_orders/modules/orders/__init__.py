"""
Orders Module

Order document model, document store and terminal-state writer.
"""

from cutout_orders.modules.orders.models import (
    Order,
    OrderRef,
    OrderEvent,
    OrderState,
    OrderOutcome,
    OrderSuccess,
    OrderFailure,
    DerivativeURLs,
)
