"""
Order State Machine - terminal writer

An order leaves PENDING exactly once, through one of the two writes below.
"""

from cutout_orders.core.logging import get_logger
from cutout_orders.modules.orders.models import DerivativeURLs, OrderRef, OrderState
from cutout_orders.modules.orders.repository import IOrderStore

logger = get_logger(__name__)


class OrderStateMachine:
    """Owns the PENDING -> SUCCESS | ERROR transition of order documents."""

    def __init__(self, store: IOrderStore):
        self.store = store

    async def mark_success(self, ref: OrderRef, urls: DerivativeURLs) -> bool:
        """
        Write {state: SUCCESS, watermarkURL, thumbnailURL} in one update.

        Returns False if the order had already reached a terminal state.
        Raises MissingReference if the document cannot be written.
        """
        fields = {"state": OrderState.SUCCESS, **urls.as_fields()}
        written = await self.store.update(ref, fields, only_if_state=OrderState.PENDING)
        self._log_write(ref, OrderState.SUCCESS, written)
        return written

    async def mark_error(self, ref: OrderRef, diagnostic: str) -> bool:
        """
        Write {state: ERROR, error: diagnostic} in one update.

        Returns False if the order had already reached a terminal state.
        Raises MissingReference if the document cannot be written.
        """
        fields = {"state": OrderState.ERROR, "error": diagnostic or "Unknown error"}
        written = await self.store.update(ref, fields, only_if_state=OrderState.PENDING)
        self._log_write(ref, OrderState.ERROR, written)
        return written

    def _log_write(self, ref: OrderRef, state: OrderState, written: bool):
        if written:
            logger.info("order_terminal_write", path=ref.path, state=state.value)
        else:
            logger.warning("order_already_terminal", path=ref.path, attempted_state=state.value)
