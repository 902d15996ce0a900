"""
Order Document Store

Get/update-by-reference access to order documents scoped under the
owner's namespace, plus the private image sidecar write.

InMemoryOrderStore is used for development and tests; SQLOrderStore keeps
documents in the application database.
"""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cutout_orders.core.exceptions import MissingReference
from cutout_orders.core.logging import get_logger
from cutout_orders.modules.orders.models import (
    Order,
    OrderRef,
    OrderRecord,
    OrderState,
    PrivateImageRecord,
    utcnow,
)

logger = get_logger(__name__)

# Document field name -> OrderRecord column
UPDATABLE_FIELDS = {
    "state": "state",
    "error": "error",
    "downloadURL": "download_url",
    "watermarkURL": "watermark_url",
    "thumbnailURL": "thumbnail_url",
    "previewURL": "preview_url",
}


def _check_fields(fields: Dict[str, Any]) -> None:
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")


class IOrderStore(ABC):
    """Interface for the order document store."""

    @abstractmethod
    async def get(self, ref: OrderRef) -> Optional[Order]:
        """Return the order document, or None if it does not exist."""
        pass

    @abstractmethod
    async def create(self, ref: OrderRef, order: Order) -> Order:
        """Create an order document in PENDING state."""
        pass

    @abstractmethod
    async def update(
        self,
        ref: OrderRef,
        fields: Dict[str, Any],
        only_if_state: Optional[OrderState] = None
    ) -> bool:
        """
        Apply fields to the document in one atomic write.

        Args:
            ref: Order reference
            fields: Document field names (camelCase) to values
            only_if_state: Skip the write unless the document is in this state

        Returns:
            False if the write was skipped because of only_if_state

        Raises:
            MissingReference: If the document does not exist or the store fails
        """
        pass

    @abstractmethod
    async def set_private_image(self, ref: OrderRef, url: str) -> None:
        """Write the sidecar record users/{owner}/private_images/{orderId}."""
        pass


class InMemoryOrderStore(IOrderStore):
    """Process-local document store."""

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.private_images: Dict[str, Dict[str, Any]] = {}

    async def get(self, ref: OrderRef) -> Optional[Order]:
        document = self.documents.get(ref.path)
        if document is None:
            return None
        return Order.model_validate(document)

    async def create(self, ref: OrderRef, order: Order) -> Order:
        now = utcnow()
        document = order.model_dump(by_alias=True)
        document.update(orderId=ref.order_id, createdAt=now, updatedAt=now)
        self.documents[ref.path] = document
        return Order.model_validate(document)

    async def update(
        self,
        ref: OrderRef,
        fields: Dict[str, Any],
        only_if_state: Optional[OrderState] = None
    ) -> bool:
        _check_fields(fields)
        document = self.documents.get(ref.path)
        if document is None:
            raise MissingReference(f"No order document at {ref.path}", path=ref.path)

        if only_if_state is not None and OrderState(document["state"]) != only_if_state:
            return False

        document.update({k: v.value if isinstance(v, OrderState) else v for k, v in fields.items()})
        document["updatedAt"] = utcnow()
        return True

    async def set_private_image(self, ref: OrderRef, url: str) -> None:
        self.private_images[ref.private_image_path] = {"url": url, "createdAt": utcnow()}


class SQLOrderStore(IOrderStore):
    """Document store backed by the orders / private_images tables."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    async def _load(self, session: AsyncSession, ref: OrderRef) -> Optional[OrderRecord]:
        return await session.get(OrderRecord, (ref.owner_id, ref.order_id))

    async def get(self, ref: OrderRef) -> Optional[Order]:
        try:
            async with self.session_maker() as session:
                record = await self._load(session, ref)
        except SQLAlchemyError as e:
            raise MissingReference(f"Failed to read {ref.path}: {e}", path=ref.path)
        return record.to_order() if record else None

    async def create(self, ref: OrderRef, order: Order) -> Order:
        record = OrderRecord(
            owner_id=ref.owner_id,
            order_id=ref.order_id,
            user_id=order.user_id,
            original_url=order.original_url,
            file_name=order.file_name,
            state=OrderState.PENDING.value,
        )
        try:
            async with self.session_maker() as session:
                session.add(record)
                await session.commit()
                await session.refresh(record)
        except SQLAlchemyError as e:
            raise MissingReference(f"Failed to create {ref.path}: {e}", path=ref.path)
        return record.to_order()

    async def update(
        self,
        ref: OrderRef,
        fields: Dict[str, Any],
        only_if_state: Optional[OrderState] = None
    ) -> bool:
        _check_fields(fields)
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    record = await session.get(
                        OrderRecord,
                        (ref.owner_id, ref.order_id),
                        with_for_update=True
                    )
                    if record is None:
                        raise MissingReference(f"No order document at {ref.path}", path=ref.path)

                    if only_if_state is not None and record.state != only_if_state.value:
                        return False

                    for name, value in fields.items():
                        if isinstance(value, OrderState):
                            value = value.value
                        setattr(record, UPDATABLE_FIELDS[name], value)
                    record.updated_at = utcnow()
                    session.add(record)
        except SQLAlchemyError as e:
            raise MissingReference(f"Failed to update {ref.path}: {e}", path=ref.path)

        logger.debug("order_document_updated", path=ref.path, fields=sorted(fields))
        return True

    async def set_private_image(self, ref: OrderRef, url: str) -> None:
        try:
            async with self.session_maker() as session:
                await session.merge(
                    PrivateImageRecord(owner_id=ref.owner_id, order_id=ref.order_id, url=url)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise MissingReference(f"Failed to write {ref.private_image_path}: {e}", path=ref.private_image_path)
