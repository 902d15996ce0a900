"""
Order Model with Pipeline State Tracking

- Order: the document the submitter creates and the pipeline finalizes
- OrderRecord / PrivateImageRecord: SQL tables backing the document store
- OrderOutcome: tagged result of one fulfillment invocation
"""

from dataclasses import dataclass
from enum import Enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Union

from pydantic import BaseModel, ConfigDict, Field
from sqlmodel import SQLModel, Field as SQLField


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderState(str, Enum):
    """Order lifecycle states. PENDING is set by the submitter."""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderState.PENDING


class PipelineState(str, Enum):
    """Fulfillment states of a single invocation."""
    RECEIVED = "received"
    AUTHORIZED = "authorized"
    MATTED = "matted"
    PRIVATE_SAVED = "private_saved"
    DERIVED = "derived"
    PERSISTED = "persisted"
    DONE = "done"
    FAILED = "failed"


class ArtifactKind(str, Enum):
    """Derivative artifact kinds; the value is the top-level storage prefix."""
    WATERMARK = "watermarks"
    THUMBNAIL = "thumbnails"
    PRIVATE = "privates"


# =============================================================================
# Document model
# =============================================================================

class Order(BaseModel):
    """
    Order document as stored under users/{userId}/orders/{orderId}.

    Serialized with camelCase keys (by_alias=True) to match the records
    written by the client.
    """
    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[str] = Field(default=None, alias="orderId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    original_url: Optional[str] = Field(default=None, alias="originalURL")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    state: OrderState = OrderState.PENDING
    error: Optional[str] = None
    download_url: Optional[str] = Field(default=None, alias="downloadURL")
    watermark_url: Optional[str] = Field(default=None, alias="watermarkURL")
    thumbnail_url: Optional[str] = Field(default=None, alias="thumbnailURL")
    preview_url: Optional[str] = Field(default=None, alias="previewURL")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")


@dataclass(frozen=True)
class OrderRef:
    """Reference to an order document inside its owner's namespace."""
    owner_id: str
    order_id: str

    @property
    def path(self) -> str:
        return f"users/{self.owner_id}/orders/{self.order_id}"

    @property
    def private_image_path(self) -> str:
        return f"users/{self.owner_id}/private_images/{self.order_id}"


class OrderEvent(BaseModel):
    """
    Immutable trigger record delivered once per created order.

    owner_id is the identity segment of the path the record was created
    under; payload is the record body as the submitter wrote it.
    """
    model_config = ConfigDict(frozen=True)

    order_id: str
    owner_id: str
    payload: Dict[str, Any]

    @property
    def ref(self) -> OrderRef:
        return OrderRef(owner_id=self.owner_id, order_id=self.order_id)


# =============================================================================
# Outcome
# =============================================================================

@dataclass(frozen=True)
class DerivativeURLs:
    """Signed URLs written together on success."""
    watermark_url: str
    thumbnail_url: str

    def as_fields(self) -> Dict[str, str]:
        return {"watermarkURL": self.watermark_url, "thumbnailURL": self.thumbnail_url}


@dataclass(frozen=True)
class OrderSuccess:
    urls: DerivativeURLs
    private_url: Optional[str] = None

    @property
    def state(self) -> OrderState:
        return OrderState.SUCCESS


@dataclass(frozen=True)
class OrderFailure:
    diagnostic: str
    stage: Optional[str] = None

    @property
    def state(self) -> OrderState:
        return OrderState.ERROR


OrderOutcome = Union[OrderSuccess, OrderFailure]


# =============================================================================
# SQL tables
# =============================================================================

class OrderRecord(SQLModel, table=True):
    """Row backing one order document."""
    __tablename__ = "orders"

    owner_id: str = SQLField(primary_key=True)
    order_id: str = SQLField(primary_key=True)

    user_id: Optional[str] = None
    original_url: Optional[str] = None
    file_name: Optional[str] = None

    state: str = SQLField(default=OrderState.PENDING.value, index=True)
    error: Optional[str] = None

    download_url: Optional[str] = None
    watermark_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    preview_url: Optional[str] = None

    created_at: datetime = SQLField(default_factory=utcnow)
    updated_at: datetime = SQLField(default_factory=utcnow)

    def to_order(self) -> Order:
        return Order(
            order_id=self.order_id,
            user_id=self.user_id,
            original_url=self.original_url,
            file_name=self.file_name,
            state=OrderState(self.state),
            error=self.error,
            download_url=self.download_url,
            watermark_url=self.watermark_url,
            thumbnail_url=self.thumbnail_url,
            preview_url=self.preview_url,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class PrivateImageRecord(SQLModel, table=True):
    """Sidecar row linking an order to its private full-resolution image."""
    __tablename__ = "private_images"

    owner_id: str = SQLField(primary_key=True)
    order_id: str = SQLField(primary_key=True)
    url: str
    created_at: datetime = SQLField(default_factory=utcnow)
