"""
Global Exception Handling

Error taxonomy for the fulfillment pipeline and structured JSON error
responses for the trigger API.
"""

import traceback
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from cutout_orders.core.logging import get_logger, order_id_var

logger = get_logger(__name__)


# =============================================================================
# Custom Exceptions
# =============================================================================

class CutoutBaseException(Exception):
    """Base exception for Cutout Orders."""

    def __init__(
        self,
        message: str,
        code: int = 500,
        order_id: Optional[str] = None,
        stage: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.order_id = order_id or order_id_var.get()
        self.stage = stage
        self.details = details or {}
        super().__init__(self.message)


class OrderFulfillmentError(CutoutBaseException):
    """
    Raised by a pipeline step. The orchestrator turns every one of these
    into a terminal ERROR write on the order.
    """


class MissingField(OrderFulfillmentError):
    """Raised when the order payload lacks a required field."""

    def __init__(self, field: str, **kwargs):
        super().__init__(f"Order payload is missing '{field}'", code=400, **kwargs)
        self.details["field"] = field


class AuthorizationError(OrderFulfillmentError):
    """Raised when the payload userId does not own the order path."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=403, **kwargs)


class InvalidInput(OrderFulfillmentError):
    """Raised when a component is called with unusable arguments."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=400, **kwargs)


class UpstreamError(OrderFulfillmentError):
    """Raised when an external HTTP call fails (matting API, overlay asset)."""

    def __init__(self, message: str, service: str, http_status: Optional[int] = None, **kwargs):
        super().__init__(message, code=502, **kwargs)
        self.details["service"] = service
        self.details["http_status"] = http_status


class DecodeError(OrderFulfillmentError):
    """Raised when an image buffer cannot be parsed."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=422, **kwargs)


class EncodeError(OrderFulfillmentError):
    """Raised when an image cannot be encoded to the output format."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, code=500, **kwargs)


class DerivationError(OrderFulfillmentError):
    """Raised when a derivative branch (watermark or thumbnail) fails."""

    def __init__(self, message: str, branch: str, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.details["branch"] = branch


class StorageError(OrderFulfillmentError):
    """Raised when storage operations fail."""

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, code=500, **kwargs)
        self.details["path"] = path


class StorageWriteError(StorageError):
    """Raised when an upload to object storage fails."""


class StorageSignError(StorageError):
    """Raised when a signed URL cannot be minted."""


class MissingReference(CutoutBaseException):
    """
    Raised when the document store cannot be read or written for an order.

    Not an OrderFulfillmentError: if the order itself cannot be updated there
    is nowhere to record the failure, so it propagates to the trigger.
    """

    def __init__(self, message: str, path: Optional[str] = None, **kwargs):
        super().__init__(message, code=503, **kwargs)
        self.details["path"] = path


# =============================================================================
# Exception Handlers
# =============================================================================

def register_exception_handlers(app: FastAPI):
    """Register custom exception handlers with FastAPI app."""

    @app.exception_handler(CutoutBaseException)
    async def cutout_exception_handler(request: Request, exc: CutoutBaseException):
        order_id = exc.order_id or order_id_var.get()

        logger.error(
            "cutout_exception",
            error=exc.message,
            error_type=type(exc).__name__,
            code=exc.code,
            stage=exc.stage,
            details=exc.details
        )

        return JSONResponse(
            status_code=exc.code,
            content={
                "error": exc.message,
                "order_id": order_id,
                "code": exc.code,
                "stage": exc.stage,
                "details": exc.details,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
            traceback=traceback.format_exc()
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "order_id": order_id_var.get(),
                "code": 500,
                "timestamp": datetime.now(timezone.utc).isoformat()
            }
        )
