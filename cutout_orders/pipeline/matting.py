"""
External Matting Client

Calls the remove.bg API with a publicly fetchable image URL and returns
the background-free PNG bytes. No retries: a failed call fails the order.
"""

from typing import Optional

import httpx

from cutout_orders.core.config import settings
from cutout_orders.core.exceptions import InvalidInput, UpstreamError
from cutout_orders.core.logging import get_logger
from cutout_orders.core.metrics import record_matting_call

logger = get_logger(__name__)

SERVICE_NAME = "removebg"


class MattingClient:
    """
    Client for the background removal endpoint.

    Args:
        http_client: Shared httpx.AsyncClient; timeouts are taken from it
        api_url: Endpoint URL (defaults to settings.REMOVEBG_API_URL)
        api_key: Value of the X-Api-Key header
        size: Output size hint sent with every request
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        size: Optional[str] = None
    ):
        self.http_client = http_client
        self.api_url = api_url or settings.REMOVEBG_API_URL
        self.api_key = api_key if api_key is not None else settings.REMOVEBG_API_KEY
        self.size = size or settings.REMOVEBG_SIZE

    async def remove_background(self, image_url: str) -> bytes:
        """
        Remove the background of the image at image_url.

        Raises:
            InvalidInput: If image_url is empty
            UpstreamError: On transport errors, timeouts, error statuses or an empty body
        """
        if not image_url:
            raise InvalidInput("No image URL given to the matting API", stage="matting")

        headers = {}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key

        logger.info("matting_request_started", image_url=image_url, size=self.size)

        try:
            response = await self.http_client.post(
                self.api_url,
                data={"image_url": image_url, "size": self.size},
                headers=headers
            )
        except httpx.TimeoutException:
            record_matting_call("timeout", http_status=0)
            raise UpstreamError("Matting API timeout", service=SERVICE_NAME, stage="matting")
        except httpx.HTTPError as e:
            record_matting_call("error", http_status=0)
            raise UpstreamError(
                f"Matting API call failed: {e}",
                service=SERVICE_NAME,
                stage="matting"
            )

        if response.status_code != 200:
            record_matting_call("error", http_status=response.status_code)
            raise UpstreamError(
                f"Matting API error {response.status_code}: {response.text[:200]}",
                service=SERVICE_NAME,
                http_status=response.status_code,
                stage="matting"
            )

        image_bytes = response.content
        if not image_bytes:
            record_matting_call("empty", http_status=response.status_code)
            raise UpstreamError(
                "Matting API returned an empty body",
                service=SERVICE_NAME,
                http_status=response.status_code,
                stage="matting"
            )

        record_matting_call("success", http_status=response.status_code)
        logger.info("matting_request_completed", output_size=len(image_bytes))

        return image_bytes
