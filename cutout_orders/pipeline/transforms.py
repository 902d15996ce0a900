"""
Transform Stage

Pure functions over image byte buffers. They hold no shared state and are
safe to run concurrently on distinct buffers (the orchestrator runs them
in worker threads).
"""

import io

import httpx
from PIL import Image, UnidentifiedImageError

from cutout_orders.core.exceptions import DecodeError, EncodeError, InvalidInput, UpstreamError
from cutout_orders.core.logging import get_logger

logger = get_logger(__name__)

OUTPUT_FORMAT = "PNG"
# Modes the PNG encoder writes as-is; anything else is converted first
PNG_MODES = {"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"}


def _decode(buffer: bytes, what: str = "image") -> Image.Image:
    if not buffer:
        raise DecodeError(f"Empty {what} buffer")
    try:
        image = Image.open(io.BytesIO(buffer))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise DecodeError(f"Cannot decode {what}: {e}")
    return image


def _encode(image: Image.Image) -> bytes:
    output_buffer = io.BytesIO()
    try:
        if image.mode not in PNG_MODES:
            image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
        image.save(output_buffer, format=OUTPUT_FORMAT)
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(f"Cannot encode {OUTPUT_FORMAT}: {e}")
    return output_buffer.getvalue()


def resize(width: int, height: int, buffer: bytes) -> bytes:
    """
    Fit the image inside a width x height box.

    Aspect ratio is preserved, nothing is cropped and images already
    inside the box keep their resolution. Output is PNG.
    """
    if width <= 0 or height <= 0:
        raise InvalidInput(f"Invalid bounding box {width}x{height}")

    image = _decode(buffer)
    original_size = image.size

    # thumbnail() shrinks in place and never enlarges
    image.thumbnail((width, height), Image.Resampling.LANCZOS)

    logger.debug("image_resized", original_size=original_size, output_size=image.size)
    return _encode(image)


def overlay(buffer: bytes, overlay_buffer: bytes) -> bytes:
    """
    Tile overlay_buffer across the full extent of buffer and alpha-composite it.

    Output is PNG with the dimensions of the base image.
    """
    base = _decode(buffer).convert("RGBA")
    tile = _decode(overlay_buffer, "overlay").convert("RGBA")

    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    for top in range(0, base.height, tile.height):
        for left in range(0, base.width, tile.width):
            layer.paste(tile, (left, top))

    return _encode(Image.alpha_composite(base, layer))


async def fetch_overlay(http_client: httpx.AsyncClient, url: str) -> bytes:
    """Download the watermark tile."""
    try:
        response = await http_client.get(url)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise UpstreamError(f"Overlay fetch failed: {e}", service="overlay", stage="derive")

    if not response.content:
        raise UpstreamError(
            "Overlay fetch returned an empty body",
            service="overlay",
            http_status=response.status_code,
            stage="derive"
        )
    return response.content
