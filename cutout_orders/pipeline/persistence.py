"""
Persistence Stage

Derives artifact paths and stores derivative buffers through IStorage.

Paths look like {kind}/{userId}/{fileName}_{suffix}.png. The suffix is a
fresh random token per attempt unless deterministic paths are enabled, in
which case it is the order id and a redelivered order overwrites its
previous objects.
"""

import secrets
import string
from typing import Optional

from cutout_orders.core.config import settings
from cutout_orders.core.exceptions import InvalidInput
from cutout_orders.core.logging import get_logger
from cutout_orders.core.storage import IStorage
from cutout_orders.modules.orders.models import ArtifactKind

logger = get_logger(__name__)

CONTENT_TYPE = "image/png"
SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SUFFIX_LENGTH = 8


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    """Base-36 token used to keep attempts for the same fileName apart."""
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


def artifact_path(kind: ArtifactKind, user_id: str, file_name: str, suffix: str) -> str:
    if not user_id or not file_name or not suffix:
        raise InvalidInput("Artifact path needs userId, fileName and suffix")
    if "/" in user_id or "/" in file_name:
        raise InvalidInput("userId and fileName must not contain '/'")
    return f"{kind.value}/{user_id}/{file_name}_{suffix}.png"


class ArtifactStore:
    """Uploads derivative artifacts and mints their signed URLs."""

    def __init__(
        self,
        storage: IStorage,
        deterministic_paths: Optional[bool] = None,
        url_ttl_seconds: Optional[int] = None
    ):
        self.storage = storage
        self.deterministic_paths = (
            settings.DETERMINISTIC_ARTIFACT_PATHS if deterministic_paths is None else deterministic_paths
        )
        self.url_ttl_seconds = url_ttl_seconds or settings.SIGNED_URL_TTL_SECONDS

    def path_for(self, kind: ArtifactKind, user_id: str, file_name: str, order_id: str) -> str:
        suffix = order_id if self.deterministic_paths else random_suffix()
        return artifact_path(kind, user_id, file_name, suffix)

    async def upload(self, path: str, buffer: bytes) -> None:
        """Write the buffer as PNG. Raises StorageWriteError."""
        await self.storage.upload(path, buffer, content_type=CONTENT_TYPE)
        logger.info("artifact_uploaded", path=path, size=len(buffer))

    async def sign(self, path: str) -> str:
        """Mint a read-only signed URL. Raises StorageSignError."""
        url = await self.storage.sign(path, expires_in=self.url_ttl_seconds)
        logger.debug("artifact_signed", path=path)
        return url

    async def upload_and_sign(self, path: str, buffer: bytes) -> str:
        await self.upload(path, buffer)
        return await self.sign(path)
