"""
Signed Download Route

GET /static/storage/{path}?expires=...&signature=... serves objects written
by LocalStorage when the signature minted by LocalStorage.sign() checks out.
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse

from cutout_orders.api.dependencies import get_app_storage
from cutout_orders.core.storage import IStorage, LocalStorage

router = APIRouter()


@router.get("/static/storage/{path:path}")
async def download(
    path: str,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: IStorage = Depends(get_app_storage)
):
    if not isinstance(storage, LocalStorage):
        raise HTTPException(status_code=404, detail="Not found")
    if not storage.verify(path, expires, signature):
        raise HTTPException(status_code=403, detail="Invalid or expired signature")
    if not await storage.exists(path):
        raise HTTPException(status_code=404, detail="Not found")

    return FileResponse(storage.open_path(path), media_type="image/png")
