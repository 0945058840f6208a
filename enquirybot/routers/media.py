import time

from fastapi import APIRouter, HTTPException, status
from fastapi.responses import FileResponse

from enquirybot.logging_config import get_logger
from enquirybot.services.media_service import media_type_for, resolve_media_path, verify_signed_media_path

logger = get_logger("media")

router = APIRouter()


@router.get("/media/{media_path:path}")
async def serve_media(media_path: str, expires: int, sig: str):
    """Stream a stored inbound attachment to a holder of a valid signed URL."""
    relative_path = (media_path or "").strip().lstrip("/")
    if not relative_path:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing media path")
    if not verify_signed_media_path(relative_path, expires, sig):
        logger.warning("Rejected media request", extra={"context": {"path": relative_path, "expires": expires}})
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")

    stored = resolve_media_path(relative_path)
    if stored is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid media path")
    if not stored.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media not found")

    # Caches must not outlive the signature
    max_age = max(expires - int(time.time()), 0)
    return FileResponse(
        stored,
        media_type=media_type_for(stored.name),
        headers={"Cache-Control": f"private, max-age={max_age}"},
    )
