import hashlib
import hmac
import mimetypes
import re
import time
from pathlib import Path
from typing import Optional
from urllib.parse import quote
from uuid import uuid4

from enquirybot.config import settings
from enquirybot.logging_config import get_logger
from enquirybot.services.result import Result
from enquirybot.services.whatsapp_service import WhatsAppAPIError, WhatsAppClient

logger = get_logger("media_service")

MEDIA_MESSAGE_TYPES = {"image", "video", "audio", "document", "voice", "sticker"}

# Voice notes and camera formats WhatsApp sends that mimetypes maps poorly or not at all
WHATSAPP_MIME_EXTENSIONS = {
    "audio/ogg": "ogg",
    "audio/opus": "opus",
    "audio/amr": "amr",
    "audio/aac": "aac",
    "audio/mp4": "m4a",
    "video/3gpp": "3gp",
    "image/webp": "webp",
}


def guess_extension(mime: Optional[str], file_name: Optional[str] = None) -> str:
    if file_name:
        suffix = Path(file_name).suffix.lstrip(".")
        if suffix:
            return suffix.lower()
    if not mime:
        return "bin"
    base = mime.split(";")[0].strip().lower()
    if base in WHATSAPP_MIME_EXTENSIONS:
        return WHATSAPP_MIME_EXTENSIONS[base]
    ext = mimetypes.guess_extension(base)
    if ext:
        return ext.lstrip(".")
    subtype = base.split("/")[-1]
    return re.sub(r"[^a-z0-9]", "", subtype) or "bin"


def media_type_for(file_name: str) -> str:
    """Content type for a stored file, from its extension."""
    extension = Path(file_name).suffix.lstrip(".").lower()
    for mime, known in WHATSAPP_MIME_EXTENSIONS.items():
        if known == extension:
            return mime
    mime, _ = mimetypes.guess_type(file_name)
    return mime or "application/octet-stream"


def _safe_media_id(value: Optional[str]) -> str:
    if not value:
        return uuid4().hex
    cleaned = re.sub(r"[^a-zA-Z0-9_-]", "", value)
    return cleaned or uuid4().hex


def _normalize_media_path(path: str) -> str:
    normalized = (path or "").strip().lstrip("/")
    return normalized.replace("\\", "/")


def _sign_media_path(path: str, expires: int, secret: str) -> str:
    payload = f"{path}:{expires}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_signed_media_url(relative_path: str, *, ttl_seconds: Optional[int] = None) -> Optional[str]:
    """Build a signed public URL for a file under the media storage dir."""
    if not settings.media_signing_secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return None
    ttl = ttl_seconds if ttl_seconds is not None else settings.media_url_ttl_seconds
    expires = int(time.time()) + max(int(ttl), 60)
    normalized_path = _normalize_media_path(relative_path)
    signature = _sign_media_path(normalized_path, expires, settings.media_signing_secret)
    quoted_path = quote(normalized_path, safe="/")
    return f"{settings.public_base_url.rstrip('/')}/media/{quoted_path}?expires={expires}&sig={signature}"


def verify_signed_media_path(relative_path: str, expires: int, signature: str) -> bool:
    if not settings.media_signing_secret:
        logger.error("MEDIA_SIGNING_SECRET not configured")
        return False
    if not signature:
        return False
    if expires < int(time.time()):
        return False
    normalized_path = _normalize_media_path(relative_path)
    expected = _sign_media_path(normalized_path, expires, settings.media_signing_secret)
    return hmac.compare_digest(expected, signature)


def resolve_media_path(relative_path: str) -> Optional[Path]:
    """Map a relative media path onto the storage dir, refusing escapes."""
    base_dir = Path(settings.media_storage_dir).resolve()
    target_path = (base_dir / _normalize_media_path(relative_path)).resolve()
    if base_dir not in target_path.parents:
        return None
    return target_path


async def store_inbound_media(
    client: WhatsAppClient,
    *,
    media_id: str,
    mime_type: Optional[str],
    file_name: Optional[str],
    access_token: str,
    recipient_id: str,
) -> Result[str]:
    """Download provider media and persist it; the value is the durable URL."""
    try:
        info = await client.get_media_url(media_id, access_token)
    except WhatsAppAPIError as exc:
        logger.warning(
            "Media URL lookup failed",
            extra={"context": {"media_id": media_id, **exc.to_context()}},
        )
        return Result.failure(str(exc), code="media_lookup_failed")

    mime = info.get("mime_type") or mime_type
    relative_dir = _safe_media_id(recipient_id)
    target_dir = Path(settings.media_storage_dir) / relative_dir
    target_dir.mkdir(parents=True, exist_ok=True)
    file_id = _safe_media_id(media_id)
    relative_path = f"{relative_dir}/{file_id}.{guess_extension(mime, file_name)}"
    target_path = Path(settings.media_storage_dir) / relative_path

    try:
        size_bytes = await client.download_media(info["url"], access_token, target_path, settings.media_max_bytes)
    except WhatsAppAPIError as exc:
        logger.warning(
            "Media download failed",
            extra={"context": {"media_id": media_id, **exc.to_context()}},
        )
        return Result.failure(str(exc), code="media_download_failed")

    url = build_signed_media_url(relative_path) or relative_path
    logger.info(
        "Media stored",
        extra={"context": {"media_id": media_id, "path": relative_path, "size_bytes": size_bytes}},
    )
    return Result.success(url)
