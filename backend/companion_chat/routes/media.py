"""Upload endpoint for chat attachments."""

from __future__ import annotations

import logging
import time
from pathlib import Path

import aiofiles
from fastapi import APIRouter, Depends, HTTPException, UploadFile

from ..config import AppSettings, get_settings
from ..utils import classify_attachment, sanitize_file_name
from .deps import get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/media", tags=["media"])


async def _save_upload(file: UploadFile, user_id: str, settings: AppSettings) -> tuple[Path, int]:
    original = file.filename or "upload"
    name = f"chat_{int(time.time() * 1000)}_{sanitize_file_name(original)}"
    relative_path = Path(sanitize_file_name(user_id)) / "attachments" / name
    destination = settings.media_root / relative_path
    destination.parent.mkdir(parents=True, exist_ok=True)
    content = await file.read()
    async with aiofiles.open(destination, "wb") as handle:
        await handle.write(content)
    return relative_path, len(content)


@router.post("/attachments")
async def upload_attachment(
    file: UploadFile,
    user_id: str = Depends(get_current_user),
    settings: AppSettings = Depends(get_settings),
) -> dict[str, object]:
    """Store one file and return the URL to send along with a chat message."""

    try:
        relative, size = await _save_upload(file, user_id, settings)
    except OSError as exc:
        logger.exception("Failed to save uploaded attachment: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to store attachment") from exc

    original = file.filename or "upload"
    return {
        "url": f"{settings.media_url_prefix.rstrip('/')}/{relative.as_posix()}",
        "path": relative.as_posix(),
        "fileName": original,
        "fileSize": size,
        "mimeType": file.content_type or "application/octet-stream",
        "type": classify_attachment(original),
    }
