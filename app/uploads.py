"""
Image upload handling: guards, data-URL encoding and catalog image storage.
"""

from __future__ import annotations

import base64
import logging
import os
import re
import time
from pathlib import Path
from typing import Optional

from fastapi import HTTPException, UploadFile

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MB
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".tiff", ".tif"}
ALLOWED_CONTENT_TYPES = {
    "image/jpeg", "image/png", "image/webp", "image/gif",
    "image/bmp", "image/tiff",
}
MEDIA_URL_PREFIX = "/media"

_IMAGE_SIGNATURES = {
    b"\xff\xd8\xff":       "JPEG",
    b"\x89PNG\r\n\x1a\n": "PNG",
    b"RIFF":               "WebP",  # WebP starts with RIFF....WEBP
    b"GIF87a":             "GIF",
    b"GIF89a":             "GIF",
    b"BM":                 "BMP",
    b"II*\x00":            "TIFF",
    b"MM\x00*":            "TIFF",
}


def uploads_dir() -> Path:
    # Allow override via env; default to ./uploads inside project folder
    configured = os.getenv("IMAGE_UPLOAD_DIR", "./uploads")
    base = Path(__file__).resolve().parent.parent
    upload_path = Path(configured)
    if not upload_path.is_absolute():
        upload_path = base / upload_path
    upload_path.mkdir(parents=True, exist_ok=True)
    return upload_path


async def read_image_upload(file: UploadFile) -> bytes:
    """Read an uploaded image, rejecting anything that isn't a small real image."""
    ct = (file.content_type or "").lower()
    if ct not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file type '{ct}'. Please upload a JPEG, PNG, or WebP image.",
        )

    suffix = Path(file.filename or "").suffix.lower()
    if suffix and suffix not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Unsupported file extension '{suffix}'.",
        )

    try:
        content = await file.read()
    except OSError as e:
        raise HTTPException(status_code=500, detail=f"Failed to read upload: {e}")

    if len(content) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File too large ({len(content) / (1024*1024):.1f} MB). Maximum size is {MAX_UPLOAD_BYTES // (1024*1024)} MB.",
        )

    # Magic-byte sniff (reject non-images that lie about content-type)
    head = content[:8]
    if not any(head.startswith(sig) for sig in _IMAGE_SIGNATURES):
        raise HTTPException(
            status_code=400,
            detail="File does not appear to be a valid image.",
        )
    return content


def to_data_url(content: bytes, content_type: Optional[str]) -> str:
    """Encode raw image bytes as a base64 data URL."""
    mime = (content_type or "image/jpeg").lower()
    b64 = base64.standard_b64encode(content).decode("utf-8")
    return f"data:{mime};base64,{b64}"


def _safe_filename(filename: Optional[str]) -> str:
    name = Path(filename or "image").name.replace("..", "")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "image"


def save_catalog_image(kind: str, content: bytes, filename: Optional[str]) -> str:
    """Store a catalog image under <uploads>/<kind>/ and return its public URL path."""
    target_dir = uploads_dir() / kind
    target_dir.mkdir(parents=True, exist_ok=True)
    stored_name = f"{int(time.time() * 1000)}_{_safe_filename(filename)}"
    (target_dir / stored_name).write_bytes(content)
    return f"{MEDIA_URL_PREFIX}/{kind}/{stored_name}"


def delete_catalog_image(image_url: Optional[str]) -> None:
    """Remove the file behind a catalog image URL; URLs outside /media are left alone."""
    if not image_url or not image_url.startswith(f"{MEDIA_URL_PREFIX}/"):
        return
    root = uploads_dir().resolve()
    path = (root / image_url[len(MEDIA_URL_PREFIX) + 1:]).resolve()
    if root not in path.parents:
        logger.warning(f"Refusing to delete image outside uploads dir: {image_url}")
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.error(f"❌ Failed to delete catalog image {image_url}: {e}")
