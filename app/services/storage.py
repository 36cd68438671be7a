# file: services/storage.py

import base64
import binascii
import logging
import re
from pathlib import Path

from app.config import UPLOAD_DIR as _UPLOAD_DIR
from app.services.errors import InvalidImageError

logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(_UPLOAD_DIR)
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)

DATA_URL_PATTERN = re.compile(r"^data:image/(\w+);base64,")


def save_data_url(data_url: str, folder: str, name: str) -> str:
    """
    Stores a `data:image/<ext>;base64,...` photo under UPLOAD_DIR/<folder>/ and
    returns the public path it is served from.
    """
    match = DATA_URL_PATTERN.match(data_url or "")
    if not match:
        raise InvalidImageError("Invalid image format. Expected a base64 image data URL.")
    extension = match.group(1).lower()

    try:
        content = base64.b64decode(data_url[match.end():], validate=True)
    except (binascii.Error, ValueError):
        raise InvalidImageError("Image data is not valid base64.")

    target_dir = UPLOAD_DIR / folder
    target_dir.mkdir(parents=True, exist_ok=True)
    filename = f"{name}.{extension}"
    (target_dir / filename).write_bytes(content)
    logger.info(f"Stored image {folder}/{filename} ({len(content)} bytes)")
    return f"/uploads/{folder}/{filename}"
