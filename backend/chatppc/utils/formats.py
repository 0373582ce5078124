"""Image format detection and data-URL helpers.

Thin wrapper around python-magic for content-based MIME detection. Media
is always classified from its bytes; file extensions and declared
``Content-Type`` headers are only hints.
"""

from __future__ import annotations

import base64
import re

import magic

# MIME → file extension
_IMAGE_MIME_TO_EXT: dict[str, str] = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
}

# Reverse: extension → MIME
_EXT_TO_MIME: dict[str, str] = {v: k for k, v in _IMAGE_MIME_TO_EXT.items()}
_EXT_TO_MIME[".jpeg"] = "image/jpeg"

_DATA_URL_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,(.+)$", re.DOTALL)


def detect_mime_type(data: bytes) -> str:
    """Detect MIME type from content using libmagic."""
    return magic.from_buffer(data, mime=True)


def is_supported_image(data: bytes) -> bool:
    """True when the byte signature is a raster image we can embed."""
    if not data:
        return False
    return detect_mime_type(data) in _IMAGE_MIME_TO_EXT


def mime_to_extension(mime_type: str) -> str:
    """Map an image MIME type to a file extension; ".bin" when unknown."""
    return _IMAGE_MIME_TO_EXT.get(mime_type, ".bin")


def extension_to_mime(path: str) -> str | None:
    """Infer MIME type from the extension of a path or URL (query ignored)."""
    path = path.split("?", 1)[0].split("#", 1)[0]
    dot_idx = path.rfind(".")
    if dot_idx == -1 or "/" in path[dot_idx:]:
        return None
    return _EXT_TO_MIME.get(path[dot_idx:].lower())


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_url(url: str) -> tuple[str, bytes] | None:
    """Split a base64 image data URL into ``(mime_type, bytes)``."""
    match = _DATA_URL_RE.match(url.strip())
    if not match:
        return None
    try:
        return match.group(1).lower(), base64.b64decode(match.group(2), validate=False)
    except ValueError:
        return None
