import base64
import binascii
import re
import uuid
from typing import Optional

from pydantic import BaseModel

IMAGE_MIME_TYPES: dict[str, str] = {
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'webp': 'image/webp',
    'gif': 'image/gif',
    'bmp': 'image/bmp',
    'svg': 'image/svg+xml',
}

VIDEO_MIME_TYPES: dict[str, str] = {
    'mp4': 'video/mp4',
    'webm': 'video/webm',
    'avi': 'video/x-msvideo',
    'mov': 'video/quicktime',
    'mkv': 'video/x-matroska',
    'gif': 'video/gif',
}

# Extensions accepted as-is when naming a downloaded image.
DOWNLOAD_IMAGE_EXTENSIONS = ('png', 'jpg', 'jpeg', 'webp', 'gif', 'bmp')

_EXTENSION_REGEX = re.compile(r"\.([^./]+)$")


class DecodedPayload(BaseModel):
    """
    Outcome of decoding a base64 payload. Exactly one of data and error is set.
    """
    data: Optional[bytes] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def decode_base64(payload: object) -> DecodedPayload:
    """
    Decode a base64 string into bytes without raising on garbage input.
    :param payload: The value claimed to hold base64 text.
    :return: A DecodedPayload holding either the bytes or the reason decoding failed.
    """
    if not isinstance(payload, str) or not payload:
        return DecodedPayload(error="data field is missing or not a string")

    # Tolerate data URLs and embedded whitespace
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", 1)[1]
    compact = "".join(payload.split())

    try:
        data = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        return DecodedPayload(error=f"invalid base64 data ({e})")

    if not data:
        return DecodedPayload(error="decoded buffer is empty")
    return DecodedPayload(data=data)


def encode_base64(data: bytes) -> str:
    return base64.b64encode(data).decode('ascii')


def get_extension(filename: str) -> Optional[str]:
    """Lower-case extension of a filename without the dot, or None."""
    match = _EXTENSION_REGEX.search(filename)
    return match.group(1).lower() if match else None


def mime_type_for_extension(ext: Optional[str], default: str = 'application/octet-stream') -> str:
    if not ext:
        return default
    return IMAGE_MIME_TYPES.get(ext) or VIDEO_MIME_TYPES.get(ext) or default


def generate_unique_filename(extension: str, prefix: str = 'file') -> str:
    ext = extension[1:] if extension.startswith('.') else extension
    return f"{prefix}_{uuid.uuid4().hex}.{ext}"


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    """Human readable size, e.g. '1.5 MB'."""
    if num_bytes == 0:
        return '0 Bytes'

    units = ['Bytes', 'KB', 'MB', 'GB', 'TB']
    size = float(num_bytes)
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    return f"{round(size, decimals):g} {units[i]}"
