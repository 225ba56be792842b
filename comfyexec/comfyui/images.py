"""
Resolve image parameters to filenames the ComfyUI server knows about.

A URL pointing back at the ComfyUI server is used as-is through its 'filename' query parameter. Any other
URL is downloaded and uploaded. Inline base64 payloads are decoded and uploaded.
"""
from typing import Mapping, Optional, TYPE_CHECKING, Union
from urllib.parse import parse_qs, urlparse

from loguru import logger

from comfyexec.comfyui.errors import DataError, NetworkError, WorkflowValidationError
from comfyexec.comfyui.validation import validate_url
from comfyexec.data.workflows import BinaryProperty, InlineBinary, RemoteUrl
from comfyexec.utils.files import (DOWNLOAD_IMAGE_EXTENSIONS, decode_base64, format_bytes,
                                   generate_unique_filename, get_extension)

if TYPE_CHECKING:
    from comfyexec.comfyui.client import ComfyUIClient

# Route under which ComfyUI serves stored files.
VIEW_ROUTE = "/view"

# Some hosts reject requests that do not look like they come from a browser.
BROWSER_HEADERS = {
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
                  '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': 'image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
}

DOWNLOAD_HINTS = {
    403: "The URL may require authentication or block automated access. "
         "Try downloading the image manually and using binary mode instead.",
    404: "The URL may be incorrect or the image may have been removed.",
    400: "The URL may be malformed or the server may be rejecting the request. "
         "Try a different URL or download the image manually and use binary mode.",
}


def _origin(url: str) -> tuple[str, str, Optional[int]]:
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    port = parsed.port or {'http': 80, 'https': 443}.get(scheme)
    return scheme, (parsed.hostname or '').lower(), port


def is_server_url(url: str, base_url: str) -> bool:
    """
    True if the URL is served by the ComfyUI server at base_url: same scheme, host and port, or a path on
    the server's view route (the server may sit behind a reverse proxy under another name).
    """
    if _origin(url) == _origin(base_url):
        return True
    parsed = urlparse(url)
    return parsed.path.rstrip('/').endswith(VIEW_ROUTE) and 'filename' in parse_qs(parsed.query)


def filename_from_url(url: str) -> str:
    name = urlparse(url).path.rsplit('/', 1)[-1]
    ext = get_extension(name) if name else None
    if ext not in DOWNLOAD_IMAGE_EXTENSIONS:
        return generate_unique_filename('png', 'download')
    return name


class ImageResolver:
    """
    Turns an image reference into the name of a file stored on the ComfyUI server, uploading when needed.
    """

    def __init__(self, client: "ComfyUIClient", binaries: Optional[Mapping[str, InlineBinary]] = None,
                 timeout_s: Optional[float] = None, log=None):
        """
        :param client: Client used to download external files and to upload to the server.
        :param binaries: Named inline payloads that BinaryProperty references point at.
        :param timeout_s: Timeout for downloading external files. Defaults to the client's request timeout.
        :param log: Optional logger, defaults to the package logger.
        """
        self._client = client
        self._binaries = dict(binaries or {})
        self._timeout_s = timeout_s
        self._log = log or logger

    async def resolve(self, ref: Union[InlineBinary, RemoteUrl, BinaryProperty], index: int) -> str:
        """
        :param ref: The image reference.
        :param index: 1-based override position, used in error messages.
        :return: Filename to use as the node input.
        """
        if isinstance(ref, RemoteUrl):
            if is_server_url(ref.url, self._client.base_url):
                return self._filename_from_server_url(ref.url, index)
            return await self._resolve_external_url(ref.url, index)

        if isinstance(ref, BinaryProperty):
            payload = self._binaries.get(ref.name)
            if payload is None:
                available = ', '.join(sorted(self._binaries)) or 'none'
                raise DataError(f"override #{index}: binary property '{ref.name}' not found. "
                                f"Available binary properties: {available}")
            return await self._resolve_inline(payload, ref.name, index)

        return await self._resolve_inline(ref, ref.file_name or 'inline', index)

    def _filename_from_server_url(self, url: str, index: int) -> str:
        filename = (parse_qs(urlparse(url).query).get('filename') or [''])[0]
        if not filename:
            raise WorkflowValidationError(
                f"override #{index}: could not extract a filename from ComfyUI URL '{url}'. "
                f"URL must contain a filename parameter")
        self._log.info(f"Using ComfyUI file '{filename}' referenced by URL {url}")
        return filename

    async def _resolve_external_url(self, url: str, index: int) -> str:
        if not validate_url(url):
            raise WorkflowValidationError(
                f"override #{index}: invalid image URL '{url}'. Must be a valid HTTP/HTTPS URL")

        self._log.info(f"Downloading image from external URL {url}")
        try:
            data = await self._client.download(url, headers=BROWSER_HEADERS, timeout_s=self._timeout_s)
        except NetworkError as e:
            message = f"override #{index}: failed to download image from URL '{url}'"
            if e.status_code:
                message += f" (HTTP {e.status_code})"
            message += f". {e}"
            hint = DOWNLOAD_HINTS.get(e.status_code)
            if hint:
                message += f" Note: {hint}"
            raise NetworkError(message, status_code=e.status_code, details=e.details, hint=hint) from e

        if not isinstance(data, (bytes, bytearray)):
            raise DataError(f"override #{index}: the server at '{url}' did not return valid image data")
        if len(data) == 0:
            raise DataError(f"override #{index}: downloaded image from URL '{url}' is empty")
        self._check_size(len(data), index)

        filename = filename_from_url(url)
        self._log.info(f"Uploading downloaded image as {filename} ({format_bytes(len(data))})")
        return await self._client.upload_image(bytes(data), filename)

    async def _resolve_inline(self, payload: InlineBinary, label: str, index: int) -> str:
        if isinstance(payload.data, str):
            encoded = payload.data.split(',', 1)[-1] if payload.data.startswith('data:') else payload.data
            self._check_size(len(encoded) * 3 // 4, index)

        decoded = decode_base64(payload.data)
        if not decoded.ok:
            raise DataError(f"override #{index}: invalid binary data for '{label}': {decoded.error}")
        self._check_size(len(decoded.data), index)

        filename = payload.file_name
        if not filename:
            mime_type = payload.mime_type or ''
            subtype = mime_type.split('/')[-1] if '/' in mime_type else ''
            filename = generate_unique_filename(subtype or 'png', 'upload')

        self._log.info(f"Uploading binary data as {filename} ({format_bytes(len(decoded.data))})")
        return await self._client.upload_image(decoded.data, filename)

    def _check_size(self, size: int, index: int) -> None:
        limit = self._client.max_file_size_bytes
        if size > limit:
            raise DataError(f"override #{index}: file size ({format_bytes(size)}) exceeds maximum allowed size "
                            f"of {format_bytes(limit)}")
