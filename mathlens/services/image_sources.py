"""Image sources for file import and already-encoded images."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from pathlib import Path

from mathlens.services.recognition import ImageAcquisitionError

logger = logging.getLogger(__name__)

_SUPPORTED_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp", ".gif", ".bmp"}


def strip_data_url(data: str) -> str:
    """Return the base64 payload of *data*, with any data URL prefix removed."""
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    return data.strip()


def to_data_url(image: str) -> str:
    return f"data:image/png;base64,{strip_data_url(image)}"


class FileImageSource:
    """Reads an image file from disk each time it is acquired."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    async def acquire(self) -> str:
        if self._path.suffix.lower() not in _SUPPORTED_SUFFIXES:
            raise ImageAcquisitionError(f"Unsupported image type: {self._path.suffix or '<none>'}")
        try:
            raw = await asyncio.to_thread(self._path.read_bytes)
        except OSError as exc:
            raise ImageAcquisitionError(f"Cannot read {self._path}: {exc}") from exc
        if not raw:
            raise ImageAcquisitionError(f"{self._path} is empty")
        logger.debug("Imported %d bytes from %s", len(raw), self._path)
        return base64.b64encode(raw).decode("ascii")

    def __repr__(self) -> str:
        return f"FileImageSource({str(self._path)!r})"


class Base64ImageSource:
    """An image that was already captured (clipboard, upload, capture overlay)."""

    def __init__(self, data: str) -> None:
        payload = strip_data_url(data)
        try:
            base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ImageAcquisitionError("Image is not valid base64 data") from exc
        if not payload:
            raise ImageAcquisitionError("Image data is empty")
        self._payload = payload

    async def acquire(self) -> str:
        return self._payload

    def __repr__(self) -> str:
        return f"Base64ImageSource(<{len(self._payload)} chars>)"
