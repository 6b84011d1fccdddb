"""
Audio Storage.

Read-only access to uploaded consultation recordings. A recording URL is
either an absolute http(s) URL or a path relative to the configured
storage root (uploads are stored as ``/uploads/recordings/<file>``).
"""

from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import httpx

from src.config import Settings, get_settings
from src.errors import MissingInputError
from src.logging_config import get_logger

logger = get_logger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 120.0


class AudioStorage:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def resolve_path(self, recording_url: str) -> Path:
        """Absolute path of a stored recording; it must stay inside the storage root."""
        root = Path(self._settings.audio_storage_root).resolve()
        path = (root / recording_url.lstrip("/")).resolve()
        if not path.is_relative_to(root):
            raise MissingInputError(f"Recording path is outside audio storage: {recording_url}")
        return path

    async def read(self, recording_url: str) -> bytes:
        if _is_remote(recording_url):
            return await self._download(recording_url)

        path = self.resolve_path(recording_url)
        if not path.is_file():
            raise MissingInputError(f"Audio file not found: {path}")

        audio = await asyncio.to_thread(path.read_bytes)
        logger.info("audio_loaded", path=str(path), size_bytes=len(audio))
        return audio

    async def _download(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS) as client:
            response = await client.get(url)
        if response.status_code == 404:
            raise MissingInputError(f"Audio file not found: {url}")
        response.raise_for_status()
        logger.info("audio_downloaded", url=url, size_bytes=len(response.content))
        return response.content


def recording_filename(recording_url: str) -> str:
    """File name sent to the provider; the extension tells it the audio format."""
    path = urlparse(recording_url).path if _is_remote(recording_url) else recording_url
    return PurePosixPath(path).name or "recording.mp3"


def _is_remote(recording_url: str) -> bool:
    return urlparse(recording_url).scheme in ("http", "https")
