"""
Temporary Resource Manager

Provides a locally readable copy of an audio asset for the duration of one
ingestion attempt and removes any copy it created, whatever the outcome.
"""

import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path, PurePosixPath
from typing import AsyncIterator, Optional, Set
from urllib.parse import urlparse

from .error_handler import ResourceAcquisitionError
from .interfaces import AudioStore

logger = logging.getLogger(__name__)

TEMP_FILE_PREFIX = "transcription-"
DEFAULT_SUFFIX = ".audio"


class TemporaryAudioResource:
    """Acquire/release local audio paths backed by an AudioStore"""

    def __init__(self, audio_store: AudioStore, temp_dir: Optional[str] = None):
        self.audio_store = audio_store
        self.temp_dir = temp_dir
        self._created: Set[Path] = set()

    async def acquire(self, asset_uri: str) -> Path:
        """
        Return a local path for the asset

        Already-local assets are returned as-is. Remote assets are downloaded
        into a uniquely named temporary file.

        Raises:
            ResourceAcquisitionError: download or write failed
        """
        local_path = self.audio_store.get_local_path(asset_uri)
        if local_path is not None:
            logger.debug(f"Using local audio file {local_path}")
            return Path(local_path)

        try:
            data = await self.audio_store.download(asset_uri)
        except Exception as e:
            raise ResourceAcquisitionError(f"Failed to download audio {asset_uri}: {e}") from e

        path = self._write_temp_file(asset_uri, data)
        self._created.add(path)
        logger.info(f"Downloaded {len(data)} bytes of audio to {path}")
        return path

    async def release(self, local_path: Optional[Path]):
        """Delete the file if this manager created it; failures are only logged"""
        if local_path is None:
            return

        path = Path(local_path)
        if path not in self._created:
            return

        self._created.discard(path)
        try:
            path.unlink()
            logger.debug(f"Deleted temporary audio file {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to delete temporary audio file {path}: {e}")

    @asynccontextmanager
    async def acquired(self, asset_uri: str) -> AsyncIterator[Path]:
        """Scoped acquisition; release runs on every exit path"""
        path = await self.acquire(asset_uri)
        try:
            yield path
        finally:
            await self.release(path)

    def _write_temp_file(self, asset_uri: str, data: bytes) -> Path:
        suffix = PurePosixPath(urlparse(asset_uri).path).suffix or DEFAULT_SUFFIX
        try:
            if self.temp_dir:
                os.makedirs(self.temp_dir, exist_ok=True)
            fd, name = tempfile.mkstemp(prefix=TEMP_FILE_PREFIX, suffix=suffix, dir=self.temp_dir)
        except OSError as e:
            raise ResourceAcquisitionError(f"Failed to create temporary file for {asset_uri}: {e}") from e

        path = Path(name)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
        except OSError as e:
            path.unlink(missing_ok=True)
            raise ResourceAcquisitionError(f"Failed to write audio to {path}: {e}") from e

        return path
