import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from core.interfaces import IFileStorage

from config import settings

logger = logging.getLogger(settings.LOGGER_NAME)

class LocalFileStorage(IFileStorage):
    """Reads stored document bytes from the local upload directory."""

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        # Create the directory if it doesn't exist
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Upload directory ensured at: {self.base_path}")
        except OSError as e:
            logger.error(f"Could not create upload directory at {self.base_path}: {e}")
            raise

    def _resolve(self, stored_filename: str) -> Optional[Path]:
        """Join with the base directory; None if the name escapes it."""
        base = self.base_path.resolve()
        full = (base / stored_filename).resolve()
        try:
            full.relative_to(base)
        except ValueError:
            logger.warning(f"Rejected stored filename outside upload directory: {stored_filename}")
            return None
        return full

    async def get_path(self, stored_filename: str) -> Optional[str]:
        """Gets the full path of a file if it exists."""
        file_path = self._resolve(stored_filename)
        if file_path and file_path.is_file():
            return str(file_path)
        return None

    async def read(self, stored_filename: str) -> Optional[bytes]:
        """Reads a stored file; None when it is missing."""
        path = await self.get_path(stored_filename)
        if not path:
            logger.warning(f"Stored file not found: {stored_filename}")
            return None
        return await asyncio.to_thread(Path(path).read_bytes)
