# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
JSON state file storage.

Handles loading and saving the profile, cache and tracker files shared by
the short-lived hook and status processes.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Optional, Union

import aiofiles
from filelock import FileLock, Timeout

from ..error_handler import StorageBusyError

lib_logger = logging.getLogger("qos_library")


class JsonFileStorage:
    """
    Handles persistence of one JSON document.

    Features:
    - Async file I/O with aiofiles
    - Atomic writes (write to a per-process temp file, then rename)
    - Cross-process read-modify-write via a sidecar FileLock
    - Missing or corrupt files read as None, never raise
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        lock_timeout: float = 2.0,
        indent: Optional[int] = 2,
    ):
        """
        Initialize storage.

        Args:
            file_path: Path to the JSON file
            lock_timeout: Seconds to wait for the file lock before giving up
            indent: JSON indentation used when writing
        """
        self.file_path = Path(file_path)
        self.lock_timeout = lock_timeout
        self.indent = indent

    @property
    def lock_path(self) -> Path:
        return self.file_path.with_name(f"{self.file_path.name}.lock")

    async def read(self) -> Optional[Any]:
        """
        Load the document.

        Returns:
            Parsed JSON, or None if the file is missing, empty or corrupt
        """
        try:
            async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            lib_logger.warning(f"Failed to read {self.file_path}: {e}")
            return None

        if not content.strip():
            return None

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            lib_logger.warning(f"Failed to parse {self.file_path}: {e}")
            return None

    async def write(self, data: Any) -> bool:
        """
        Save the document atomically.

        Returns:
            True if saved, False if the write failed
        """
        temp_path = self.file_path.with_name(
            f"{self.file_path.name}.{os.getpid()}.tmp"
        )
        try:
            content = json.dumps(data, indent=self.indent)
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(content)
            # Atomic rename
            os.replace(temp_path, self.file_path)
        except (OSError, TypeError, ValueError) as e:
            lib_logger.error(f"Failed to save {self.file_path}: {e}")
            try:
                temp_path.unlink()
            except OSError:
                pass
            return False

        lib_logger.debug(f"Saved {self.file_path}")
        return True

    @asynccontextmanager
    async def locked(self, timeout: Optional[float] = None) -> AsyncIterator[None]:
        """
        Hold the cross-process lock of this file.

        Raises:
            StorageBusyError: lock not acquired within the timeout, or the
                lock file could not be created
        """
        wait = self.lock_timeout if timeout is None else timeout
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            lock = FileLock(str(self.lock_path), timeout=wait)
            lock.acquire()
        except Timeout as e:
            raise StorageBusyError(f"{self.file_path} is locked by another process") from e
        except OSError as e:
            raise StorageBusyError(f"Cannot lock {self.file_path}: {e}") from e

        try:
            yield
        finally:
            lock.release()
