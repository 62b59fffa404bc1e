# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Cache files for externally fetched snapshots.

Each data source has its own file of the form
{"timestamp": epoch-ms, "cacheKey": "<account>::<fingerprint>", "payload": ...}.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..persistence import JsonFileStorage
from ..types import CacheEntry
from ..utils import credential_fingerprint, now_ms

lib_logger = logging.getLogger("qos_library")


def make_cache_key(account_id: Optional[str], credential_material: Optional[str]) -> str:
    """
    Bind a cache entry to an account and the credential it was fetched with.

    The raw credential never reaches disk, only its fingerprint.
    """
    return f"{account_id or 'default'}::{credential_fingerprint(credential_material)}"


class CacheFile:
    """
    One snapshot file. Entries are only ever overwritten, never deleted.
    """

    def __init__(self, file_path: Union[str, Path], lock_timeout: float = 2.0):
        self._storage = JsonFileStorage(file_path, lock_timeout=lock_timeout, indent=None)

    @property
    def path(self) -> Path:
        return self._storage.file_path

    @property
    def storage(self) -> JsonFileStorage:
        return self._storage

    async def read(self) -> Optional[CacheEntry]:
        """The stored entry, or None when missing, corrupt or payload-less."""
        return CacheEntry.from_dict(await self._storage.read())

    async def write(
        self,
        payload: Any,
        cache_key: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        timestamp: Optional[float] = None,
    ) -> Optional[CacheEntry]:
        """
        Overwrite the entry with a fresh snapshot.

        Returns:
            The written entry, or None if the write failed
        """
        entry = CacheEntry(
            payload=payload,
            timestamp=now_ms() if timestamp is None else timestamp,
            cache_key=cache_key,
            extra=dict(extra or {}),
        )
        if not await self._storage.write(entry.to_dict()):
            return None
        lib_logger.debug(f"Cache refreshed: {self.path.name}")
        return entry
