# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Background refresh of stale cache entries.

The scheduling side spawns a detached copy of the CLI with a refresh flag
and returns immediately; the child performs exactly one fetch-and-write
cycle and exits 0 whatever happened. Refreshes only ever overwrite a cache
file with newer data, so duplicate refreshes are harmless.
"""

import logging
import subprocess
import sys
from typing import Callable, List, Mapping, Optional

from ..config import QosConfig
from ..error_handler import StorageBusyError
from ..persistence import JsonFileStorage
from ..types import CacheSource
from .store import CacheFile

lib_logger = logging.getLogger("qos_library")

APP_MODULE = "qos_app"


class RefreshScheduler:
    """
    Fire-and-forget launcher for refresh children.

    Usage:
        scheduler = RefreshScheduler(config)
        if decision.should_refresh:
            scheduler.schedule(CacheSource.GEMINI_QUOTA, account_id)
    """

    def __init__(
        self,
        config: QosConfig,
        executable: Optional[str] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
    ):
        self._config = config
        self._executable = executable or sys.executable
        self._popen = popen

    def build_command(
        self, source: CacheSource, account_id: Optional[str] = None
    ) -> List[str]:
        command = [
            self._executable,
            "-m",
            APP_MODULE,
            self._config.cache_sources[source].refresh_flag,
        ]
        if account_id:
            command.extend(["--account", account_id])
        return command

    def schedule(self, source: CacheSource, account_id: Optional[str] = None) -> bool:
        """
        Launch a detached refresh. Never raises.

        Returns:
            True if the child was spawned, False if spawning failed
        """
        command = self.build_command(source, account_id)
        try:
            self._popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
                close_fds=True,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            lib_logger.debug(f"Could not schedule {source.value} refresh: {e}")
            return False
        lib_logger.debug(f"Scheduled {source.value} refresh")
        return True


async def run_refresh(
    config: QosConfig,
    source: CacheSource,
    account_id: Optional[str] = None,
    fetchers: Optional[Mapping] = None,
) -> bool:
    """
    One fetch-and-write cycle for a cache source. Never raises.

    A failed fetch leaves the previous cache entry untouched.

    Returns:
        True if the cache file was overwritten
    """
    if fetchers is None:
        from ..providers import build_fetchers

        fetchers = build_fetchers(config)
    fetcher = fetchers.get(source)
    if fetcher is None:
        lib_logger.warning(f"No fetcher registered for {source.value}")
        return False

    cache_path = config.cache_path(source)

    if config.single_flight_refresh:
        # A refresh of the same source already running wins; this one exits.
        flight = JsonFileStorage(
            cache_path.with_name(f"{cache_path.name}.refresh"),
            lock_timeout=0,
        )
        try:
            async with flight.locked():
                return await _fetch_and_write(config, source, fetcher, account_id)
        except StorageBusyError:
            lib_logger.debug(f"{source.value} refresh already in flight")
            return False

    return await _fetch_and_write(config, source, fetcher, account_id)


async def _fetch_and_write(config, source, fetcher, account_id) -> bool:
    try:
        result = await fetcher.fetch(account_id)
    except Exception as e:
        # Refresh children must always exit cleanly
        lib_logger.warning(f"{source.value} fetch failed: {e}")
        return False

    if result is None:
        lib_logger.debug(f"{source.value} fetch returned no data; keeping cache")
        return False

    cache_file = CacheFile(config.cache_path(source), lock_timeout=config.lock_timeout)
    entry = await cache_file.write(
        result.payload, cache_key=result.cache_key, extra=result.extra
    )
    return entry is not None
