# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Sliding-window request counter for the Gemini CLI.

The Gemini OAuth tier exposes no per-minute counter, so invocations are
counted locally: the pre-tool-use hook appends a timestamp, the status
view counts the ones inside the window.
"""

import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

from .config import GEMINI_RPM_LIMIT, GEMINI_RPM_WINDOW_SECONDS
from .error_handler import StorageBusyError
from .persistence import JsonFileStorage
from .utils import now_ms as _now_ms

lib_logger = logging.getLogger("qos_library")

# Remaining seconds are shown in 5 s steps to keep the status line steady
REMAINING_STEP_SECONDS = 5


@dataclass
class RateSnapshot:
    count: int = 0
    percent: int = 0
    remaining_sec: int = 0
    limit: int = GEMINI_RPM_LIMIT


def _timestamps(data) -> List[float]:
    raw = data.get("timestamps") if isinstance(data, dict) else None
    if not isinstance(raw, list):
        return []
    return [
        float(t)
        for t in raw
        if isinstance(t, (int, float)) and not isinstance(t, bool)
    ]


class RequestRateTracker:
    """
    Counts requests in a trailing window, persisted as
    {"timestamps": [epoch-ms, ...]}.
    """

    def __init__(
        self,
        path: Union[str, Path],
        window_seconds: float = GEMINI_RPM_WINDOW_SECONDS,
        limit: int = GEMINI_RPM_LIMIT,
        lock_timeout: float = 2.0,
    ):
        self._storage = JsonFileStorage(path, lock_timeout=lock_timeout, indent=None)
        self.window_ms = window_seconds * 1000
        self.limit = limit

    @property
    def path(self) -> Path:
        return self._storage.file_path

    def _recent(self, timestamps: List[float], now: float) -> List[float]:
        return [t for t in timestamps if now - t < self.window_ms]

    async def record(self, now_ms: Optional[float] = None) -> bool:
        """
        Append one request and drop the ones outside the window.

        Returns:
            True if the request was recorded
        """
        now = _now_ms() if now_ms is None else now_ms
        try:
            async with self._storage.locked():
                recent = self._recent(_timestamps(await self._storage.read()), now)
                recent.append(now)
                return await self._storage.write({"timestamps": recent})
        except StorageBusyError as e:
            lib_logger.debug(f"Request not counted: {e}")
            return False

    async def read(self, now_ms: Optional[float] = None) -> RateSnapshot:
        """Requests inside the window and seconds until the oldest one expires."""
        now = _now_ms() if now_ms is None else now_ms
        recent = self._recent(_timestamps(await self._storage.read()), now)
        count = len(recent)
        percent = max(0, min(100, math.floor(count / self.limit * 100 + 0.5)))

        remaining = 0
        if recent:
            remaining = max(0, math.ceil((self.window_ms - (now - min(recent))) / 1000))
        remaining = math.ceil(remaining / REMAINING_STEP_SECONDS) * REMAINING_STEP_SECONDS

        return RateSnapshot(
            count=count, percent=percent, remaining_sec=remaining, limit=self.limit
        )
