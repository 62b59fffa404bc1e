# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Stale-while-revalidate freshness gate.

Decides, for a cached snapshot, what the caller may show right now and
whether a background refresh has to be scheduled. The caller is never
made to wait for the network.
"""

from typing import Optional

from ..types import CacheDecision, CacheEntry
from ..utils import now_ms as _now_ms
from .store import CacheFile


def evaluate(
    entry: Optional[CacheEntry],
    requested_key: Optional[str],
    stale_budget_ms: float,
    force_refresh: bool = False,
    now_ms: Optional[float] = None,
) -> CacheDecision:
    """
    Rules, in order:

    1. No entry: nothing to show, refresh.
    2. Forced refresh: treated as a miss, but the previous payload is kept
       as `fallback` when it belongs to the caller.
    3. Key mismatch: an entry written before key-tagging is served once and
       refreshed; an entry for another account/credential is never served.
    4. Key match: always served; refreshed once its age reaches the budget.

    Sources that are not account-bound pass requested_key=None.
    """
    if entry is None:
        return CacheDecision(payload=None, should_refresh=True)

    keyed = requested_key is not None
    key_matched = not keyed or entry.cache_key == requested_key
    legacy = keyed and not key_matched and entry.is_legacy

    if force_refresh:
        fallback = entry.payload if (key_matched or legacy) else None
        return CacheDecision(
            payload=None, should_refresh=True, fallback=fallback, legacy=legacy
        )

    if not key_matched:
        if legacy:
            return CacheDecision(
                payload=entry.payload,
                should_refresh=True,
                fallback=entry.payload,
                legacy=True,
            )
        return CacheDecision(payload=None, should_refresh=True)

    now = _now_ms() if now_ms is None else now_ms
    is_stale = entry.age_ms(now) >= stale_budget_ms
    return CacheDecision(
        payload=entry.payload, should_refresh=is_stale, fallback=entry.payload
    )


class CacheFreshnessGate:
    """
    Reads one cache file and evaluates it against a staleness budget.
    """

    def __init__(self, cache_file: CacheFile, stale_budget_ms: float):
        self._cache_file = cache_file
        self._stale_budget_ms = stale_budget_ms

    @property
    def cache_file(self) -> CacheFile:
        return self._cache_file

    async def check(
        self,
        requested_key: Optional[str] = None,
        force_refresh: bool = False,
        now_ms: Optional[float] = None,
    ) -> CacheDecision:
        entry = await self._cache_file.read()
        return evaluate(
            entry,
            requested_key,
            self._stale_budget_ms,
            force_refresh=force_refresh,
            now_ms=now_ms,
        )
