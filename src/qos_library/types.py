# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the QoS library.

This module contains the enums and dataclasses shared by the profile
store, the concurrency controller and the cache layer.
"""

import math
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional


PROFILE_VERSION = 1
DEFAULT_ACCOUNT_ID = "default"


# =============================================================================
# ENUMS
# =============================================================================


class Provider(str, Enum):
    """CLI backends whose concurrency is throttled."""

    CODEX = "codex"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: Any, strict: bool = False) -> Optional["Provider"]:
        """
        Resolve a provider from an enum member or a provider id string.

        Returns None for unknown ids unless strict is set, in which case
        UnknownProviderError is raised.
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            if strict:
                from .error_handler import UnknownProviderError

                raise UnknownProviderError(value)
            return None


class FailureKind(str, Enum):
    """Classification of a failed CLI invocation."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    AUTH = "auth"
    DEFAULT = "default"


class CacheSource(str, Enum):
    """Externally fetched snapshots, each with its own cache file."""

    CODEX_RATE_LIMITS = "codex_rate_limits"
    GEMINI_QUOTA = "gemini_quota"
    GEMINI_SESSION = "gemini_session"


# =============================================================================
# COERCION HELPERS
# =============================================================================


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves towards +infinity."""
    return int(math.floor(value + 0.5))


def coerce_int(value: Any, fallback: int, minimum: Optional[int] = None) -> int:
    """Best-effort integer conversion for values read from disk."""
    if isinstance(value, bool) or value is None:
        result = fallback
    elif isinstance(value, (int, float)):
        result = round_half_up(value) if math.isfinite(value) else fallback
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            number = math.nan
        result = round_half_up(number) if math.isfinite(number) else fallback
    else:
        result = fallback
    if minimum is not None:
        result = max(minimum, result)
    return result


def coerce_timestamp(value: Any) -> Optional[str]:
    """ISO timestamps are kept verbatim; anything else becomes None."""
    if isinstance(value, str) and value:
        return value
    return None


# =============================================================================
# PROFILE TYPES
# =============================================================================


@dataclass
class AccountState:
    """
    Adaptive concurrency state for one provider/account pair.

    Invariant (enforced by clamp):
        1 <= min_parallel <= max_parallel <= max_parallel_cap <= hard limit
    """

    max_parallel: int
    min_parallel: int
    max_parallel_cap: int
    success_streak: int = 0
    cap_growth_streak: int = 0
    recent_429: int = 0
    recent_timeout: int = 0
    ewma_latency_ms: int = 0
    cooldown_until: Optional[str] = None  # ISO-8601 UTC
    last_success_at: Optional[str] = None  # ISO-8601 UTC
    updated_at: str = ""

    # Keys we do not know about, kept for forward compatibility
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def field_names(cls) -> tuple:
        return tuple(f.name for f in fields(cls) if f.name != "extra")

    @property
    def has_recent_errors(self) -> bool:
        return self.recent_429 > 0 or self.recent_timeout > 0

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        defaults: "AccountState",
        keep_extra: bool = True,
    ) -> "AccountState":
        """Shallow-merge a raw dict over defaults, coercing every known field."""
        state = cls(
            max_parallel=coerce_int(data.get("max_parallel"), defaults.max_parallel),
            min_parallel=coerce_int(data.get("min_parallel"), defaults.min_parallel),
            max_parallel_cap=coerce_int(
                data.get("max_parallel_cap"), defaults.max_parallel_cap
            ),
            success_streak=coerce_int(
                data.get("success_streak"), defaults.success_streak, minimum=0
            ),
            cap_growth_streak=coerce_int(
                data.get("cap_growth_streak"), defaults.cap_growth_streak, minimum=0
            ),
            recent_429=coerce_int(data.get("recent_429"), defaults.recent_429, minimum=0),
            recent_timeout=coerce_int(
                data.get("recent_timeout"), defaults.recent_timeout, minimum=0
            ),
            ewma_latency_ms=coerce_int(
                data.get("ewma_latency_ms"), defaults.ewma_latency_ms, minimum=0
            ),
            cooldown_until=coerce_timestamp(data.get("cooldown_until", defaults.cooldown_until)),
            last_success_at=coerce_timestamp(
                data.get("last_success_at", defaults.last_success_at)
            ),
            updated_at=coerce_timestamp(data.get("updated_at")) or defaults.updated_at,
        )
        if keep_extra:
            known = set(cls.field_names())
            state.extra = {k: v for k, v in data.items() if k not in known}
        return state

    def clamp(self, hard_limit: int) -> "AccountState":
        """Restore the parallelism invariant after loading untrusted data."""
        self.min_parallel = max(1, min(self.min_parallel, hard_limit))
        self.max_parallel_cap = max(
            self.min_parallel, min(self.max_parallel_cap, hard_limit)
        )
        self.max_parallel = max(
            self.min_parallel, min(self.max_parallel, self.max_parallel_cap)
        )
        return self

    def copy(self) -> "AccountState":
        clone = AccountState(**{name: getattr(self, name) for name in self.field_names()})
        clone.extra = dict(self.extra)
        return clone

    def to_dict(self) -> Dict[str, Any]:
        data = {name: getattr(self, name) for name in self.field_names()}
        data.update(self.extra)
        return data


@dataclass
class ProviderProfile:
    """
    All accounts of one provider.

    `current` mirrors the most recently touched account and is written flat
    at provider level so single-account readers keep working.
    """

    current: AccountState
    accounts: Dict[str, AccountState] = field(default_factory=dict)
    last_account_id: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = self.current.to_dict()
        data["last_account_id"] = self.last_account_id
        data["accounts"] = {
            account_id: state.to_dict() for account_id, state in self.accounts.items()
        }
        data.update(self.extra)
        return data


@dataclass
class Profile:
    """Root document of cli_qos_profile.json."""

    providers: Dict[Provider, ProviderProfile]
    version: int = PROFILE_VERSION
    updated_at: str = ""
    unknown_providers: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        providers: Dict[str, Any] = {
            provider.value: state.to_dict() for provider, state in self.providers.items()
        }
        providers.update(self.unknown_providers)
        data: Dict[str, Any] = {
            "version": self.version,
            "updated_at": self.updated_at,
            "providers": providers,
        }
        data.update(self.extra)
        return data


# =============================================================================
# CACHE TYPES
# =============================================================================


@dataclass
class CacheEntry:
    """
    A cached snapshot as stored on disk.

    On disk: {"timestamp": epoch-ms, "cacheKey": "<account>::<fingerprint>",
    "payload": ...}. Entries written before key-tagging have no cacheKey.
    """

    payload: Any
    timestamp: Optional[float] = None  # epoch milliseconds
    cache_key: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_legacy(self) -> bool:
        return not self.cache_key

    def age_ms(self, now_ms: float) -> float:
        """Age in milliseconds; an entry without a usable timestamp is infinitely old."""
        if self.timestamp is None:
            return math.inf
        return now_ms - self.timestamp

    @classmethod
    def from_dict(cls, data: Any) -> Optional["CacheEntry"]:
        if not isinstance(data, dict) or data.get("payload") is None:
            return None
        timestamp = data.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            timestamp = None
        elif not math.isfinite(timestamp):
            timestamp = None
        cache_key = data.get("cacheKey")
        return cls(
            payload=data["payload"],
            timestamp=timestamp,
            cache_key=cache_key if isinstance(cache_key, str) else None,
            extra={
                k: v
                for k, v in data.items()
                if k not in ("payload", "timestamp", "cacheKey")
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"timestamp": self.timestamp}
        if self.cache_key:
            data["cacheKey"] = self.cache_key
        data["payload"] = self.payload
        data.update(self.extra)
        return data


@dataclass
class CacheDecision:
    """
    Outcome of a freshness check.

    payload: value the caller may render right now (None = nothing usable)
    should_refresh: whether a background refresh must be scheduled
    fallback: previous payload to keep using if a forced refresh fails
    legacy: payload came from an entry written before key-tagging
    """

    payload: Any
    should_refresh: bool
    fallback: Any = None
    legacy: bool = False


@dataclass
class FetchResult:
    """What a quota fetcher hands back to the refresh job."""

    payload: Any
    cache_key: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)
