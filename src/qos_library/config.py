# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Default configuration for the QoS library.

Holds the per-provider concurrency policies, the controller tuning knobs,
the cache source table and the loader that applies environment overrides.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional

from .types import AccountState, CacheSource, FailureKind, Provider


# =============================================================================
# DEFAULTS
# =============================================================================

DEFAULT_HOME_DIRNAME = ".qos-hud"
PROFILE_FILENAME = "cli_qos_profile.json"

DEFAULT_SUCCESS_STREAK_STEP_UP = 3
DEFAULT_EWMA_THRESHOLD_MS = 45_000
DEFAULT_EWMA_ALPHA = 0.3
DEFAULT_BACKOFF_FACTOR = 0.5
DEFAULT_CAP_GROWTH_THRESHOLD = 12

DEFAULT_COOLDOWN_SECONDS: Dict[FailureKind, int] = {
    FailureKind.RATE_LIMIT: 180,
    FailureKind.TIMEOUT: 120,
    FailureKind.AUTH: 60,
    FailureKind.DEFAULT: 60,
}

DEFAULT_LOCK_TIMEOUT_SECONDS = 2.0
DEFAULT_FETCH_TIMEOUT_SECONDS = 3.0

GEMINI_RPM_LIMIT = 60
GEMINI_RPM_WINDOW_SECONDS = 60


# =============================================================================
# PROVIDER POLICY
# =============================================================================


@dataclass(frozen=True)
class ProviderPolicy:
    """
    Concurrency policy of one provider variant.

    max_parallel grows towards max_parallel_cap; the cap itself grows
    towards hard_limit after cap_growth_threshold stable successes.
    """

    provider: Provider
    default_max_parallel: int
    min_parallel: int
    default_max_parallel_cap: int
    hard_limit: int
    cap_growth_threshold: int = DEFAULT_CAP_GROWTH_THRESHOLD

    def default_account_state(self, updated_at: str = "") -> AccountState:
        """Fresh state for an account seen for the first time."""
        return AccountState(
            max_parallel=self.default_max_parallel,
            min_parallel=self.min_parallel,
            max_parallel_cap=self.default_max_parallel_cap,
            updated_at=updated_at,
        ).clamp(self.hard_limit)


DEFAULT_POLICIES: Dict[Provider, ProviderPolicy] = {
    Provider.CODEX: ProviderPolicy(
        provider=Provider.CODEX,
        default_max_parallel=3,
        min_parallel=2,
        default_max_parallel_cap=4,
        hard_limit=12,
        cap_growth_threshold=12,
    ),
    Provider.GEMINI: ProviderPolicy(
        provider=Provider.GEMINI,
        default_max_parallel=1,
        min_parallel=1,
        default_max_parallel_cap=2,
        hard_limit=6,
        cap_growth_threshold=10,
    ),
}


@dataclass
class ControllerTuning:
    """Thresholds of the AIMD controller shared by all providers."""

    success_streak_step_up: int = DEFAULT_SUCCESS_STREAK_STEP_UP
    ewma_threshold_ms: int = DEFAULT_EWMA_THRESHOLD_MS
    ewma_alpha: float = DEFAULT_EWMA_ALPHA
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    cooldown_seconds: Dict[FailureKind, int] = field(
        default_factory=lambda: dict(DEFAULT_COOLDOWN_SECONDS)
    )


# =============================================================================
# CACHE SOURCES
# =============================================================================


@dataclass(frozen=True)
class CacheSourceConfig:
    """One independently refreshed snapshot file."""

    source: CacheSource
    file_name: str
    stale_seconds: float
    refresh_flag: str
    keyed: bool = False  # bound to an (account, credential) cache key

    @property
    def stale_budget_ms(self) -> float:
        return self.stale_seconds * 1000


DEFAULT_CACHE_SOURCES: Dict[CacheSource, CacheSourceConfig] = {
    CacheSource.CODEX_RATE_LIMITS: CacheSourceConfig(
        source=CacheSource.CODEX_RATE_LIMITS,
        file_name="codex_rate_limits_cache.json",
        stale_seconds=15,
        refresh_flag="--refresh-codex-rate-limits",
    ),
    CacheSource.GEMINI_QUOTA: CacheSourceConfig(
        source=CacheSource.GEMINI_QUOTA,
        file_name="gemini_quota_cache.json",
        stale_seconds=5 * 60,
        refresh_flag="--refresh-gemini-quota",
        keyed=True,
    ),
    CacheSource.GEMINI_SESSION: CacheSourceConfig(
        source=CacheSource.GEMINI_SESSION,
        file_name="gemini_session_tokens_cache.json",
        stale_seconds=15,
        refresh_flag="--refresh-gemini-session",
    ),
}


# =============================================================================
# ROOT CONFIG
# =============================================================================


@dataclass
class QosConfig:
    """Complete runtime configuration."""

    home: Path
    codex_home: Path
    gemini_home: Path
    lock_timeout: float = DEFAULT_LOCK_TIMEOUT_SECONDS
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT_SECONDS
    single_flight_refresh: bool = False
    debug: bool = False
    tuning: ControllerTuning = field(default_factory=ControllerTuning)
    policies: Dict[Provider, ProviderPolicy] = field(
        default_factory=lambda: dict(DEFAULT_POLICIES)
    )
    cache_sources: Dict[CacheSource, CacheSourceConfig] = field(
        default_factory=lambda: dict(DEFAULT_CACHE_SOURCES)
    )

    @property
    def state_dir(self) -> Path:
        return self.home / "state"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def router_dir(self) -> Path:
        return self.home / "router"

    @property
    def profile_path(self) -> Path:
        return self.state_dir / PROFILE_FILENAME

    @property
    def accounts_config_path(self) -> Path:
        return self.router_dir / "accounts.json"

    @property
    def accounts_state_path(self) -> Path:
        return self.state_dir / "cli_accounts_state.json"

    @property
    def gemini_project_cache_path(self) -> Path:
        return self.state_dir / "gemini_project_id.json"

    @property
    def gemini_rpm_tracker_path(self) -> Path:
        return self.state_dir / "gemini_rpm_tracker.json"

    def cache_path(self, source: CacheSource) -> Path:
        return self.state_dir / self.cache_sources[source].file_name

    def policy(self, provider: Provider) -> ProviderPolicy:
        return self.policies[provider]


# =============================================================================
# LOADER
# =============================================================================


def _env_int(env: Mapping[str, str], key: str) -> Optional[int]:
    value = env.get(key)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _env_float(env: Mapping[str, str], key: str) -> Optional[float]:
    value = env.get(key)
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _env_flag(env: Mapping[str, str], key: str) -> bool:
    return env.get(key, "").lower() in ("true", "1", "yes")


def load_config(env: Optional[Mapping[str, str]] = None) -> QosConfig:
    """
    Build the configuration.

    Merges:
    1. Built-in defaults
    2. Environment variables (always win; invalid values are ignored)

    Args:
        env: Mapping to read overrides from (defaults to os.environ)

    Returns:
        Complete configuration
    """
    if env is None:
        env = os.environ

    home = Path(env.get("QOS_HUD_HOME") or Path.home() / DEFAULT_HOME_DIRNAME)
    config = QosConfig(
        home=home.expanduser(),
        codex_home=Path(env.get("CODEX_HOME") or Path.home() / ".codex").expanduser(),
        gemini_home=Path(
            env.get("QOS_HUD_GEMINI_HOME") or Path.home() / ".gemini"
        ).expanduser(),
    )

    lock_timeout = _env_float(env, "QOS_HUD_LOCK_TIMEOUT")
    if lock_timeout is not None and lock_timeout >= 0:
        config.lock_timeout = lock_timeout

    fetch_timeout = _env_float(env, "QOS_HUD_FETCH_TIMEOUT")
    if fetch_timeout is not None and fetch_timeout > 0:
        config.fetch_timeout = fetch_timeout

    config.single_flight_refresh = _env_flag(env, "QOS_HUD_REFRESH_SINGLE_FLIGHT")
    config.debug = _env_flag(env, "QOS_HUD_DEBUG")

    # Controller tuning
    tuning = config.tuning
    step_up = _env_int(env, "QOS_SUCCESS_STREAK_STEP_UP")
    if step_up is not None and step_up >= 1:
        tuning.success_streak_step_up = step_up

    ewma_threshold = _env_int(env, "QOS_EWMA_THRESHOLD_MS")
    if ewma_threshold is not None and ewma_threshold > 0:
        tuning.ewma_threshold_ms = ewma_threshold

    for kind in FailureKind:
        cooldown = _env_int(env, f"QOS_COOLDOWN_{kind.value.upper()}_SECONDS")
        if cooldown is not None and cooldown >= 0:
            tuning.cooldown_seconds[kind] = cooldown

    # Provider policies
    for provider, policy in list(config.policies.items()):
        provider_upper = provider.value.upper()
        growth = _env_int(env, f"QOS_CAP_GROWTH_THRESHOLD_{provider_upper}")
        hard_limit = _env_int(env, f"QOS_CAP_HARD_LIMIT_{provider_upper}")
        overrides = {}
        if growth is not None and growth >= 1:
            overrides["cap_growth_threshold"] = growth
        if hard_limit is not None and hard_limit >= policy.min_parallel:
            overrides["hard_limit"] = hard_limit
        if overrides:
            config.policies[provider] = ProviderPolicy(
                provider=provider,
                default_max_parallel=policy.default_max_parallel,
                min_parallel=policy.min_parallel,
                default_max_parallel_cap=policy.default_max_parallel_cap,
                hard_limit=overrides.get("hard_limit", policy.hard_limit),
                cap_growth_threshold=overrides.get(
                    "cap_growth_threshold", policy.cap_growth_threshold
                ),
            )

    # Cache staleness budgets
    for source, source_config in list(config.cache_sources.items()):
        stale = _env_float(env, f"QOS_STALE_{source.value.upper()}_SECONDS")
        if stale is not None and stale >= 0:
            config.cache_sources[source] = CacheSourceConfig(
                source=source,
                file_name=source_config.file_name,
                stale_seconds=stale,
                refresh_flag=source_config.refresh_flag,
                keyed=source_config.keyed,
            )

    return config
