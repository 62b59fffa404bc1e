# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Adaptive concurrency controller.

Per provider and account, keeps a multiplicative-decrease /
streak-gated-increase (AIMD) ceiling on parallel CLI invocations:

- a failure halves max_parallel (floored at min_parallel) and starts a
  cooldown whose length depends on the failure kind;
- every `success_streak_step_up` clean successes raise max_parallel by one,
  bounded by max_parallel_cap;
- a long run of stable successes (no recent errors, EWMA latency under the
  threshold) raises max_parallel_cap itself, bounded by the provider's
  hard limit.
"""

import logging
import math
from datetime import datetime
from typing import Any, Optional

from .config import ControllerTuning, ProviderPolicy, QosConfig
from .error_handler import StorageBusyError, classify_failure, cooldown_seconds
from .failure_logger import log_failure
from .profile_store import ProfileStore, ensure_account_state, sync_provider
from .types import AccountState, FailureKind, Provider, round_half_up
from .utils import iso_after, parse_iso, to_iso, utc_now

lib_logger = logging.getLogger("qos_library")


# =============================================================================
# PURE TRANSITIONS
# =============================================================================


def _valid_latency(latency_ms: Any) -> Optional[float]:
    if isinstance(latency_ms, bool):
        return None
    try:
        latency = float(latency_ms)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(latency) or latency <= 0:
        return None
    return latency


def apply_success(
    state: AccountState,
    policy: ProviderPolicy,
    tuning: ControllerTuning,
    latency_ms: Any,
    now: datetime,
) -> AccountState:
    """
    Apply one successful invocation to an account state in place.

    Args:
        state: Account state to update
        policy: Policy of the account's provider
        tuning: Controller thresholds
        latency_ms: Observed latency; ignored unless finite and positive
        now: Event time

    Returns:
        The same state object
    """
    # Judged before this event clears the counters
    had_recent_errors = state.has_recent_errors

    latency = _valid_latency(latency_ms)
    if latency is not None:
        if state.ewma_latency_ms > 0:
            state.ewma_latency_ms = round_half_up(
                tuning.ewma_alpha * latency
                + (1 - tuning.ewma_alpha) * state.ewma_latency_ms
            )
        else:
            state.ewma_latency_ms = round_half_up(latency)

    latency_ok = state.ewma_latency_ms <= tuning.ewma_threshold_ms

    state.success_streak += 1
    if not had_recent_errors and latency_ok:
        state.cap_growth_streak += 1
    else:
        state.cap_growth_streak = 0

    state.recent_429 = 0
    state.recent_timeout = 0
    state.cooldown_until = None
    state.last_success_at = to_iso(now)

    if state.success_streak >= tuning.success_streak_step_up and latency_ok:
        state.max_parallel = min(state.max_parallel_cap, state.max_parallel + 1)
        state.success_streak = 0

    state.max_parallel_cap = min(state.max_parallel_cap, policy.hard_limit)
    if (
        state.cap_growth_streak >= policy.cap_growth_threshold
        and state.max_parallel_cap < policy.hard_limit
    ):
        state.max_parallel_cap += 1
        state.cap_growth_streak = 0

    state.updated_at = to_iso(now)
    return state


def apply_failure(
    state: AccountState,
    policy: ProviderPolicy,
    tuning: ControllerTuning,
    kind: FailureKind,
    now: datetime,
) -> AccountState:
    """
    Apply one failed invocation to an account state in place.

    Auth and unclassified failures still halve parallelism and cool down,
    they just do not count towards recent_429/recent_timeout.
    """
    state.max_parallel = max(
        state.min_parallel, math.floor(state.max_parallel * tuning.backoff_factor)
    )
    state.success_streak = 0
    state.cap_growth_streak = 0

    if kind is FailureKind.RATE_LIMIT:
        state.recent_429 += 1
    elif kind is FailureKind.TIMEOUT:
        state.recent_timeout += 1

    state.cooldown_until = iso_after(now, cooldown_seconds(kind, tuning))
    state.updated_at = to_iso(now)
    return state


def cooldown_remaining_seconds(state: AccountState, now: Optional[datetime] = None) -> int:
    """Whole seconds left in the account's cooldown (0 when none or expired)."""
    until = parse_iso(state.cooldown_until)
    if until is None:
        return 0
    remaining = (until - (now or utc_now())).total_seconds()
    if remaining <= 0:
        return 0
    return math.ceil(remaining)


def format_hint(provider: Provider, account_label: str, state: AccountState) -> str:
    return (
        f"[QOS-HUD] {provider.value} account={account_label} "
        f"par={state.max_parallel}/{state.max_parallel_cap} "
        f"ewma={state.ewma_latency_ms}ms "
        f"429={state.recent_429} to={state.recent_timeout}"
    )


# =============================================================================
# CONTROLLER
# =============================================================================


class ConcurrencyController:
    """
    Records invocation outcomes into the persisted profile.

    Event methods never raise: an unknown provider is ignored and a busy
    or unwritable profile file drops the event with a log line.
    """

    def __init__(self, config: QosConfig, store: Optional[ProfileStore] = None):
        self._config = config
        self._store = store or ProfileStore(config)

    @property
    def store(self) -> ProfileStore:
        return self._store

    async def record_success(
        self,
        provider: Any,
        account_id: Optional[str] = None,
        latency_ms: Any = 0,
    ) -> Optional[AccountState]:
        """
        Record a successful invocation.

        Args:
            provider: Provider enum or id ("codex", "gemini")
            account_id: Account identifier (None = "default")
            latency_ms: Elapsed time of the invocation

        Returns:
            Copy of the updated account state, or None if nothing was recorded
        """
        resolved = Provider.parse(provider)
        if resolved is None:
            return None
        policy = self._config.policy(resolved)

        try:
            async with self._store.transaction() as profile:
                now = utc_now()
                provider_profile = profile.providers[resolved]
                state = ensure_account_state(
                    provider_profile, account_id, policy, to_iso(now)
                )
                apply_success(state, policy, self._config.tuning, latency_ms, now)
                sync_provider(provider_profile, state, to_iso(now))
                result = state.copy()
        except StorageBusyError as e:
            lib_logger.debug(f"Dropped success event for {resolved.value}: {e}")
            return None

        lib_logger.debug(
            f"{resolved.value}/{account_id or 'default'} success: "
            f"par={result.max_parallel}/{result.max_parallel_cap} "
            f"ewma={result.ewma_latency_ms}ms"
        )
        return result

    async def record_failure(
        self,
        provider: Any,
        account_id: Optional[str] = None,
        error_text: Optional[str] = None,
    ) -> Optional[AccountState]:
        """
        Record a failed invocation.

        Args:
            provider: Provider enum or id ("codex", "gemini")
            account_id: Account identifier (None = "default")
            error_text: Error message used to classify the failure

        Returns:
            Copy of the updated account state, or None if nothing was recorded
        """
        resolved = Provider.parse(provider)
        if resolved is None:
            return None
        policy = self._config.policy(resolved)
        kind = classify_failure(error_text)

        try:
            async with self._store.transaction() as profile:
                now = utc_now()
                provider_profile = profile.providers[resolved]
                state = ensure_account_state(
                    provider_profile, account_id, policy, to_iso(now)
                )
                apply_failure(state, policy, self._config.tuning, kind, now)
                sync_provider(provider_profile, state, to_iso(now))
                result = state.copy()
        except StorageBusyError as e:
            lib_logger.debug(f"Dropped failure event for {resolved.value}: {e}")
            return None

        lib_logger.info(
            f"{resolved.value}/{account_id or 'default'} {kind.value} failure: "
            f"par={result.max_parallel}/{result.max_parallel_cap}, "
            f"cooldown until {result.cooldown_until}"
        )
        log_failure(
            self._config.logs_dir,
            provider=resolved.value,
            account_id=account_id or "default",
            kind=kind.value,
            error_text=error_text,
            max_parallel=result.max_parallel,
            cooldown_until=result.cooldown_until,
        )
        return result

    async def build_hint(
        self, provider: Any, account_id: Optional[str] = None
    ) -> str:
        """
        One-line summary of an account's QoS state for the host tool.

        An account never seen falls back to the provider-level mirror.

        Raises:
            UnknownProviderError: provider is not codex or gemini
        """
        resolved = Provider.parse(provider, strict=True)
        profile = await self._store.read_profile()
        provider_profile = profile.providers[resolved]
        if account_id and account_id in provider_profile.accounts:
            state = provider_profile.accounts[account_id]
        else:
            state = provider_profile.current
        label = account_id or provider_profile.last_account_id or "default"
        return format_hint(resolved, label, state)
