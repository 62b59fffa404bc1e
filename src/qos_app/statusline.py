# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Status line view.

Renders one row per provider: quota usage on the left, QoS state and the
account on the right. Every snapshot comes out of its cache file through
the freshness gate; stale ones trigger a detached refresh, so rendering
never waits on the network.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from rich.console import Console
from rich.text import Text

from qos_library import (
    AccountState,
    CacheSource,
    Profile,
    ProfileStore,
    Provider,
    QosConfig,
    RateSnapshot,
    RequestRateTracker,
)
from qos_library.cache import CacheFile, CacheFreshnessGate, RefreshScheduler
from qos_library.controller import cooldown_remaining_seconds
from qos_library.persistence import JsonFileStorage
from qos_library.providers import (
    build_gemini_auth_context,
    find_model_bucket,
    get_codex_email,
    main_bucket,
)
from qos_library.utils import parse_iso, short_account_label, utc_now

logger = logging.getLogger(__name__)

ACCOUNT_LABEL_WIDTH = 10
BAR_WIDTH = 6

PROVIDER_MARKERS = {
    Provider.CODEX: ("x", "bright_white"),
    Provider.GEMINI: ("g", "blue"),
}


# =============================================================================
# FORMATTING HELPERS
# =============================================================================


def clamp_percent(value: Any) -> int:
    """Round half up and clamp to 0-100; anything non-numeric is 0."""
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(numeric):
        return 0
    return max(0, min(100, math.floor(numeric + 0.5)))


def percent_style(percent: int) -> str:
    if percent >= 85:
        return "red"
    if percent >= 70:
        return "yellow"
    if percent >= 50:
        return "cyan"
    return "green"


def parallel_style(current: int, cap: int) -> str:
    if current >= cap:
        return "green"
    if current > 1:
        return "yellow"
    return "red"


def usage_bar(percent: int, width: int = BAR_WIDTH) -> Text:
    filled = round(max(0, min(100, percent)) / 100 * width)
    bar = Text()
    if percent >= 85:
        style = "red"
    elif percent >= 70:
        style = "yellow"
    else:
        style = "green"
    bar.append("█" * filled, style=style)
    bar.append("░" * (width - filled), style="dim")
    return bar


def _reset_moment(value: Any) -> Optional[datetime]:
    """Reset times come as ISO strings or unix seconds."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return parse_iso(value)


def format_reset_hours(value: Any, now: Optional[datetime] = None) -> str:
    """Time until reset as "HHhMMm", "now" once passed, "n/a" if unknown."""
    moment = _reset_moment(value)
    if moment is None:
        return "n/a"
    diff = (moment - (now or utc_now())).total_seconds()
    if diff <= 0:
        return "now"
    total_minutes = int(diff // 60)
    return f"{total_minutes // 60:02d}h{total_minutes % 60:02d}m"


def format_reset_days(value: Any, now: Optional[datetime] = None) -> str:
    """Time until reset as "DdHh" or "Hh"."""
    moment = _reset_moment(value)
    if moment is None:
        return "n/a"
    diff = (moment - (now or utc_now())).total_seconds()
    if diff <= 0:
        return "now"
    total_minutes = int(diff // 60)
    days = total_minutes // (60 * 24)
    hours = (total_minutes % (60 * 24)) // 60
    if days > 0:
        return f"{days}d{hours}h"
    return f"{hours}h"


def estimate_usage(state: AccountState) -> Tuple[int, int]:
    """
    Rough 5h/weekly usage guess from QoS pressure, shown when the provider
    reports no quota.
    """
    five_hour = clamp_percent(
        (state.ewma_latency_ms / 1000) * 0.8
        + state.recent_429 * 20
        + state.recent_timeout * 12
        + state.max_parallel * 7
    )
    week = clamp_percent(five_hour * 0.8 + state.recent_429 * 10 + state.recent_timeout * 5)
    return five_hour, week


def gemini_used_percent(bucket: Optional[Dict[str, Any]]) -> Optional[int]:
    if not bucket:
        return None
    remaining = bucket.get("remainingFraction")
    if remaining is None:
        remaining = 1
    try:
        return clamp_percent((1 - float(remaining)) * 100)
    except (TypeError, ValueError):
        return None


# =============================================================================
# ACCOUNT SELECTION
# =============================================================================


def _provider_section(document: Any, provider: Provider) -> Any:
    if not isinstance(document, dict):
        return None
    providers = document.get("providers")
    if not isinstance(providers, dict):
        return None
    return providers.get(provider.value)


def select_account_id(provider: Provider, accounts_config: Any, accounts_state: Any) -> str:
    """Last selected account, else the first configured one, else "<provider>-main"."""
    state = _provider_section(accounts_state, provider)
    if isinstance(state, dict) and state.get("last_selected_id"):
        return str(state["last_selected_id"])
    configured = _provider_section(accounts_config, provider)
    if isinstance(configured, list) and configured and isinstance(configured[0], dict):
        if configured[0].get("id"):
            return str(configured[0]["id"])
    return f"{provider.value}-main"


def account_label(
    provider: Provider,
    accounts_config: Any,
    accounts_state: Any,
    codex_email: Optional[str] = None,
) -> str:
    selected = select_account_id(provider, accounts_config, accounts_state)
    label = selected
    configured = _provider_section(accounts_config, provider)
    if isinstance(configured, list):
        for account in configured:
            if isinstance(account, dict) and account.get("id") == selected:
                label = account.get("label") or selected
                break
    if provider is Provider.CODEX and codex_email:
        label = codex_email
    return short_account_label(label, ACCOUNT_LABEL_WIDTH)


# =============================================================================
# SNAPSHOT COLLECTION
# =============================================================================


@dataclass
class StatusSnapshot:
    profile: Profile
    labels: Dict[Provider, str] = field(default_factory=dict)
    codex_buckets: Optional[Dict[str, Any]] = None
    gemini_bucket: Optional[Dict[str, Any]] = None
    gemini_session: Optional[Dict[str, Any]] = None
    rpm: RateSnapshot = field(default_factory=RateSnapshot)
    scheduled: List[CacheSource] = field(default_factory=list)


def _gate(config: QosConfig, source: CacheSource) -> CacheFreshnessGate:
    return CacheFreshnessGate(
        CacheFile(config.cache_path(source), lock_timeout=config.lock_timeout),
        config.cache_sources[source].stale_budget_ms,
    )


async def collect_status(
    config: QosConfig, scheduler: Optional[RefreshScheduler] = None
) -> StatusSnapshot:
    """Read everything the status line needs and schedule stale refreshes."""
    scheduler = scheduler or RefreshScheduler(config)

    accounts_config, accounts_state, profile = await asyncio.gather(
        JsonFileStorage(config.accounts_config_path).read(),
        JsonFileStorage(config.accounts_state_path).read(),
        ProfileStore(config).read_profile(),
    )
    gemini_account = select_account_id(Provider.GEMINI, accounts_config, accounts_state)
    auth_context = await build_gemini_auth_context(config, gemini_account)

    codex_decision, session_decision, quota_decision = await asyncio.gather(
        _gate(config, CacheSource.CODEX_RATE_LIMITS).check(),
        _gate(config, CacheSource.GEMINI_SESSION).check(),
        _gate(config, CacheSource.GEMINI_QUOTA).check(requested_key=auth_context.cache_key),
    )

    snapshot = StatusSnapshot(profile=profile)
    if codex_decision.should_refresh and scheduler.schedule(CacheSource.CODEX_RATE_LIMITS):
        snapshot.scheduled.append(CacheSource.CODEX_RATE_LIMITS)
    if session_decision.should_refresh and scheduler.schedule(CacheSource.GEMINI_SESSION):
        snapshot.scheduled.append(CacheSource.GEMINI_SESSION)
    if quota_decision.should_refresh and scheduler.schedule(
        CacheSource.GEMINI_QUOTA, gemini_account
    ):
        snapshot.scheduled.append(CacheSource.GEMINI_QUOTA)
    if snapshot.scheduled:
        logger.debug(
            f"Refreshing stale caches: {', '.join(s.value for s in snapshot.scheduled)}"
        )

    codex_email = await get_codex_email(config)
    snapshot.labels = {
        Provider.CODEX: account_label(
            Provider.CODEX, accounts_config, accounts_state, codex_email
        ),
        Provider.GEMINI: account_label(Provider.GEMINI, accounts_config, accounts_state),
    }

    if isinstance(codex_decision.payload, dict):
        snapshot.codex_buckets = codex_decision.payload
    if isinstance(session_decision.payload, dict):
        snapshot.gemini_session = session_decision.payload
    if isinstance(quota_decision.payload, dict):
        model = (snapshot.gemini_session or {}).get("model")
        snapshot.gemini_bucket = find_model_bucket(
            quota_decision.payload.get("buckets"), model
        )

    snapshot.rpm = await RequestRateTracker(
        config.gemini_rpm_tracker_path, lock_timeout=config.lock_timeout
    ).read()
    return snapshot


# =============================================================================
# RENDERING
# =============================================================================


def _labelled(label: str, value: str, style: str) -> Text:
    text = Text(label, style="dim")
    text.append(value, style=style)
    return text


def _qos_section(provider: Provider, state: AccountState, now: datetime) -> Text:
    parts = [
        _labelled(
            "par:",
            f"{state.max_parallel}/{state.max_parallel_cap}",
            parallel_style(state.max_parallel, state.max_parallel_cap),
        )
    ]
    cooldown = cooldown_remaining_seconds(state, now)
    if cooldown > 0:
        parts.append(Text(f"cd:{cooldown}s", style="red" if cooldown > 120 else "yellow"))
    if provider is not Provider.GEMINI and state.recent_429 > 0:
        parts.append(Text(f"429:{state.recent_429}", style="red"))
    if state.recent_timeout > 0:
        parts.append(Text(f"to:{state.recent_timeout}", style="yellow"))
    return Text(" ").join(parts)


def _window_cell(label: str, percent: int, reset: str) -> Text:
    cell = Text(label, style="dim")
    cell.append_text(usage_bar(percent))
    cell.append(" ")
    cell.append(f"{percent}%".rjust(4), style=percent_style(percent))
    cell.append(f" ({reset:>6})", style="dim")
    return cell


def _estimate_section(state: AccountState) -> Text:
    five_hour, week = estimate_usage(state)
    return Text(" ").join(
        [
            _labelled("5h:", f"{five_hour}%", percent_style(five_hour)),
            _labelled("wk:", f"{week}%", percent_style(week)),
        ]
    )


def _window(bucket: Dict[str, Any], name: str) -> Dict[str, Any]:
    window = bucket.get(name)
    return window if isinstance(window, dict) else {}


def _codex_quota(snapshot: StatusSnapshot, now: datetime) -> Optional[Text]:
    bucket = main_bucket(snapshot.codex_buckets)
    if bucket is None:
        return None
    primary = _window(bucket, "primary")
    secondary = _window(bucket, "secondary")
    five_hour = clamp_percent(primary.get("used_percent") or 0)
    week = clamp_percent(secondary.get("used_percent") or 0)
    return Text(" ").join(
        [
            _window_cell("5h:", five_hour, format_reset_hours(primary.get("resets_at"), now)),
            _window_cell("wk:", week, format_reset_days(secondary.get("resets_at"), now)),
        ]
    )


def _gemini_quota(snapshot: StatusSnapshot, state: AccountState, now: datetime) -> Text:
    rpm = snapshot.rpm
    used = gemini_used_percent(snapshot.gemini_bucket)
    if used is None:
        day = Text("1d:", style="dim")
        day.append("░" * BAR_WIDTH, style="dim")
        day.append("  --% (--h--m)", style="dim")
    else:
        day = _window_cell(
            "1d:", used, format_reset_hours(snapshot.gemini_bucket.get("resetTime"), now)
        )

    minute = Text("1m:", style="dim")
    minute.append_text(usage_bar(rpm.percent))
    minute.append(" ")
    minute.append(f"{rpm.count}/{rpm.limit}".rjust(5), style=percent_style(rpm.percent))
    if state.recent_429 > 0:
        minute.append_text(_labelled(" rate:", f"{state.recent_429}(429)", "red"))
    else:
        minute.append_text(_labelled(" rate:", "0", "dim"))
    return Text(" ").join([day, minute])


def render_rows(snapshot: StatusSnapshot, now: Optional[datetime] = None) -> List[Text]:
    """Full view: one row per provider."""
    now = now or utc_now()
    rows = []
    for provider in (Provider.CODEX, Provider.GEMINI):
        state = snapshot.profile.providers[provider].current
        marker, color = PROVIDER_MARKERS[provider]

        if provider is Provider.CODEX:
            quota = _codex_quota(snapshot, now) or _estimate_section(state)
        else:
            quota = _gemini_quota(snapshot, state, now)

        row = Text(f"{marker}:", style=f"bold {color}")
        row.append(" ")
        row.append_text(quota)
        row.append(" | ", style="dim")
        row.append_text(_qos_section(provider, state, now))
        row.append(" | ", style="dim")
        row.append(snapshot.labels.get(provider, provider.value), style=color)
        rows.append(row)
    return rows


def render_compact(snapshot: StatusSnapshot) -> Text:
    """Single line: codex 5h usage, gemini daily usage and request rate."""
    parts = []

    codex = Text("x", style="bold bright_white")
    bucket = main_bucket(snapshot.codex_buckets)
    five_hour = 0
    if bucket is not None:
        five_hour = clamp_percent(_window(bucket, "primary").get("used_percent") or 0)
    codex.append(f"{five_hour}%", style=percent_style(five_hour))
    parts.append(codex)

    gemini = Text("g", style="bold blue")
    used = gemini_used_percent(snapshot.gemini_bucket)
    if used is None:
        gemini.append("--%", style="dim")
    else:
        gemini.append(f"{used}%", style=percent_style(used))
    parts.append(gemini)

    rpm = snapshot.rpm
    parts.append(_labelled("rpm:", f"{rpm.count}/{rpm.limit}", percent_style(rpm.percent)))
    return Text(" ").join(parts)


def render_neutral(compact: bool = False) -> Text:
    """Placeholder line printed when the status could not be collected."""
    if compact:
        return Text(" ").join(
            [
                Text("x", style="bold bright_white") + Text("0%", style="green"),
                Text("g", style="bold blue") + Text("--%", style="dim"),
                _labelled("rpm:", "0/60", "green"),
            ]
        )
    line = Text("x:", style="bold bright_white")
    line.append(" ")
    line.append_text(_labelled("5h:", "0%", "green"))
    line.append(" (n/a) ", style="dim")
    line.append_text(_labelled("wk:", "0%", "green"))
    line.append(" (n/a)", style="dim")
    line.append(" | ", style="dim")
    line.append("g:", style="bold blue")
    line.append(" ")
    line.append_text(_labelled("1d:", "--%", "dim"))
    return line


def make_console() -> Console:
    """Status lines are consumed by a terminal host that expects ANSI colors."""
    return Console(force_terminal=True, highlight=False, soft_wrap=True)


async def show_status(
    config: QosConfig,
    compact: bool = False,
    console: Optional[Console] = None,
    scheduler: Optional[RefreshScheduler] = None,
) -> StatusSnapshot:
    snapshot = await collect_status(config, scheduler)
    console = console or make_console()
    if compact:
        console.print(render_compact(snapshot))
    else:
        for row in render_rows(snapshot):
            console.print(row)
    return snapshot
