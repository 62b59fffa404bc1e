import json
from datetime import datetime, timedelta, timezone

import pytest
from filelock import FileLock

from qos_library import ConcurrencyController, FailureKind, Provider, UnknownProviderError
from qos_library.config import DEFAULT_POLICIES, ControllerTuning
from qos_library.controller import (
    apply_failure,
    apply_success,
    cooldown_remaining_seconds,
    format_hint,
)
from qos_library.persistence import JsonFileStorage
from qos_library.utils import parse_iso

NOW = datetime(2026, 10, 19, 12, 0, 0, tzinfo=timezone.utc)
CODEX = DEFAULT_POLICIES[Provider.CODEX]
GEMINI = DEFAULT_POLICIES[Provider.GEMINI]


def _invariant_holds(state, policy) -> bool:
    return (
        1 <= state.min_parallel <= state.max_parallel
        <= state.max_parallel_cap <= policy.hard_limit
    )


def test_three_clean_successes_step_up_once() -> None:
    tuning = ControllerTuning()
    state = CODEX.default_account_state()
    for _ in range(2):
        apply_success(state, CODEX, tuning, 1000, NOW)
    assert state.max_parallel == 3
    assert state.success_streak == 2

    apply_success(state, CODEX, tuning, 1000, NOW)
    assert state.max_parallel == 4
    assert state.success_streak == 0


def test_step_up_is_bounded_by_current_cap() -> None:
    tuning = ControllerTuning()
    state = CODEX.default_account_state()
    for _ in range(9):
        apply_success(state, CODEX, tuning, 1000, NOW)
    assert state.max_parallel == state.max_parallel_cap == 4


def test_ewma_first_observation_then_smoothing() -> None:
    tuning = ControllerTuning()
    state = CODEX.default_account_state()
    apply_success(state, CODEX, tuning, 1000, NOW)
    assert state.ewma_latency_ms == 1000
    apply_success(state, CODEX, tuning, 2000, NOW)
    assert state.ewma_latency_ms == 1300
    apply_success(state, CODEX, tuning, 1001, NOW)
    # 0.3 * 1001 + 0.7 * 1300 = 1210.3
    assert state.ewma_latency_ms == 1210


@pytest.mark.parametrize("latency", [0, -5, None, "fast", float("nan"), float("inf")])
def test_invalid_latency_leaves_ewma_alone(latency) -> None:
    tuning = ControllerTuning()
    state = CODEX.default_account_state()
    state.ewma_latency_ms = 700
    apply_success(state, CODEX, tuning, latency, NOW)
    assert state.ewma_latency_ms == 700
    assert state.success_streak == 1


def test_slow_successes_do_not_step_up() -> None:
    tuning = ControllerTuning()
    state = CODEX.default_account_state()
    for _ in range(3):
        apply_success(state, CODEX, tuning, 60_000, NOW)
    assert state.max_parallel == 3
    assert state.success_streak == 3
    assert state.cap_growth_streak == 0


def test_success_after_errors_does_not_count_towards_cap_growth() -> None:
    tuning = ControllerTuning()
    state = CODEX.default_account_state()
    state.recent_429 = 1
    state.cap_growth_streak = 5
    apply_success(state, CODEX, tuning, 1000, NOW)
    assert state.cap_growth_streak == 0
    assert state.recent_429 == 0
    assert state.cooldown_until is None
    assert state.last_success_at == "2026-10-19T12:00:00.000Z"


def test_cap_grows_after_long_stability() -> None:
    tuning = ControllerTuning()
    state = GEMINI.default_account_state()
    for _ in range(GEMINI.cap_growth_threshold):
        apply_success(state, GEMINI, tuning, 1000, NOW)
    assert state.max_parallel_cap == 3
    assert state.cap_growth_streak == 0
    assert _invariant_holds(state, GEMINI)


def test_cap_never_exceeds_hard_limit() -> None:
    tuning = ControllerTuning()
    state = GEMINI.default_account_state()
    for _ in range(200):
        apply_success(state, GEMINI, tuning, 1000, NOW)
        assert _invariant_holds(state, GEMINI)
    assert state.max_parallel_cap == GEMINI.hard_limit
    assert state.max_parallel == GEMINI.hard_limit


def test_failure_halves_and_cools_down() -> None:
    tuning = ControllerTuning()
    state = CODEX.default_account_state()
    state.max_parallel = 9
    state.max_parallel_cap = 10
    state.success_streak = 2
    state.cap_growth_streak = 7

    apply_failure(state, CODEX, tuning, FailureKind.TIMEOUT, NOW)

    assert state.max_parallel == 4
    assert state.success_streak == 0
    assert state.cap_growth_streak == 0
    assert state.recent_timeout == 1
    assert state.recent_429 == 0
    assert parse_iso(state.cooldown_until) == NOW + timedelta(seconds=120)


def test_failure_is_floored_at_min_parallel() -> None:
    tuning = ControllerTuning()
    state = CODEX.default_account_state()
    for _ in range(5):
        apply_failure(state, CODEX, tuning, FailureKind.DEFAULT, NOW)
        assert state.max_parallel == CODEX.min_parallel
        assert _invariant_holds(state, CODEX)


@pytest.mark.parametrize(
    "kind, seconds, r429, rto",
    [
        (FailureKind.RATE_LIMIT, 180, 1, 0),
        (FailureKind.TIMEOUT, 120, 0, 1),
        (FailureKind.AUTH, 60, 0, 0),
        (FailureKind.DEFAULT, 60, 0, 0),
    ],
)
def test_failure_kind_table(kind, seconds, r429, rto) -> None:
    state = CODEX.default_account_state()
    apply_failure(state, CODEX, ControllerTuning(), kind, NOW)
    assert parse_iso(state.cooldown_until) == NOW + timedelta(seconds=seconds)
    assert state.recent_429 == r429
    assert state.recent_timeout == rto


def test_cooldown_remaining_seconds() -> None:
    state = CODEX.default_account_state()
    assert cooldown_remaining_seconds(state, NOW) == 0
    apply_failure(state, CODEX, ControllerTuning(), FailureKind.RATE_LIMIT, NOW)
    assert cooldown_remaining_seconds(state, NOW) == 180
    assert cooldown_remaining_seconds(state, NOW + timedelta(seconds=179.5)) == 1
    assert cooldown_remaining_seconds(state, NOW + timedelta(seconds=200)) == 0


def test_format_hint() -> None:
    state = CODEX.default_account_state()
    state.ewma_latency_ms = 1234
    state.recent_429 = 2
    assert format_hint(Provider.CODEX, "alice", state) == (
        "[QOS-HUD] codex account=alice par=3/4 ewma=1234ms 429=2 to=0"
    )


# =============================================================================
# PERSISTED CONTROLLER
# =============================================================================


@pytest.mark.asyncio
async def test_alice_scenario(controller, qos_config) -> None:
    first = await controller.record_failure("codex", "alice", "429 Too Many Requests")
    assert first.max_parallel == 2
    assert first.recent_429 == 1
    assert cooldown_remaining_seconds(first) > 170

    second = await controller.record_failure("codex", "alice", "rate limit exceeded")
    assert second.max_parallel == 2
    assert second.recent_429 == 2

    third = await controller.record_success("codex", "alice", 500)
    assert third.recent_429 == 0
    assert third.success_streak == 1
    assert third.max_parallel == 2
    assert third.cooldown_until is None
    assert third.ewma_latency_ms == 500

    stored = json.loads(qos_config.profile_path.read_text(encoding="utf-8"))
    codex = stored["providers"]["codex"]
    assert codex["last_account_id"] == "alice"
    assert codex["accounts"]["alice"]["success_streak"] == 1
    assert codex["max_parallel"] == 2
    assert "gemini" in stored["providers"]


@pytest.mark.asyncio
async def test_accounts_are_independent(controller) -> None:
    await controller.record_failure("codex", "alice", "429")
    profile = await controller.store.read_profile()
    assert profile.providers[Provider.CODEX].accounts["alice"].recent_429 == 1
    assert "bob" not in profile.providers[Provider.CODEX].accounts
    # Unknown account falls back to the provider-level mirror (alice)
    assert "429=1" in await controller.build_hint("codex", "bob")

    fresh = await controller.record_success("codex", "bob", 100)
    assert fresh.max_parallel == 3
    assert fresh.recent_429 == 0


@pytest.mark.asyncio
async def test_missing_account_uses_default_id(controller, qos_config) -> None:
    await controller.record_success("gemini", None, 0)
    stored = json.loads(qos_config.profile_path.read_text(encoding="utf-8"))
    assert "default" in stored["providers"]["gemini"]["accounts"]
    assert stored["providers"]["gemini"]["ewma_latency_ms"] == 0


@pytest.mark.asyncio
async def test_unknown_provider_is_ignored(controller, qos_config) -> None:
    assert await controller.record_success("claude", "x", 100) is None
    assert await controller.record_failure("claude", "x", "429") is None
    with pytest.raises(UnknownProviderError):
        await controller.build_hint("claude")
    assert not qos_config.profile_path.exists()


@pytest.mark.asyncio
async def test_failure_is_written_to_failure_log(controller, qos_config) -> None:
    await controller.record_failure("gemini", "g1", "ETIMEDOUT")
    log_file = qos_config.logs_dir / "failures.log"
    entry = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert entry["message"]["provider"] == "gemini"
    assert entry["message"]["failure_kind"] == "timeout"


@pytest.mark.asyncio
async def test_locked_profile_drops_event(qos_config) -> None:
    qos_config.lock_timeout = 0.05
    controller = ConcurrencyController(qos_config)
    storage = JsonFileStorage(qos_config.profile_path)
    qos_config.state_dir.mkdir(parents=True, exist_ok=True)

    with FileLock(str(storage.lock_path)):
        result = await controller.record_success("codex", "alice", 100)

    assert result is None
    assert not qos_config.profile_path.exists()


@pytest.mark.asyncio
async def test_build_hint_defaults(controller) -> None:
    hint = await controller.build_hint("gemini")
    assert hint == "[QOS-HUD] gemini account=default par=1/2 ewma=0ms 429=0 to=0"
