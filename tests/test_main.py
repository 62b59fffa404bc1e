import io
import json
import re
import sys

import pytest

from qos_app.main import build_parser, main
from qos_library import CacheSource, FailureKind, Provider, load_config


@pytest.fixture
def qos_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("QOS_HUD_HOME", str(tmp_path / "qos"))
    monkeypatch.setenv("CODEX_HOME", str(tmp_path / "codex"))
    monkeypatch.setenv("QOS_HUD_GEMINI_HOME", str(tmp_path / "gemini"))
    monkeypatch.delenv("QOS_HUD_DEBUG", raising=False)
    return tmp_path


def test_load_config_env_overrides(tmp_path) -> None:
    config = load_config(
        env={
            "QOS_HUD_HOME": str(tmp_path),
            "QOS_SUCCESS_STREAK_STEP_UP": "5",
            "QOS_EWMA_THRESHOLD_MS": "oops",
            "QOS_CAP_HARD_LIMIT_GEMINI": "8",
            "QOS_COOLDOWN_RATE_LIMIT_SECONDS": "300",
            "QOS_STALE_GEMINI_QUOTA_SECONDS": "60",
            "QOS_HUD_REFRESH_SINGLE_FLIGHT": "1",
        }
    )
    assert config.profile_path == tmp_path / "state" / "cli_qos_profile.json"
    assert config.tuning.success_streak_step_up == 5
    assert config.tuning.ewma_threshold_ms == 45_000
    assert config.policies[Provider.GEMINI].hard_limit == 8
    assert config.policies[Provider.CODEX].hard_limit == 12
    assert config.tuning.cooldown_seconds[FailureKind.RATE_LIMIT] == 300
    assert config.cache_sources[CacheSource.GEMINI_QUOTA].stale_budget_ms == 60_000
    assert config.cache_sources[CacheSource.GEMINI_QUOTA].keyed
    assert config.single_flight_refresh


def test_parser_refresh_flags() -> None:
    args = build_parser().parse_args(["--refresh-gemini-quota", "--account", "g2"])
    assert args.refresh_gemini_quota
    assert args.account == "g2"
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--refresh-gemini-quota", "--refresh-gemini-session"])


def test_hook_command_round_trip(qos_env, monkeypatch, capsys) -> None:
    event = {
        "tool_name": "Bash",
        "tool_input": {"command": "QOS_HUD_ACCOUNT=alice codex exec 'x'"},
        "error": "ETIMEDOUT",
    }
    monkeypatch.setattr("sys.stdin", io.StringIO(json.dumps(event)))

    assert main(["hook", "failure"]) == 0

    assert json.loads(capsys.readouterr().out) == {"continue": True, "suppressOutput": True}
    profile = json.loads(
        (qos_env / "qos" / "state" / "cli_qos_profile.json").read_text(encoding="utf-8")
    )
    assert profile["providers"]["codex"]["accounts"]["alice"]["recent_timeout"] == 1


def test_hook_with_garbage_input(qos_env, monkeypatch, capsys) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("\x00 not json"))
    assert main(["hook", "pre"]) == 0
    assert json.loads(capsys.readouterr().out)["continue"] is True


def test_hint_command(qos_env, capsys) -> None:
    assert main(["hint", "gemini", "--account", "g1"]) == 0
    assert capsys.readouterr().out.strip() == (
        "[QOS-HUD] gemini account=g1 par=1/2 ewma=0ms 429=0 to=0"
    )
    assert main(["hint", "claude"]) == 2
    assert "claude" in capsys.readouterr().err


def test_refresh_without_data_exits_cleanly(qos_env) -> None:
    assert main(["--refresh-codex-rate-limits"]) == 0
    assert main(["--refresh-gemini-session"]) == 0
    assert main(["--refresh-gemini-quota", "--account", "gemini-main"]) == 0
    assert not (qos_env / "qos" / "state" / "codex_rate_limits_cache.json").exists()


@pytest.mark.parametrize(
    "argv, expected",
    [
        (["status"], "x: 5h:0% (n/a) wk:0% (n/a) | g: 1d:--%"),
        (["status", "--compact"], "x0% g--% rpm:0/60"),
    ],
)
def test_status_failure_prints_neutral_line(qos_env, monkeypatch, capsys, argv, expected) -> None:
    async def broken_status(config, compact=False):
        raise AttributeError("'int' object has no attribute 'split'")

    monkeypatch.setattr(sys.modules["qos_app.main"], "show_status", broken_status)

    assert main(argv) == 0

    out = re.sub(r"\x1b\[[0-9;]*m", "", capsys.readouterr().out)
    assert out.strip() == expected
