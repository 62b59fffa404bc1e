import json

import pytest

from qos_app.hooks import HookEvent, dispatch_hook, extract_account_id, infer_provider
from qos_library import Provider, RequestRateTracker


def _event(**fields) -> str:
    return json.dumps(fields)


@pytest.mark.parametrize(
    "command, expected",
    [
        ('codex exec "fix the tests"', Provider.CODEX),
        ("CODEX_PROFILE=work Codex  Exec --json", Provider.CODEX),
        ('gemini -y -p "summarize"', Provider.GEMINI),
        ("gemini --help", None),
        ("codex login", None),
        ("", None),
    ],
)
def test_infer_provider(command, expected) -> None:
    assert infer_provider(command) is expected


@pytest.mark.parametrize(
    "command, expected",
    [
        ("QOS_HUD_ACCOUNT=alice codex exec x", "alice"),
        ("GEMINI_PROFILE=me@corp.io gemini -y -p x", "me@corp.io"),
        ("codex exec --account=team-2 x", "team-2"),
        ("codex exec --profile  night.shift x", "night.shift"),
        ("codex exec --profile p1 --account a1 x", "a1"),
        ("OMC_ACCOUNT=env codex exec --account flag", "env"),
        ("codex exec x", None),
    ],
)
def test_extract_account_id(command, expected) -> None:
    assert extract_account_id(command) == expected


def test_hook_event_parsing_degrades_to_defaults() -> None:
    for raw in ("", "not json", "[1, 2]", None):
        event = HookEvent.parse(raw)
        assert event.command == ""
        assert event.latency_ms == 0

    event = HookEvent.parse(
        _event(toolName="bash", toolInput={"command": "codex exec"}, tool_duration_ms=812)
    )
    assert event.is_shell
    assert event.command == "codex exec"
    assert event.latency_ms == 812


@pytest.mark.asyncio
async def test_post_hook_records_success(qos_config, controller) -> None:
    reply = await dispatch_hook(
        "post",
        _event(
            tool_name="Bash",
            tool_input={"command": "codex exec --account alice 'hi'"},
            duration_ms=2500,
        ),
        qos_config,
        controller,
    )

    assert reply == {"continue": True, "suppressOutput": True}
    profile = await controller.store.read_profile()
    state = profile.providers[Provider.CODEX].accounts["alice"]
    assert state.success_streak == 1
    assert state.ewma_latency_ms == 2500


@pytest.mark.asyncio
async def test_post_hook_ignores_other_tools(qos_config, controller) -> None:
    reply = await dispatch_hook(
        "post",
        _event(tool_name="Read", tool_input={"command": "codex exec"}),
        qos_config,
        controller,
    )
    assert reply == {"continue": True, "suppressOutput": True}
    assert not qos_config.profile_path.exists()


@pytest.mark.asyncio
async def test_failure_hook_uses_tool_name_fallback(qos_config, controller) -> None:
    await dispatch_hook(
        "failure",
        _event(tool_name="mcp__gemini__ask", error="429 RESOURCE_EXHAUSTED"),
        qos_config,
        controller,
    )
    profile = await controller.store.read_profile()
    state = profile.providers[Provider.GEMINI].accounts["default"]
    assert state.recent_429 == 1
    assert state.cooldown_until is not None


@pytest.mark.asyncio
async def test_failure_hook_requires_error_text(qos_config, controller) -> None:
    await dispatch_hook(
        "failure",
        _event(tool_name="Bash", tool_input={"command": "codex exec x"}),
        qos_config,
        controller,
    )
    assert not qos_config.profile_path.exists()


@pytest.mark.asyncio
async def test_pre_hook_emits_hint_and_counts_gemini_request(qos_config, controller) -> None:
    tracker = RequestRateTracker(qos_config.gemini_rpm_tracker_path)
    reply = await dispatch_hook(
        "pre",
        _event(tool_name="Bash", tool_input={"command": "gemini -y -p 'go'"}),
        qos_config,
        controller,
        tracker,
    )

    context = reply["hookSpecificOutput"]["additionalContext"]
    assert reply["continue"] is True
    assert reply["hookSpecificOutput"]["hookEventName"] == "PreToolUse"
    assert context.startswith("[QOS-HUD] gemini account=default par=1/2")
    assert context.endswith(f"[STATE] {qos_config.profile_path}")
    assert (await tracker.read()).count == 1


@pytest.mark.asyncio
async def test_pre_hook_does_not_count_codex(qos_config, controller) -> None:
    tracker = RequestRateTracker(qos_config.gemini_rpm_tracker_path)
    await dispatch_hook(
        "pre",
        _event(tool_name="Bash", tool_input={"command": "codex exec x"}),
        qos_config,
        controller,
        tracker,
    )
    assert (await tracker.read()).count == 0


@pytest.mark.asyncio
async def test_unknown_hook_is_acknowledged(qos_config, controller) -> None:
    reply = await dispatch_hook("stop", "{}", qos_config, controller)
    assert reply == {"continue": True, "suppressOutput": True}
