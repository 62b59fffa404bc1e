# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Host tool hooks.

The host tool pipes one JSON event per tool call into
`qos-hud hook {pre,post,failure}` and reads one JSON reply from stdout.
Only shell invocations of the Codex and Gemini CLIs are of interest;
everything else is acknowledged and ignored.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from qos_library import ConcurrencyController, Provider, QosConfig, RequestRateTracker

logger = logging.getLogger(__name__)

HOOK_PRE = "pre"
HOOK_POST = "post"
HOOK_FAILURE = "failure"

SHELL_TOOL_RE = re.compile(r"^(Bash|bash)$")

PROVIDER_PATTERNS = [
    (re.compile(r"\bcodex\s+exec\b", re.IGNORECASE), Provider.CODEX),
    (re.compile(r"\bgemini\s+-y\s+-p\b", re.IGNORECASE), Provider.GEMINI),
]

ACCOUNT_PATTERNS = [
    re.compile(r"(?:QOS_HUD_ACCOUNT|OMC_ACCOUNT|CODEX_PROFILE|GEMINI_PROFILE)=([A-Za-z0-9_.@-]+)"),
    re.compile(r"--account(?:=|\s+)([A-Za-z0-9_.@-]+)"),
    re.compile(r"--profile(?:=|\s+)([A-Za-z0-9_.@-]+)"),
]

LATENCY_KEYS = ("duration_ms", "tool_duration_ms", "elapsed_ms")


def acknowledge() -> Dict[str, Any]:
    return {"continue": True, "suppressOutput": True}


@dataclass
class HookEvent:
    tool_name: str = ""
    command: str = ""
    error: str = ""
    latency_ms: float = 0

    @classmethod
    def parse(cls, raw: Optional[str]) -> "HookEvent":
        """Malformed or missing input yields an empty event."""
        try:
            data = json.loads(raw or "{}")
        except json.JSONDecodeError:
            logger.debug("Hook input is not valid JSON; ignoring")
            data = {}
        if not isinstance(data, dict):
            data = {}

        tool_input = data.get("tool_input") or data.get("toolInput") or {}
        command = tool_input.get("command") if isinstance(tool_input, dict) else None

        latency = 0.0
        for key in LATENCY_KEYS:
            value = data.get(key)
            if value:
                try:
                    latency = float(value)
                except (TypeError, ValueError):
                    latency = 0.0
                break

        return cls(
            tool_name=str(data.get("tool_name") or data.get("toolName") or ""),
            command=str(command or ""),
            error=str(data.get("error") or ""),
            latency_ms=latency,
        )

    @property
    def is_shell(self) -> bool:
        return bool(SHELL_TOOL_RE.match(self.tool_name))


def infer_provider(command: str) -> Optional[Provider]:
    for pattern, provider in PROVIDER_PATTERNS:
        if pattern.search(command or ""):
            return provider
    return None


def extract_account_id(command: str) -> Optional[str]:
    """First account marker in the command line, by pattern priority."""
    for pattern in ACCOUNT_PATTERNS:
        match = pattern.search(command or "")
        if match:
            return match.group(1)
    return None


async def handle_pre_tool_use(
    event: HookEvent,
    config: QosConfig,
    controller: ConcurrencyController,
    tracker: Optional[RequestRateTracker] = None,
) -> Dict[str, Any]:
    """Inject the account's QoS hint into the host tool's context."""
    if not event.is_shell:
        return acknowledge()
    provider = infer_provider(event.command)
    if provider is None:
        return acknowledge()

    if provider is Provider.GEMINI and tracker is not None:
        await tracker.record()

    account_id = extract_account_id(event.command)
    hint = await controller.build_hint(provider, account_id)
    if not hint:
        return acknowledge()

    return {
        "continue": True,
        "hookSpecificOutput": {
            "hookEventName": "PreToolUse",
            "additionalContext": f"{hint}\n[STATE] {config.profile_path}",
        },
    }


async def handle_post_tool_use(
    event: HookEvent, controller: ConcurrencyController
) -> Dict[str, Any]:
    if not event.is_shell:
        return acknowledge()
    provider = infer_provider(event.command)
    if provider is None:
        return acknowledge()

    await controller.record_success(
        provider, extract_account_id(event.command), event.latency_ms
    )
    return acknowledge()


async def handle_post_tool_use_failure(
    event: HookEvent, controller: ConcurrencyController
) -> Dict[str, Any]:
    """Any tool may fail; the tool name is a fallback provider hint."""
    if not event.error:
        return acknowledge()

    provider = infer_provider(event.command)
    if provider is None:
        lowered = event.tool_name.lower()
        if "gemini" in lowered:
            provider = Provider.GEMINI
        elif "codex" in lowered:
            provider = Provider.CODEX
    if provider is None:
        return acknowledge()

    await controller.record_failure(
        provider, extract_account_id(event.command), event.error
    )
    return acknowledge()


async def dispatch_hook(
    name: str,
    raw_input: Optional[str],
    config: QosConfig,
    controller: Optional[ConcurrencyController] = None,
    tracker: Optional[RequestRateTracker] = None,
) -> Dict[str, Any]:
    """Run one hook. Always produces a reply, even on internal errors."""
    controller = controller or ConcurrencyController(config)
    event = HookEvent.parse(raw_input)
    try:
        if name == HOOK_PRE:
            if tracker is None:
                tracker = RequestRateTracker(
                    config.gemini_rpm_tracker_path, lock_timeout=config.lock_timeout
                )
            return await handle_pre_tool_use(event, config, controller, tracker)
        if name == HOOK_POST:
            return await handle_post_tool_use(event, controller)
        if name == HOOK_FAILURE:
            return await handle_post_tool_use_failure(event, controller)
    except Exception as e:
        # The host tool must never be blocked by bookkeeping
        logger.error(f"Hook '{name}' failed: {e}", exc_info=True)
        return acknowledge()

    logger.warning(f"Unknown hook '{name}'")
    return acknowledge()
