# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from qos_library import (
    CacheSource,
    ConcurrencyController,
    QosConfig,
    UnknownProviderError,
    load_config,
)
from qos_library.cache import run_refresh

from .hooks import HOOK_FAILURE, HOOK_POST, HOOK_PRE, dispatch_hook
from .statusline import make_console, render_neutral, show_status

logger = logging.getLogger(__name__)

REFRESH_FLAGS = {
    "refresh_codex_rate_limits": CacheSource.CODEX_RATE_LIMITS,
    "refresh_gemini_quota": CacheSource.GEMINI_QUOTA,
    "refresh_gemini_session": CacheSource.GEMINI_SESSION,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qos-hud", description="Adaptive QoS status and hooks for AI CLIs"
    )
    refresh = parser.add_mutually_exclusive_group()
    refresh.add_argument(
        "--refresh-codex-rate-limits",
        action="store_true",
        help="Refresh the Codex rate limit cache once and exit.",
    )
    refresh.add_argument(
        "--refresh-gemini-quota",
        action="store_true",
        help="Refresh the Gemini quota cache once and exit.",
    )
    refresh.add_argument(
        "--refresh-gemini-session",
        action="store_true",
        help="Refresh the Gemini session token cache once and exit.",
    )
    parser.add_argument("--account", type=str, default=None, help="Account id.")

    commands = parser.add_subparsers(dest="command")

    status = commands.add_parser("status", help="Print the status line (default).")
    status.add_argument(
        "--compact", action="store_true", help="Print a single compact line."
    )

    hook = commands.add_parser("hook", help="Handle a host tool hook event from stdin.")
    hook.add_argument("event", choices=[HOOK_PRE, HOOK_POST, HOOK_FAILURE])

    hint = commands.add_parser("hint", help="Print the QoS hint of an account.")
    hint.add_argument("provider", type=str)
    hint.add_argument("--account", dest="hint_account", type=str, default=None)

    return parser


def setup_logging(config: QosConfig) -> None:
    """
    Stdout belongs to the hook protocol and the status line, so logs only
    ever go to a file, and only in debug mode.
    """
    if not config.debug:
        return
    try:
        config.logs_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(config.logs_dir / "qos_hud_debug.log", encoding="utf-8")
    except OSError:
        return
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    for name in ("qos_library", "qos_app"):
        named = logging.getLogger(name)
        named.setLevel(logging.DEBUG)
        named.addHandler(handler)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _requested_refresh(args: argparse.Namespace) -> Optional[CacheSource]:
    for attr, source in REFRESH_FLAGS.items():
        if getattr(args, attr, False):
            return source
    return None


async def _run(args: argparse.Namespace, config: QosConfig) -> int:
    source = _requested_refresh(args)
    if source is not None:
        await run_refresh(config, source, args.account)
        return 0

    if args.command == "hook":
        raw_input = sys.stdin.read() if not sys.stdin.isatty() else ""
        reply = await dispatch_hook(args.event, raw_input, config)
        print(json.dumps(reply))
        return 0

    if args.command == "hint":
        controller = ConcurrencyController(config)
        try:
            hint = await controller.build_hint(args.provider, args.hint_account or args.account)
        except UnknownProviderError as e:
            print(e, file=sys.stderr)
            return 2
        print(hint)
        return 0

    compact = getattr(args, "compact", False)
    try:
        await show_status(config, compact=compact)
    except Exception as e:
        logger.error(f"Status line failed: {e}", exc_info=True)
        make_console().print(render_neutral(compact))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    load_dotenv(Path.cwd() / ".env")
    config = load_config()
    setup_logging(config)

    try:
        return asyncio.run(_run(args, config))
    except KeyboardInterrupt:
        return 130


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
