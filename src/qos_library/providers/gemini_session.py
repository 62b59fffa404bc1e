# src/qos_library/providers/gemini_session.py
"""
Gemini Session Token Scanner

Sums the per-message token counts of the most recently updated Gemini CLI
chat (~/.gemini/tmp/<project>/chats/*.json) and records its model.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import aiofiles

from ..config import QosConfig
from ..types import FetchResult, coerce_int
from ..utils import parse_iso

lib_logger = logging.getLogger("qos_library")


def summarize_chat(data: Any) -> Optional[Dict[str, Any]]:
    """Token totals and last model of one chat document."""
    if not isinstance(data, dict):
        return None
    input_tokens = 0
    output_tokens = 0
    model = "unknown"
    for message in data.get("messages") or []:
        if not isinstance(message, dict):
            continue
        tokens = message.get("tokens")
        if isinstance(tokens, dict):
            input_tokens += coerce_int(tokens.get("input"), 0, minimum=0)
            output_tokens += coerce_int(tokens.get("output"), 0, minimum=0)
        if message.get("model"):
            model = message["model"]
    return {
        "input": input_tokens,
        "output": output_tokens,
        "total": input_tokens + output_tokens,
        "model": model,
        "lastUpdated": data.get("lastUpdated"),
    }


class GeminiSessionScanner:
    """Finds the newest Gemini CLI chat and summarizes its token usage."""

    def __init__(self, config: QosConfig):
        self._config = config

    @property
    def tmp_root(self) -> Path:
        return self._config.gemini_home / "tmp"

    async def fetch(self, account_id: Optional[str] = None) -> Optional[FetchResult]:
        best: Optional[Dict[str, Any]] = None
        best_time = 0.0
        try:
            chat_dirs = [p / "chats" for p in self.tmp_root.iterdir() if (p / "chats").is_dir()]
        except OSError:
            return None

        for chats_dir in chat_dirs:
            try:
                files = [p for p in chats_dir.iterdir() if p.suffix == ".json"]
            except OSError:
                continue
            for file_path in files:
                try:
                    async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
                        data = json.loads(await f.read())
                except (OSError, UnicodeDecodeError, json.JSONDecodeError):
                    continue
                if not isinstance(data, dict):
                    continue
                updated = parse_iso(data.get("lastUpdated"))
                updated_time = updated.timestamp() if updated else 0.0
                if updated_time <= best_time:
                    continue
                summary = summarize_chat(data)
                if summary:
                    best, best_time = summary, updated_time

        if best is None:
            lib_logger.debug("No Gemini chat sessions found")
            return None
        return FetchResult(payload=best)
