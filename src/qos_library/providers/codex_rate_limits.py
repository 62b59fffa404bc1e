# src/qos_library/providers/codex_rate_limits.py
"""
Codex Rate Limit Harvester

The Codex CLI writes its server-reported rate limits into the session
transcripts under ~/.codex/sessions/YYYY/MM/DD/*.jsonl. This module reads
the newest transcript of today or yesterday and keeps the latest event of
each rate limit bucket (at most two: the codex bucket and one other).

Also exposes the signed-in e-mail from the id_token in ~/.codex/auth.json,
used as the account label.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from ..config import QosConfig
from ..persistence import JsonFileStorage
from ..types import FetchResult
from ..utils import decode_jwt_claims

lib_logger = logging.getLogger("qos_library")

MAX_BUCKETS = 2
LOOKBACK_DAYS = 1


def _session_dirs(sessions_root: Path, today: datetime) -> List[Path]:
    dirs = []
    for offset in range(LOOKBACK_DAYS + 1):
        day = today - timedelta(days=offset)
        dirs.append(
            sessions_root / f"{day.year}" / f"{day.month:02d}" / f"{day.day:02d}"
        )
    return dirs


def _bucket_from_event(event: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(event, dict):
        return None
    payload = event.get("payload")
    if not isinstance(payload, dict):
        return None
    rate_limits = payload.get("rate_limits")
    if not isinstance(rate_limits, dict) or not rate_limits.get("limit_id"):
        return None
    info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
    return {
        "limitId": rate_limits.get("limit_id"),
        "limitName": rate_limits.get("limit_name"),
        "primary": rate_limits.get("primary"),
        "secondary": rate_limits.get("secondary"),
        "credits": rate_limits.get("credits"),
        "tokens": info.get("total_token_usage"),
        "contextWindow": info.get("model_context_window"),
        "timestamp": event.get("timestamp"),
    }


def parse_rate_limit_lines(lines: List[str]) -> Dict[str, Dict[str, Any]]:
    """
    Collect the newest event of each bucket from transcript lines.

    Lines are scanned from the end; unparseable lines are skipped.
    """
    buckets: Dict[str, Dict[str, Any]] = {}
    for line in reversed(lines):
        if not line.strip():
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        bucket = _bucket_from_event(event)
        if bucket and bucket["limitId"] not in buckets:
            buckets[bucket["limitId"]] = bucket
        if len(buckets) >= MAX_BUCKETS:
            break
    return buckets


def main_bucket(buckets: Any) -> Optional[Dict[str, Any]]:
    """The `codex` bucket, else the first one."""
    if not isinstance(buckets, dict) or not buckets:
        return None
    bucket = buckets.get("codex") or next(iter(buckets.values()))
    return bucket if isinstance(bucket, dict) else None


class CodexRateLimitScanner:
    """Harvests rate limit buckets from the newest Codex transcript."""

    def __init__(self, config: QosConfig):
        self._config = config

    @property
    def sessions_root(self) -> Path:
        return self._config.codex_home / "sessions"

    async def fetch(
        self, account_id: Optional[str] = None, today: Optional[datetime] = None
    ) -> Optional[FetchResult]:
        for session_dir in _session_dirs(self.sessions_root, today or datetime.now()):
            try:
                files = sorted(
                    (p for p in session_dir.iterdir() if p.suffix == ".jsonl"),
                    key=lambda p: p.name,
                    reverse=True,
                )
            except OSError:
                continue

            for file_path in files:
                try:
                    async with aiofiles.open(file_path, "r", encoding="utf-8") as f:
                        content = await f.read()
                except (OSError, UnicodeDecodeError) as e:
                    lib_logger.debug(f"Skipping Codex transcript {file_path.name}: {e}")
                    continue
                buckets = parse_rate_limit_lines(content.splitlines())
                if buckets:
                    return FetchResult(payload=buckets)

        lib_logger.debug("No Codex rate limit data found in recent transcripts")
        return None


async def get_codex_email(config: QosConfig) -> Optional[str]:
    """E-mail claim of the Codex CLI id_token, if signed in."""
    auth = await JsonFileStorage(config.codex_home / "auth.json").read()
    if not isinstance(auth, dict):
        return None
    tokens = auth.get("tokens")
    id_token = tokens.get("id_token") if isinstance(tokens, dict) else None
    claims = decode_jwt_claims(id_token)
    email = (claims or {}).get("email")
    return email if isinstance(email, str) and email else None
