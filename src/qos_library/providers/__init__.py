# src/qos_library/providers/__init__.py

from typing import Dict, Optional, Protocol

from ..config import QosConfig
from ..types import CacheSource, FetchResult
from .codex_rate_limits import CodexRateLimitScanner, get_codex_email, main_bucket
from .gemini_quota import (
    DEFAULT_GEMINI_ACCOUNT_ID,
    GeminiAuthContext,
    GeminiQuotaFetcher,
    build_gemini_auth_context,
    find_model_bucket,
)
from .gemini_session import GeminiSessionScanner


class SnapshotFetcher(Protocol):
    """Anything that can produce a fresh snapshot for a cache source."""

    async def fetch(self, account_id: Optional[str] = None) -> Optional[FetchResult]:
        ...


def build_fetchers(config: QosConfig) -> Dict[CacheSource, SnapshotFetcher]:
    """Default fetcher for every cache source."""
    return {
        CacheSource.CODEX_RATE_LIMITS: CodexRateLimitScanner(config),
        CacheSource.GEMINI_QUOTA: GeminiQuotaFetcher(config),
        CacheSource.GEMINI_SESSION: GeminiSessionScanner(config),
    }


__all__ = [
    "SnapshotFetcher",
    "build_fetchers",
    "CodexRateLimitScanner",
    "GeminiQuotaFetcher",
    "GeminiSessionScanner",
    "GeminiAuthContext",
    "DEFAULT_GEMINI_ACCOUNT_ID",
    "build_gemini_auth_context",
    "find_model_bucket",
    "get_codex_email",
    "main_bucket",
]
