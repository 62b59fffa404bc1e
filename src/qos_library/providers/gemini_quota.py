# src/qos_library/providers/gemini_quota.py
"""
Gemini Quota Fetcher

Fetches the daily per-model quota of the Gemini CLI OAuth account from the
Code Assist API:
1. loadCodeAssist -> cloudaicompanionProject (cached per cache key)
2. retrieveUserQuota(project) -> buckets

The access token is read from the Gemini CLI's oauth_creds.json; an expired
token is never refreshed here, the fetch simply yields no data.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from ..cache.store import CacheFile, make_cache_key
from ..config import QosConfig
from ..persistence import JsonFileStorage
from ..types import FetchResult
from ..utils import credential_fingerprint, now_ms

lib_logger = logging.getLogger("qos_library")


# =============================================================================
# CONFIGURATION
# =============================================================================

CODE_ASSIST_BASE_URL = "https://cloudcode-pa.googleapis.com/v1internal"
LOAD_CODE_ASSIST_URL = f"{CODE_ASSIST_BASE_URL}:loadCodeAssist"
RETRIEVE_USER_QUOTA_URL = f"{CODE_ASSIST_BASE_URL}:retrieveUserQuota"

DEFAULT_GEMINI_ACCOUNT_ID = "gemini-main"
DEFAULT_GEMINI_MODEL = "gemini-3-flash-preview"


# =============================================================================
# AUTH CONTEXT
# =============================================================================


@dataclass
class GeminiAuthContext:
    """OAuth credentials of an account plus the cache key derived from them."""

    account_id: str
    oauth: Optional[Dict[str, Any]]
    token_fingerprint: str
    cache_key: str

    @property
    def access_token(self) -> Optional[str]:
        if not self.oauth:
            return None
        return self.oauth.get("access_token") or None

    def is_expired(self, at_ms: Optional[float] = None) -> bool:
        """expiry_date is epoch milliseconds, as written by the Gemini CLI."""
        if not self.oauth:
            return False
        expiry = self.oauth.get("expiry_date")
        if isinstance(expiry, bool) or not isinstance(expiry, (int, float)):
            return False
        return expiry < (now_ms() if at_ms is None else at_ms)


def gemini_oauth_path(config: QosConfig) -> Path:
    return config.gemini_home / "oauth_creds.json"


async def build_gemini_auth_context(
    config: QosConfig, account_id: Optional[str] = None
) -> GeminiAuthContext:
    """Read oauth_creds.json and derive the account's cache key."""
    raw = await JsonFileStorage(gemini_oauth_path(config)).read()
    oauth = raw if isinstance(raw, dict) else None
    token_source = ""
    if oauth:
        token_source = (
            oauth.get("refresh_token")
            or oauth.get("id_token")
            or oauth.get("access_token")
            or ""
        )
    resolved_account = account_id or DEFAULT_GEMINI_ACCOUNT_ID
    return GeminiAuthContext(
        account_id=resolved_account,
        oauth=oauth,
        token_fingerprint=credential_fingerprint(token_source),
        cache_key=make_cache_key(resolved_account, token_source),
    )


def find_model_bucket(
    buckets: Any, model: Optional[str], fallback_model: str = DEFAULT_GEMINI_MODEL
) -> Optional[Dict[str, Any]]:
    """Quota bucket of the model in use, else of the default model."""
    if not isinstance(buckets, list):
        return None
    for wanted in (model, fallback_model):
        if not wanted:
            continue
        for bucket in buckets:
            if isinstance(bucket, dict) and bucket.get("modelId") == wanted:
                return bucket
    return None


# =============================================================================
# FETCHER
# =============================================================================


class GeminiQuotaFetcher:
    """
    Fetches Gemini quota buckets with a bounded timeout.

    Every failure (no token, expired token, timeout, non-2xx, malformed
    body) resolves to None so the cached snapshot keeps being served.
    """

    def __init__(
        self,
        config: QosConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._config = config
        self._transport = transport
        self._project_cache = CacheFile(
            config.gemini_project_cache_path, lock_timeout=config.lock_timeout
        )

    async def fetch(self, account_id: Optional[str] = None) -> Optional[FetchResult]:
        context = await build_gemini_auth_context(self._config, account_id)
        token = context.access_token
        if not token:
            lib_logger.debug("No Gemini access token; skipping quota fetch")
            return None
        if context.is_expired():
            lib_logger.debug("Gemini access token expired; keeping cached quota")
            return None

        async with httpx.AsyncClient(
            timeout=self._config.fetch_timeout, transport=self._transport
        ) as client:
            cached_project = await self._project_cache.read()
            project_id = None
            if cached_project and cached_project.cache_key == context.cache_key:
                project_id = cached_project.payload
            from_cache = bool(project_id)

            if not project_id:
                project_id = await self._fetch_project_id(client, context)
            if not project_id:
                return None

            buckets = await self._retrieve_buckets(client, project_id, token)

            # The cached project id may be stale; look it up once more
            if buckets is None and from_cache:
                project_id = await self._fetch_project_id(client, context)
                if not project_id:
                    return None
                buckets = await self._retrieve_buckets(client, project_id, token)

        if buckets is None:
            return None

        lib_logger.debug(
            f"Fetched Gemini quota for {context.account_id}: {len(buckets)} buckets"
        )
        return FetchResult(
            payload={
                "accountId": context.account_id,
                "tokenFingerprint": context.token_fingerprint,
                "buckets": buckets,
            },
            cache_key=context.cache_key,
        )

    async def _post(
        self, client: httpx.AsyncClient, url: str, body: Dict[str, Any], token: str
    ) -> Optional[Dict[str, Any]]:
        try:
            response = await client.post(
                url,
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            lib_logger.debug(f"Gemini quota API HTTP {e.response.status_code} for {url}")
            return None
        except (httpx.HTTPError, ValueError) as e:
            lib_logger.debug(f"Gemini quota API call failed for {url}: {e}")
            return None
        return data if isinstance(data, dict) else None

    async def _fetch_project_id(
        self, client: httpx.AsyncClient, context: GeminiAuthContext
    ) -> Optional[str]:
        data = await self._post(
            client,
            LOAD_CODE_ASSIST_URL,
            {"metadata": {"pluginType": "GEMINI"}},
            context.access_token or "",
        )
        project_id = (data or {}).get("cloudaicompanionProject")
        if not isinstance(project_id, str) or not project_id:
            return None
        await self._project_cache.write(project_id, cache_key=context.cache_key)
        return project_id

    async def _retrieve_buckets(
        self, client: httpx.AsyncClient, project_id: str, token: str
    ) -> Optional[List[Dict[str, Any]]]:
        data = await self._post(
            client, RETRIEVE_USER_QUOTA_URL, {"project": project_id}, token
        )
        buckets = (data or {}).get("buckets")
        if not isinstance(buckets, list):
            return None
        return buckets
