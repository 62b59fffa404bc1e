# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Profile storage.

Loads, normalizes and persists cli_qos_profile.json. Reads never fail:
a missing or corrupt file yields the provider defaults. Writes happen only
inside a locked read-modify-write transaction.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Mapping, Optional

from .config import ProviderPolicy, QosConfig
from .persistence import JsonFileStorage
from .types import (
    DEFAULT_ACCOUNT_ID,
    PROFILE_VERSION,
    AccountState,
    Profile,
    Provider,
    ProviderProfile,
)
from .utils import to_iso, utc_now

lib_logger = logging.getLogger("qos_library")

_PROVIDER_LEVEL_KEYS = frozenset({"last_account_id", "accounts"})


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def normalize_provider(raw: Any, policy: ProviderPolicy) -> ProviderProfile:
    """
    Merge one raw provider section over the policy defaults.

    Every call builds new default objects, so providers never share
    mutable state.
    """
    source = _as_dict(raw)
    defaults = policy.default_account_state()

    current_fields = {
        k: v for k, v in source.items() if k in AccountState.field_names()
    }
    current = AccountState.from_dict(current_fields, defaults, keep_extra=False)
    current.clamp(policy.hard_limit)

    accounts: Dict[str, AccountState] = {}
    for account_id, account_raw in _as_dict(source.get("accounts")).items():
        if not isinstance(account_raw, dict):
            continue
        state = AccountState.from_dict(account_raw, defaults)
        accounts[str(account_id)] = state.clamp(policy.hard_limit)

    last_account_id = source.get("last_account_id")
    known = set(AccountState.field_names()) | _PROVIDER_LEVEL_KEYS
    return ProviderProfile(
        current=current,
        accounts=accounts,
        last_account_id=last_account_id if isinstance(last_account_id, str) else "",
        extra={k: v for k, v in source.items() if k not in known},
    )


def normalize_profile(raw: Any, policies: Mapping[Provider, ProviderPolicy]) -> Profile:
    """
    Turn whatever is on disk into a complete Profile.

    Every known provider exists afterwards. Unknown top-level keys and
    unknown providers are carried through untouched. Normalizing an already
    normalized document returns an equal document.
    """
    source = _as_dict(raw)
    raw_providers = _as_dict(source.get("providers"))
    known_ids = {provider.value for provider in policies}

    updated_at = source.get("updated_at")
    return Profile(
        providers={
            provider: normalize_provider(raw_providers.get(provider.value), policy)
            for provider, policy in policies.items()
        },
        version=PROFILE_VERSION,
        updated_at=updated_at if isinstance(updated_at, str) else "",
        unknown_providers={
            k: v for k, v in raw_providers.items() if k not in known_ids
        },
        extra={
            k: v
            for k, v in source.items()
            if k not in ("version", "updated_at", "providers")
        },
    )


def ensure_account_state(
    provider_profile: ProviderProfile,
    account_id: Optional[str],
    policy: ProviderPolicy,
    now_iso: str,
) -> AccountState:
    """Get the state of an account, creating it from the policy defaults."""
    account_key = account_id or DEFAULT_ACCOUNT_ID
    state = provider_profile.accounts.get(account_key)
    if state is None:
        state = policy.default_account_state(updated_at=now_iso)
        provider_profile.accounts[account_key] = state
        lib_logger.debug(
            f"Created QoS state for {policy.provider.value}/{account_key}"
        )
    provider_profile.last_account_id = account_key
    return state


def sync_provider(
    provider_profile: ProviderProfile, state: AccountState, now_iso: str
) -> None:
    """Mirror the touched account into the provider-level fields."""
    current = state.copy()
    current.extra = {}
    current.updated_at = now_iso
    provider_profile.current = current


class ProfileStore:
    """
    Reads and transactionally updates the QoS profile file.
    """

    def __init__(self, config: QosConfig, storage: Optional[JsonFileStorage] = None):
        self._config = config
        self._storage = storage or JsonFileStorage(
            config.profile_path, lock_timeout=config.lock_timeout
        )

    @property
    def path(self):
        return self._storage.file_path

    async def read_profile(self) -> Profile:
        """Load and normalize the profile. Never writes."""
        raw = await self._storage.read()
        return normalize_profile(raw, self._config.policies)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Profile]:
        """
        Locked read-modify-write of the profile.

        The yielded Profile is written back when the block exits normally;
        an exception inside the block discards the changes.

        Raises:
            StorageBusyError: another process held the lock for too long
        """
        async with self._storage.locked():
            profile = await self.read_profile()
            yield profile
            profile.updated_at = to_iso(utc_now())
            await self._storage.write(profile.to_dict())
