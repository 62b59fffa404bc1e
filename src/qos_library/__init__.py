import logging

from .config import QosConfig, load_config
from .controller import ConcurrencyController
from .error_handler import QosError, StorageBusyError, UnknownProviderError, classify_failure
from .profile_store import ProfileStore
from .rpm_tracker import RateSnapshot, RequestRateTracker
from .types import (
    AccountState,
    CacheDecision,
    CacheEntry,
    CacheSource,
    FailureKind,
    Profile,
    Provider,
    ProviderProfile,
)

lib_logger = logging.getLogger("qos_library")
lib_logger.propagate = False
if not lib_logger.handlers:
    lib_logger.addHandler(logging.NullHandler())

__all__ = [
    "QosConfig",
    "load_config",
    "ConcurrencyController",
    "ProfileStore",
    "RequestRateTracker",
    "RateSnapshot",
    "QosError",
    "StorageBusyError",
    "UnknownProviderError",
    "classify_failure",
    "AccountState",
    "CacheDecision",
    "CacheEntry",
    "CacheSource",
    "FailureKind",
    "Profile",
    "Provider",
    "ProviderProfile",
]
