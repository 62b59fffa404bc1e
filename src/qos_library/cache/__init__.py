from .store import CacheFile, make_cache_key
from .gate import CacheFreshnessGate, evaluate
from .refresh import RefreshScheduler, run_refresh

__all__ = [
    "CacheFile",
    "make_cache_key",
    "CacheFreshnessGate",
    "evaluate",
    "RefreshScheduler",
    "run_refresh",
]
