# src/qos_library/utils/__init__.py

from .credentials import credential_fingerprint, decode_jwt_claims, short_account_label
from .timestamps import iso_after, now_ms, parse_iso, to_iso, utc_now

__all__ = [
    "credential_fingerprint",
    "decode_jwt_claims",
    "short_account_label",
    "iso_after",
    "now_ms",
    "parse_iso",
    "to_iso",
    "utc_now",
]
