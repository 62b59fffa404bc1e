"""
Helpers for handling credential material without ever storing it.

Cache files only ever see a short fingerprint of a token, so switching
accounts or rotating credentials changes the cache key.
"""

import base64
import hashlib
import json
from typing import Any, Dict, Optional


def credential_fingerprint(material: Optional[str]) -> str:
    """
    First 16 hex characters of the SHA-256 of the credential.

    Examples:
        >>> credential_fingerprint("")
        'none'
        >>> len(credential_fingerprint("refresh-token"))
        16
    """
    if not material:
        return "none"
    return hashlib.sha256(str(material).encode("utf-8")).hexdigest()[:16]


def decode_jwt_claims(token: Any) -> Optional[Dict[str, Any]]:
    """Decode the payload of a JWT without verifying it; None if malformed."""
    if not token or not isinstance(token, str):
        return None
    parts = token.split(".")
    if len(parts) < 2:
        return None
    payload = parts[1]
    # Add padding if needed
    padding = 4 - len(payload) % 4
    if padding != 4:
        payload += "=" * padding
    try:
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (ValueError, TypeError):
        return None
    return claims if isinstance(claims, dict) else None


def short_account_label(label: str, width: int = 10) -> str:
    """Drop the e-mail domain and truncate with an ellipsis."""
    text = str(label or "")
    if "@" in text:
        text = text.split("@")[0]
    if len(text) <= width:
        return text
    if width <= 1:
        return "…"
    return f"{text[: width - 1]}…"
