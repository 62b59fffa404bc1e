# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import re
from typing import Any, Optional

from .config import ControllerTuning
from .types import FailureKind


class QosError(Exception):
    """Base class for errors raised by the QoS library."""

    pass


class UnknownProviderError(QosError, ValueError):
    """Raised when a provider id is not one of the known CLI backends."""

    def __init__(self, provider: Any):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider!r}")


class StorageBusyError(QosError):
    """Raised when a state file lock could not be acquired in time."""

    pass


# Numeric status codes are word-bounded so identifiers like "req_84291" stay quiet.
_RATE_LIMIT_PATTERN = re.compile(
    r"rate[\s_-]?limit|too many requests|quota|resource[\s_-]?exhausted|\b429\b",
    re.IGNORECASE,
)
_TIMEOUT_PATTERN = re.compile(
    r"time[\s_-]?out|timed out|etimedout|econnreset|connection reset"
    r"|deadline[\s_-]?exceeded",
    re.IGNORECASE,
)
_AUTH_PATTERN = re.compile(
    r"auth|forbidden|credential|\blog ?in\b|\b401\b|\b403\b",
    re.IGNORECASE,
)

_CLASSIFIERS = (
    (FailureKind.RATE_LIMIT, _RATE_LIMIT_PATTERN),
    (FailureKind.TIMEOUT, _TIMEOUT_PATTERN),
    (FailureKind.AUTH, _AUTH_PATTERN),
)


def classify_failure(error_text: Optional[Any]) -> FailureKind:
    """
    Classifies an error message into a FailureKind.

    The first matching category wins, in the order
    rate_limit -> timeout -> auth; anything else is `default`.

    Error kinds and their handling:
    - rate_limit (429, quota): longest cooldown, counted in recent_429
    - timeout (ETIMEDOUT, resets): medium cooldown, counted in recent_timeout
    - auth (401/403, credentials): short cooldown, not counted
    - default: short cooldown, not counted
    """
    text = str(error_text or "")
    if not text:
        return FailureKind.DEFAULT
    for kind, pattern in _CLASSIFIERS:
        if pattern.search(text):
            return kind
    return FailureKind.DEFAULT


def cooldown_seconds(kind: FailureKind, tuning: ControllerTuning) -> int:
    """How long an account backs off after a failure of this kind."""
    return tuning.cooldown_seconds.get(
        kind, tuning.cooldown_seconds[FailureKind.DEFAULT]
    )
