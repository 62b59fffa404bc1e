import pytest

from qos_library import FailureKind, Provider, UnknownProviderError, classify_failure
from qos_library.config import ControllerTuning
from qos_library.error_handler import cooldown_seconds


@pytest.mark.parametrize(
    "text, expected",
    [
        ("429 Too Many Requests", FailureKind.RATE_LIMIT),
        ("RESOURCE_EXHAUSTED: daily quota reached", FailureKind.RATE_LIMIT),
        ("You hit the rate-limit, slow down", FailureKind.RATE_LIMIT),
        ("ETIMEDOUT", FailureKind.TIMEOUT),
        ("request timed out after 30s", FailureKind.TIMEOUT),
        ("socket hang up: ECONNRESET", FailureKind.TIMEOUT),
        ("DEADLINE_EXCEEDED", FailureKind.TIMEOUT),
        ("403 Forbidden", FailureKind.AUTH),
        ("401 Unauthorized", FailureKind.AUTH),
        ("please log in again", FailureKind.AUTH),
        ("segmentation fault", FailureKind.DEFAULT),
        ("", FailureKind.DEFAULT),
        (None, FailureKind.DEFAULT),
    ],
)
def test_classify_failure(text, expected) -> None:
    assert classify_failure(text) is expected


def test_first_matching_category_wins() -> None:
    assert classify_failure("quota exceeded, request timed out") is FailureKind.RATE_LIMIT
    assert classify_failure("timeout while refreshing credentials") is FailureKind.TIMEOUT


def test_incidental_numbers_are_not_status_codes() -> None:
    assert classify_failure("request req_84291 failed") is FailureKind.DEFAULT
    assert classify_failure("build 14035 crashed") is FailureKind.DEFAULT
    assert classify_failure("missing field 4010") is FailureKind.DEFAULT


def test_auth_words_match_inside_longer_words() -> None:
    assert classify_failure("OAuth token expired, please re-authorize") is FailureKind.AUTH
    assert classify_failure("reauthentication required") is FailureKind.AUTH
    assert classify_failure("Authorization header rejected") is FailureKind.AUTH


def test_cooldown_table() -> None:
    tuning = ControllerTuning()
    assert cooldown_seconds(FailureKind.RATE_LIMIT, tuning) == 180
    assert cooldown_seconds(FailureKind.TIMEOUT, tuning) == 120
    assert cooldown_seconds(FailureKind.AUTH, tuning) == 60
    assert cooldown_seconds(FailureKind.DEFAULT, tuning) == 60


def test_provider_parse() -> None:
    assert Provider.parse("Codex") is Provider.CODEX
    assert Provider.parse(Provider.GEMINI) is Provider.GEMINI
    assert Provider.parse("claude") is None
    with pytest.raises(UnknownProviderError):
        Provider.parse("claude", strict=True)
