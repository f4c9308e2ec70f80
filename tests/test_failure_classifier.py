from __future__ import annotations

import allure
import pytest

from generation_broker.jobs.failure_classifier import classify_provider_failure
from generation_broker.jobs.models import FailureClass
from generation_broker.jobs.provider import ProviderError, ProviderTimeoutError

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Retry Policy"),
]


def test_timeout_error_is_retryable_timeout() -> None:
    classified = classify_provider_failure(ProviderTimeoutError("deadline exceeded"))

    assert classified.failure_class == FailureClass.TIMEOUT
    assert classified.retryable
    assert classified.matched_rule == "provider_declared"
    assert classified.reason_code == "retryable:timeout"


def test_unexpected_exception_is_transport() -> None:
    classified = classify_provider_failure(OSError("connection refused"))

    assert classified.failure_class == FailureClass.TRANSPORT
    assert classified.retryable
    assert classified.matched_rule == "unexpected_exception"


def test_retryable_message_with_rate_limit_text() -> None:
    classified = classify_provider_failure(
        ProviderError("HTTP 429 too many requests, please retry", retryable=True),
    )

    assert classified.failure_class == FailureClass.RATE_LIMITED
    assert classified.matched_rule == "rate_limit"
    assert classified.matched_pattern == "too many requests"


def test_retryable_flag_wins_over_terminal_looking_message() -> None:
    classified = classify_provider_failure(
        ProviderError("invalid upstream response, try later", retryable=True),
    )

    assert classified.retryable
    assert classified.failure_class == FailureClass.PROVIDER_TRANSIENT
    assert classified.matched_rule == "fallback_transient"


@pytest.mark.parametrize(
    ("message", "failure_class", "pattern"),
    [
        ("401 Unauthorized", FailureClass.ACCESS_OR_AUTH, "unauthorized"),
        ("Lyrics violate the content policy", FailureClass.POLICY_REJECTED, "content policy"),
        ("Missing required field: prompt", FailureClass.INVALID_PAYLOAD, "missing required"),
    ],
)
def test_terminal_messages_map_to_specific_classes(
    message: str,
    failure_class: FailureClass,
    pattern: str,
) -> None:
    classified = classify_provider_failure(ProviderError(message, retryable=False))

    assert not classified.retryable
    assert classified.failure_class == failure_class
    assert classified.matched_pattern == pattern
    assert classified.reason_code == f"non_retryable:{failure_class.value}"


def test_terminal_fallback_and_inconsistent_declared_class() -> None:
    # A retryable class declared on a terminal error is ignored.
    classified = classify_provider_failure(
        ProviderError("model refused", retryable=False, failure_class=FailureClass.TIMEOUT),
    )

    assert classified.failure_class == FailureClass.PROVIDER_TERMINAL
    assert classified.matched_rule == "fallback_non_retryable"
    assert classified.to_event_details() == {
        "failure_class": "provider_terminal",
        "retryable": False,
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
