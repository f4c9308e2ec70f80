"""Deterministic provider failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from generation_broker.jobs.models import RETRYABLE_FAILURE_CLASSES, FailureClass
from generation_broker.jobs.provider.base import ProviderError

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
)
_POLICY_PATTERNS: tuple[str, ...] = (
    "content policy",
    "policy violation",
    "violates",
    "inappropriate",
    "not allowed",
    "copyright",
)
_INVALID_PAYLOAD_PATTERNS: tuple[str, ...] = (
    "invalid",
    "missing required",
    "validation",
    "malformed",
    "too long",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "try again later",
)


@dataclass(slots=True)
class ProviderFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    retryable: bool
    matched_rule: str
    matched_pattern: str | None

    @property
    def reason_code(self) -> str:
        prefix = "retryable" if self.retryable else "non_retryable"
        return f"{prefix}:{self.failure_class.value}"

    def to_event_details(self) -> dict[str, object]:
        return {
            "failure_class": self.failure_class.value,
            "retryable": self.retryable,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_provider_failure(error: BaseException) -> ProviderFailureClassification:
    """Classify a provider exception into a retry class.

    The ``retryable`` hint of ``ProviderError`` is authoritative; message
    patterns only refine which class inside that half is reported. Any other
    exception is a retryable transport failure.
    """

    if not isinstance(error, ProviderError):
        return ProviderFailureClassification(
            failure_class=FailureClass.TRANSPORT,
            retryable=True,
            matched_rule="unexpected_exception",
            matched_pattern=None,
        )

    if error.failure_class is not None and (
        (error.failure_class in RETRYABLE_FAILURE_CLASSES) == error.retryable
    ):
        return ProviderFailureClassification(
            failure_class=error.failure_class,
            retryable=error.retryable,
            matched_rule="provider_declared",
            matched_pattern=None,
        )

    haystack = str(error).lower()
    if error.retryable:
        pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
        if pattern is not None:
            return ProviderFailureClassification(
                failure_class=FailureClass.RATE_LIMITED,
                retryable=True,
                matched_rule="rate_limit",
                matched_pattern=pattern,
            )
        return ProviderFailureClassification(
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            retryable=True,
            matched_rule="fallback_transient",
            matched_pattern=None,
        )

    for failure_class, rule, patterns in (
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.POLICY_REJECTED, "policy_rejected", _POLICY_PATTERNS),
        (FailureClass.INVALID_PAYLOAD, "invalid_payload", _INVALID_PAYLOAD_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return ProviderFailureClassification(
                failure_class=failure_class,
                retryable=False,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    return ProviderFailureClassification(
        failure_class=FailureClass.PROVIDER_TERMINAL,
        retryable=False,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
