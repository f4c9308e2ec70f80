"""Provider interface for generation job execution."""

from __future__ import annotations

from typing import Any, Protocol

from generation_broker.jobs.models import FailureClass


class ProviderError(RuntimeError):
    """Provider call failure with retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        failure_class: FailureClass | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.failure_class = failure_class
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the job timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retryable=True, failure_class=FailureClass.TIMEOUT)


class GenerationProvider(Protocol):
    """Protocol implemented by generation backends."""

    def generate(self, payload: dict[str, Any], *, timeout_seconds: int) -> dict[str, Any]:
        """Run one generation and return the provider result document."""
