"""Exception hierarchy shared by the token economy and the job queue."""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for broker failures that callers may want to catch together."""


class StoreUnavailableError(BrokerError):
    """The persistent store could not complete an operation.

    Every core mutation is idempotent or atomically conditional, so callers can
    retry the whole operation once the store is reachable again.
    """

    retryable = True


class UserNotFoundError(BrokerError):
    """Raised when an operation references an unknown user id."""


class JobNotFoundError(BrokerError):
    """Raised when an operation references an unknown job id."""
