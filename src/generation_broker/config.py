"""Runtime configuration for the token economy and the job queue."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from generation_broker.clock import resolve_timezone

PROVIDER_KINDS = ("echo", "http")


@dataclass(slots=True)
class TokenSettings:
    """Daily pool sizing."""

    base_free_tokens: int = 1000
    base_paid_tokens: int = 2000
    contribution_tokens: int = 0
    contributor_count: int = 0


@dataclass(slots=True)
class QueueSettings:
    """Worker pool and retry policy settings."""

    worker_count: int = 5
    max_attempts: int = 3
    poll_interval_seconds: float = 1.0
    retry_base_seconds: float = 2.0
    retry_max_seconds: float = 300.0
    stale_after_seconds: int = 1_800
    heartbeat_interval_seconds: float = 30.0
    purge_after_hours: int = 24


@dataclass(slots=True)
class AdmissionSettings:
    """Provider timeout derivation from the estimated generation time."""

    timeout_multiplier: float = 4.0
    min_timeout_seconds: int = 60
    max_timeout_seconds: int = 900


@dataclass(slots=True)
class ProviderSettings:
    """Generation provider selection and HTTP endpoint settings."""

    kind: str = "echo"
    base_url: str = ""
    api_key: str = ""
    polling_url: str = ""
    poll_interval_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".generation_broker.db")
    timezone: str = "UTC"
    log_level: str = "INFO"
    busy_timeout_ms: int = 5_000
    tokens: TokenSettings = field(default_factory=TokenSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    provider: ProviderSettings = field(default_factory=ProviderSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("GEN_BROKER_DB_PATH", ".generation_broker.db")),
            timezone=os.getenv("GEN_BROKER_TIMEZONE", "UTC"),
            log_level=os.getenv("GEN_BROKER_LOG_LEVEL", "INFO").upper(),
            busy_timeout_ms=_env_int("GEN_BROKER_BUSY_TIMEOUT_MS", 5000),
            tokens=TokenSettings(
                base_free_tokens=_env_int("GEN_BROKER_BASE_FREE_TOKENS", 1000),
                base_paid_tokens=_env_int("GEN_BROKER_BASE_PAID_TOKENS", 2000),
                contribution_tokens=_env_int("GEN_BROKER_CONTRIBUTION_TOKENS", 0),
                contributor_count=_env_int("GEN_BROKER_CONTRIBUTOR_COUNT", 0),
            ),
            queue=QueueSettings(
                worker_count=_env_int("GEN_BROKER_WORKERS", 5),
                max_attempts=_env_int("GEN_BROKER_MAX_ATTEMPTS", 3),
                poll_interval_seconds=_env_float("GEN_BROKER_POLL_INTERVAL_SECONDS", 1.0),
                retry_base_seconds=_env_float("GEN_BROKER_RETRY_BASE_SECONDS", 2.0),
                retry_max_seconds=_env_float("GEN_BROKER_RETRY_MAX_SECONDS", 300.0),
                stale_after_seconds=_env_int("GEN_BROKER_STALE_AFTER_SECONDS", 1800),
                heartbeat_interval_seconds=_env_float(
                    "GEN_BROKER_HEARTBEAT_INTERVAL_SECONDS",
                    30.0,
                ),
                purge_after_hours=_env_int("GEN_BROKER_PURGE_AFTER_HOURS", 24),
            ),
            admission=AdmissionSettings(
                timeout_multiplier=_env_float("GEN_BROKER_TIMEOUT_MULTIPLIER", 4.0),
                min_timeout_seconds=_env_int("GEN_BROKER_MIN_TIMEOUT_SECONDS", 60),
                max_timeout_seconds=_env_int("GEN_BROKER_MAX_TIMEOUT_SECONDS", 900),
            ),
            provider=ProviderSettings(
                kind=os.getenv("GEN_BROKER_PROVIDER", "echo").strip().lower(),
                base_url=os.getenv("GEN_BROKER_PROVIDER_URL", "").strip(),
                api_key=os.getenv("GEN_BROKER_PROVIDER_API_KEY", ""),
                polling_url=os.getenv("GEN_BROKER_PROVIDER_POLLING_URL", "").strip(),
                poll_interval_seconds=_env_float("GEN_BROKER_PROVIDER_POLL_INTERVAL_SECONDS", 5.0),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        try:
            resolve_timezone(self.timezone)
        except (KeyError, ValueError) as error:
            raise ValueError(
                f"GEN_BROKER_TIMEZONE is not a known zone: {self.timezone!r}",
            ) from error
        if self.busy_timeout_ms < 0:
            raise ValueError("GEN_BROKER_BUSY_TIMEOUT_MS must be >= 0.")

        for name, value in (
            ("GEN_BROKER_BASE_FREE_TOKENS", self.tokens.base_free_tokens),
            ("GEN_BROKER_BASE_PAID_TOKENS", self.tokens.base_paid_tokens),
            ("GEN_BROKER_CONTRIBUTION_TOKENS", self.tokens.contribution_tokens),
            ("GEN_BROKER_CONTRIBUTOR_COUNT", self.tokens.contributor_count),
            ("GEN_BROKER_PURGE_AFTER_HOURS", self.queue.purge_after_hours),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")

        queue = self.queue
        if queue.worker_count <= 0:
            raise ValueError("GEN_BROKER_WORKERS must be > 0.")
        if queue.max_attempts <= 0:
            raise ValueError("GEN_BROKER_MAX_ATTEMPTS must be > 0.")
        if queue.poll_interval_seconds < 0:
            raise ValueError("GEN_BROKER_POLL_INTERVAL_SECONDS must be >= 0.")
        if queue.retry_base_seconds <= 0:
            raise ValueError("GEN_BROKER_RETRY_BASE_SECONDS must be > 0.")
        if queue.retry_max_seconds < queue.retry_base_seconds:
            raise ValueError(
                "GEN_BROKER_RETRY_MAX_SECONDS must be >= GEN_BROKER_RETRY_BASE_SECONDS.",
            )
        if queue.stale_after_seconds <= 0:
            raise ValueError("GEN_BROKER_STALE_AFTER_SECONDS must be > 0.")
        if queue.heartbeat_interval_seconds >= queue.stale_after_seconds:
            raise ValueError(
                "GEN_BROKER_HEARTBEAT_INTERVAL_SECONDS must be < GEN_BROKER_STALE_AFTER_SECONDS.",
            )

        admission = self.admission
        if admission.timeout_multiplier <= 0:
            raise ValueError("GEN_BROKER_TIMEOUT_MULTIPLIER must be > 0.")
        if admission.min_timeout_seconds <= 0:
            raise ValueError("GEN_BROKER_MIN_TIMEOUT_SECONDS must be > 0.")
        if admission.max_timeout_seconds < admission.min_timeout_seconds:
            raise ValueError(
                "GEN_BROKER_MAX_TIMEOUT_SECONDS must be >= GEN_BROKER_MIN_TIMEOUT_SECONDS.",
            )

        self.validate_provider()

    def validate_provider(self) -> None:
        provider = self.provider
        if provider.kind not in PROVIDER_KINDS:
            raise ValueError(
                f"GEN_BROKER_PROVIDER must be one of {', '.join(PROVIDER_KINDS)}, "
                f"got {provider.kind!r}.",
            )
        if provider.kind != "http":
            return
        if not provider.base_url:
            raise ValueError("GEN_BROKER_PROVIDER_URL is required when GEN_BROKER_PROVIDER=http.")
        _validate_url("GEN_BROKER_PROVIDER_URL", provider.base_url)
        if provider.polling_url:
            _validate_url("GEN_BROKER_PROVIDER_POLLING_URL", provider.polling_url)
        if provider.poll_interval_seconds <= 0:
            raise ValueError("GEN_BROKER_PROVIDER_POLL_INTERVAL_SECONDS must be > 0.")


def _validate_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number value for {name}: {value!r}") from error
