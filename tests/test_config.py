from __future__ import annotations

from pathlib import Path

import allure
import pytest

from generation_broker.config import ProviderSettings, QueueSettings, Settings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_defaults_are_valid() -> None:
    settings = Settings()

    settings.validate()
    assert settings.queue.worker_count == 5
    assert settings.queue.max_attempts == 3
    assert settings.tokens.base_free_tokens == 1000
    assert settings.provider.kind == "echo"


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEN_BROKER_DB_PATH", "/tmp/broker.db")
    monkeypatch.setenv("GEN_BROKER_WORKERS", "8")
    monkeypatch.setenv("GEN_BROKER_RETRY_BASE_SECONDS", "0.5")
    monkeypatch.setenv("GEN_BROKER_CONTRIBUTION_TOKENS", "250")
    monkeypatch.setenv("GEN_BROKER_PROVIDER", " HTTP ")
    monkeypatch.setenv("GEN_BROKER_PROVIDER_URL", "https://api.example.test/")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/broker.db")
    assert settings.queue.worker_count == 8
    assert settings.queue.retry_base_seconds == 0.5
    assert settings.tokens.contribution_tokens == 250
    assert settings.provider.kind == "http"
    settings.validate()


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("GEN_BROKER_DB_PATH", "/tmp/ignored.db")

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_from_env_rejects_non_numeric_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEN_BROKER_MAX_ATTEMPTS", "three")

    with pytest.raises(ValueError, match="Invalid integer value for GEN_BROKER_MAX_ATTEMPTS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("queue", "message"),
    [
        (QueueSettings(worker_count=0), "GEN_BROKER_WORKERS"),
        (QueueSettings(max_attempts=0), "GEN_BROKER_MAX_ATTEMPTS"),
        (QueueSettings(retry_base_seconds=10, retry_max_seconds=5), "GEN_BROKER_RETRY_MAX"),
        (
            QueueSettings(stale_after_seconds=30, heartbeat_interval_seconds=30),
            "GEN_BROKER_HEARTBEAT_INTERVAL_SECONDS",
        ),
    ],
)
def test_validate_names_offending_queue_variable(queue: QueueSettings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        Settings(queue=queue).validate()


def test_validate_rejects_unknown_timezone() -> None:
    with pytest.raises(ValueError, match="GEN_BROKER_TIMEZONE"):
        Settings(timezone="Mars/Olympus_Mons").validate()


def test_http_provider_requires_absolute_url() -> None:
    with pytest.raises(ValueError, match="GEN_BROKER_PROVIDER_URL is required"):
        Settings(provider=ProviderSettings(kind="http")).validate_provider()
    with pytest.raises(ValueError, match="Invalid GEN_BROKER_PROVIDER_URL"):
        Settings(provider=ProviderSettings(kind="http", base_url="ftp://x")).validate_provider()
    with pytest.raises(ValueError, match="GEN_BROKER_PROVIDER must be one of"):
        Settings(provider=ProviderSettings(kind="grpc")).validate_provider()
