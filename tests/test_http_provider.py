from __future__ import annotations

import json

import allure
import httpx
import pytest

from generation_broker.jobs.models import FailureClass
from generation_broker.jobs.provider import HttpGenerationProvider, ProviderError

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Generation Provider"),
]

BASE_URL = "https://api.example.test"
POLL_URL = "https://poll.example.test"


def _provider(handler, *, polling_url: str | None = None, sleeps: list[float] | None = None):
    recorded = sleeps if sleeps is not None else []
    return HttpGenerationProvider(
        base_url=BASE_URL,
        api_key="secret-key",
        polling_url=polling_url,
        poll_interval_seconds=0.5,
        transport=httpx.MockTransport(handler),
        sleep=recorded.append,
    )


def test_generate_posts_payload_and_returns_data() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "success": True,
                "data": {"taskId": "t-1", "songs": [{"id": "s", "audio_url": "https://a/s.mp3"}]},
            },
        )

    with _provider(handler) as provider:
        result = provider.generate({"prompt": "ambient"}, timeout_seconds=30)

    assert result["taskId"] == "t-1"
    assert seen[0].url == httpx.URL(f"{BASE_URL}/generate")
    assert seen[0].headers["Authorization"] == "secret-key"
    assert json.loads(seen[0].content) == {"prompt": "ambient"}


@pytest.mark.parametrize(
    ("status_code", "retryable", "failure_class"),
    [
        (429, True, FailureClass.RATE_LIMITED),
        (408, True, FailureClass.TIMEOUT),
        (503, True, FailureClass.PROVIDER_TRANSIENT),
        (422, False, FailureClass.INVALID_PAYLOAD),
        (403, False, FailureClass.ACCESS_OR_AUTH),
        (404, False, None),
    ],
)
def test_status_codes_map_to_retry_policy(
    status_code: int,
    retryable: bool,
    failure_class: FailureClass | None,
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, text="nope")

    provider = _provider(handler)
    with pytest.raises(ProviderError) as caught:
        provider.generate({"prompt": "x"}, timeout_seconds=30)
    provider.close()

    assert caught.value.retryable is retryable
    assert caught.value.failure_class == failure_class
    assert caught.value.status_code == status_code


def test_unsuccessful_body_is_terminal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": False, "error": "prompt is not allowed"})

    provider = _provider(handler)
    with pytest.raises(ProviderError, match="not allowed") as caught:
        provider.generate({"prompt": "x"}, timeout_seconds=30)
    provider.close()

    assert caught.value.retryable is False


def test_transport_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(handler)
    with pytest.raises(ProviderError) as caught:
        provider.generate({"prompt": "x"}, timeout_seconds=30)
    provider.close()

    assert caught.value.retryable
    assert caught.value.failure_class == FailureClass.TRANSPORT


def test_read_timeout_becomes_provider_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    provider = _provider(handler)
    with pytest.raises(ProviderError) as caught:
        provider.generate({"prompt": "x"}, timeout_seconds=30)
    provider.close()

    assert caught.value.failure_class == FailureClass.TIMEOUT


def test_polls_until_audio_is_ready() -> None:
    polls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"success": True, "data": {"taskId": "t-9"}})
        assert request.url == httpx.URL(f"{POLL_URL}/get_mj_status/t-9")
        polls["count"] += 1
        if polls["count"] < 3:
            return httpx.Response(200, json={"running": True})
        return httpx.Response(200, json={"running": False, "audio_url": "https://a/t-9.mp3"})

    sleeps: list[float] = []
    provider = _provider(handler, polling_url=POLL_URL, sleeps=sleeps)
    result = provider.generate({"prompt": "x"}, timeout_seconds=30)
    provider.close()

    assert result["taskId"] == "t-9"
    assert result["audio_url"] == "https://a/t-9.mp3"
    assert polls["count"] == 3
    assert sleeps == [0.5, 0.5, 0.5]


def test_polling_without_task_id_is_terminal() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"success": True, "data": {"songs": []}})

    provider = _provider(handler, polling_url=POLL_URL)
    with pytest.raises(ProviderError) as caught:
        provider.generate({"prompt": "x"}, timeout_seconds=30)
    provider.close()

    assert caught.value.retryable is False
    assert caught.value.failure_class == FailureClass.PROVIDER_TERMINAL
