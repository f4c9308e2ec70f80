"""HTTP adapter for the third-party music generation API."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import httpx

from generation_broker.jobs.models import FailureClass
from generation_broker.jobs.provider.base import ProviderError, ProviderTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 10.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_USER_AGENT = "GenerationBroker/1.0"

_TERMINAL_STATUS_CLASSES: dict[int, FailureClass] = {
    400: FailureClass.INVALID_PAYLOAD,
    401: FailureClass.ACCESS_OR_AUTH,
    403: FailureClass.ACCESS_OR_AUTH,
    422: FailureClass.INVALID_PAYLOAD,
}


class HttpGenerationProvider:
    """Submit generation requests over HTTP and optionally poll for the finished track.

    Timeouts, transport errors, 408, 429 and 5xx responses raise retryable
    ``ProviderError``; any other 4xx or a body with ``success: false`` is terminal.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str = "",
        polling_url: str | None = None,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.polling_url = polling_url.rstrip("/") if polling_url else None
        self.poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        headers = {"User-Agent": user_agent}
        if api_key:
            headers["Authorization"] = api_key
        self._client = httpx.Client(headers=headers, transport=transport)

    def generate(self, payload: dict[str, Any], *, timeout_seconds: int) -> dict[str, Any]:
        """POST the payload to ``/generate`` and return the ``data`` document."""

        deadline = time.monotonic() + timeout_seconds
        body = self._request("POST", f"{self.base_url}/generate", deadline=deadline, json=payload)
        if not body.get("success", False):
            raise ProviderError(
                str(body.get("error") or "Provider reported an unsuccessful generation"),
                retryable=False,
            )
        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderError(
                "Provider response is missing the data object",
                retryable=True,
                failure_class=FailureClass.PROVIDER_TRANSIENT,
            )
        if self.polling_url is None or _has_audio(data):
            return data

        task_id = data.get("taskId")
        if not task_id:
            raise ProviderError(
                "Provider response has neither audio nor a task id to poll",
                retryable=False,
                failure_class=FailureClass.PROVIDER_TERMINAL,
            )
        return self._poll(str(task_id), data=data, deadline=deadline)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpGenerationProvider:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _poll(self, task_id: str, *, data: dict[str, Any], deadline: float) -> dict[str, Any]:
        url = f"{self.polling_url}/get_mj_status/{task_id}"
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ProviderTimeoutError(f"Generation {task_id} still running at timeout")
            self._sleep(min(self.poll_interval_seconds, remaining))
            status = self._request("GET", url, deadline=deadline)
            if status.get("running") is False and status.get("audio_url"):
                logger.debug("Generation %s finished after polling", task_id)
                return {**data, "audio_url": status["audio_url"], "status": status}

    def _request(
        self,
        method: str,
        url: str,
        *,
        deadline: float,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ProviderTimeoutError(f"No time left for {method} {url}")
        timeout = httpx.Timeout(remaining, connect=min(DEFAULT_CONNECT_TIMEOUT_SECONDS, remaining))
        try:
            response = self._client.request(method, url, json=json, timeout=timeout)
        except httpx.TimeoutException as error:
            logger.warning("Timeout calling provider %s %s", method, url)
            raise ProviderTimeoutError(f"Timeout calling {url}") from error
        except httpx.TransportError as error:
            logger.warning("Transport error calling provider %s %s: %s", method, url, error)
            raise ProviderError(
                f"Transport error calling {url}: {error}",
                retryable=True,
                failure_class=FailureClass.TRANSPORT,
            ) from error

        if not response.is_success:
            raise _status_error(response)
        try:
            body = response.json()
        except ValueError as error:
            raise ProviderError(
                f"Provider returned a non-JSON body from {url}",
                retryable=True,
                failure_class=FailureClass.PROVIDER_TRANSIENT,
                status_code=response.status_code,
            ) from error
        if not isinstance(body, dict):
            raise ProviderError(
                f"Provider returned an unexpected JSON document from {url}",
                retryable=True,
                failure_class=FailureClass.PROVIDER_TRANSIENT,
                status_code=response.status_code,
            )
        return body


def _status_error(response: httpx.Response) -> ProviderError:
    code = response.status_code
    message = f"Provider HTTP {code}: {response.text[:200]}"
    if code == 429:
        return ProviderError(
            message,
            retryable=True,
            failure_class=FailureClass.RATE_LIMITED,
            status_code=code,
        )
    if code == 408:
        return ProviderError(
            message,
            retryable=True,
            failure_class=FailureClass.TIMEOUT,
            status_code=code,
        )
    if code >= 500:
        return ProviderError(
            message,
            retryable=True,
            failure_class=FailureClass.PROVIDER_TRANSIENT,
            status_code=code,
        )
    return ProviderError(
        message,
        retryable=False,
        failure_class=_TERMINAL_STATUS_CLASSES.get(code),
        status_code=code,
    )


def _has_audio(data: dict[str, Any]) -> bool:
    songs = data.get("songs")
    if not isinstance(songs, list) or not songs:
        return False
    return all(isinstance(song, dict) and song.get("audio_url") for song in songs)
