import asyncio

import httpx
import pytest
from openai import AsyncOpenAI, InternalServerError

from backend.app import services
from backend.app.services import is_transient_error, retry_with_backoff


class ProviderError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _recording_sleep(delays: list[float]):
    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    return _sleep


def test_retries_rate_limit_then_returns_success() -> None:
    attempts = 0
    delays: list[float] = []

    async def operation() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise ProviderError("Too many requests", status_code=429)
        return "ok"

    result = asyncio.run(retry_with_backoff(operation, retries=5, delay=2.0, sleep=_recording_sleep(delays)))

    assert result == "ok"
    assert attempts == 3
    assert delays == [2.0, 4.0]


def test_non_transient_error_propagates_immediately() -> None:
    attempts = 0
    delays: list[float] = []
    error = ProviderError("Bad request", status_code=400)

    async def operation() -> str:
        nonlocal attempts
        attempts += 1
        raise error

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(retry_with_backoff(operation, sleep=_recording_sleep(delays)))

    assert exc_info.value is error
    assert attempts == 1
    assert delays == []


def test_gives_up_after_retry_budget() -> None:
    attempts = 0
    delays: list[float] = []

    async def operation() -> str:
        nonlocal attempts
        attempts += 1
        raise ProviderError("Service Unavailable", status_code=503)

    with pytest.raises(ProviderError):
        asyncio.run(retry_with_backoff(operation, retries=5, delay=2.0, sleep=_recording_sleep(delays)))

    assert attempts == 6
    assert delays == [2.0, 4.0, 8.0, 16.0, 32.0]


@pytest.mark.parametrize(
    "error",
    [
        ProviderError("rate limited", status_code=429),
        ProviderError("overloaded", status_code=503),
        Exception("You exceeded your current quota"),
        Exception("RESOURCE_EXHAUSTED: try later"),
        Exception("HTTP 503 from upstream"),
    ],
)
def test_transient_signatures(error: Exception) -> None:
    assert is_transient_error(error)


def test_other_errors_are_not_transient() -> None:
    assert not is_transient_error(ProviderError("Unauthorized", status_code=401))
    assert not is_transient_error(ValueError("bad json"))


def test_status_digits_inside_other_tokens_are_not_transient() -> None:
    assert not is_transient_error(ValueError("Could not parse x4295.pdf"))
    assert not is_transient_error(ValueError("unexpected token at offset 15030"))
    assert is_transient_error(Exception("Error code: 429 - rate limited"))


def test_client_does_not_retry_underneath_the_wrapper(monkeypatch: pytest.MonkeyPatch) -> None:
    hits: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request)
        return httpx.Response(500, json={"error": {"message": "server exploded", "type": "server_error"}})

    transport = httpx.MockTransport(handler)

    def client_factory(**kwargs):
        return AsyncOpenAI(http_client=httpx.AsyncClient(transport=transport), **kwargs)

    monkeypatch.setattr(services, "OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(services, "OPENAI_BASE_URL", "https://llm.test/v1")
    monkeypatch.setattr(services, "AsyncOpenAI", client_factory)
    delays: list[float] = []

    async def operation():
        return await services._get_client().responses.create(model="gpt-4.1-mini", input="hello")

    with pytest.raises(InternalServerError):
        asyncio.run(retry_with_backoff(operation, sleep=_recording_sleep(delays)))

    assert len(hits) == 1
    assert delays == []
