"""Tests for the gated HTTP clients."""

from __future__ import annotations

import asyncio
import os
from unittest import mock

import httpx
import pytest

from request_gate.client import (
    DEFAULT_TIMEOUT,
    TRANSPORT_FAILURE_STATUS,
    AsyncGatedHttpClient,
    GatedHttpClient,
    GatedTransportError,
    RequestGateError,
    RequestNotAllowedError,
)
from request_gate.config import Config
from request_gate.gate import RequestGate
from tests.mocks import FakeClock, FixedJitter

BASE_URL = "https://installations.example.com/v1"


class RecordingHandler:
    """MockTransport handler returning a fixed status and recording requests."""

    def __init__(self, status_code: int = 200, error: Exception | None = None) -> None:
        self.status_code = status_code
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status_code, json={"ok": self.status_code == 200})


def make_gate(clock: FakeClock | None = None) -> RequestGate:
    return RequestGate("installations", clock=clock or FakeClock(), jitter=FixedJitter(0))


class TestGatedHttpClientInit:
    """Tests for client construction."""

    def test_strips_trailing_slash(self) -> None:
        client = GatedHttpClient(BASE_URL + "/")
        assert client.base_url == BASE_URL

    def test_default_gate_named_after_host(self) -> None:
        client = GatedHttpClient(BASE_URL)
        assert client.gate.name == "installations.example.com"

    def test_default_gate_reads_endpoint_env(self) -> None:
        env = {"REQUEST_GATE_INSTALLATIONS_EXAMPLE_COM_MAX_BACKOFF_MS": "5000"}
        with mock.patch.dict(os.environ, env, clear=True):
            client = GatedHttpClient(BASE_URL)

        assert client.gate.config.max_backoff_ms == 5000
        assert client.gate.config.non_retryable_backoff_ms == 24 * 60 * 60 * 1000

    def test_uses_default_timeout(self) -> None:
        client = GatedHttpClient(BASE_URL)
        assert client.timeout == DEFAULT_TIMEOUT

    def test_from_config(self) -> None:
        config = Config(base_url=BASE_URL, http_timeout=3.0)
        gate = make_gate()
        client = GatedHttpClient.from_config(config, gate=gate)
        assert client.base_url == BASE_URL
        assert client.gate is gate
        assert client.timeout == httpx.Timeout(3.0)

    def test_from_config_requires_base_url(self) -> None:
        with pytest.raises(ValueError, match="REQUEST_GATE_BASE_URL"):
            GatedHttpClient.from_config(Config())


class TestGatedHttpClientRequests:
    """Tests for request gating and outcome recording."""

    def test_success_returns_response(self) -> None:
        handler = RecordingHandler(200)
        gate = make_gate()
        with GatedHttpClient(
            BASE_URL, gate=gate, headers={"x-api-key": "k"}, transport=httpx.MockTransport(handler)
        ) as client:
            response = client.post("/installations", json={"fid": "abc"})

        assert response.status_code == 200
        assert len(handler.requests) == 1
        request = handler.requests[0]
        assert request.url == httpx.URL(BASE_URL + "/installations")
        assert request.headers["x-api-key"] == "k"
        assert gate.attempt_count == 0

    def test_error_status_is_recorded_not_raised(self) -> None:
        handler = RecordingHandler(500)
        gate = make_gate()
        client = GatedHttpClient(BASE_URL, gate=gate, transport=httpx.MockTransport(handler))

        response = client.get("/installations/abc")

        assert response.status_code == 500
        assert gate.attempt_count == 1
        client.close()

    def test_denied_request_never_reaches_network(self) -> None:
        handler = RecordingHandler(403)
        gate = make_gate()
        client = GatedHttpClient(BASE_URL, gate=gate, transport=httpx.MockTransport(handler))

        client.post("/installations")
        with pytest.raises(RequestNotAllowedError) as exc_info:
            client.post("/installations")

        assert len(handler.requests) == 1
        assert exc_info.value.gate_name == "installations"
        assert exc_info.value.remaining_ms == 24 * 60 * 60 * 1000
        assert isinstance(exc_info.value, RequestGateError)
        client.close()

    def test_trial_after_window_then_recovery(self) -> None:
        clock = FakeClock()
        gate = make_gate(clock)
        handler = RecordingHandler(503)
        client = GatedHttpClient(BASE_URL, gate=gate, transport=httpx.MockTransport(handler))

        client.get("/health")
        with pytest.raises(RequestNotAllowedError):
            client.get("/health")

        clock.advance(10)
        handler.status_code = 200
        client.get("/health")

        assert gate.attempt_count == 0
        assert len(handler.requests) == 2
        client.close()

    def test_transport_error_records_retryable_status(self) -> None:
        handler = RecordingHandler(error=httpx.ConnectError("connection refused"))
        gate = make_gate()
        client = GatedHttpClient(BASE_URL, gate=gate, transport=httpx.MockTransport(handler))

        with pytest.raises(GatedTransportError) as exc_info:
            client.get("/installations")

        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
        assert gate.attempt_count == 1
        assert gate.get_status()["metrics"]["retryable_failures"] == 1
        assert TRANSPORT_FAILURE_STATUS == 503
        client.close()

    @pytest.mark.parametrize(
        "error",
        [httpx.DecodingError("bad gzip"), httpx.TooManyRedirects("redirect loop")],
        ids=["decoding", "redirects"],
    )
    def test_request_error_after_window_keeps_gate_recoverable(
        self, error: httpx.RequestError
    ) -> None:
        clock = FakeClock()
        gate = make_gate(clock)
        handler = RecordingHandler(503)
        client = GatedHttpClient(BASE_URL, gate=gate, transport=httpx.MockTransport(handler))

        client.get("/installations")
        clock.advance(10)
        handler.error = error
        with pytest.raises(GatedTransportError) as exc_info:
            client.get("/installations")

        assert exc_info.value.__cause__ is error
        assert gate.attempt_count == 2
        assert gate.next_allowed_time == clock.now() + 4

        clock.advance(10)
        handler.error = None
        handler.status_code = 200
        assert client.get("/installations").status_code == 200
        assert gate.attempt_count == 0
        client.close()

    def test_unexpected_error_is_recorded_and_propagates(self) -> None:
        clock = FakeClock()
        gate = make_gate(clock)
        handler = RecordingHandler(error=RuntimeError("handler crashed"))
        client = GatedHttpClient(BASE_URL, gate=gate, transport=httpx.MockTransport(handler))

        with pytest.raises(RuntimeError, match="handler crashed"):
            client.get("/installations")

        assert gate.attempt_count == 1
        assert gate.next_allowed_time == clock.now() + 2
        client.close()

    def test_close_is_idempotent(self) -> None:
        client = GatedHttpClient(BASE_URL, transport=httpx.MockTransport(RecordingHandler()))
        client.get("/")
        client.close()
        client.close()
        assert client._client is None


class TestAsyncGatedHttpClient:
    """Tests for the async client."""

    @pytest.mark.asyncio
    async def test_success(self) -> None:
        handler = RecordingHandler(200)
        gate = make_gate()
        async with AsyncGatedHttpClient(
            BASE_URL, gate=gate, transport=httpx.MockTransport(handler)
        ) as client:
            response = await client.post("/installations", json={})

        assert response.status_code == 200
        assert gate.attempt_count == 0

    @pytest.mark.asyncio
    async def test_denied_after_failure(self) -> None:
        handler = RecordingHandler(429)
        gate = make_gate()
        async with AsyncGatedHttpClient(
            BASE_URL, gate=gate, transport=httpx.MockTransport(handler)
        ) as client:
            await client.get("/installations")
            with pytest.raises(RequestNotAllowedError):
                await client.get("/installations")

        assert len(handler.requests) == 1
        assert gate.attempt_count == 1

    @pytest.mark.asyncio
    async def test_transport_error(self) -> None:
        handler = RecordingHandler(error=httpx.ReadTimeout("timed out"))
        gate = make_gate()
        client = AsyncGatedHttpClient(BASE_URL, gate=gate, transport=httpx.MockTransport(handler))

        with pytest.raises(GatedTransportError):
            await client.get("/installations")

        assert gate.attempt_count == 1
        await client.aclose()

    @pytest.mark.asyncio
    async def test_cancellation_after_window_records_failure(self) -> None:
        clock = FakeClock()
        gate = make_gate(clock)
        gate.record_response(503)
        clock.advance(10)
        started = asyncio.Event()

        async def hang(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(3600)
            return httpx.Response(200)

        client = AsyncGatedHttpClient(BASE_URL, gate=gate, transport=httpx.MockTransport(hang))
        task = asyncio.create_task(client.get("/installations"))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert gate.attempt_count == 2
        assert gate.next_allowed_time == clock.now() + 4
        clock.advance(10)
        assert gate.is_request_allowed() is True
        await client.aclose()
