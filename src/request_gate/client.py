"""HTTP clients that consult a request gate around every call.

The clients ask the gate before sending and report the outcome afterwards:

- Denied by the gate: ``RequestNotAllowedError`` is raised and nothing is sent.
- Request failure (no usable HTTP response): the gate records
  ``TRANSPORT_FAILURE_STATUS``, a retryable code, and ``GatedTransportError``
  is raised from the underlying httpx error. Cancellation and other
  exceptions during the send record the same status and propagate as is.
- Any HTTP response: the gate records its status and the response is returned
  unchanged. Non-2xx responses do not raise; callers interpret them.
"""

from __future__ import annotations

from typing import Any, Self

import httpx

from request_gate.config import Config
from request_gate.gate import RequestGate, RequestGateConfig
from request_gate.logging import get_logger

logger = get_logger(__name__)

# Default timeout for HTTP requests (connect, read, write, pool)
DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=30.0)

# Recorded when a request produced no HTTP response
TRANSPORT_FAILURE_STATUS = 503


class RequestGateError(Exception):
    """Base class for errors raised by gated clients."""

    pass


class RequestNotAllowedError(RequestGateError):
    """Raised when the gate denies a request.

    Attributes:
        gate_name: Name of the gate that denied the request.
        remaining_ms: Milliseconds left in the backoff window, 0 when the gate
            is waiting for the response to an earlier trial.
    """

    def __init__(self, gate_name: str, remaining_ms: int) -> None:
        self.gate_name = gate_name
        self.remaining_ms = remaining_ms
        super().__init__(
            f"Too many failed requests to {gate_name} in a short period of time, "
            f"try again later (remaining backoff: {remaining_ms}ms)"
        )


class GatedTransportError(RequestGateError):
    """Raised when a permitted request failed before any response arrived."""

    pass


class _GatedClientBase:
    """State shared by the sync and async gated clients."""

    def __init__(
        self,
        base_url: str,
        gate: RequestGate | None = None,
        timeout: httpx.Timeout | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        if gate is None:
            name = httpx.URL(self.base_url).host or "default"
            gate = RequestGate(name=name, config=RequestGateConfig.from_env(name))
        self.gate = gate
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.headers = dict(headers or {})

    @classmethod
    def from_config(cls, config: Config, gate: RequestGate | None = None) -> Self:
        """Create a client from application configuration.

        Args:
            config: Application configuration with ``base_url`` and
                ``http_timeout``.
            gate: Optional gate; one is created from the URL host if omitted.

        Raises:
            ValueError: If no base URL is configured.
        """
        if not config.service_configured:
            raise ValueError("REQUEST_GATE_BASE_URL is not configured")
        return cls(
            base_url=config.base_url,
            gate=gate,
            timeout=httpx.Timeout(config.http_timeout),
        )

    def _check_allowed(self, method: str, path: str) -> None:
        if not self.gate.is_request_allowed():
            remaining = self.gate.remaining_backoff_ms()
            logger.debug(
                "Skipping %s %s, gate %s is closed",
                method,
                path,
                self.gate.name,
                extra={"gate": self.gate.name, "diagnostic_tag": "client"},
            )
            raise RequestNotAllowedError(self.gate.name, remaining)

    def _record_transport_failure(
        self, method: str, path: str, error: httpx.RequestError
    ) -> GatedTransportError:
        logger.warning(
            "%s %s failed without a response: %s: %s",
            method,
            path,
            type(error).__name__,
            error,
            extra={"gate": self.gate.name},
        )
        self.gate.record_response(TRANSPORT_FAILURE_STATUS)
        return GatedTransportError(f"{method} {path} failed: {error}")


class GatedHttpClient(_GatedClientBase):
    """Synchronous gated client over a pooled ``httpx.Client``.

    Usage:
        with GatedHttpClient("https://installations.example.com/v1") as client:
            try:
                response = client.post("/installations", json=payload)
            except RequestNotAllowedError:
                ...  # back off, try on the next cycle
    """

    def __init__(
        self,
        base_url: str,
        gate: RequestGate | None = None,
        timeout: httpx.Timeout | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Base URL of the remote service.
            gate: Request gate for this endpoint. If not provided, one named
                after the URL host is created with ``RequestGateConfig.from_env``.
            timeout: Optional custom timeout configuration.
            headers: Headers sent with every request.
            transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
        """
        super().__init__(base_url, gate, timeout, headers)
        self._transport = transport
        # Reusable HTTP client for connection pooling - lazily initialized
        self._client: httpx.Client | None = None

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request if the gate allows it and record the outcome.

        Args:
            method: HTTP method.
            path: Path relative to ``base_url``.
            **kwargs: Passed through to ``httpx.Client.request``.

        Returns:
            The HTTP response, whatever its status.

        Raises:
            RequestNotAllowedError: If the gate denies the request.
            GatedTransportError: If no response was received.
        """
        self._check_allowed(method, path)
        try:
            response = self._get_client().request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise self._record_transport_failure(method, path, e) from e
        except BaseException:
            # Cancelled or interrupted before a response arrived
            self.gate.record_response(TRANSPORT_FAILURE_STATUS)
            raise
        self.gate.record_response(response.status_code)
        return response

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", path, **kwargs)

    def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> Self:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


class AsyncGatedHttpClient(_GatedClientBase):
    """Asynchronous gated client over a pooled ``httpx.AsyncClient``.

    Gate calls never await; they are bounded and do no I/O.
    """

    def __init__(
        self,
        base_url: str,
        gate: RequestGate | None = None,
        timeout: httpx.Timeout | None = None,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, gate, timeout, headers)
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Async counterpart of ``GatedHttpClient.request``."""
        self._check_allowed(method, path)
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.RequestError as e:
            raise self._record_transport_failure(method, path, e) from e
        except BaseException:
            # Cancelled or interrupted before a response arrived
            self.gate.record_response(TRANSPORT_FAILURE_STATUS)
            raise
        self.gate.record_response(response.status_code)
        return response

    async def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def aclose(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()


__all__ = [
    "DEFAULT_TIMEOUT",
    "TRANSPORT_FAILURE_STATUS",
    "AsyncGatedHttpClient",
    "GatedHttpClient",
    "GatedTransportError",
    "RequestGateError",
    "RequestNotAllowedError",
]
