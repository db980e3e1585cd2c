"""Request admission gate with status-driven backoff.

A ``RequestGate`` is consulted before every call to a remote installation
service and informed of the response status afterwards. It keeps two pieces of
state, the number of consecutive failures and the earliest time the next
request may be sent, and derives the backoff from the status code:

- 200: success, the gate returns to its initial state.
- 400, 403 (non-retryable): a fixed silence period, 24 hours by default.
- Anything else (retryable): ``min(2 ** attempts + jitter, max_backoff)``
  milliseconds, 30 minutes by default.

Once a backoff window has passed the gate lets exactly one probing request
through. A further failure continues the escalation from the current attempt
count; only a 200 clears it.

Backoff parameters come from ``RequestGateConfig``. ``RequestGateConfig.from_env``
reads them from environment variables; ``RequestGateRegistry.get`` and the
gated HTTP clients use it when they create a gate, while a directly
constructed ``RequestGate`` uses the defaults unless given a config:
- REQUEST_GATE_NON_RETRYABLE_BACKOFF_MS (default: 86400000)
- REQUEST_GATE_MAX_BACKOFF_MS (default: 1800000)
- REQUEST_GATE_MAX_JITTER_MS (default: 1000)

Per-endpoint overrides use ``REQUEST_GATE_{NAME}_*``, for example
``REQUEST_GATE_INSTALLATIONS_MAX_BACKOFF_MS``. Characters other than letters
and digits in the name become underscores.

Usage:
    gate = RequestGate("installations")

    if gate.is_request_allowed():
        response = send_request()
        gate.record_response(response.status_code)
"""

from __future__ import annotations

import os
import re
import sys
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from request_gate.clock import DEFAULT_MAX_JITTER_MS, Clock, JitterSource, RandomJitter, SystemClock
from request_gate.logging import get_logger

logger = get_logger(__name__)

# Stands in for "unbounded future": no restriction is active
UNBOUNDED = sys.maxsize

SUCCESS_STATUS = 200
NON_RETRYABLE_STATUSES = frozenset({400, 403})

DEFAULT_NON_RETRYABLE_BACKOFF_MS = 24 * 60 * 60 * 1000
DEFAULT_MAX_BACKOFF_MS = 30 * 60 * 1000


class StatusClass(Enum):
    """Backoff classification of a non-success response status."""

    RETRYABLE = "retryable"  # Exponential backoff with jitter
    NON_RETRYABLE = "non_retryable"  # Fixed long silence period


def classify_status(status_code: int) -> StatusClass:
    """Classify a response status for backoff purposes.

    Only 400 and 403 are non-retryable. Every other value, including server
    errors and integers outside any HTTP range, is retryable.
    """
    if status_code in NON_RETRYABLE_STATUSES:
        return StatusClass.NON_RETRYABLE
    return StatusClass.RETRYABLE


class RequestGateConfigError(ValueError):
    """Raised when request gate configuration is invalid."""

    pass


def _check_int(name: str, value: Any, allow_zero: bool = False) -> None:
    # bool is a subclass of int
    if isinstance(value, bool) or not isinstance(value, int):
        raise RequestGateConfigError(
            f"{name} must be an integer, got {type(value).__name__}"
        )
    if value < 0 or (value == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise RequestGateConfigError(f"{name} must be {qualifier}, got {value}")


def _env_int(var: str, default: int) -> int:
    raw = os.getenv(var)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise RequestGateConfigError(f"{var} must be an integer, got '{raw}'") from e


@dataclass(frozen=True)
class RequestGateConfig:
    """Backoff parameters for a request gate.

    Attributes:
        non_retryable_backoff_ms: Silence period after a 400 or 403
            (default: 24 hours). Must be positive.
        max_backoff_ms: Cap applied to the retryable backoff (default: 30
            minutes). Must be positive.
        max_jitter_ms: Exclusive upper bound of the default jitter source
            (default: 1000). Zero disables jitter.

    Raises:
        RequestGateConfigError: If any value is not a valid integer.
    """

    non_retryable_backoff_ms: int = DEFAULT_NON_RETRYABLE_BACKOFF_MS
    max_backoff_ms: int = DEFAULT_MAX_BACKOFF_MS
    max_jitter_ms: int = DEFAULT_MAX_JITTER_MS

    def __post_init__(self) -> None:
        _check_int("non_retryable_backoff_ms", self.non_retryable_backoff_ms)
        _check_int("max_backoff_ms", self.max_backoff_ms)
        _check_int("max_jitter_ms", self.max_jitter_ms, allow_zero=True)

    @classmethod
    def from_env(cls, name: str = "") -> RequestGateConfig:
        """Load configuration from environment variables.

        Args:
            name: Optional endpoint name for endpoint-specific overrides.
                If provided, ``REQUEST_GATE_{NAME}_*`` variables take
                precedence over the global ``REQUEST_GATE_*`` ones.

        Returns:
            RequestGateConfig with values from environment or defaults.

        Raises:
            RequestGateConfigError: If a variable is set to an invalid value.
        """
        non_retryable = _env_int(
            "REQUEST_GATE_NON_RETRYABLE_BACKOFF_MS", DEFAULT_NON_RETRYABLE_BACKOFF_MS
        )
        max_backoff = _env_int("REQUEST_GATE_MAX_BACKOFF_MS", DEFAULT_MAX_BACKOFF_MS)
        max_jitter = _env_int("REQUEST_GATE_MAX_JITTER_MS", DEFAULT_MAX_JITTER_MS)

        if name:
            prefix = "REQUEST_GATE_" + re.sub(r"[^A-Z0-9]", "_", name.upper())
            non_retryable = _env_int(f"{prefix}_NON_RETRYABLE_BACKOFF_MS", non_retryable)
            max_backoff = _env_int(f"{prefix}_MAX_BACKOFF_MS", max_backoff)
            max_jitter = _env_int(f"{prefix}_MAX_JITTER_MS", max_jitter)

        return cls(
            non_retryable_backoff_ms=non_retryable,
            max_backoff_ms=max_backoff,
            max_jitter_ms=max_jitter,
        )


@dataclass
class RequestGateMetrics:
    """Counters describing how a gate has been used.

    Mutated only while the owning gate holds its lock.

    Attributes:
        allowed_checks: ``is_request_allowed`` calls that returned True.
        denied_checks: ``is_request_allowed`` calls that returned False.
        successes: Responses recorded with status 200.
        retryable_failures: Non-200 responses classified as retryable.
        non_retryable_failures: Responses with status 400 or 403.
        expired_windows: Backoff windows cleared by an expiry check.
    """

    allowed_checks: int = 0
    denied_checks: int = 0
    successes: int = 0
    retryable_failures: int = 0
    non_retryable_failures: int = 0
    expired_windows: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert metrics to dictionary for logging/reporting."""
        return {
            "allowed_checks": self.allowed_checks,
            "denied_checks": self.denied_checks,
            "successes": self.successes,
            "retryable_failures": self.retryable_failures,
            "non_retryable_failures": self.non_retryable_failures,
            "expired_windows": self.expired_windows,
        }


class RequestGate:
    """Thread-safe admission gate for one logical remote endpoint.

    ``attempt_count`` and ``next_allowed_time`` are guarded by a single lock
    and always change together. Clock and jitter are read inside the same
    critical section, so a check-and-reset or a read-compute-write never
    interleaves with another thread's update.

    Attributes:
        name: Name of the endpoint this gate protects (used in logs).
        config: Backoff parameters.
    """

    def __init__(
        self,
        name: str = "default",
        clock: Clock | None = None,
        jitter: JitterSource | None = None,
        config: RequestGateConfig | None = None,
    ) -> None:
        """Initialize the gate in its unrestricted state.

        Args:
            name: Endpoint name for logs and status reports.
            clock: Time source in epoch milliseconds. Defaults to SystemClock.
            jitter: Jitter source in milliseconds. Defaults to RandomJitter
                bounded by ``config.max_jitter_ms``.
            config: Backoff parameters. Defaults to RequestGateConfig().
        """
        self.name = name
        self.config = config or RequestGateConfig()
        self._clock: Clock = clock or SystemClock()
        self._jitter: JitterSource = jitter or RandomJitter(self.config.max_jitter_ms)
        self._lock = threading.RLock()
        self._next_allowed_time = UNBOUNDED
        self._attempt_count = 0
        self._metrics = RequestGateMetrics()
        self._logger = logger.with_context(gate=name)

    @property
    def attempt_count(self) -> int:
        """Consecutive failures since the last success or construction."""
        with self._lock:
            return self._attempt_count

    @property
    def next_allowed_time(self) -> int:
        """Earliest permitted request time in epoch ms, or ``UNBOUNDED``."""
        with self._lock:
            return self._next_allowed_time

    @property
    def metrics(self) -> RequestGateMetrics:
        """Snapshot of the current metrics."""
        with self._lock:
            return replace(self._metrics)

    def is_request_allowed(self) -> bool:
        """Decide whether a request may be sent now.

        A request is allowed when no failure is outstanding or the current
        backoff window has passed. Passing the window clears it without
        touching the attempt count, so exactly one probing request gets
        through; later calls are denied until a response is recorded.

        Returns:
            True if the caller may send the request.
        """
        with self._lock:
            now = self._clock.now()
            expired = now > self._next_allowed_time
            allowed = self._attempt_count == 0 or expired

            if expired:
                self._next_allowed_time = UNBOUNDED
                self._metrics.expired_windows += 1
                self._logger.debug(
                    "Backoff window expired, allowing trial request",
                    extra={"attempt": self._attempt_count, "diagnostic_tag": "gate"},
                )

            if allowed:
                self._metrics.allowed_checks += 1
            else:
                self._metrics.denied_checks += 1
                self._logger.debug(
                    "Request denied",
                    extra={"attempt": self._attempt_count, "diagnostic_tag": "gate"},
                )
            return allowed

    def record_response(self, status_code: int) -> None:
        """Update the gate with the status of a completed request.

        Args:
            status_code: HTTP status of the response. Transport failures with no
                response should be mapped to a retryable code by the caller.
        """
        with self._lock:
            if status_code == SUCCESS_STATUS:
                previous_attempts = self._attempt_count
                self._reset_locked()
                self._metrics.successes += 1
                if previous_attempts:
                    self._logger.info(
                        "Request succeeded after %s failed attempt(s), gate cleared",
                        previous_attempts,
                        extra={"status_code": status_code},
                    )
                return

            self._attempt_count += 1
            backoff = self.get_backoff_time(status_code)
            self._next_allowed_time = self._clock.now() + backoff

            if classify_status(status_code) is StatusClass.NON_RETRYABLE:
                self._metrics.non_retryable_failures += 1
            else:
                self._metrics.retryable_failures += 1

            self._logger.warning(
                "Request failed with status %s, backing off for %sms",
                status_code,
                backoff,
                extra={
                    "status_code": status_code,
                    "attempt": self._attempt_count,
                    "backoff_ms": backoff,
                },
            )

    def get_backoff_time(self, status_code: int) -> int:
        """Compute the backoff in milliseconds for a failed response.

        Uses the current attempt count, which ``record_response`` has already
        incremented for the failure being recorded.

        Args:
            status_code: HTTP status of the failed response.

        Returns:
            Backoff duration in milliseconds.
        """
        with self._lock:
            if classify_status(status_code) is StatusClass.NON_RETRYABLE:
                return self.config.non_retryable_backoff_ms

            cap = self.config.max_backoff_ms
            # 2 ** attempts alone exceeds the cap; jitter cannot matter
            if self._attempt_count >= cap.bit_length():
                return cap
            return min(2**self._attempt_count + self._jitter.next(), cap)

    def reset(self) -> None:
        """Return the gate to its initial state.

        Has the same effect as recording a 200. Useful for tests or manual
        intervention.
        """
        with self._lock:
            self._reset_locked()
            self._logger.info("Gate manually reset")

    def _reset_locked(self) -> None:
        self._next_allowed_time = UNBOUNDED
        self._attempt_count = 0

    def get_status(self) -> dict[str, Any]:
        """Get a snapshot of the gate state.

        Unlike ``is_request_allowed`` this never clears an expired window.

        Returns:
            Dictionary with state, config, and metrics.
        """
        with self._lock:
            now = self._clock.now()
            restricted = self._next_allowed_time != UNBOUNDED
            return {
                "name": self.name,
                "attempt_count": self._attempt_count,
                "next_allowed_time": self._next_allowed_time if restricted else None,
                "remaining_backoff_ms": (
                    max(0, self._next_allowed_time - now) if restricted else 0
                ),
                "awaiting_response": self._attempt_count > 0 and not restricted,
                "config": {
                    "non_retryable_backoff_ms": self.config.non_retryable_backoff_ms,
                    "max_backoff_ms": self.config.max_backoff_ms,
                    "max_jitter_ms": self.config.max_jitter_ms,
                },
                "metrics": self._metrics.to_dict(),
            }

    def remaining_backoff_ms(self) -> int:
        """Milliseconds until the current window ends, 0 if none is active."""
        with self._lock:
            if self._next_allowed_time == UNBOUNDED:
                return 0
            return max(0, self._next_allowed_time - self._clock.now())


class RequestGateRegistry:
    """Registry of independent gates, one per logical endpoint.

    The registry is an ordinary object owned by the network client; it is not
    a process-wide singleton.

    Usage:
        registry = RequestGateRegistry()
        installations = registry.get("installations")
        tokens = registry.get("auth-tokens")
    """

    def __init__(
        self,
        clock: Clock | None = None,
        jitter: JitterSource | None = None,
        config: RequestGateConfig | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            clock: Clock shared by every gate created here.
            jitter: Jitter source shared by every gate created here.
            config: Config for every gate. If not provided, each gate loads
                its own from the environment using its name.
        """
        self._clock = clock
        self._jitter = jitter
        self._config = config
        self._gates: dict[str, RequestGate] = {}
        self._lock = threading.Lock()

    def get(self, name: str, config: RequestGateConfig | None = None) -> RequestGate:
        """Get or create the gate for an endpoint.

        Args:
            name: Endpoint name.
            config: Optional configuration, only used when creating the gate.

        Returns:
            RequestGate instance for the endpoint.
        """
        with self._lock:
            if name not in self._gates:
                gate_config = config or self._config or RequestGateConfig.from_env(name)
                self._gates[name] = RequestGate(
                    name=name,
                    clock=self._clock,
                    jitter=self._jitter,
                    config=gate_config,
                )
                logger.info(
                    "Created request gate for %s: max_backoff=%sms, non_retryable_backoff=%sms",
                    name,
                    gate_config.max_backoff_ms,
                    gate_config.non_retryable_backoff_ms,
                )
            return self._gates[name]

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all registered gates."""
        with self._lock:
            return {name: gate.get_status() for name, gate in self._gates.items()}

    def reset_all(self) -> None:
        """Reset all gates to their initial state."""
        with self._lock:
            for gate in self._gates.values():
                gate.reset()
            logger.info("All request gates reset")


__all__ = [
    "DEFAULT_MAX_BACKOFF_MS",
    "DEFAULT_NON_RETRYABLE_BACKOFF_MS",
    "NON_RETRYABLE_STATUSES",
    "SUCCESS_STATUS",
    "UNBOUNDED",
    "RequestGate",
    "RequestGateConfig",
    "RequestGateConfigError",
    "RequestGateMetrics",
    "RequestGateRegistry",
    "StatusClass",
    "classify_status",
]
