"""Request Gate - status-driven admission control for installation service calls."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("request-gate")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source without pip install)
    __version__ = "0.0.0.dev0"

# Re-export core public API
from request_gate.client import (
    AsyncGatedHttpClient,
    GatedHttpClient,
    GatedTransportError,
    RequestGateError,
    RequestNotAllowedError,
)
from request_gate.clock import Clock, JitterSource, RandomJitter, SystemClock
from request_gate.config import Config, load_config
from request_gate.gate import (
    RequestGate,
    RequestGateConfig,
    RequestGateConfigError,
    RequestGateRegistry,
    StatusClass,
    classify_status,
)
from request_gate.logging import setup_logging, setup_logging_from_config

# NOTE: Update this list when adding new exports to this module.
__all__ = [
    "__version__",
    "AsyncGatedHttpClient",
    "Clock",
    "Config",
    "GatedHttpClient",
    "GatedTransportError",
    "JitterSource",
    "RandomJitter",
    "RequestGate",
    "RequestGateConfig",
    "RequestGateConfigError",
    "RequestGateError",
    "RequestGateRegistry",
    "RequestNotAllowedError",
    "StatusClass",
    "SystemClock",
    "classify_status",
    "load_config",
    "setup_logging",
    "setup_logging_from_config",
]
