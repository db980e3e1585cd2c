"""Shared pytest fixtures for request gate tests."""

from __future__ import annotations

import pytest

from request_gate.gate import RequestGate
from tests.mocks import FakeClock, FixedJitter


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gate(clock: FakeClock) -> RequestGate:
    """Gate with a controllable clock and no jitter."""
    return RequestGate("test", clock=clock, jitter=FixedJitter(0))
