from __future__ import annotations

import pytest

from fakes import FakeClock, FakeKube, FakeTimerFactory
from node_drainer.metrics import DrainerMetrics


@pytest.fixture
def kube() -> FakeKube:
    return FakeKube()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timers() -> FakeTimerFactory:
    return FakeTimerFactory()


@pytest.fixture
def metrics() -> DrainerMetrics:
    return DrainerMetrics()
