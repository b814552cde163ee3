"""
pytest configuration – deterministic clock, in-memory audit sink and a
fully wired GovernanceContext per test.
"""
from __future__ import annotations

import random

import pytest

from request_governor.config import Settings
from request_governor.context import GovernanceContext
from request_governor.resources import InMemoryResourceDirectory
from request_governor.telemetry.audit import InMemoryAuditSink

# 2024-01-01T00:00:00Z
START_MS = 1_704_067_200_000


class FakeClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start_ms: int = START_MS) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def directory() -> InMemoryResourceDirectory:
    return InMemoryResourceDirectory()


@pytest.fixture
def settings() -> Settings:
    return Settings(audit_sink="memory", log_format="text")


@pytest.fixture
def context(settings, sink, directory, clock) -> GovernanceContext:
    # Not started: audit entries are delivered inline and no sweep threads run
    return GovernanceContext.from_settings(
        settings, sink=sink, directory=directory, clock=clock, rng=random.Random(1234),
    )
