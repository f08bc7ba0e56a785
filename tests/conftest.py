# tests/conftest.py — v2
"""Shared test fixtures for all unit and integration tests.

Provides sample requests, a controllable clock, offline settings and a
recording sleep. No external dependencies; all I/O is local.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from geocopy.config.settings import Settings
from geocopy.core.models import GenerationRequest


# === FIXTURES: Sample data ===


@pytest.fixture
def sample_request() -> GenerationRequest:
    """Minimal valid GenerationRequest (full profile, Korean)."""
    return GenerationRequest(
        product_name="Aero Blender X2",
        content=(
            "The Aero Blender X2 crushes ice in five seconds, has a 1.5L "
            "tritan jar and six speed presets. Dishwasher safe."
        ),
        keywords=("blender", "kitchen"),
        language="ko",
        profile="full",
    )


@pytest.fixture
def quick_request(sample_request: GenerationRequest) -> GenerationRequest:
    return sample_request.model_copy(update={"profile": "quick", "language": "en"})


# === FIXTURES: Time and sleeping ===


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """UTC datetime source advanced by hand."""

    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class RecordingSleep:
    """asyncio.sleep replacement recording requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


# === FIXTURES: Settings ===


@pytest.fixture
def settings() -> Settings:
    """Settings without .env and without a durable cache."""
    return Settings(_env_file=None, cache_l2_backend="none")  # type: ignore[call-arg]
