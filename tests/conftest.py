"""Shared pytest fixtures."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Callable

import pytest

from tankmate.aquarium.models import Aquarium, Fish, Plant, WaterParameters
from tests.helpers import FakeLoop


@pytest.fixture
def fake_loop() -> FakeLoop:
    return FakeLoop()


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    moment = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)
    return lambda: moment


@pytest.fixture
def community_tank() -> Aquarium:
    return Aquarium(
        name="Community 20",
        id="tank-1",
        size="20 gallons",
        species=[Fish(name="Neon Tetra", count=8)],
        plants=[Plant(name="Java Fern")],
        parameters=WaterParameters(temperature=25.5, ph=7.0),
    )


@pytest.fixture(autouse=True)
def _isolate_tankmate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("TANKMATE_"):
            monkeypatch.delenv(name, raising=False)
