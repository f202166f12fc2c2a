"""Shared fixtures for the LiveAlerts test suite."""

from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.config import ConfigManager
from core.event_bus import EventBus
from shared.display.queue import DisplayQueue


class ManualClock:
    """Monotonic clock the tests advance explicitly (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000.0


class RecordingBus:
    """Event bus stand-in that records every emit."""

    def __init__(self):
        self.events: List[tuple] = []

    def emit(self, topic: str, event: Any = None) -> int:
        self.events.append((topic, event))
        return 0

    def topics(self) -> List[str]:
        return [topic for topic, _ in self.events]

    def of(self, topic: str) -> List[Any]:
        return [event for t, event in self.events if t == topic]


@pytest.fixture
def make_config():
    """Build a ConfigManager from section overrides."""

    def _make(**sections: Dict[str, Any]) -> ConfigManager:
        return ConfigManager(sections)

    return _make


@pytest.fixture
def config_manager(make_config):
    return make_config(
        youtube={"enabled": True, "username": "@channel"},
        twitch={"enabled": True, "username": "channel"},
        tiktok={"enabled": True, "username": "creator"},
    )


@pytest.fixture
def display_queue():
    return DisplayQueue(max_queue_size=100)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recording_bus():
    return RecordingBus()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def fake_obs():
    obs = MagicMock()
    obs.is_connected.return_value = True
    obs.call = AsyncMock(return_value={})
    return obs
