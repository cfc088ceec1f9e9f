"""Shared fixtures: a controllable clock, recorded timers and fresh relay state per test."""
import pytest
from fastapi.testclient import TestClient

import app as app_module
import routers.rooms as rooms_module
from backend import RelayBackend
from connections import RoomConnections
from expiration_sweeper import ExpirationSweeper
from room_registry import RoomRegistry

RETENTION_SECONDS = 3600.0


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    """Stands in for threading.Timer; fires only when the test says so."""

    def __init__(self, interval, function, args=None, kwargs=None):
        self.interval = interval
        self.function = function
        self.args = args or ()
        self.kwargs = kwargs or {}
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.function(*self.args, **self.kwargs)


class TimerFactory:
    def __init__(self):
        self.created = []

    def __call__(self, interval, function, args=None, kwargs=None):
        timer = FakeTimer(interval, function, args=args, kwargs=kwargs)
        self.created.append(timer)
        return timer

    def live(self):
        return [t for t in self.created if t.started and not t.cancelled and not t.fired]

    def fire_all(self, clock=None):
        """Advance the clock past each live timer's interval and fire it."""
        for timer in self.live():
            if clock is not None:
                clock.advance(timer.interval)
            timer.fire()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def registry(clock):
    return RoomRegistry(max_history=100, clock=clock)


@pytest.fixture
def sweeper(registry, timers):
    sweeper = ExpirationSweeper(
        registry,
        retention_seconds=RETENTION_SECONDS,
        sweep_interval_seconds=0,
        timer_factory=timers,
    )
    registry.on_room_empty = sweeper.schedule_deletion
    return sweeper


@pytest.fixture
def backend(registry, sweeper):
    return RelayBackend(registry=registry, sweeper=sweeper, history_limit=50)


@pytest.fixture
def api_client(backend, monkeypatch):
    """TestClient wired to a fresh backend and connection table."""
    monkeypatch.setattr(app_module, "relay_backend", backend)
    monkeypatch.setattr(rooms_module, "relay_backend", backend)
    monkeypatch.setattr(app_module, "room_connections", RoomConnections())
    # Entering the client shares one event loop across all WebSocket connections
    with TestClient(app_module.app) as client:
        yield client
