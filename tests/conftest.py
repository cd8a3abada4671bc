from __future__ import annotations

import threading
import time
from typing import Any, Callable

import pytest

from moissense.core.command_dispatcher import CommandDispatcher
from moissense.core.models import CommandResult, EventRecord, StateSnapshot
from moissense.core.state_store import DeviceStateStore
from moissense.core.sync_loop import SyncLoop


def latest_payload(**overrides: Any) -> dict:
    payload = {
        "suhu": 24.5,
        "kelembapan": 68.0,
        "soil": 800,
        "rain_status": "☀ Cerah",
        "pompa": "OFF",
        "updated_at": 1760000000,
    }
    payload.update(overrides)
    return payload


def events_payload() -> list:
    return [
        {"ts": "14:32:15", "type": "Pump ON", "level": "info", "message": "Pump activated (moisture: 35%)"},
        {"ts": 1760000000, "type": "Warning", "level": "warn", "message": "Soil moisture below threshold"},
        {"ts": "2026-10-17T11:20:10", "type": "Rain", "level": "info", "message": "Rain detected"},
    ]


class FakeDeviceClient:
    """Stands in for DeviceAPIClient; parses the same payloads, no network."""

    def __init__(self, latest: dict | None = None, events: list | None = None) -> None:
        self.latest = latest if latest is not None else latest_payload()
        self.events = events if events is not None else events_payload()
        self.state_error: Exception | None = None
        self.events_error: Exception | None = None
        self.command_error: Exception | None = None
        self.command_result = CommandResult(accepted=True)
        self.on_read_state: Callable[[], None] | None = None
        self.on_send: Callable[[Any], None] | None = None
        self.sent: list = []
        self.reads = 0

    def read_state(self) -> StateSnapshot:
        self.reads += 1
        if self.on_read_state:
            self.on_read_state()
        if self.state_error:
            raise self.state_error
        return StateSnapshot.from_payload(self.latest)

    def read_events(self) -> list:
        if self.events_error:
            raise self.events_error
        return [EventRecord.from_payload(item) for item in self.events]

    def send_command(self, target) -> CommandResult:
        self.sent.append(target)
        if self.on_send:
            self.on_send(target)
        if self.command_error:
            raise self.command_error
        return self.command_result


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def client() -> FakeDeviceClient:
    return FakeDeviceClient()


@pytest.fixture
def store() -> DeviceStateStore:
    return DeviceStateStore()


@pytest.fixture
def sync_loop(client: FakeDeviceClient, store: DeviceStateStore):
    loop = SyncLoop(client, store, interval=0.05)
    yield loop
    loop.close()


@pytest.fixture
def dispatcher(client: FakeDeviceClient, store: DeviceStateStore) -> CommandDispatcher:
    return CommandDispatcher(client, store)


@pytest.fixture
def release_event():
    event = threading.Event()
    yield event
    event.set()
