from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from moissense.core.models import DeviceState, OperatingMode
from moissense.core.state_store import DeviceStateStore


def test_initial_state_defaults_to_auto_and_disconnected() -> None:
    state = DeviceStateStore().state

    assert state.mode is OperatingMode.AUTO
    assert state.snapshot is None
    assert state.events == ()
    assert state.connectivity.connected is False
    assert state.pending is False


def test_initial_mode_override() -> None:
    assert DeviceStateStore(mode=OperatingMode.MANUAL).state.mode is OperatingMode.MANUAL


def test_update_swaps_whole_object_and_notifies() -> None:
    store = DeviceStateStore()
    seen: list[DeviceState] = []
    store.subscribe(seen.append)
    before = store.state

    after = store.update(lambda s: replace(s, pending=True))

    assert after is store.state
    assert after is not before
    assert before.pending is False
    assert seen == [after]


def test_update_returning_same_object_does_not_notify() -> None:
    store = DeviceStateStore()
    seen: list[DeviceState] = []
    store.subscribe(seen.append)

    store.update(lambda s: s)

    assert seen == []


def test_mutator_exception_leaves_state_untouched() -> None:
    store = DeviceStateStore()
    before = store.state

    def boom(state: DeviceState) -> DeviceState:
        raise RuntimeError("nope")

    with pytest.raises(RuntimeError):
        store.update(boom)

    assert store.state is before


def test_failing_listener_does_not_break_others() -> None:
    store = DeviceStateStore()
    seen: list[DeviceState] = []

    def broken(state: DeviceState) -> None:
        raise ValueError("listener bug")

    store.subscribe(broken)
    store.subscribe(seen.append)

    store.update(lambda s: replace(s, pending=True))

    assert len(seen) == 1
    assert store.state.pending is True


def test_unsubscribe() -> None:
    store = DeviceStateStore()
    seen: list[DeviceState] = []
    unsubscribe = store.subscribe(seen.append)

    unsubscribe()
    unsubscribe()
    store.update(lambda s: replace(s, pending=True))

    assert seen == []


def test_listeners_see_states_in_publish_order() -> None:
    store = DeviceStateStore()
    seen: list[OperatingMode] = []
    in_listener = threading.Event()
    release = threading.Event()

    def slow(state: DeviceState) -> None:
        if state.mode is OperatingMode.MANUAL:
            in_listener.set()
            release.wait(3)

    store.subscribe(slow)
    store.subscribe(lambda state: seen.append(state.mode))

    first = threading.Thread(target=store.update, args=(lambda s: replace(s, mode=OperatingMode.MANUAL),))
    second = threading.Thread(target=store.update, args=(lambda s: replace(s, mode=OperatingMode.AUTO),))
    first.start()
    assert in_listener.wait(2)
    second.start()
    second.join(0.2)
    assert second.is_alive()

    release.set()
    first.join(3)
    second.join(3)

    assert seen == [OperatingMode.MANUAL, OperatingMode.AUTO]
    assert seen[-1] is store.state.mode


def test_listener_may_write_back() -> None:
    store = DeviceStateStore()
    seen: list[DeviceState] = []

    def mark_pending(state: DeviceState) -> None:
        if state.mode is OperatingMode.MANUAL and not state.pending:
            store.update(lambda s: replace(s, pending=True))

    store.subscribe(mark_pending)
    store.subscribe(seen.append)

    store.update(lambda s: replace(s, mode=OperatingMode.MANUAL))

    assert store.state.pending is True
    assert seen == [store.state]
