# MoisSense Gateway - Published Device State
# One owned container; the sync loop and the command dispatcher write through update()

import logging
import threading
from dataclasses import replace
from typing import Callable, List, Optional

from moissense.core.models import DeviceState, OperatingMode

logger = logging.getLogger(__name__)

Listener = Callable[[DeviceState], None]
Mutator = Callable[[DeviceState], DeviceState]


class DeviceStateStore:
    """
    Holds the single published DeviceState.

    Writers never touch fields directly: they hand update() a function from
    the current state to the next one. The function runs under the store
    lock, so a check-then-write (e.g. "no command pending -> mark pending")
    is atomic with respect to every other writer. The new state replaces the
    old one as a whole object; readers always see a complete state.

    Listeners are called with the lock still held, so every listener sees
    states in the order they were published. A listener may write to the
    store itself; it must not wait on another thread that writes.
    """

    def __init__(self, initial: Optional[DeviceState] = None, mode: Optional[OperatingMode] = None):
        state = initial or DeviceState()
        if mode is not None:
            state = replace(state, mode=mode)
        self._state = state
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

    @property
    def state(self) -> DeviceState:
        return self._state

    def exclusive(self):
        """Lock to hold while changing something a mutator reads (no update can run meanwhile)."""
        return self._lock

    def update(self, mutator: Mutator) -> DeviceState:
        """
        Apply mutator(current) and publish the result.

        If the mutator raises, nothing changes and the exception propagates.
        If it returns the current object unchanged, listeners are not called.
        """
        with self._lock:
            current = self._state
            new_state = mutator(current)
            if new_state is current:
                return current
            self._state = new_state
            self._notify(new_state)
            return new_state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, state: DeviceState):
        with self._listeners_lock:
            listeners = list(self._listeners)

        for listener in listeners:
            if self._state is not state:
                # A listener published a newer state; everyone has been told already
                return
            try:
                listener(state)
            except Exception as e:
                logger.error(f"[STATE] Listener {listener!r} failed: {e}", exc_info=True)
