# MoisSense Gateway - Sync Loop
# Polls the field node on a fixed cadence and publishes snapshot, events and connectivity

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from moissense.core.alerts import derive_alerts
from moissense.core.errors import ProtocolError, TransportError
from moissense.core.models import ConnectivityStatus, DeviceState, EventRecord, StateSnapshot
from moissense.core.state_store import DeviceStateStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0

STOPPED = 'stopped'
POLLING = 'polling'


class SyncLoop:
    """
    Keeps the published DeviceState in step with the field node.

    State machine:
        STOPPED --start()--> POLLING --stop()--> STOPPED

    Per tick:
        1. read_state() and read_events() are issued concurrently
        2. both succeed -> snapshot, events and alerts are published in one
           store update and connectivity goes to connected
        3. either fails -> snapshot/events are left alone (stale beats empty),
           connectivity goes to disconnected with the error message

    At most one poll is in flight. A tick that finds the previous poll still
    running is skipped; a failed tick is never retried early, the next tick
    is the retry. stop() cancels the timer but cannot abort a running poll;
    that poll's result is thrown away when it lands.
    """

    def __init__(self, client, store: DeviceStateStore, interval: float = DEFAULT_POLL_INTERVAL):
        if interval <= 0:
            raise ValueError("Poll interval must be positive")

        self.client = client
        self.store = store
        self.interval = interval

        self.state = STOPPED
        self._generation = 0
        self._state_lock = threading.Lock()
        self._stop_event: Optional[threading.Event] = None
        self._timer_thread: Optional[threading.Thread] = None

        # One poll at a time; the two reads of a poll run side by side
        self._poll_in_flight = threading.Lock()
        self._poller = ThreadPoolExecutor(max_workers=1, thread_name_prefix='moissense-poll')
        self._reader = ThreadPoolExecutor(max_workers=2, thread_name_prefix='moissense-read')

        # Statistics
        self.stats: Dict[str, Any] = {
            'polls': 0,
            'successes': 0,
            'failures': 0,
            'skipped': 0,
            'discarded': 0,
            'last_poll': None,
        }

        logger.info(f"[SYNC] Initialized sync loop (interval {self.interval}s)")

    @property
    def is_running(self) -> bool:
        return self.state == POLLING

    def start(self):
        """Start polling. The first tick fires immediately."""
        with self._state_lock:
            if self.state == POLLING:
                logger.warning("[SYNC] Already running")
                return

            self._generation += 1
            self._stop_event = threading.Event()
            self.state = POLLING
            self._timer_thread = threading.Thread(
                target=self._timer_loop,
                args=(self._generation, self._stop_event),
                name='moissense-sync-timer',
                daemon=True,
            )
            self._timer_thread.start()

        logger.info("[SYNC] Sync loop started")

    def stop(self, timeout: float = 5.0):
        """Stop polling. A poll already in flight completes but is discarded."""
        with self._state_lock:
            if self.state == STOPPED:
                return
            self.state = STOPPED
            # Under the store lock: a poll publishing right now either lands
            # before this bump or sees the new generation and drops out
            with self.store.exclusive():
                self._generation += 1
            self._stop_event.set()
            timer_thread = self._timer_thread
            self._timer_thread = None

        if timer_thread and timer_thread is not threading.current_thread():
            timer_thread.join(timeout=timeout)

        logger.info("[SYNC] Sync loop stopped")

    def close(self):
        """Stop and release the worker threads."""
        self.stop()
        self._poller.shutdown(wait=False)
        self._reader.shutdown(wait=False)

    def poll_once(self) -> bool:
        """
        Run one tick synchronously in the calling thread.

        Skipped (returns False) when a scheduled poll is still in flight.

        Returns:
            True if both reads succeeded and the new state was published
        """
        if not self._poll_in_flight.acquire(blocking=False):
            self.stats['skipped'] += 1
            logger.debug("[SYNC] Poll already in flight, skipping manual poll")
            return False

        try:
            return self._poll(generation=None)
        finally:
            self._poll_in_flight.release()

    def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        stats['state'] = self.state
        stats['poll_in_flight'] = self._poll_in_flight.locked()
        return stats

    # ==================== TIMER ====================

    def _timer_loop(self, generation: int, stop_event: threading.Event):
        while not stop_event.is_set():
            try:
                self._schedule_tick(generation)
            except Exception as e:
                logger.error(f"[SYNC] Failed to schedule tick: {e}", exc_info=True)

            # Sleep until next tick, wake early on stop()
            stop_event.wait(self.interval)

    def _schedule_tick(self, generation: int):
        if not self._poll_in_flight.acquire(blocking=False):
            self.stats['skipped'] += 1
            logger.debug("[SYNC] Previous poll still running, skipping tick")
            return

        try:
            self._poller.submit(self._run_scheduled_poll, generation)
        except RuntimeError:
            # Executor already shut down
            self._poll_in_flight.release()
            raise

    def _run_scheduled_poll(self, generation: int):
        try:
            self._poll(generation)
        except Exception as e:
            logger.error(f"[SYNC] Poll crashed: {e}", exc_info=True)
            self._record_failure(f"Unexpected error: {e}", generation)
        finally:
            self._poll_in_flight.release()

    def _is_stale(self, generation: Optional[int]) -> bool:
        return generation is not None and generation != self._generation

    # ==================== POLL ====================

    def _poll(self, generation: Optional[int]) -> bool:
        self.stats['polls'] += 1
        self.stats['last_poll'] = datetime.now()

        state_future = self._reader.submit(self.client.read_state)
        events_future = self._reader.submit(self.client.read_events)
        wait([state_future, events_future])

        try:
            snapshot = state_future.result()
            events = events_future.result()
        except (TransportError, ProtocolError) as e:
            if self._record_failure(str(e), generation):
                logger.warning(f"[SYNC] Poll failed: {e}")
            return False

        if not self._publish(snapshot, events, generation):
            return False
        self.stats['successes'] += 1
        return True

    def _publish(self, snapshot: StateSnapshot, events: List[EventRecord], generation: Optional[int]) -> bool:
        now = datetime.now()
        discarded = False

        def apply(current: DeviceState) -> DeviceState:
            nonlocal discarded
            if self._is_stale(generation):
                discarded = True
                return current

            published = snapshot
            if current.pending and current.snapshot is not None:
                # A command is being reconciled: keep its optimistic pump value
                published = snapshot.with_pump_state(current.snapshot.pump_state)

            return replace(
                current,
                snapshot=published,
                events=tuple(events),
                alerts=derive_alerts(published),
                connectivity=ConnectivityStatus(connected=True, last_error=None, last_success_at=now),
            )

        new_state = self.store.update(apply)
        if discarded:
            self._count_discarded()
            return False

        logger.debug(
            f"[SYNC] Published snapshot: soil={snapshot.soil_raw} ({snapshot.moisture_percent}%) "
            f"pump={new_state.snapshot.pump_state.value} rain={snapshot.rain_status.value} "
            f"events={len(events)} alerts={sorted(a.value for a in new_state.alerts)}"
        )
        return True

    def _record_failure(self, message: str, generation: Optional[int] = None) -> bool:
        discarded = False

        def apply(current: DeviceState) -> DeviceState:
            nonlocal discarded
            if self._is_stale(generation):
                discarded = True
                return current
            return replace(
                current,
                connectivity=ConnectivityStatus(
                    connected=False,
                    last_error=message,
                    last_success_at=current.connectivity.last_success_at,
                ),
            )

        self.store.update(apply)
        if discarded:
            self._count_discarded()
            return False

        self.stats['failures'] += 1
        return True

    def _count_discarded(self):
        self.stats['discarded'] += 1
        logger.debug("[SYNC] Discarding poll result that arrived after stop")
