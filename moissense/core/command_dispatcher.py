# MoisSense Gateway - Command Dispatcher
# Operator pump commands with optimistic update and commit-or-revert

import logging
from dataclasses import replace
from typing import Callable, Optional

from moissense.core.errors import BusyError, DeviceRejected, ModeError, ProtocolError, TransportError
from moissense.core.models import CommandOutcome, DeviceState, OperatingMode, PumpState
from moissense.core.state_store import DeviceStateStore

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """
    Relays operator pump commands to the field node.

    Each command runs in three phases:
        1. snapshot-before + tentative apply: under the store lock, check the
           preconditions, remember the confirmed pump state and publish the
           target state with pending=True
        2. send_command(target) on the remote client
        3. commit (keep target, or the node's confirmed value) or revert
           (restore the remembered value), clearing pending either way

    Preconditions fail fast, with no network call and no state change:
        - BusyError: a command is already pending (commands are not queued)
        - ModeError: Auto mode is active, or the node is not connected

    Callers always get a CommandOutcome back; nothing here raises.
    """

    def __init__(self, client, store: DeviceStateStore):
        self.client = client
        self.store = store

    def toggle_pump(self) -> CommandOutcome:
        """Switch the pump to the inverse of its last confirmed state."""
        return self._execute(lambda current: current.inverse())

    def set_pump(self, target: PumpState) -> CommandOutcome:
        """Switch the pump to an explicit state."""
        target = PumpState(target)
        return self._execute(lambda current: target)

    def set_mode(self, mode: OperatingMode) -> DeviceState:
        mode = OperatingMode(mode)

        def apply(current: DeviceState) -> DeviceState:
            if current.mode is mode:
                return current
            return replace(current, mode=mode)

        previous = self.store.state.mode
        new_state = self.store.update(apply)
        if previous is not mode:
            logger.info(f"[COMMAND] Operating mode: {previous.value} -> {mode.value}")
        return new_state

    # ==================== PROTOCOL ====================

    def _execute(self, choose_target: Callable[[PumpState], PumpState]) -> CommandOutcome:
        try:
            before, target = self._begin(choose_target)
        except (BusyError, ModeError) as e:
            logger.warning(f"[COMMAND] Pump command refused: {e}")
            return CommandOutcome(ok=False, pump_state=self._current_pump_state(), error=e)

        logger.info(f"[COMMAND] Pump {before.value} -> {target.value} (optimistic)")

        try:
            result = self.client.send_command(target)
        except (TransportError, ProtocolError) as e:
            self._revert(before)
            logger.warning(f"[COMMAND] Pump command {target.value} failed, reverted to {before.value}: {e}")
            return CommandOutcome(ok=False, pump_state=before, error=e)
        except Exception as e:
            self._revert(before)
            logger.error(f"[COMMAND] Pump command {target.value} crashed, reverted to {before.value}: {e}", exc_info=True)
            return CommandOutcome(ok=False, pump_state=before, error=e)

        if not result.accepted:
            error = DeviceRejected(result.error_message or 'Device rejected the command')
            self._revert(before)
            logger.warning(f"[COMMAND] Pump command {target.value} rejected, reverted to {before.value}: {error}")
            return CommandOutcome(ok=False, pump_state=before, error=error)

        final = self._commit(target, result.confirmed_pump_state)
        logger.info(f"[COMMAND] Pump command confirmed: {final.value}")
        return CommandOutcome(ok=True, pump_state=final)

    def _begin(self, choose_target: Callable[[PumpState], PumpState]):
        captured = {}

        def apply(current: DeviceState) -> DeviceState:
            if current.pending:
                raise BusyError("Another pump command is still pending")
            if current.mode is OperatingMode.AUTO:
                raise ModeError("Manual controls are disabled in Auto mode")
            if not current.connectivity.connected or current.snapshot is None:
                raise ModeError("Device is disconnected")

            before = current.snapshot.pump_state
            target = choose_target(before)
            captured['before'] = before
            captured['target'] = target
            return replace(
                current,
                snapshot=current.snapshot.with_pump_state(target),
                pending=True,
                pending_target=target,
            )

        self.store.update(apply)
        return captured['before'], captured['target']

    def _commit(self, target: PumpState, confirmed: Optional[PumpState]) -> PumpState:
        final = target
        if confirmed is not None:
            if confirmed is not target:
                logger.warning(
                    f"[COMMAND] Protocol inconsistency: requested {target.value}, "
                    f"device confirmed {confirmed.value}"
                )
            final = confirmed

        self.store.update(lambda current: self._settle(current, final))
        return final

    def _revert(self, before: PumpState):
        self.store.update(lambda current: self._settle(current, before))

    @staticmethod
    def _settle(current: DeviceState, pump_state: PumpState) -> DeviceState:
        snapshot = current.snapshot
        if snapshot is not None and snapshot.pump_state is not pump_state:
            snapshot = snapshot.with_pump_state(pump_state)
        return replace(current, snapshot=snapshot, pending=False, pending_target=None)

    def _current_pump_state(self) -> Optional[PumpState]:
        snapshot = self.store.state.snapshot
        return snapshot.pump_state if snapshot else None
