from flask import Blueprint, jsonify, current_app, request
import time
import logging

from moissense.core.alerts import describe_alert
from moissense.core.errors import BusyError, ModeError
from moissense.core.models import OperatingMode, PumpState
from moissense.version import get_version_info

logger = logging.getLogger(__name__)

# Create Flask Blueprint
web_bp = Blueprint('web', __name__)

# CommandOutcome error -> HTTP status
LOCAL_REFUSALS = (BusyError, ModeError)


def _store():
    return current_app.config['STATE_STORE']


def _dispatcher():
    return current_app.config['DISPATCHER']


def serialize_state(state):
    """JSON view of the published DeviceState for dashboards and the mobile app."""
    return {
        'snapshot': state.snapshot.to_dict() if state.snapshot else None,
        'connectivity': state.connectivity.to_dict(),
        'alerts': [
            {'code': alert.value, 'message': describe_alert(alert)}
            for alert in sorted(state.alerts, key=lambda a: a.value)
        ],
        'mode': state.mode.value,
        'auto_mode': state.mode is OperatingMode.AUTO,
        'pending': state.pending,
        'pending_target': state.pending_target.value if state.pending_target else None,
    }


def _outcome_response(outcome):
    if outcome.ok:
        return jsonify(outcome.to_dict()), 200
    if isinstance(outcome.error, LOCAL_REFUSALS):
        return jsonify(outcome.to_dict()), 409
    return jsonify(outcome.to_dict()), 502


@web_bp.route('/status', methods=['GET'])
def get_status():
    """Health check endpoint for device connection testing."""
    state = _store().state
    start_time = current_app.config.get('START_TIME', time.time())
    sync_loop = current_app.config.get('SYNC_LOOP')

    return jsonify({
        'success': True,
        'status': 'online',
        'device_connected': state.connectivity.connected,
        'sync_running': bool(sync_loop and sync_loop.is_running),
        'uptime_seconds': int(time.time() - start_time),
        'timestamp': time.time(),
        **get_version_info()
    }), 200


@web_bp.route('/api/state', methods=['GET'])
def api_state():
    """Latest snapshot, connectivity, alerts and mode in one consistent read."""
    return jsonify(serialize_state(_store().state))


@web_bp.route('/api/events', methods=['GET'])
def api_events():
    """Event history exactly in the order the field node returned it."""
    state = _store().state
    return jsonify({'events': [event.to_dict() for event in state.events]})


@web_bp.route('/api/pump/toggle', methods=['POST'])
def toggle_pump():
    outcome = _dispatcher().toggle_pump()
    return _outcome_response(outcome)


@web_bp.route('/api/pump', methods=['POST'])
def set_pump():
    """
    Set the pump to an explicit state.
    Receives a JSON object like: {"cmd": "ON"}
    """
    data = request.get_json(silent=True) or {}
    cmd = str(data.get('cmd', '')).upper()
    if cmd not in ('ON', 'OFF'):
        return jsonify({'success': False, 'message': "Invalid cmd (must be ON or OFF)"}), 400

    outcome = _dispatcher().set_pump(PumpState(cmd))
    return _outcome_response(outcome)


@web_bp.route('/api/mode', methods=['POST'])
def set_mode():
    """
    Switch between Auto and Manual mode.
    Receives: {"mode": "auto"|"manual"} or {"auto": true/false}
    """
    data = request.get_json(silent=True) or {}

    if 'mode' in data:
        try:
            mode = OperatingMode(str(data['mode']).upper())
        except ValueError:
            return jsonify({'success': False, 'message': "Invalid mode (must be auto or manual)"}), 400
    elif 'auto' in data:
        if not isinstance(data['auto'], bool):
            return jsonify({'success': False, 'message': "'auto' must be true or false"}), 400
        mode = OperatingMode.AUTO if data['auto'] else OperatingMode.MANUAL
    else:
        return jsonify({'success': False, 'message': "Missing 'mode' field"}), 400

    state = _dispatcher().set_mode(mode)

    # Remember the operator's choice across restarts (local only)
    user_prefs = current_app.config.get('USER_PREFS')
    if user_prefs is not None:
        user_prefs.set_preference('system.auto_mode', mode is OperatingMode.AUTO)

    logger.info(f"[WEB] Mode set to {mode.value}")
    return jsonify({'success': True, 'mode': state.mode.value, 'auto_mode': state.mode is OperatingMode.AUTO})
