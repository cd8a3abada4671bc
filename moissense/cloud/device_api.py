# MoisSense Gateway - Field Node API Client
# Typed wrapper around the node's three HTTP endpoints (no retries, no caching)

import logging
import os
from typing import Any, List, Optional

import requests

from moissense.core.errors import ProtocolError, TransportError
from moissense.core.models import CommandResult, EventRecord, PumpState, StateSnapshot, parse_pump_state

logger = logging.getLogger(__name__)

DEFAULT_API_URL = 'http://localhost:1880'
DEFAULT_TIMEOUT = 10.0


class DeviceAPIClient:
    """
    Client for the MoisSense field node (Node-RED flow in front of the ESP32).

    Endpoints:
        - GET  /api/latest  -> latest sensor/actuator state
        - GET  /api/events  -> recent event history (order as the node sends it)
        - POST /api/pump    -> {"cmd": "ON"|"OFF"}

    Every call either returns a typed value or raises TransportError
    (node unreachable) / ProtocolError (answer we cannot use). Retrying is
    the sync loop's business, not this client's.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (base_url or os.getenv('MOISSENSE_API_URL', DEFAULT_API_URL)).rstrip('/')
        self.timeout = timeout if timeout is not None else float(os.getenv('MOISSENSE_REQUEST_TIMEOUT', DEFAULT_TIMEOUT))

        # Session Setup
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json'
        })

        logger.info(f"[DEVICE] Initialized client for {self.base_url}")

    # ==================== READS ====================

    def read_state(self) -> StateSnapshot:
        """Fetch and parse GET /api/latest."""
        data = self._get_json('/api/latest')
        return StateSnapshot.from_payload(data)

    def read_events(self) -> List[EventRecord]:
        """
        Fetch and parse GET /api/events.

        The node does not document whether the list is newest-first or
        oldest-first, so the order is passed through untouched.
        """
        data = self._get_json('/api/events')
        if not isinstance(data, list):
            raise ProtocolError(f"Expected a JSON array from /api/events, got {type(data).__name__}")
        return [EventRecord.from_payload(item) for item in data]

    # ==================== COMMANDS ====================

    def send_command(self, target: PumpState) -> CommandResult:
        """
        Ask the node to switch the pump.

        A non-2xx answer is a rejection (accepted=False), not an exception:
        the HTTP round trip itself worked.
        """
        target = PumpState(target)
        response = self._request('POST', '/api/pump', json={'cmd': target.value})

        if not response.ok:
            message = self._error_from_body(response) or f"HTTP {response.status_code}"
            logger.warning(f"[DEVICE] Pump command {target.value} rejected: {message}")
            return CommandResult(accepted=False, error_message=message)

        data = self._decode(response, '/api/pump')
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected a JSON object from /api/pump, got {type(data).__name__}")

        status = data.get('status')
        if status == 'ok':
            confirmed = None
            if data.get('pump_state') is not None:
                confirmed = parse_pump_state(data['pump_state'], 'pump_state')
            logger.info(f"[DEVICE] Pump command {target.value} accepted")
            return CommandResult(accepted=True, confirmed_pump_state=confirmed)

        if status == 'error':
            message = data.get('error') or 'Device reported an error'
            logger.warning(f"[DEVICE] Pump command {target.value} failed on device: {message}")
            return CommandResult(accepted=False, error_message=str(message))

        raise ProtocolError(f"Unexpected status from /api/pump: {status!r}")

    def close(self):
        self.session.close()

    # ==================== HTTP HELPERS ====================

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            logger.debug(f"[DEVICE] {method} {path} failed: {e}")
            raise TransportError(f"{method} {path} failed: {e}") from e

    def _get_json(self, path: str) -> Any:
        response = self._request('GET', path)
        if not response.ok:
            raise ProtocolError(f"GET {path} returned HTTP {response.status_code}")
        return self._decode(response, path)

    @staticmethod
    def _decode(response: requests.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"{path} returned invalid JSON: {e}") from e

    @staticmethod
    def _error_from_body(response: requests.Response) -> Optional[str]:
        try:
            data = response.json()
        except ValueError:
            return None
        if isinstance(data, dict) and data.get('error'):
            return f"HTTP {response.status_code}: {data['error']}"
        return None


# Convenience function
def create_device_client(base_url: Optional[str] = None, timeout: Optional[float] = None) -> DeviceAPIClient:
    return DeviceAPIClient(base_url=base_url, timeout=timeout)
