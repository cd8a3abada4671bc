# MoisSense Gateway - Data Models
# Typed view of the field node's JSON contract plus the locally published state

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple, Union

from moissense.core.errors import MoisSenseError, ProtocolError

SOIL_RAW_MAX = 1023

# updated_at values above this are epoch milliseconds (Node-RED Date.now())
_EPOCH_MS_THRESHOLD = 10 ** 11


class PumpState(str, Enum):
    ON = "ON"
    OFF = "OFF"

    def inverse(self) -> "PumpState":
        return PumpState.OFF if self is PumpState.ON else PumpState.ON


class RainStatus(str, Enum):
    CLEAR = "CLEAR"
    RAIN = "RAIN"


class OperatingMode(str, Enum):
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class EventCategory(str, Enum):
    PUMP_ON = "PUMP_ON"
    PUMP_OFF = "PUMP_OFF"
    RAIN_DETECTED = "RAIN_DETECTED"
    WARNING = "WARNING"
    AUTO_MODE_CHANGE = "AUTO_MODE_CHANGE"


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class Alert(str, Enum):
    DRY = "DRY"
    RAIN = "RAIN"


# Event "type" strings as the node writes them, squashed (lowercase, no separators)
_EVENT_CATEGORIES = {
    'pumpon': EventCategory.PUMP_ON,
    'pumpoff': EventCategory.PUMP_OFF,
    'rain': EventCategory.RAIN_DETECTED,
    'raindetected': EventCategory.RAIN_DETECTED,
    'warning': EventCategory.WARNING,
    'error': EventCategory.WARNING,
    'auto': EventCategory.AUTO_MODE_CHANGE,
    'automode': EventCategory.AUTO_MODE_CHANGE,
    'automodechange': EventCategory.AUTO_MODE_CHANGE,
    'modechange': EventCategory.AUTO_MODE_CHANGE,
}

_SEVERITIES = {
    'info': Severity.INFO,
    'warn': Severity.WARN,
    'warning': Severity.WARN,
    'error': Severity.ERROR,
}

_RAIN_WORDS = {'hujan', 'rain', 'raining', 'rainy'}
_NOT_RAIN_WORDS = {'tidak', 'no', 'not', 'none', 'clear', 'cerah', 'kering'}


def moisture_percent(soil_raw: int) -> int:
    """Soil moisture percentage derived from the raw ADC reading (0..1023)."""
    return round(soil_raw / SOIL_RAW_MAX * 100)


@dataclass(frozen=True)
class StateSnapshot:
    temperature: float
    humidity: float
    soil_raw: int
    rain_status: RainStatus
    pump_state: PumpState
    observed_at: Optional[datetime] = None
    rain_raw: Optional[int] = None

    @property
    def moisture_percent(self) -> int:
        return moisture_percent(self.soil_raw)

    def with_pump_state(self, pump_state: PumpState) -> "StateSnapshot":
        return replace(self, pump_state=pump_state)

    @classmethod
    def from_payload(cls, data: Any) -> "StateSnapshot":
        """
        Build a snapshot from a GET /api/latest body.

        Raises:
            ProtocolError: if the body does not have the expected shape
        """
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected a JSON object from /api/latest, got {type(data).__name__}")

        soil_raw = _integer(data, 'soil')
        if not 0 <= soil_raw <= SOIL_RAW_MAX:
            raise ProtocolError(f"Field 'soil' out of range 0..{SOIL_RAW_MAX}: {soil_raw}")

        rain_raw = None
        if data.get('rain_raw') is not None:
            rain_raw = _integer(data, 'rain_raw')

        return cls(
            temperature=_number(data, 'suhu'),
            humidity=_number(data, 'kelembapan'),
            soil_raw=soil_raw,
            rain_status=parse_rain_status(_string(data, 'rain_status')),
            pump_state=parse_pump_state(data.get('pompa'), 'pompa'),
            observed_at=_epoch_to_datetime(data.get('updated_at'), 'updated_at'),
            rain_raw=rain_raw,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'temperature': self.temperature,
            'humidity': self.humidity,
            'soil_raw': self.soil_raw,
            'moisture_percent': self.moisture_percent,
            'rain_status': self.rain_status.value,
            'rain_raw': self.rain_raw,
            'pump_state': self.pump_state.value,
            'observed_at': self.observed_at.isoformat() if self.observed_at else None,
        }


@dataclass(frozen=True)
class EventRecord:
    timestamp: Union[datetime, str]
    category: EventCategory
    severity: Severity
    message: str

    @classmethod
    def from_payload(cls, data: Any) -> "EventRecord":
        if not isinstance(data, dict):
            raise ProtocolError(f"Expected event object, got {type(data).__name__}")

        type_name = _string(data, 'type')
        category = _EVENT_CATEGORIES.get(re.sub(r'[\s_\-]+', '', type_name.lower()))
        if category is None:
            raise ProtocolError(f"Unknown event type: {type_name!r}")

        level = _string(data, 'level')
        severity = _SEVERITIES.get(level.strip().lower())
        if severity is None:
            raise ProtocolError(f"Unknown event level: {level!r}")

        return cls(
            timestamp=_parse_event_timestamp(data.get('ts')),
            category=category,
            severity=severity,
            message=_string(data, 'message'),
        )

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.timestamp, datetime):
            timestamp = self.timestamp.isoformat()
        else:
            timestamp = self.timestamp
        return {
            'timestamp': timestamp,
            'category': self.category.value,
            'severity': self.severity.value,
            'message': self.message,
        }


@dataclass(frozen=True)
class ConnectivityStatus:
    connected: bool = False
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'connected': self.connected,
            'last_error': self.last_error,
            'last_success_at': self.last_success_at.isoformat() if self.last_success_at else None,
        }


@dataclass(frozen=True)
class CommandResult:
    accepted: bool
    confirmed_pump_state: Optional[PumpState] = None
    error_message: Optional[str] = None


@dataclass(frozen=True)
class CommandOutcome:
    """What a caller of the command dispatcher gets back; never raised."""
    ok: bool
    pump_state: Optional[PumpState] = None
    error: Optional[MoisSenseError] = None

    @property
    def message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.ok,
            'pump_state': self.pump_state.value if self.pump_state else None,
            'error': type(self.error).__name__ if self.error is not None else None,
            'message': self.message,
        }


@dataclass(frozen=True)
class DeviceState:
    """
    Everything presentation consumers see, swapped as one object.

    snapshot/events come from the last successful poll (or the optimistic
    pump placeholder while a command is pending); connectivity is updated on
    every poll attempt; alerts only on successful polls.
    """
    snapshot: Optional[StateSnapshot] = None
    events: Tuple[EventRecord, ...] = ()
    connectivity: ConnectivityStatus = field(default_factory=ConnectivityStatus)
    alerts: FrozenSet[Alert] = frozenset()
    mode: OperatingMode = OperatingMode.AUTO
    pending: bool = False
    pending_target: Optional[PumpState] = None


# ==================== PAYLOAD HELPERS ====================

def parse_pump_state(value: Any, field_name: str = 'pump_state') -> PumpState:
    if isinstance(value, str):
        try:
            return PumpState(value.strip().upper())
        except ValueError:
            pass
    raise ProtocolError(f"Field '{field_name}' must be 'ON' or 'OFF', got {value!r}")


def parse_rain_status(text: str) -> RainStatus:
    """
    Interpret the node's free-text rain label ("🌧 Hujan", "☀ Cerah", "Tidak Hujan").

    Rain only when a rain word appears without a negation; anything else is clear.
    """
    words = set(re.findall(r'[a-z]+', text.lower()))
    if words & _RAIN_WORDS and not words & _NOT_RAIN_WORDS:
        return RainStatus.RAIN
    return RainStatus.CLEAR


def _require(data: Dict[str, Any], key: str) -> Any:
    if key not in data or data[key] is None:
        raise ProtocolError(f"Missing field '{key}'")
    return data[key]


def _number(data: Dict[str, Any], key: str) -> float:
    value = _require(data, key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"Field '{key}' must be a number, got {value!r}")
    return float(value)


def _integer(data: Dict[str, Any], key: str) -> int:
    value = _require(data, key)
    if isinstance(value, bool):
        raise ProtocolError(f"Field '{key}' must be an integer, got {value!r}")
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if not isinstance(value, int):
        raise ProtocolError(f"Field '{key}' must be an integer, got {value!r}")
    return value


def _string(data: Dict[str, Any], key: str) -> str:
    value = _require(data, key)
    if not isinstance(value, str):
        raise ProtocolError(f"Field '{key}' must be a string, got {value!r}")
    return value


def _epoch_to_datetime(value: Any, field_name: str) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"Field '{field_name}' must be an epoch number or null, got {value!r}")
    seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(seconds)
    except (OverflowError, OSError, ValueError) as e:
        raise ProtocolError(f"Field '{field_name}' is not a valid timestamp: {value!r}") from e


def _parse_event_timestamp(value: Any) -> Union[datetime, str]:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.strip())
        except ValueError:
            # Bare labels like "14:32:15" are shown as-is
            return value
    if value is None:
        raise ProtocolError("Missing field 'ts'")
    return _epoch_to_datetime(value, 'ts')
