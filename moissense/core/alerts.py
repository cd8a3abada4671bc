"""
MoisSense Gateway - Alert Deriver

Maps a state snapshot to the set of active alert conditions.

Rules:
- DRY:  soil_raw < 300 (the raw ADC threshold is authoritative; the moisture
        percentage is for display only)
- RAIN: rain_status == RAIN

Alerts are recomputed from scratch on every successful poll. There is no
hysteresis: a reading flapping around the threshold flaps the alert, and
dismissal is left to whoever renders it.
"""

from typing import FrozenSet, Optional

from moissense.core.models import Alert, RainStatus, StateSnapshot

DRY_SOIL_RAW_THRESHOLD = 300

ALERT_MESSAGES = {
    Alert.DRY: "Soil moisture critically low - consider activating the irrigation pump",
    Alert.RAIN: "Rain detected - automatic irrigation system locked",
}


def derive_alerts(snapshot: Optional[StateSnapshot]) -> FrozenSet[Alert]:
    if snapshot is None:
        return frozenset()

    active = set()
    if snapshot.soil_raw < DRY_SOIL_RAW_THRESHOLD:
        active.add(Alert.DRY)
    if snapshot.rain_status is RainStatus.RAIN:
        active.add(Alert.RAIN)
    return frozenset(active)


def describe_alert(alert: Alert) -> str:
    return ALERT_MESSAGES[alert]
