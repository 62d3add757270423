"""Shared lookup maps - sensor names to companion endpoints, alert kinds to settings."""

from typing import Dict

# Used by: scheduler.py, tasks.py, sensor_source.py - sensor name → companion API endpoint
SENSOR_TO_ENDPOINT_MAP: Dict[str, str] = {
    "heart_rate": "/heart_rate/{child_id}",
    "motion": "/motion/{child_id}",
    "battery": "/battery/{child_id}",
    "location": "/location/{child_id}",
}

# Used by: alert_service.py - alert kind → NotificationSettings field that gates it.
# Kinds missing from the map (sos, halt) are never suppressed by preferences.
ALERT_KIND_TO_SETTING: Dict[str, str] = {
    "safe_zone_exit": "safe_zone_alert",
    "unsafe_zone_entry": "unsafe_zone_alert",
    "battery_low": "low_battery_alert",
    "watch_removed": "watch_removed_alert",
    "watch_back_on": "watch_removed_alert",
    "connection_request": "new_connection_request",
}

# Used by: alert_events.py - legacy event names written by the cloud functions
LEGACY_EVENT_NAMES: Dict[str, str] = {
    "sos_alert": "sos",
    "halt_alert": "halt",
    "lowBattery": "battery_low",
    "battery": "battery_low",
    "zone_alert": "unsafe_zone_entry",
    "pairing_request": "connection_request",
}
