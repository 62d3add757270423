"""Heuristic thresholds, escalation timings and app-level tuning constants."""

# ── OFF-WRIST DETECTION ─────────────────────────────────────────────────────
# Engineering choices carried over from the watch app. No physiological source
# prescribes these windows; they trade false positives (child sitting still)
# against detection latency.
#
#   Strong case:   no fresh heart rate for 120s AND no motion for 300s
#   Fallback case: heart rate still reporting but no motion for 60s
OFF_WRIST_EVAL_INTERVAL_SECONDS = 60
OFF_WRIST_HR_STALE_SECONDS = 120
OFF_WRIST_MOTION_STALE_SECONDS = 300
OFF_WRIST_FALLBACK_MOTION_SECONDS = 60

# How often the "are you still wearing me?" prompt may reappear
OFF_WRIST_ALERT_COOLDOWN_SECONDS = 120
OFF_WRIST_PROMPT_TIMEOUT_SECONDS = 15

# Back-on confirmation: N consecutive fresh, motion-correlated samples
BACK_ON_REQUIRED_SAMPLES = 3
BACK_ON_MAX_SAMPLE_AGE_SECONDS = 8
BACK_ON_MAX_MOTION_AGE_SECONDS = 20

# ── HEART-RATE SAMPLE PLAUSIBILITY ──────────────────────────────────────────
HEART_RATE_MIN_BPM = 0.0  # exclusive
HEART_RATE_MAX_BPM = 240.0  # exclusive
HEART_RATE_MAX_SAMPLE_AGE_SECONDS = 15
# Watch clocks may run slightly ahead of the server
HEART_RATE_MAX_FUTURE_SKEW_SECONDS = 2

# Deviation from 1g that counts as physical movement
MOTION_DEVIATION_THRESHOLD_G = 0.05

# ── GEOFENCING ───────────────────────────────────────────────────────────────
EARTH_RADIUS_METERS = 6_371_000.0
DANGER_ZONE_REPEAT_COOLDOWN_SECONDS = 120

# ── BATTERY ──────────────────────────────────────────────────────────────────
LOW_BATTERY_DEFAULT_THRESHOLD_PCT = 20
LOW_BATTERY_MIN_THRESHOLD_PCT = 10
LOW_BATTERY_MAX_THRESHOLD_PCT = 50

# ── EMERGENCY ESCALATION ─────────────────────────────────────────────────────
SOS_HAPTIC_INTERVAL_SECONDS = 1.0
HALT_GRACE_SECONDS = 15.0
HALT_HAPTIC_INTERVAL_SECONDS = 0.75

# ── PAIRING ──────────────────────────────────────────────────────────────────
PAIRING_PIN_LENGTH = 6
PAIRING_POLL_INTERVAL_SECONDS = 3.0
PAIRING_REJECTED_DISMISS_SECONDS = 3.0
LINK_LIVENESS_INTERVAL_SECONDS = 10

# Consecutive poll failures before the UI should show "reconnecting"
RECONNECTING_FAILURE_THRESHOLD = 3

# ── RETRY / BACKOFF ──────────────────────────────────────────────────────────
POLL_BACKOFF_MAX_SECONDS = 60.0
POLL_BACKOFF_JITTER_SECONDS = 1.0

# One-shot location fixes: up to 3 retries, doubling from 10s
LOCATION_RETRY_BASE_SECONDS = 10.0
LOCATION_MAX_RETRIES = 3

# ── NOTIFICATIONS ────────────────────────────────────────────────────────────
NOTIFICATION_SOUNDS = (
    "default_sound",
    "alert_sound",
    "bell_sound",
    "chime_sound",
    "chirp_sound",
)
DEFAULT_NOTIFICATION_SOUND = "default_sound"
SOS_SOUND = "sos_sound"

ALERTS_DEFAULT_PAGE_SIZE = 50
SSE_KEEPALIVE_SECONDS = 15
