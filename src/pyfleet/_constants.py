"""Internal constants shared across the library."""

EARTH_RADIUS_KM = 6371.0

# ------------------------------------------------------------------
# Reporting-side sample filter
# ------------------------------------------------------------------

MAX_ACCURACY_METERS = 100.0
MIN_UPDATE_INTERVAL_SECONDS = 60.0
MIN_DISTANCE_METERS = 50.0
DEBOUNCE_SECONDS = 10.0

# ------------------------------------------------------------------
# Fleet status windows
# ------------------------------------------------------------------

ONLINE_WINDOW_SECONDS = 5 * 60.0
STALE_AFTER_SECONDS = 15 * 60.0

# ------------------------------------------------------------------
# Trail accumulation / auto-save
# ------------------------------------------------------------------

TRAIL_MIN_SPACING_SECONDS = 60.0
AUTO_SAVE_MIN_POINTS = 10
AUTO_SAVE_INTERVAL_SECONDS = 30 * 60.0
MIN_ROUTE_DISTANCE_KM = 0.1
TICK_INTERVAL_SECONDS = 60.0
STATE_RETENTION_SECONDS = 24 * 3600.0

# ------------------------------------------------------------------
# Route history
# ------------------------------------------------------------------

DEFAULT_HISTORY_LIMIT = 50
PERSIST_TIMEOUT_SECONDS = 10.0
DISTANCE_REL_TOLERANCE = 1e-6
