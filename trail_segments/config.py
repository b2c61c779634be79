"""Central configuration for the trail segment engine.

All values are constants imported by the rest of the package. Adjust as needed
for your environment. Values can be overridden through environment variables
(optionally via a local `.env`).
"""

from __future__ import annotations

import os

from dotenv import load_dotenv


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env from the current directory or any parent folder.
load_dotenv()


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
# SQLAlchemy database URL. SQLite files are fine for a single host; point this
# at PostgreSQL for multi-host deployments.
DATABASE_URL = os.getenv("TRAIL_DATABASE_URL", "sqlite:///trail_segments.db")

# Echo SQL statements to the log (very noisy).
DATABASE_ECHO = _env_bool("TRAIL_DATABASE_ECHO", False)

# Isolation level for non-SQLite backends. SQLite always opens write
# transactions with BEGIN IMMEDIATE instead.
DATABASE_ISOLATION_LEVEL = os.getenv("TRAIL_DATABASE_ISOLATION_LEVEL", "SERIALIZABLE")

# Seconds a SQLite connection waits on a locked database before failing.
SQLITE_BUSY_TIMEOUT_SECONDS = _env_float("TRAIL_SQLITE_BUSY_TIMEOUT_SECONDS", 30.0)


# ---------------------------------------------------------------------------
# Background processing
# ---------------------------------------------------------------------------
# Worker threads for activity processing. 0 sizes the pool to the CPU count.
QUEUE_MAX_WORKERS = _env_int("TRAIL_QUEUE_MAX_WORKERS", 0)

# Total attempts per unit of work (first try + retries).
QUEUE_MAX_ATTEMPTS = _env_int("TRAIL_QUEUE_MAX_ATTEMPTS", 2)

# Initial backoff before a retry; doubled per attempt and capped.
QUEUE_RETRY_BACKOFF_SECONDS = _env_float("TRAIL_QUEUE_RETRY_BACKOFF_SECONDS", 1.0)
QUEUE_BACKOFF_MAX_SECONDS = _env_float("TRAIL_QUEUE_BACKOFF_MAX_SECONDS", 4.0)

# Upper bound for a single spatial index / bounding box query.
SPATIAL_QUERY_TIMEOUT_SECONDS = _env_float("TRAIL_SPATIAL_QUERY_TIMEOUT_SECONDS", 5.0)
# Threads serving spatial queries; 0 means one per CPU, like the activity pool.
SPATIAL_QUERY_WORKERS = _env_int("TRAIL_SPATIAL_QUERY_WORKERS", 0)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------
# Elevation changes smaller than this (metres) are treated as sensor noise
# when accumulating gain. 0 sums every positive delta.
ELEVATION_NOISE_THRESHOLD_M = _env_float("TRAIL_ELEVATION_NOISE_THRESHOLD_M", 0.0)


# ---------------------------------------------------------------------------
# Segment matching
# ---------------------------------------------------------------------------
# Radius (metres) used to pick candidate segments around a track.
MATCHING_SEARCH_RADIUS_M = _env_float("TRAIL_MATCHING_SEARCH_RADIUS_M", 50.0)

# Maximum distance (metres) between a segment endpoint and the track.
MATCHING_ENDPOINT_TOLERANCE_M = _env_float("TRAIL_MATCHING_ENDPOINT_TOLERANCE_M", 50.0)

# Minimum share of the segment's length the track span must follow.
MATCHING_MIN_OVERLAP = _env_float("TRAIL_MATCHING_MIN_OVERLAP", 0.9)

# Target spacing (metres) for the resampled segment polyline used in the
# overlap check, plus a cap on the resampled point count.
MATCHING_RESAMPLE_INTERVAL_M = _env_float("TRAIL_MATCHING_RESAMPLE_INTERVAL_M", 5.0)
MATCHING_MAX_RESAMPLED_POINTS = _env_int("TRAIL_MATCHING_MAX_RESAMPLED_POINTS", 1200)

# Prepared segment geometries kept in memory.
MATCHING_SEGMENT_CACHE_SIZE = _env_int("TRAIL_MATCHING_SEGMENT_CACHE_SIZE", 256)

# Below this speed (m/s) the athlete is considered stopped. 1 m/s is roughly
# a slow walk.
STOPPED_SPEED_THRESHOLD_MPS = _env_float("TRAIL_STOPPED_SPEED_THRESHOLD_MPS", 1.0)

# Stops shorter than this (seconds) are not recorded as stopped segments.
STOP_MIN_DURATION_S = _env_float("TRAIL_STOP_MIN_DURATION_S", 30.0)


# ---------------------------------------------------------------------------
# Segment catalogue
# ---------------------------------------------------------------------------
SEGMENT_MIN_POINTS = _env_int("TRAIL_SEGMENT_MIN_POINTS", 10)
SEGMENT_MIN_LENGTH_M = _env_float("TRAIL_SEGMENT_MIN_LENGTH_M", 100.0)
SEGMENT_MAX_LENGTH_M = _env_float("TRAIL_SEGMENT_MAX_LENGTH_M", 50_000.0)

# Segments whose start and end both lie within this radius (metres) of an
# existing segment's endpoints are rejected as duplicates.
SIMILAR_SEGMENT_RADIUS_M = _env_float("TRAIL_SIMILAR_SEGMENT_RADIUS_M", 30.0)

# Horizontal steps shorter than this (metres) are ignored for grade maths.
GRADE_MIN_STEP_M = _env_float("TRAIL_GRADE_MIN_STEP_M", 1.0)

# Grade factor used for climb categories: "steepness", "flat" or "off".
CLIMB_GRADE_FACTOR_MODE = os.getenv("TRAIL_CLIMB_GRADE_FACTOR_MODE", "steepness")

# Climbs gaining less than this (metres) stay uncategorised.
CLIMB_MIN_GAIN_M = _env_float("TRAIL_CLIMB_MIN_GAIN_M", 10.0)


# ---------------------------------------------------------------------------
# Leaderboards
# ---------------------------------------------------------------------------
# Cache lifetimes (seconds) per scope.
LEADERBOARD_TTL_WEEK_S = _env_int("TRAIL_LEADERBOARD_TTL_WEEK_S", 5 * 60)
LEADERBOARD_TTL_MONTH_S = _env_int("TRAIL_LEADERBOARD_TTL_MONTH_S", 15 * 60)
LEADERBOARD_TTL_YEAR_S = _env_int("TRAIL_LEADERBOARD_TTL_YEAR_S", 60 * 60)
LEADERBOARD_TTL_ALL_TIME_S = _env_int("TRAIL_LEADERBOARD_TTL_ALL_TIME_S", 60 * 60)

LEADERBOARD_DEFAULT_LIMIT = _env_int("TRAIL_LEADERBOARD_DEFAULT_LIMIT", 50)
LEADERBOARD_MAX_LIMIT = _env_int("TRAIL_LEADERBOARD_MAX_LIMIT", 500)

# Entries shown above and below the user in position lookups.
LEADERBOARD_POSITION_CONTEXT = _env_int("TRAIL_LEADERBOARD_POSITION_CONTEXT", 3)


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
LOG_LEVEL = os.getenv("TRAIL_LOG_LEVEL", "INFO")
