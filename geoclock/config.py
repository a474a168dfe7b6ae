import os


def _env_float(name: str, default: str) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return float(default)


def _env_int(name: str, default: str) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return int(default)


def _env_optional_float(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


BOT_TOKEN = os.getenv("BOT_TOKEN", "")
WORKER_CHAT_ID = _env_int("WORKER_CHAT_ID", "0")

GRAPHQL_URL = os.getenv("GRAPHQL_URL", "http://localhost:3000/api/graphql")
HEALTH_URL = os.getenv("HEALTH_URL", "")
API_TOKEN = os.getenv("API_TOKEN", "")
HTTP_TIMEOUT_SEC = _env_float("HTTP_TIMEOUT_SEC", "10")

DB_PATH = os.getenv("DB_PATH", "geoclock.sqlite3")

# Sync
MAX_RETRIES = _env_int("MAX_RETRIES", "3")
SYNC_ACTION_DELAY_SEC = _env_float("SYNC_ACTION_DELAY_SEC", "0.1")
SYNC_ERROR_COOLDOWN_SEC = _env_float("SYNC_ERROR_COOLDOWN_SEC", "5")
SYNC_INITIAL_DELAY_SEC = _env_float("SYNC_INITIAL_DELAY_SEC", "1")
SYNC_RETRY_EVERY_SEC = _env_int("SYNC_RETRY_EVERY_SEC", "60")

# Network
PROBE_INTERVAL_SEC = _env_float("PROBE_INTERVAL_SEC", "30")
PROBE_TIMEOUT_SEC = _env_float("PROBE_TIMEOUT_SEC", "5")
ONLINE_TIMEOUT_SEC = _env_float("ONLINE_TIMEOUT_SEC", "10")

# Geofence
BUFFER_KM = _env_float("BUFFER_KM", "0.05")
DEFAULT_RADIUS_KM = 0.1
WORK_LAT = _env_optional_float("WORK_LAT")
WORK_LNG = _env_optional_float("WORK_LNG")
WORK_RADIUS_KM = _env_float("WORK_RADIUS_KM", str(DEFAULT_RADIUS_KM))
WORK_NAME = os.getenv("WORK_NAME", "Work Location")

POSITION_TIMEOUT_SEC = _env_float("POSITION_TIMEOUT_SEC", "30")
POSITION_MAX_AGE_SEC = _env_float("POSITION_MAX_AGE_SEC", "10")

AUTO_TRACK = os.getenv("AUTO_TRACK", "1") not in {"0", "false", "False"}

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
