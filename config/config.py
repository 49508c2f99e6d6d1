import os
from dotenv import load_dotenv
from zoneinfo import ZoneInfo
from pathlib import Path

load_dotenv()

# --- Base Directory ---
BASE_DIR = Path(__file__).resolve().parent.parent

# --- Auth ---
JWT_SECRET = os.getenv('JWT_SECRET')

# --- Валидация критично важливих змінних ---
if not JWT_SECRET:
    raise ValueError("Необхідно встановити JWT_SECRET в .env файлі")

JWT_ALGORITHM = os.getenv('JWT_ALGORITHM', 'HS256')

# --- Database ---
DB_PATH = Path(os.getenv('DB_PATH', BASE_DIR / 'database' / 'dispatch.db'))

# --- Server ---
HOST = os.getenv('HOST', '0.0.0.0')
PORT = int(os.getenv('PORT', 3000))

LOG_DIR = Path(os.getenv('LOG_DIR', BASE_DIR / 'logs'))

# Часовий пояс для міток часу у сховищі
TIMEZONE = ZoneInfo(os.getenv('TIMEZONE', 'UTC'))

# --- Dispatch ---
# How often (seconds) the pending-request cache is re-derived from the store
PENDING_RESYNC_INTERVAL = int(os.getenv('PENDING_RESYNC_INTERVAL', 60))
# A pending request older than this is reported on every resync
PENDING_STALE_MINUTES = int(os.getenv('PENDING_STALE_MINUTES', 15))


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


# Driver events are rejected until the connection authenticates as a driver
REQUIRE_DRIVER_AUTH = _env_flag('REQUIRE_DRIVER_AUTH')
# Reject request statuses that are neither mapped events nor lifecycle states
STRICT_REQUEST_STATUS = _env_flag('STRICT_REQUEST_STATUS')
