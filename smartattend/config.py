import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SMARTATTEND_DB_PATH", BASE_DIR / "database" / "smartattend.db"))
BRIDGE_SECRET = os.getenv("SMARTATTEND_BRIDGE_SECRET", "smartattend-bridge-secret-change-me").strip()
LOG_LEVEL = os.getenv("SMARTATTEND_LOG_LEVEL", "INFO").strip().upper() or "INFO"

# Locally authenticated student (login itself happens in the host app).
STUDENT_ID = os.getenv("SMARTATTEND_STUDENT_ID", "").strip()
STUDENT_NAME = os.getenv("SMARTATTEND_STUDENT_NAME", "").strip()
CLASS_GROUP = os.getenv("SMARTATTEND_CLASS_GROUP", "").strip().upper()


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_positive_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SMARTATTEND_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SMARTATTEND_CORS_ALLOW_CREDENTIALS"), True)

# Beacons rotate their suffix; 30s covers several advertising cycles.
SCAN_TIMEOUT_SECONDS = _parse_positive_float(os.getenv("SMARTATTEND_SCAN_TIMEOUT_SECONDS"), 30.0)

RECENT_SESSIONS_LIMIT = max(
    1,
    int(os.getenv("SMARTATTEND_RECENT_SESSIONS_LIMIT", "20")),
)
