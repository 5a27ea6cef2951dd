import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("KIOSK_DB_PATH", BASE_DIR / "database" / "kiosk.db"))
ADMIN_PASSWORD = os.getenv("KIOSK_ADMIN_PASSWORD", "kinder123").strip() or "kinder123"
SIGNING_KEY = os.getenv("KIOSK_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("KIOSK_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("KIOSK_LOG_LEVEL", "INFO").strip().upper() or "INFO"


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


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("KIOSK_CORS_ALLOW_ORIGINS"),
    ["http://localhost:3000", "http://127.0.0.1:3000"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("KIOSK_CORS_ALLOW_METHODS"),
    ["GET", "POST", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("KIOSK_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("KIOSK_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("KIOSK_ENABLE_DEBUG_ENDPOINTS"), False)

# Off = behave as if the reset_day_archive procedure is not installed.
ARCHIVE_PROCEDURE_ENABLED = _parse_bool(os.getenv("KIOSK_ARCHIVE_PROCEDURE_ENABLED"), True)

# Canvas signature gates
SIGNATURE_MAX_BYTES = int(os.getenv("KIOSK_SIGNATURE_MAX_BYTES", str(512 * 1024)))
SIGNATURE_MIN_INK_PIXELS = max(0, int(os.getenv("KIOSK_SIGNATURE_MIN_INK_PIXELS", "50")))
SIGNATURE_INK_THRESHOLD = int(os.getenv("KIOSK_SIGNATURE_INK_THRESHOLD", "128"))
