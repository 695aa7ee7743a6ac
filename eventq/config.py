import os

# Runtime settings persisted in the `config` table (see `eventq config get|set`).
DEFAULT_CONFIG = {
    "poll_interval_seconds": "0.5",
    "stalled_interval_seconds": "30",
    "max_stalled_count": "2",
    "clean_grace_ms": "3600000",
    "scheduler_tick_seconds": "60",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

DB_FILE = os.environ.get("EVENTQ_DB", "eventq.db")

QR_SIGNATURE_KEY = os.environ.get("QR_SIGNATURE_KEY", "default-qr-key")
QR_MAX_AGE_SECONDS = 24 * 60 * 60

# Admin HTTP surface is closed when this is unset.
ADMIN_TOKEN = os.environ.get("EVENTQ_ADMIN_TOKEN")

FRONTEND_URL = os.environ.get("FRONTEND_URL", "http://localhost:5173")
CERTIFICATE_DIR = os.environ.get("CERTIFICATE_DIR", "certificates")

SMTP_SETTINGS = {
    "host": os.environ.get("SMTP_HOST", "localhost"),
    "port": int(os.environ.get("SMTP_PORT", "587")),
    "username": os.environ.get("SMTP_USERNAME", ""),
    "password": os.environ.get("SMTP_PASSWORD", ""),
    "use_tls": os.environ.get("SMTP_USE_TLS", "1") not in ("0", "false", "no"),
    "from_address": os.environ.get("SMTP_FROM", "events@localhost"),
}

TWILIO_SETTINGS = {
    "account_sid": os.environ.get("TWILIO_ACCOUNT_SID"),
    "auth_token": os.environ.get("TWILIO_AUTH_TOKEN"),
    "from_number": os.environ.get("TWILIO_PHONE_NUMBER"),
}
