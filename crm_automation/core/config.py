# core/config.py
import os

# --- Queue processor ---
POLL_INTERVAL_SECONDS = float(os.getenv("AUTOMATION_POLL_INTERVAL_SECONDS", "10"))
BATCH_SIZE = int(os.getenv("AUTOMATION_BATCH_SIZE", "10"))
MAX_ATTEMPTS = int(os.getenv("AUTOMATION_MAX_ATTEMPTS", "3"))
PENDING_LOOKBACK_HOURS = int(os.getenv("AUTOMATION_PENDING_LOOKBACK_HOURS", "24"))

# 0 disables the per-call limit
EFFECTOR_TIMEOUT_SECONDS = float(os.getenv("AUTOMATION_EFFECTOR_TIMEOUT_SECONDS", "30"))

# Start the processor together with the API
AUTOMATION_ENABLED = os.getenv("AUTOMATION_ENABLED", "true").lower() == "true"

# --- Deduplication ---
DEDUP_BUCKET_SECONDS = int(os.getenv("AUTOMATION_DEDUP_BUCKET_SECONDS", "300"))

# --- Templates ---
DEFAULT_TIMEZONE = os.getenv("AUTOMATION_DEFAULT_TIMEZONE", "America/Denver")
RESCHEDULE_BASE_URL = os.getenv(
    "AUTOMATION_RESCHEDULE_BASE_URL",
    "https://booking.example.com/widget/booking",
)

# --- Queue maintenance ---
COMPLETED_RETENTION_DAYS = int(os.getenv("AUTOMATION_COMPLETED_RETENTION_DAYS", "7"))
QUEUE_RETENTION_DAYS = int(os.getenv("AUTOMATION_QUEUE_RETENTION_DAYS", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
