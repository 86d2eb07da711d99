import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./studio_sign.db")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN", "admin-test-token")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

PUBLIC_URL = os.getenv("PUBLIC_URL", "http://localhost:3000").rstrip("/")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL") or os.getenv("EMAIL_SENDER")
BRAND_NAME = os.getenv("BRAND_NAME", "Kori Photography")

MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "contracts")
MINIO_SECURE = os.getenv("MINIO_SECURE", "false").lower() == "true"

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "contracts")

# signer access
MAGIC_LINK_TTL_HOURS = int(os.getenv("MAGIC_LINK_TTL_HOURS", "72"))
SIGNER_SESSION_TTL_MINUTES = int(os.getenv("SIGNER_SESSION_TTL_MINUTES", "30"))
OTP_TTL_MINUTES = int(os.getenv("OTP_TTL_MINUTES", "10"))
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", "5"))
REMINDER_WINDOW_HOURS = int(os.getenv("REMINDER_WINDOW_HOURS", "24"))

# envelopes
ENVELOPE_LINK_TTL_DAYS = int(os.getenv("ENVELOPE_LINK_TTL_DAYS", "7"))
ENVELOPE_DECLINE_TERMINATES = os.getenv("ENVELOPE_DECLINE_TERMINATES", "true").lower() == "true"

# webhooks
WEBHOOK_MAX_RETRIES = int(os.getenv("WEBHOOK_MAX_RETRIES", "3"))
WEBHOOK_RETRY_BACKOFF_SECONDS = int(os.getenv("WEBHOOK_RETRY_BACKOFF_SECONDS", "60"))
WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
WEBHOOK_SWEEP_BATCH = int(os.getenv("WEBHOOK_SWEEP_BATCH", "100"))
WEBHOOK_CLAIM_MARGIN_SECONDS = int(os.getenv("WEBHOOK_CLAIM_MARGIN_SECONDS", "60"))
