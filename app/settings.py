import os

db_url = os.environ.get("DB_URL", "sqlite://:memory:")
notifications_ms_url = os.environ.get("NOTIFICATIONS_MS_URL", "http://localhost:8005")
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

environment = os.environ.get("ENVIRONMENT", "development")
backend_url = os.environ.get("BACKEND_URL", "http://localhost:8004")
generate_schemas = os.environ.get("GENERATE_SCHEMAS", "false").lower() == "true"
log_level = os.environ.get("LOG_LEVEL", "INFO")

# IntaSend (M-Pesa collection + B2C payouts)
intasend_public_key = os.environ.get("INTASEND_PUBLIC_KEY", "")
intasend_secret_key = os.environ.get("INTASEND_SECRET_KEY", "")
intasend_webhook_secret = os.environ.get("INTASEND_WEBHOOK_SECRET", "")
intasend_base_url = os.environ.get(
    "INTASEND_BASE_URL",
    "https://payment.intasend.com/api"
    if environment == "production"
    else "https://sandbox.intasend.com/api",
)
