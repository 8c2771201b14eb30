import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./agenda.db")

# Shared secret for the periodic scheduler (Authorization: Bearer <secret>)
# No default: an unconfigured secret makes the cron endpoints answer 500
CRON_SECRET = os.getenv("CRON_SECRET")

# Appointment dates/times are stored without an offset, in the business timezone
BUSINESS_TIMEZONE = os.getenv("BUSINESS_TIMEZONE", "America/Santiago")

# Auto-update rules
AUTO_CONFIRM_LEAD_MINUTES = int(os.getenv("AUTO_CONFIRM_LEAD_MINUTES", "120"))
DEFAULT_SERVICE_DURATION_MINUTES = int(os.getenv("DEFAULT_SERVICE_DURATION_MINUTES", "60"))
ARCHIVE_AFTER_DAYS = int(os.getenv("ARCHIVE_AFTER_DAYS", "7"))
# Client-triggered runs are skipped when the last successful run is more recent than this
CLIENT_TRIGGER_MIN_INTERVAL_SECONDS = int(os.getenv("CLIENT_TRIGGER_MIN_INTERVAL_SECONDS", "60"))

# Subscription lifecycle
TRIAL_DAYS = int(os.getenv("TRIAL_DAYS", "3"))
SUBSCRIPTION_PERIOD_DAYS = int(os.getenv("SUBSCRIPTION_PERIOD_DAYS", "30"))
PLAN_NAME = os.getenv("PLAN_NAME", "Único")
PLAN_PRICE = int(os.getenv("PLAN_PRICE", "8500"))
PLAN_CURRENCY = os.getenv("PLAN_CURRENCY", "CLP")

# Frontend base URL for checkout redirects
APP_URL = os.getenv("APP_URL", "http://localhost:3000")

# Reveniu Configuration
# Without REVENIU_API_SECRET the payment client runs in mock mode
REVENIU_API_SECRET = os.getenv("REVENIU_API_SECRET")
REVENIU_API_URL = os.getenv("REVENIU_API_URL", "https://integration.reveniu.com")
REVENIU_WEBHOOK_SECRET = os.getenv("REVENIU_WEBHOOK_SECRET")
REVENIU_TIMEOUT_SECONDS = float(os.getenv("REVENIU_TIMEOUT_SECONDS", "15"))

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "MicroAgenda <noreply@microagenda.cl>")

# WhatsApp Cloud API Configuration
WHATSAPP_ID = os.getenv("WHATSAPP_ID")
WHATSAPP_TOKEN = os.getenv("WHATSAPP_TOKEN")
WHATSAPP_API_VERSION = os.getenv("WHATSAPP_API_VERSION", "v19.0")

# Upper bound for any single notification attempt
NOTIFICATION_TIMEOUT_SECONDS = float(os.getenv("NOTIFICATION_TIMEOUT_SECONDS", "10"))

# Redis (optional): webhook de-duplication cache and arq worker queue
REDIS_URL = os.getenv("REDIS_URL")

# CORS
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]
