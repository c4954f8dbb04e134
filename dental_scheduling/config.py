import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./dental_scheduling.db")

# Clinic wall clock - all appointment instants are stored as naive local times
CLINIC_TIMEZONE = os.getenv("CLINIC_TIMEZONE", "Asia/Colombo")

# Scheduling rules
DEFAULT_SLOT_MINUTES = int(os.getenv("DEFAULT_SLOT_MINUTES", "30"))
PENDING_WINDOW_HOURS = float(os.getenv("PENDING_WINDOW_HOURS", "4"))
DAILY_CAP = int(os.getenv("DAILY_CAP", "20"))  # pending + confirmed per dentist per day
CANCELLED_RETENTION_HOURS = float(os.getenv("CANCELLED_RETENTION_HOURS", "3"))
EXPIRE_BATCH_LIMIT = int(os.getenv("EXPIRE_BATCH_LIMIT", "200"))
CAP_RETRY_MINUTES = float(os.getenv("CAP_RETRY_MINUTES", "15"))  # back-off for pending held by the cap

# Directory collaborator (dentist working hours / active flag)
# DIRECTORY_URL wins over DIRECTORY_FILE; with neither, an empty directory is used
DIRECTORY_URL = os.getenv("DIRECTORY_URL")
DIRECTORY_FILE = os.getenv("DIRECTORY_FILE")
DIRECTORY_TIMEOUT_SECONDS = float(os.getenv("DIRECTORY_TIMEOUT_SECONDS", "5"))
DIRECTORY_CACHE_TTL = int(os.getenv("DIRECTORY_CACHE_TTL", "300"))

# Notifier collaborator - without NOTIFIER_URL announcements are only logged
NOTIFIER_URL = os.getenv("NOTIFIER_URL")
NOTIFIER_TIMEOUT_SECONDS = float(os.getenv("NOTIFIER_TIMEOUT_SECONDS", "5"))

# Redis consumers
CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"
RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"
BOOKING_RATE_LIMIT = int(os.getenv("BOOKING_RATE_LIMIT", "30"))
BOOKING_RATE_WINDOW_SECONDS = int(os.getenv("BOOKING_RATE_WINDOW_SECONDS", "60"))

# Frontend origins allowed by CORS
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000"
).split(",")
