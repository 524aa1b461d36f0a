import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./slotbook.db")

# Redis is only required when SLOT_LOCK_BACKEND=redis
REDIS_URL = os.getenv("REDIS_URL")

# Per-(provider, date, time) locking: "memory" (single process) or "redis" (shared)
SLOT_LOCK_BACKEND = os.getenv("SLOT_LOCK_BACKEND", "memory").lower()
# How long a caller waits for a busy slot key before getting a 409
SLOT_LOCK_WAIT_SECONDS = float(os.getenv("SLOT_LOCK_WAIT_SECONDS", "5"))
# Redis lock expiry so a crashed worker never holds a key forever
SLOT_LOCK_TTL_SECONDS = float(os.getenv("SLOT_LOCK_TTL_SECONDS", "30"))

# Length used when rendering a waitlisted request as a calendar entry
WAITLIST_SLOT_MINUTES = int(os.getenv("WAITLIST_SLOT_MINUTES", "60"))

# Comma-separated list of origins for the calendar frontend
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",")
    if origin.strip()
]

# Connection pool sizing for server databases; SQLite ignores these
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "30"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "300"))
DB_LOG_SLOW_QUERIES = os.getenv("DB_LOG_SLOW_QUERIES", "true").lower() == "true"
DB_SLOW_QUERY_THRESHOLD = float(os.getenv("DB_SLOW_QUERY_THRESHOLD", "1.0"))
