import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

# "file" or "redis"
STORE_BACKEND = os.getenv("STORE_BACKEND", "file").lower()
SNAPSHOT_FILE = os.getenv("SNAPSHOT_FILE", "data/rooms.json")

REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
REDIS_PASSWORD = os.getenv("REDIS_PASSWORD", None)

EXPIRY_SWEEP_SECONDS = float(os.getenv("EXPIRY_SWEEP_SECONDS", 60))
PERSIST_DEBOUNCE_MS = int(os.getenv("PERSIST_DEBOUNCE_MS", 250))

MAX_MEMBERS = int(os.getenv("MAX_MEMBERS", 60))
MAX_UNAVAILABLE = int(os.getenv("MAX_UNAVAILABLE", 5000))
MAX_DAYS = int(os.getenv("MAX_DAYS", 21))
CODE_ATTEMPTS = 20

ALLOWED_SLOT_MINUTES = (15, 30, 60)
TITLE_MAX_LEN = 80
NAME_MAX_LEN = 40
DEFAULT_TITLE = "Untitled room"
DEFAULT_MEMBER_NAME = "Unnamed member"
DEFAULT_DAY_START = "09:00"
DEFAULT_DAY_END = "23:00"
DEFAULT_SLOT_MINUTES = 30
DEFAULT_TIME_ZONE = os.getenv("DEFAULT_TIME_ZONE", "UTC")

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
