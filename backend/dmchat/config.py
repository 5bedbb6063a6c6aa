import os
from dotenv import load_dotenv

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/")
DB_NAME = os.getenv("DB_NAME", "direct_chat")

JWT_SECRET = os.getenv("JWT_SECRET") or "dev-secret-change-me"
JWT_ALG = "HS256"
TOKEN_TTL_HOURS = int(os.getenv("TOKEN_TTL_HOURS", "24"))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

UPLOADS_DIR = os.getenv("UPLOADS_DIR", "uploads")
UPLOADS_URL_PREFIX = "/uploads"
MAX_UPLOAD_MB = int(os.getenv("MAX_UPLOAD_MB", "10"))

MAX_MESSAGE_LENGTH = 1000

# seconds of silence after typing_start before the server emits the stop itself
TYPING_IDLE_SECONDS = float(os.getenv("TYPING_IDLE_SECONDS", "8"))

# 0 disables the scheduled sweep; it can still be triggered over HTTP
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "0"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
