import os
from dotenv import load_dotenv

load_dotenv()

MONGO_URI = os.getenv("MONGO_URI", "mongodb://localhost:27017/")
DB_NAME = os.getenv("DB_NAME", "healio_chat")
STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo").lower()

# placeholder shared by every conversation, override it in the environment
DEFAULT_SHARED_SECRET = "demo-shared-key-change-me"
CHAT_SHARED_SECRET = os.getenv("CHAT_SHARED_SECRET") or DEFAULT_SHARED_SECRET

JWT_SECRET = os.getenv("JWT_SECRET") or "dev-secret-change-me"
JWT_ALG = "HS256"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CHANGE_STREAM_MAX_AWAIT_MS = int(os.getenv("CHANGE_STREAM_MAX_AWAIT_MS", "1000"))
