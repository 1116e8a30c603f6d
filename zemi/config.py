import os

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "zemi")

# JWT config
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))

FRONTEND_URL = os.getenv("FRONTEND_URL", "*")

# Object storage (uploaded photos and identity documents)
STORAGE_DIR = os.getenv("STORAGE_DIR", "storage")
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 5 * 1024 * 1024))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# "1" switches seat reservation to a conditional decrement on the trip document.
ATOMIC_SEATS = os.getenv("ZEMI_ATOMIC_SEATS", "0") == "1"

PORT = int(os.getenv("PORT", 8000))
