import logging
import os

# ── Database ──────────────────────────────────────────────────
# SQLite for local development, e.g. postgresql+psycopg2://user:pw@host/db
# or mysql+pymysql://user:pw@host/db in production
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./shop.db")
DB_ECHO = os.getenv("DB_ECHO", "0") == "1"

# ── Image storage ─────────────────────────────────────────────
# Options: "local" or "cloudinary"
IMAGE_BACKEND = os.getenv("IMAGE_BACKEND", "local")

# Local disk backend
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join("uploads", "products"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
UPLOAD_URL_PATH = "/uploads/products"

# Cloudinary backend
CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME", "")
CLOUDINARY_API_KEY = os.getenv("CLOUDINARY_API_KEY", "")
CLOUDINARY_API_SECRET = os.getenv("CLOUDINARY_API_SECRET", "")
CLOUDINARY_FOLDER = os.getenv("CLOUDINARY_FOLDER", "products")

# Upload limits
MAX_IMAGE_BYTES = int(os.getenv("MAX_IMAGE_BYTES", str(5 * 1024 * 1024)))  # 5MB
ALLOWED_IMAGE_EXTENSIONS = (".jpeg", ".jpg", ".png", ".gif", ".webp")
UPLOAD_WORKERS = int(os.getenv("UPLOAD_WORKERS", "4"))

# Default transformation for display URLs
DISPLAY_WIDTH = 400
DISPLAY_HEIGHT = 300

# ── Auth ──────────────────────────────────────────────────────
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "10"))

# ── HTTP ──────────────────────────────────────────────────────
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:8080,http://localhost:8081"
    ).split(",")
    if origin.strip()
]

# ── Logging ───────────────────────────────────────────────────
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(level: str = None):
    """Configure root logging once, at application startup."""
    logging.basicConfig(
        level=(level or LOG_LEVEL).upper(),
        format=LOG_FORMAT
    )
