"""Application configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")

# Output formats and their file extensions
OUTPUT_FORMATS = ["webp", "jpeg", "png", "avif"]
FORMAT_EXTENSIONS = {"webp": ".webp", "jpeg": ".jpg", "png": ".png", "avif": ".avif"}
FORMAT_MIME_TYPES = {
    "webp": "image/webp",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "avif": "image/avif",
}
INPUT_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".tif", ".webp", ".avif"}

# Encode options (env overrides)
DEFAULT_FORMAT = os.getenv("DEFAULT_FORMAT", "webp").lower()
DEFAULT_QUALITY = int(os.getenv("DEFAULT_QUALITY", "80"))
WEBP_EFFORT = int(os.getenv("WEBP_EFFORT", "4"))
# Resize targets above this are rejected before scheduling
MAX_DIMENSION = int(os.getenv("MAX_DIMENSION", "10000"))

# Concurrency: MAX_CONCURRENCY bounds codec calls in flight per run,
# MAX_WORKERS sizes the thread pool that executes them.
MAX_CONCURRENCY = int(os.getenv("MAX_CONCURRENCY", "4"))
MAX_WORKERS = int(os.getenv("MAX_WORKERS", str(min(32, (os.cpu_count() or 4) + 4))))

# Archive
ARCHIVE_COMPRESSLEVEL = int(os.getenv("ARCHIVE_COMPRESSLEVEL", "6"))
ARCHIVE_NAME = os.getenv("ARCHIVE_NAME", "converted_images")

# Upload limits
MAX_IMAGES_PER_UPLOAD = int(os.getenv("MAX_IMAGES_PER_UPLOAD", "50"))
MAX_IMAGE_SIZE_MB = int(os.getenv("MAX_IMAGE_SIZE_MB", "20"))
MAX_IMAGE_SIZE_BYTES = MAX_IMAGE_SIZE_MB * 1024 * 1024

# Database - SQLite by default; set DATABASE_URL for anything else SQLAlchemy supports.
DATABASE_URL = os.getenv("DATABASE_URL", "").strip()
if not DATABASE_URL:
    db_path = BASE_DIR / "data" / "transcoder.db"
    db_path.parent.mkdir(parents=True, exist_ok=True)
    DATABASE_URL = f"sqlite:///{db_path}"

# Server (for uvicorn)
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8000"))
# CORS: comma-separated origins, e.g. "http://localhost:5173,http://127.0.0.1:5173"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",") if o.strip()]

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("transcoder")
