"""Configuration management for the Book Viewer service."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Supabase
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:5173,http://localhost:8080"
).split(",")

# Catalog and storage
BOOKS_TABLE = os.getenv("BOOKS_TABLE", "books")
BOOKS_BUCKET = os.getenv("BOOKS_BUCKET", "books")
STORAGE_PUBLIC_URL = os.getenv(
    "STORAGE_PUBLIC_URL",
    f"{SUPABASE_URL.rstrip('/')}/storage/v1/object/public" if SUPABASE_URL else ""
)

# Rasterization
RENDER_SCALE = float(os.getenv("RENDER_SCALE", "2.0"))
PAGE_IMAGE_FORMAT = os.getenv("PAGE_IMAGE_FORMAT", "png")
OPEN_TIMEOUT_SECONDS = float(os.getenv("OPEN_TIMEOUT_SECONDS", "20"))
HEAD_TIMEOUT_SECONDS = float(os.getenv("HEAD_TIMEOUT_SECONDS", "10"))
MAX_OPEN_RETRIES = int(os.getenv("MAX_OPEN_RETRIES", "2"))

# Viewer sessions
MAX_OPEN_SESSIONS = int(os.getenv("MAX_OPEN_SESSIONS", "32"))
SESSION_IDLE_TTL_SECONDS = float(os.getenv("SESSION_IDLE_TTL_SECONDS", "1800"))

# Worker sources for the decode engine, in fallback order.
# "inline" (decode on the calling thread) is always tried last.
DECODE_WORKER_SOURCES = [
    source.strip()
    for source in os.getenv("DECODE_WORKER_SOURCES", "process,thread,inline").split(",")
    if source.strip()
]

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
