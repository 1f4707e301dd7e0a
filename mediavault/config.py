import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Relational store; falls back to a local sqlite file for development
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./mediavault.db")

# Staging area and sidecar metadata live under <UPLOAD_DIR>/videos/<email>/
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
VIDEOS_DIR = UPLOAD_DIR / "videos"

STORAGE_SERVER_URL = os.getenv("STORAGE_SERVER_URL", "http://localhost:8080")
STORAGE_SERVER_API_KEY = os.getenv("STORAGE_SERVER_API_KEY", "")
# Seconds; large uploads need a generous read timeout
STORAGE_SERVER_TIMEOUT = float(os.getenv("STORAGE_SERVER_TIMEOUT", "600"))

# Comma-separated list of origins allowed to call the API
CORS_ALLOWED = [o.strip() for o in os.getenv("CORS_ALLOWED", "http://localhost:3000").split(",") if o.strip()]

# Shared secret of the payment gateway status callback
STE_KEY = os.getenv("STE_KEY")

LOG_DIR = Path(os.getenv("LOG_DIR", "logs"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# --- Upload rate limiting (per client address) ---
UPLOAD_RATE_LIMIT_CALLS = int(os.getenv("UPLOAD_RATE_LIMIT_CALLS", "100"))
UPLOAD_RATE_LIMIT_WINDOW = float(os.getenv("UPLOAD_RATE_LIMIT_WINDOW", str(15 * 60)))

ALLOWED_EXTENSIONS = {
    ".mp4", ".wav", ".mp3", ".mov", ".avi", ".mkv",
    ".flv", ".wmv", ".webm", ".m4v", ".3gp", ".ogg",
}
