"""Configuration from environment variables."""

import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("STRYP_DATA_DIR", str(BASE_DIR / "data")))
DB_PATH = DATA_DIR / "stryp.db"
STORAGE_DIR = DATA_DIR / "storage"

# Ensure dirs exist
for d in [DATA_DIR, STORAGE_DIR]:
    d.mkdir(parents=True, exist_ok=True)

DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")

PORT = int(os.getenv("PORT", "8094"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", f"http://localhost:{PORT}").rstrip("/")

ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY", "")
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
SCRIPT_MODEL = os.getenv("SCRIPT_MODEL", "claude-sonnet-4-20250514")

SECRET_KEY = os.getenv("SECRET_KEY", "insecure-dev-secret-key")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))

# Origins allowed to sign in (comma separated)
ALLOWED_ORIGINS = [
    o.strip().rstrip("/")
    for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:8094,http://127.0.0.1:8094").split(",")
    if o.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
