# apiforge/core/config.py
import os
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from openai import AsyncOpenAI

# ================== ENV ==================

ROOT_DIR = Path(__file__).resolve().parents[2]
load_dotenv(ROOT_DIR / ".env")

def env(*names: str, default: Optional[str] = None) -> str:
    for n in names:
        v = os.environ.get(n)
        if v is not None and str(v).strip() != "":
            return v
    if default is not None:
        return default
    raise KeyError(f"Missing required env var. Tried: {', '.join(names)}")

# ================== JWT ==================

JWT_SECRET = os.environ.get("JWT_SECRET", "default_secret_key")
JWT_ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
JWT_EXPIRATION_HOURS = int(os.environ.get("JWT_EXPIRATION_HOURS", "24"))

CORS_ORIGINS = [o.strip() for o in env("CORS_ORIGINS", default="*").split(",") if o.strip()]

# ================== OPENAI ==================

OPENAI_MODEL = env("OPENAI_MODEL", default="gpt-4o-mini")

def get_openai_client() -> AsyncOpenAI:
    """
    Lazy init: the server starts without a key.
    Only generation needs OPENAI_API_KEY.
    """
    key = os.environ.get("OPENAI_API_KEY")
    if not key:
        raise RuntimeError("OPENAI_API_KEY not configured (.env).")
    return AsyncOpenAI(api_key=key)

# ================== GENERATION ==================

JOB_TIMEOUT_SECONDS = int(env("JOB_TIMEOUT_SECONDS", default=str(10 * 60)))
JOB_EVENT_LIMIT = int(env("JOB_EVENT_LIMIT", default="500"))
GENERATION_MAX_ATTEMPTS = int(env("GENERATION_MAX_ATTEMPTS", default="3"))
GENERATION_RETRY_INITIAL_SECONDS = float(env("GENERATION_RETRY_INITIAL_SECONDS", default="1.0"))

# ================== SANDBOX ==================

SANDBOX_PROVIDER = env("SANDBOX_PROVIDER", default="local").lower()  # local | http
SANDBOX_ROOT = Path(env("SANDBOX_ROOT", default="/tmp/apiforge-sandboxes"))
SANDBOX_HOST = env("SANDBOX_HOST", default="127.0.0.1")
SANDBOX_PORT_RANGE_START = int(env("SANDBOX_PORT_RANGE_START", default="9100"))
SANDBOX_PORT_RANGE_END = int(env("SANDBOX_PORT_RANGE_END", default="9199"))
SANDBOX_IDLE_TTL_SECONDS = int(env("SANDBOX_IDLE_TTL_SECONDS", default=str(30 * 60)))
SANDBOX_KEEPALIVE_INTERVAL_SECONDS = int(env("SANDBOX_KEEPALIVE_INTERVAL_SECONDS", default=str(5 * 60)))
SANDBOX_MAX_ATTEMPTS = int(env("SANDBOX_MAX_ATTEMPTS", default="3"))
SANDBOX_RETRY_INITIAL_SECONDS = float(env("SANDBOX_RETRY_INITIAL_SECONDS", default="1.0"))
SANDBOX_COMMAND_TIMEOUT_SECONDS = int(env("SANDBOX_COMMAND_TIMEOUT_SECONDS", default="300"))

# remote provider (SANDBOX_PROVIDER=http)
SANDBOX_API_URL = os.environ.get("SANDBOX_API_URL", "")
SANDBOX_API_KEY = os.environ.get("SANDBOX_API_KEY", "")

# ================== DATABASE ==================

DATABASE_URL = os.environ.get("DATABASE_URL", "")

def get_database_url() -> str:
    """Get database URL - supports SQLite or MySQL."""
    if DATABASE_URL:
        return DATABASE_URL

    mysql_host = os.environ.get("MYSQL_HOST")
    if mysql_host:
        mysql_port = int(os.environ.get("MYSQL_PORT", "3306"))
        mysql_user = os.environ.get("MYSQL_USER", "root")
        mysql_password = os.environ.get("MYSQL_PASSWORD", "")
        mysql_db = os.environ.get("MYSQL_DB", "apiforge")
        return f"mysql+aiomysql://{mysql_user}:{mysql_password}@{mysql_host}:{mysql_port}/{mysql_db}?charset=utf8mb4"

    db_path = ROOT_DIR / "apiforge.db"
    return f"sqlite+aiosqlite:///{db_path}"
