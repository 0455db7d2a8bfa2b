import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent
DATA_DIR = BASE_DIR / "data"


def _load_dotenv(path: Path) -> None:
    if not path.exists():
        return
    try:
        for raw in path.read_text(encoding="utf-8").splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, val = line.split("=", 1)
            key = key.strip()
            if not key or key in os.environ:
                continue
            val = val.strip().strip("'").strip('"')
            os.environ[key] = val
    except Exception:
        # Fail open if .env can't be parsed.
        return


_load_dotenv(BASE_DIR / ".env")


def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.strip().lower() in ("1", "true", "yes", "on")


def _env_int(key: str, default: int) -> int:
    val = os.getenv(key)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except Exception:
        return default


def _resolve_path(value: str, fallback: Path) -> str:
    if not value:
        return str(fallback)
    p = Path(value)
    if not p.is_absolute():
        p = BASE_DIR / p
    return str(p)


APP_NAME = _env("APP_NAME", "SurveyDesk")

HOST = _env("HOST", "0.0.0.0")
PORT = _env_int("PORT", 3000)
DEBUG = _env_bool("DEBUG", False)
LOG_LEVEL = _env("LOG_LEVEL", "INFO").strip().upper()

SESSION_SECRET = _env("SESSION_SECRET", "")
SESSION_HOURS = _env_int("SESSION_HOURS", 24)

ADMIN_USERNAME = _env("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = _env("ADMIN_PASSWORD", "Admin@2000")
# werkzeug hash; takes precedence over ADMIN_PASSWORD when set
ADMIN_PASSWORD_HASH = _env("ADMIN_PASSWORD_HASH", "").strip()

# Database engine: "sqlite" (embedded file) or "mysql" (networked, pooled)
DB_ENGINE = _env("DB_ENGINE", "mysql" if _env_bool("USE_MYSQL", False) else "sqlite").strip().lower()

IS_VERCEL = _env("VERCEL", "") == "1"
_default_sqlite = Path("/tmp/survey.db") if IS_VERCEL else DATA_DIR / "survey.db"
SQLITE_PATH = _resolve_path(_env("SQLITE_PATH", ""), _default_sqlite)
LEGACY_JSON_PATH = _resolve_path(_env("LEGACY_JSON_PATH", ""), DATA_DIR / "database.json")

DB_HOST = _env("DB_HOST", "localhost")
DB_USER = _env("DB_USER", "")
DB_PASS = _env("DB_PASS", "")
DB_NAME = _env("DB_NAME", "")
DB_PORT = _env_int("DB_PORT", 3306)
DB_POOL_SIZE = _env_int("DB_POOL_SIZE", 10)

# Email (SMTP)
SMTP_HOST = _env("SMTP_HOST", "")
SMTP_PORT = _env_int("SMTP_PORT", 587)
SMTP_USER = _env("SMTP_USER", "")
SMTP_PASS = _env("SMTP_PASS", "")
SMTP_SECURE = _env_bool("SMTP_SECURE", False)
SMTP_TIMEOUT = _env_int("SMTP_TIMEOUT", 15)
MAIL_TO = _env("MAIL_TO", "")
MAIL_FROM = _env("MAIL_FROM", "") or SMTP_USER
