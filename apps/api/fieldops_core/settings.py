import os
import re


def normalize_database_url(url: str) -> str:
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg rejects libpq's sslmode query parameter
    url = re.sub(r'[?&]sslmode=[^&]*', '', url)
    return url.replace('?&', '?').rstrip('?')


def database_url(default: str | None = None) -> str:
    url = os.getenv("DATABASE_URL", default)
    if not url:
        raise RuntimeError("DATABASE_URL is not set")
    return normalize_database_url(url)


def sql_echo() -> bool:
    return os.getenv("SQL_ECHO", "").lower() in ("1", "true", "yes")


def log_level() -> str:
    return os.getenv("LOG_LEVEL", "INFO").upper()
