"""Database engine creation.

The engine (and its connection pool) is owned by the caller and passed into
every adapter; nothing here keeps a process-wide connection cache.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url

from ciphertrail.settings import Settings, get_settings


def _timeout_connect_args(drivername: str, timeout_ms: Optional[int]) -> dict:
    """Driver-level statement timeouts for the supported backends."""
    if not timeout_ms:
        return {}
    if drivername.startswith("postgresql"):
        return {"options": f"-c statement_timeout={int(timeout_ms)}"}
    if drivername.startswith("mysql"):
        seconds = max(1, int(timeout_ms) // 1000)
        return {"read_timeout": seconds, "write_timeout": seconds}
    return {}


def create_db_engine(url: Optional[str] = None, settings: Optional[Settings] = None) -> Engine:
    """Create a pooled engine for the given URL (defaults to settings)."""
    settings = settings or get_settings()
    url = make_url(url or settings.database_url_computed)

    if url.drivername.startswith("sqlite"):
        return create_engine(url)

    return create_engine(
        url,
        pool_pre_ping=settings.db_pool_pre_ping,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        connect_args=_timeout_connect_args(url.drivername, settings.db_statement_timeout_ms),
    )
