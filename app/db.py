from contextlib import contextmanager
from pathlib import Path
from urllib.parse import quote, unquote

import psycopg
from psycopg.rows import dict_row

from app.config import get_settings

SCHEMA_PATH = Path(__file__).resolve().parents[1] / "db" / "schema.sql"
APPLICATION_NAME = "district-performance-api"

# Checked in order; the first needle found in the driver message wins.
_MESSAGE_REASONS = (
    ("password authentication failed", "auth_failed"),
    ("could not translate host name", "invalid_host"),
    ("connection refused", "connection_refused"),
    ("timeout", "network_timeout"),
    ("timed out", "network_timeout"),
)


class DatabaseConfigurationError(RuntimeError):
    """DATABASE_URL is missing or settings could not be loaded."""


class DatabaseConnectionError(RuntimeError):
    """The performance store could not be reached."""


def _classify_connection_error(exc: Exception) -> str:
    sqlstate = str(getattr(exc, "sqlstate", "") or "").upper()
    if sqlstate == "28P01":
        return "auth_failed"
    if sqlstate.startswith("28"):
        return "auth_error"
    if sqlstate.startswith("08"):
        return "network_error"

    message = str(exc).lower()
    for needle, reason in _MESSAGE_REASONS:
        if needle in message:
            return reason
    return "unknown"


def _normalize_database_url(database_url: str) -> str:
    """Percent-encode the password part so '@', '!' and friends survive libpq parsing."""
    text = str(database_url or "").strip()
    scheme, sep, remainder = text.partition("://")
    if not sep or not scheme.startswith("postgres"):
        return text

    credentials, at, host = remainder.rpartition("@")
    user, colon, password = credentials.partition(":")
    if not at or not colon or not user:
        return text
    return f"{scheme}://{user}:{quote(unquote(password), safe='')}@{host}"


def _resolve_database_url() -> str:
    try:
        settings = get_settings()
    except Exception as exc:  # noqa: BLE001
        raise DatabaseConfigurationError("database settings are not configured") from exc

    database_url = _normalize_database_url(settings.database_url)
    if not database_url:
        raise DatabaseConfigurationError("DATABASE_URL is empty")
    return database_url


@contextmanager
def get_connection():
    """Yield a dict-row connection in autocommit mode.

    Writers group their statements with ``conn.transaction()``, which opens
    a real BEGIN/COMMIT block only when the session is in autocommit.
    """
    database_url = _resolve_database_url()
    try:
        conn = psycopg.connect(
            database_url,
            row_factory=dict_row,
            autocommit=True,
            application_name=APPLICATION_NAME,
        )
    except psycopg.Error as exc:
        raise DatabaseConnectionError(f"database connection failed ({_classify_connection_error(exc)})") from exc

    with conn:
        yield conn


def run_schema(conn, schema_path: str | Path = SCHEMA_PATH) -> None:
    sql = Path(schema_path).read_text(encoding="utf-8")
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(sql)
