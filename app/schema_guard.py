from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from threading import Lock

from app.config import get_settings
from app.db import get_connection, run_schema

logger = logging.getLogger(__name__)

# Parents first, matching the order a reconciliation batch writes them.
SCHEMA_TABLES = (
    "states",
    "districts",
    "financial_years",
    "district_performance",
    "district_extended_metrics",
)

_SCHEMA_MISMATCH_SQLSTATE = {"42P01", "42703"}  # undefined_table, undefined_column

_heal_lock = Lock()
_healed = False


@dataclass
class SchemaStatus:
    checked: bool = False
    missing_tables: list[str] = field(default_factory=list)
    applied: bool = False
    error: str | None = None

    @property
    def ready(self) -> bool:
        return self.checked and not self.missing_tables and self.error is None

    def to_dict(self) -> dict:
        return {**asdict(self), "ready": self.ready}


def find_missing_tables(conn) -> list[str]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT t.table_name
            FROM unnest(%s::text[]) AS t(table_name)
            WHERE to_regclass(t.table_name) IS NOT NULL
            """,
            (list(SCHEMA_TABLES),),
        )
        present = {row["table_name"] for row in cur.fetchall()}
    return [name for name in SCHEMA_TABLES if name not in present]


def _auto_apply_enabled() -> bool:
    try:
        return get_settings().auto_apply_schema
    except Exception:  # noqa: BLE001
        return False


def bootstrap_schema(*, apply: bool | None = None, connection_factory=get_connection) -> SchemaStatus:
    """Report which performance tables are missing; create them when allowed.

    Never raises: a database that cannot be reached at startup is recorded
    in ``error`` and surfaces again through /health/db.
    """
    if apply is None:
        apply = _auto_apply_enabled()
    status = SchemaStatus()
    try:
        with connection_factory() as conn:
            status.missing_tables = find_missing_tables(conn)
            status.checked = True
            if status.missing_tables and apply:
                logger.warning("schema_apply missing=%s", ",".join(status.missing_tables))
                run_schema(conn)
                status.applied = True
                status.missing_tables = find_missing_tables(conn)
    except Exception as exc:  # noqa: BLE001
        status.error = f"{type(exc).__name__}: {exc}"
        logger.warning("schema_check_failed error=%s", status.error)
    return status


def is_schema_mismatch_sqlstate(sqlstate: str | None) -> bool:
    return sqlstate in _SCHEMA_MISMATCH_SQLSTATE


def heal_schema_once(connection_factory=get_connection) -> bool:
    """Re-apply db/schema.sql the first time a query hits a missing table or column."""
    global _healed  # noqa: PLW0603

    with _heal_lock:
        if _healed:
            return False
        with connection_factory() as conn:
            missing = find_missing_tables(conn)
            logger.warning("schema_auto_heal missing=%s", ",".join(missing) or "none")
            run_schema(conn)
        _healed = True
        return True
