from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from app.models.schemas import EXTENDED_FLOAT_FIELDS, EXTENDED_METRIC_FIELDS, PERFORMANCE_FLOAT_FIELDS, PERFORMANCE_METRIC_FIELDS


def _select_metric(alias: str, field: str, float_fields: tuple[str, ...], prefix: str = "") -> str:
    column = f"{alias}.{field}"
    if field in float_fields:
        column = f"{column}::float8"
    return f"{column} AS {prefix}{field}"


_PERFORMANCE_COLUMNS = ",\n    ".join(_select_metric("p", f, PERFORMANCE_FLOAT_FIELDS) for f in PERFORMANCE_METRIC_FIELDS)
_EXTENDED_COLUMNS = ",\n    ".join(_select_metric("em", f, EXTENDED_FLOAT_FIELDS, "em_") for f in EXTENDED_METRIC_FIELDS)

PERFORMANCE_SELECT = f"""
SELECT
    p.id,
    p.district_code,
    d.district_name,
    d.state_code,
    s.state_name,
    p.fin_year,
    fy.start_year,
    fy.end_year,
    p.month,
    {_PERFORMANCE_COLUMNS},
    p.created_at,
    p.updated_at,
    em.id AS em_id,
    {_EXTENDED_COLUMNS}
FROM district_performance p
JOIN districts d ON d.district_code = p.district_code
JOIN states s ON s.state_code = d.state_code
JOIN financial_years fy ON fy.fin_year = p.fin_year
LEFT JOIN district_extended_metrics em ON em.performance_id = p.id
"""

_PERF_INSERT_COLUMNS = ("district_code", "fin_year", "month") + PERFORMANCE_METRIC_FIELDS
_EXT_INSERT_COLUMNS = ("performance_id",) + EXTENDED_METRIC_FIELDS

UPSERT_PERFORMANCE_SQL = """
INSERT INTO district_performance ({columns}, created_at, updated_at)
VALUES ({placeholders}, NOW(), NOW())
ON CONFLICT ON CONSTRAINT uk_district_year_month DO UPDATE
SET {updates},
    updated_at=NOW()
""".format(
    columns=", ".join(_PERF_INSERT_COLUMNS),
    placeholders=", ".join(f"%({c})s" for c in _PERF_INSERT_COLUMNS),
    updates=",\n    ".join(f"{c}=EXCLUDED.{c}" for c in PERFORMANCE_METRIC_FIELDS),
)

INSERT_EXTENDED_SQL = """
INSERT INTO district_extended_metrics ({columns}, created_at)
VALUES ({placeholders}, NOW())
ON CONFLICT (performance_id) DO NOTHING
""".format(
    columns=", ".join(_EXT_INSERT_COLUMNS),
    placeholders=", ".join(f"%({c})s" for c in _EXT_INSERT_COLUMNS),
)


class PostgresRepository:
    def __init__(self, conn):
        self.conn = conn

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self.conn.transaction():
            yield

    # -- reads -------------------------------------------------------------

    def find_state_by_name(self, state_name: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT state_code, state_name
                FROM states
                WHERE UPPER(state_name) = UPPER(%s)
                LIMIT 1
                """,
                (state_name.strip(),),
            )
            return cur.fetchone()

    def find_district_by_name(self, state_code: str, district_name: str) -> dict | None:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT d.district_code, d.district_name, d.state_code, s.state_name
                FROM districts d
                JOIN states s ON s.state_code = d.state_code
                WHERE d.state_code = %s
                  AND UPPER(d.district_name) = UPPER(%s)
                LIMIT 1
                """,
                (state_code, district_name.strip()),
            )
            return cur.fetchone()

    def list_districts(self, state_code: str, names: list[str] | None = None) -> list[dict]:
        params: list[Any] = [state_code]
        name_filter = ""
        if names is not None:
            name_filter = "AND UPPER(d.district_name) = ANY(%s)"
            params.append([n.strip().upper() for n in names])
        with self.conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT d.district_code, d.district_name, d.state_code, s.state_name
                FROM districts d
                JOIN states s ON s.state_code = d.state_code
                WHERE d.state_code = %s
                {name_filter}
                ORDER BY d.district_name ASC
                """,
                params,
            )
            return cur.fetchall()

    def list_financial_years(self) -> list[dict]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT fin_year, start_year, end_year
                FROM financial_years
                ORDER BY fin_year DESC
                """
            )
            return cur.fetchall()

    def fetch_performance(
        self,
        *,
        state_code: str,
        district_codes: list[str] | None = None,
        fin_years: list[str] | None = None,
        month: str | None = None,
        order_by_period: bool = False,
        limit: int | None = None,
    ) -> list[dict]:
        clauses = ["d.state_code = %s"]
        params: list[Any] = [state_code]
        if district_codes is not None:
            clauses.append("p.district_code = ANY(%s)")
            params.append(list(district_codes))
        if fin_years is not None:
            clauses.append("p.fin_year = ANY(%s)")
            params.append(list(fin_years))
        if month:
            clauses.append("p.month = %s")
            params.append(month)

        order = "p.fin_year DESC, p.month DESC, p.updated_at DESC" if order_by_period else "p.month DESC, p.updated_at DESC"
        sql = f"{PERFORMANCE_SELECT}WHERE {' AND '.join(clauses)}\nORDER BY {order}"
        if limit is not None:
            sql += "\nLIMIT %s"
            params.append(limit)

        with self.conn.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchall()

    # -- reconciliation steps (callers own the transaction) ----------------

    def upsert_states(self, rows: list[dict]) -> None:
        if not rows:
            return
        with self.conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO states (state_code, state_name)
                VALUES (%(state_code)s, %(state_name)s)
                ON CONFLICT (state_code) DO UPDATE
                SET state_name=EXCLUDED.state_name,
                    updated_at=NOW()
                """,
                rows,
            )

    def upsert_districts(self, rows: list[dict]) -> None:
        if not rows:
            return
        with self.conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO districts (district_code, district_name, state_code)
                VALUES (%(district_code)s, %(district_name)s, %(state_code)s)
                ON CONFLICT (district_code) DO UPDATE
                SET district_name=EXCLUDED.district_name,
                    state_code=EXCLUDED.state_code,
                    updated_at=NOW()
                """,
                rows,
            )

    def upsert_financial_years(self, rows: list[dict]) -> None:
        if not rows:
            return
        with self.conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO financial_years (fin_year, start_year, end_year)
                VALUES (%(fin_year)s, %(start_year)s, %(end_year)s)
                ON CONFLICT (fin_year) DO NOTHING
                """,
                rows,
            )

    def upsert_performance(self, rows: list[dict]) -> list[dict]:
        if not rows:
            return []
        with self.conn.cursor() as cur:
            cur.executemany(UPSERT_PERFORMANCE_SQL, rows)
            cur.execute(
                """
                SELECT p.id, p.district_code, p.fin_year, p.month, p.updated_at
                FROM district_performance p
                JOIN unnest(%s::text[], %s::text[], %s::text[]) AS k(district_code, fin_year, month)
                  ON k.district_code = p.district_code
                 AND k.fin_year = p.fin_year
                 AND k.month = p.month
                ORDER BY p.id
                """,
                (
                    [r["district_code"] for r in rows],
                    [r["fin_year"] for r in rows],
                    [r["month"] for r in rows],
                ),
            )
            return cur.fetchall()

    def insert_missing_extended_metrics(self, rows: list[dict]) -> None:
        if not rows:
            return
        with self.conn.cursor() as cur:
            cur.executemany(INSERT_EXTENDED_SQL, rows)
