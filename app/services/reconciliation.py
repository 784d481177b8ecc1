from __future__ import annotations

import logging
from dataclasses import dataclass, field

import psycopg

from app.models.schemas import EXTENDED_METRIC_FIELDS, PERFORMANCE_METRIC_FIELDS, CanonicalRecord
from app.services.errors import StorageError
from app.services.region_codes import derive_sub_region_code, normalize_name, parse_reporting_period

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    state_count: int = 0
    district_count: int = 0
    period_count: int = 0
    performance: list[dict] = field(default_factory=list)

    @property
    def stored_count(self) -> int:
        return len(self.performance)


def assign_state_codes(records: list[CanonicalRecord], stored_codes: dict[str, str]) -> list[CanonicalRecord]:
    """Give every record of one state name the same code.

    The code already stored for the name wins, otherwise the first code seen
    in the batch. District codes derived from a replaced state code are
    derived again; upstream-supplied district codes are kept.
    """
    chosen = dict(stored_codes)
    for record in records:
        chosen.setdefault(normalize_name(record.state_name), record.state_code)

    out = []
    for record in records:
        code = chosen[normalize_name(record.state_name)]
        if code == record.state_code:
            out.append(record)
            continue
        update = {"state_code": code}
        if record.district_code == derive_sub_region_code(record.district_name, record.state_code):
            update["district_code"] = derive_sub_region_code(record.district_name, code)
        out.append(record.model_copy(update=update))
    return out


def extract_states(records: list[CanonicalRecord]) -> list[dict]:
    states: dict[str, dict] = {}
    for record in records:
        states.setdefault(record.state_code, {"state_code": record.state_code, "state_name": record.state_name})
    return list(states.values())


def extract_districts(records: list[CanonicalRecord]) -> list[dict]:
    districts: dict[str, dict] = {}
    for record in records:
        districts.setdefault(
            record.district_code,
            {
                "district_code": record.district_code,
                "district_name": record.district_name,
                "state_code": record.state_code,
            },
        )
    return list(districts.values())


def extract_financial_years(records: list[CanonicalRecord]) -> list[dict]:
    periods: dict[str, dict] = {}
    for record in records:
        if record.fin_year in periods:
            continue
        span = parse_reporting_period(record.fin_year)
        periods[record.fin_year] = {"fin_year": span.fin_year, "start_year": span.start_year, "end_year": span.end_year}
    return list(periods.values())


def prepare_performance_rows(records: list[CanonicalRecord]) -> list[dict]:
    # Later rows win when a batch repeats a natural key.
    rows: dict[tuple[str, str, str], dict] = {}
    for record in records:
        row = {"district_code": record.district_code, "fin_year": record.fin_year, "month": record.month}
        for name in PERFORMANCE_METRIC_FIELDS:
            row[name] = getattr(record, name)
        rows[record.natural_key] = row
    return list(rows.values())


def prepare_extended_rows(performance: list[dict], records: list[CanonicalRecord]) -> list[dict]:
    by_key = {record.natural_key: record for record in records}
    rows = []
    for perf in performance:
        record = by_key.get((perf["district_code"], perf["fin_year"], perf["month"]))
        if record is None:
            continue
        row = {"performance_id": perf["id"]}
        for name in EXTENDED_METRIC_FIELDS:
            row[name] = getattr(record, name)
        rows.append(row)
    return rows


class ReconciliationEngine:
    """Merges canonical records into the four tables in one transaction.

    Steps run states -> districts -> financial years -> performance ->
    extended metrics so every foreign key target exists before it is
    referenced. Performance rows are upserted on their natural key; extended
    metrics are insert-only, so existing rows are left untouched on re-ingest.
    """

    def __init__(self, repo):
        self.repo = repo

    def _stored_state_codes(self, records: list[CanonicalRecord]) -> dict[str, str]:
        codes = {}
        for name in dict.fromkeys(normalize_name(r.state_name) for r in records):
            stored = self.repo.find_state_by_name(name) if name else None
            if stored is not None:
                codes[name] = stored["state_code"]
        return codes

    def ingest(self, records: list[CanonicalRecord]) -> ReconcileResult:
        if not records:
            return ReconcileResult()

        try:
            with self.repo.transaction():
                records = assign_state_codes(records, self._stored_state_codes(records))
                states = extract_states(records)
                districts = extract_districts(records)
                periods = extract_financial_years(records)
                performance_rows = prepare_performance_rows(records)

                self.repo.upsert_states(states)
                self.repo.upsert_districts(districts)
                self.repo.upsert_financial_years(periods)
                performance = self.repo.upsert_performance(performance_rows)
                self.repo.insert_missing_extended_metrics(prepare_extended_rows(performance, records))
        except psycopg.Error as exc:
            logger.exception(
                "reconcile_rollback records=%s sqlstate=%s",
                len(records),
                getattr(exc, "sqlstate", None),
            )
            raise StorageError(
                "failed to store fetched data",
                details={"sqlstate": getattr(exc, "sqlstate", None)},
            ) from exc

        logger.info(
            "reconcile_committed records=%s states=%s districts=%s periods=%s performance=%s",
            len(records),
            len(states),
            len(districts),
            len(periods),
            len(performance),
        )
        return ReconcileResult(
            state_count=len(states),
            district_count=len(districts),
            period_count=len(periods),
            performance=performance,
        )
