from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from app.models.schemas import CanonicalRecord, PerformanceRecordOut
from app.services.errors import (
    DataNotFoundError,
    RegionNotFoundError,
    SubRegionNotFoundError,
    UpstreamUnavailableError,
)
from app.services.metrics import latest_updated_at, to_performance_out
from app.services.reconciliation import ReconcileResult, ReconciliationEngine
from app.services.region_codes import normalize_month, normalize_name

logger = logging.getLogger(__name__)

DISTRICT_LIST_PATH = "/api/v1/districts/list"


@dataclass
class ResolvedPerformance:
    state: dict
    district: dict | None
    records: list[PerformanceRecordOut]
    last_updated: datetime | None
    upstream_calls: int = 0


@dataclass
class _Attempts:
    calls: int = 0
    errors: list[str] = field(default_factory=list)


class QueryResolver:
    """Local-first lookup with bounded upstream backfill.

    Upstream calls per request are capped at: the requested period plus each
    fallback period (only while the state is unknown locally), one
    district-scoped pass, and one general pass before failing.
    """

    def __init__(self, repo, upstream, fallback_periods: list[str], engine: ReconciliationEngine | None = None):
        self.repo = repo
        self.upstream = upstream
        self.fallback_periods = list(fallback_periods)
        self.engine = engine or ReconciliationEngine(repo)

    def resolve_performance(
        self,
        state_name: str,
        fin_year: str,
        district_name: str | None = None,
        month: str | None = None,
    ) -> ResolvedPerformance:
        attempts = _Attempts()
        state_name = normalize_name(state_name)
        district_name = normalize_name(district_name) or None
        month = normalize_month(month) or None

        state = self.repo.find_state_by_name(state_name)
        if state is None:
            state = self._backfill_unknown_state(state_name, fin_year, district_name, attempts)

        district = None
        if district_name:
            district = self._resolve_district(state, fin_year, district_name, attempts)

        rows = self._query(state, fin_year, district, month)
        if not rows:
            logger.info(
                "performance_local_miss state=%s fin_year=%s district=%s month=%s",
                state["state_name"],
                fin_year,
                district_name or "all",
                month or "all",
            )
            self._fetch_and_reconcile(state["state_name"], fin_year, district_name, attempts)
            rows = self._query(state, fin_year, district, month)

        if not rows:
            query = {
                "state": state["state_name"],
                "fin_year": fin_year,
                "district": district_name or "all",
                "month": month or "all",
            }
            if attempts.errors:
                raise UpstreamUnavailableError(
                    "unable to fetch data from the external source and no stored data matches",
                    details={"query": query, "reason": attempts.errors[-1]},
                )
            raise DataNotFoundError(
                "No performance data found for the specified criteria",
                details={
                    "query": query,
                    "try_periods": [p for p in self.fallback_periods if p != fin_year],
                    "districts_endpoint": f"{DISTRICT_LIST_PATH}?state={state['state_name']}",
                },
            )

        return ResolvedPerformance(
            state=state,
            district=district,
            records=[to_performance_out(row) for row in rows],
            last_updated=latest_updated_at(rows),
            upstream_calls=attempts.calls,
        )

    def refresh(self, state_name: str, fin_year: str, district_name: str | None = None) -> tuple[int, ReconcileResult]:
        """One fetch + reconcile pass; upstream failures propagate."""
        records = self.upstream.fetch_records(state_name, fin_year, district_name)
        return len(records), self.engine.ingest(records)

    def _query(self, state: dict, fin_year: str, district: dict | None, month: str | None) -> list[dict]:
        return self.repo.fetch_performance(
            state_code=state["state_code"],
            district_codes=[district["district_code"]] if district else None,
            fin_years=[fin_year],
            month=month,
        )

    def _fetch(
        self,
        state_name: str,
        fin_year: str,
        district_name: str | None,
        attempts: _Attempts,
    ) -> list[CanonicalRecord]:
        attempts.calls += 1
        return self.upstream.fetch_records(state_name, fin_year, district_name)

    def _fetch_and_reconcile(
        self,
        state_name: str,
        fin_year: str,
        district_name: str | None,
        attempts: _Attempts,
    ) -> bool:
        """Optional backfill: upstream failures are logged and read as no new data."""
        try:
            records = self._fetch(state_name, fin_year, district_name, attempts)
        except UpstreamUnavailableError as exc:
            logger.warning(
                "upstream_backfill_failed state=%s fin_year=%s district=%s error=%s",
                state_name,
                fin_year,
                district_name or "all",
                exc.message,
            )
            attempts.errors.append(exc.message)
            return False
        if not records:
            return False
        self.engine.ingest(records)
        return True

    def _backfill_unknown_state(
        self,
        state_name: str,
        fin_year: str,
        district_name: str | None,
        attempts: _Attempts,
    ) -> dict:
        logger.info("state_local_miss state=%s fin_year=%s", state_name, fin_year)
        # Nothing stored for this state: a failure here is terminal.
        records = self._fetch(state_name, fin_year, district_name, attempts)
        if records:
            self.engine.ingest(records)
            state = self.repo.find_state_by_name(state_name)
            if state is None:
                raise RegionNotFoundError(
                    f"State '{state_name}' not found",
                    details={"available_periods": self.fallback_periods},
                )
            return state

        found_period = None
        checked: list[str] = []
        for period in self.fallback_periods:
            if period == fin_year:
                continue
            checked.append(period)
            logger.info("upstream_fallback_period state=%s fin_year=%s", state_name, period)
            if self._fetch_and_reconcile(state_name, period, None, attempts):
                found_period = period
                break

        state = self.repo.find_state_by_name(state_name)
        if state is None and attempts.errors:
            raise UpstreamUnavailableError(
                f"unable to check state '{state_name}' against the external source",
                details={"checked_periods": [fin_year] + checked, "errors": attempts.errors},
            )
        if state is None:
            raise RegionNotFoundError(
                f"State '{state_name}' not found and no data available from the external source",
                details={"checked_periods": [fin_year] + checked, "available_periods": self.fallback_periods},
            )
        raise DataNotFoundError(
            f"No data found for state '{state['state_name']}' and financial year '{fin_year}'",
            details={
                "state": state["state_name"],
                "state_code": state["state_code"],
                "requested_period": fin_year,
                "available_periods": [found_period] if found_period else [],
            },
        )

    def _resolve_district(self, state: dict, fin_year: str, district_name: str, attempts: _Attempts) -> dict:
        district = self.repo.find_district_by_name(state["state_code"], district_name)
        if district is not None:
            return district

        logger.info("district_local_miss state=%s district=%s", state["state_name"], district_name)
        if self._fetch_and_reconcile(state["state_name"], fin_year, district_name, attempts):
            district = self.repo.find_district_by_name(state["state_code"], district_name)
        if district is None:
            raise SubRegionNotFoundError(
                f"District '{district_name}' not found in state '{state['state_name']}'",
                details={"districts_endpoint": f"{DISTRICT_LIST_PATH}?state={state['state_name']}"},
            )
        return district
