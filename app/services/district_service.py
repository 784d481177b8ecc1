from __future__ import annotations

import logging

from app.models.schemas import (
    ComparisonOut,
    DistrictDetailOut,
    PerformanceRecordOut,
    ReportingPeriodOut,
    StateStatisticsOut,
    SubRegionOut,
    TrendPointOut,
)
from app.services import metrics
from app.services.errors import DataNotFoundError, RegionNotFoundError, SubRegionNotFoundError
from app.services.region_codes import normalize_name, previous_periods

logger = logging.getLogger(__name__)

DETAIL_RECORD_LIMIT = 12


class DistrictService:
    """Listing and rollup reads over stored data.

    Only the district listing falls back to the upstream source; the rest
    answer from storage and report a missing state or district directly.
    """

    def __init__(self, repo, upstream):
        self.repo = repo
        self.upstream = upstream

    def list_states(self) -> list[str]:
        return self.upstream.fetch_states_list()

    def list_periods(self) -> list[ReportingPeriodOut]:
        return [ReportingPeriodOut(**row) for row in self.repo.list_financial_years()]

    def list_districts(self, state_name: str) -> tuple[list, str]:
        state = self.repo.find_state_by_name(normalize_name(state_name))
        districts = self.repo.list_districts(state["state_code"]) if state else []
        if districts:
            return [SubRegionOut(**row) for row in districts], "database"

        logger.info("district_list_local_miss state=%s", normalize_name(state_name))
        names = self.upstream.fetch_sub_regions_list(state_name)
        if not names:
            raise DataNotFoundError(f"No districts found for state '{normalize_name(state_name)}'")
        return names, "api"

    def _require_state(self, state_name: str) -> dict:
        state = self.repo.find_state_by_name(normalize_name(state_name))
        if state is None:
            raise RegionNotFoundError(f"State '{normalize_name(state_name)}' not found")
        return state

    def _require_district(self, state: dict, district_name: str) -> dict:
        district = self.repo.find_district_by_name(state["state_code"], normalize_name(district_name))
        if district is None:
            raise SubRegionNotFoundError(
                f"District '{normalize_name(district_name)}' not found in state '{state['state_name']}'"
            )
        return district

    def historical(
        self,
        state_name: str,
        district_name: str,
        years: int,
    ) -> tuple[list[PerformanceRecordOut], list[TrendPointOut]]:
        state = self._require_state(state_name)
        district = self._require_district(state, district_name)

        periods = self.repo.list_financial_years()
        if not periods:
            raise DataNotFoundError("No reporting periods are stored yet")
        window = previous_periods(periods[0]["fin_year"], years)

        rows = self.repo.fetch_performance(
            state_code=state["state_code"],
            district_codes=[district["district_code"]],
            fin_years=window,
            order_by_period=True,
        )
        return [metrics.to_performance_out(row) for row in rows], metrics.trend_data(rows)

    def statistics(self, state_name: str, fin_year: str) -> StateStatisticsOut:
        state = self._require_state(state_name)
        rows = self.repo.fetch_performance(state_code=state["state_code"], fin_years=[fin_year])
        return metrics.state_statistics(state, fin_year, rows)

    def top_performers(self, state_name: str, fin_year: str, metric: str, limit: int) -> list[PerformanceRecordOut]:
        state = self._require_state(state_name)
        rows = self.repo.fetch_performance(state_code=state["state_code"], fin_years=[fin_year])
        return [metrics.to_performance_out(row) for row in metrics.top_performers(rows, metric, limit)]

    def compare(self, state_name: str, fin_year: str, district_names: list[str]) -> tuple[ComparisonOut, int]:
        state = self._require_state(state_name)
        districts = self.repo.list_districts(state["state_code"], names=[normalize_name(n) for n in district_names])
        rows = []
        if districts:
            rows = self.repo.fetch_performance(
                state_code=state["state_code"],
                district_codes=[d["district_code"] for d in districts],
                fin_years=[fin_year],
            )
        # One entry per district: the first row in month/updated_at order.
        per_district: dict[str, dict] = {}
        for row in rows:
            per_district.setdefault(row["district_code"], row)
        selected = list(per_district.values())
        return ComparisonOut(**metrics.compare_districts(selected)), len(selected)

    def district_details(self, state_name: str, district_name: str) -> DistrictDetailOut:
        state = self._require_state(state_name)
        district = self._require_district(state, district_name)
        rows = self.repo.fetch_performance(
            state_code=state["state_code"],
            district_codes=[district["district_code"]],
            order_by_period=True,
            limit=DETAIL_RECORD_LIMIT,
        )
        return DistrictDetailOut(
            **district,
            performances=[metrics.to_performance_out(row) for row in rows],
        )
