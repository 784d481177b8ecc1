import copy
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from app.models.schemas import EXTENDED_METRIC_FIELDS, PERFORMANCE_METRIC_FIELDS, CanonicalRecord
from app.services.errors import UpstreamUnavailableError
from app.services.region_codes import derive_region_code, derive_sub_region_code

BASE_TIME = datetime(2025, 1, 1, tzinfo=timezone.utc)


class InMemoryRepo:
    """Dict-backed stand-in for PostgresRepository with FK and unique-key checks."""

    def __init__(self):
        self.states = {}
        self.districts = {}
        self.financial_years = {}
        self.performance = {}
        self.extended = {}
        self.calls = []
        self.fail_on = None
        self.transactions = 0
        self._next_id = 1
        self._tick = 0

    def _now(self):
        self._tick += 1
        return BASE_TIME + timedelta(seconds=self._tick)

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(
            (self.states, self.districts, self.financial_years, self.performance, self.extended, self._next_id)
        )
        self.transactions += 1
        try:
            yield
        except Exception:
            (
                self.states,
                self.districts,
                self.financial_years,
                self.performance,
                self.extended,
                self._next_id,
            ) = snapshot
            raise

    def _maybe_fail(self, step):
        self.calls.append(step)
        if self.fail_on == step:
            raise psycopg.OperationalError(f"{step} failed")

    def find_state_by_name(self, state_name):
        for row in self.states.values():
            if row["state_name"].upper() == state_name.strip().upper():
                return dict(row)
        return None

    def find_district_by_name(self, state_code, district_name):
        for row in self.districts.values():
            if row["state_code"] == state_code and row["district_name"].upper() == district_name.strip().upper():
                return {**row, "state_name": self.states[state_code]["state_name"]}
        return None

    def list_districts(self, state_code, names=None):
        wanted = None if names is None else {n.strip().upper() for n in names}
        rows = [
            {**row, "state_name": self.states[state_code]["state_name"]}
            for row in self.districts.values()
            if row["state_code"] == state_code and (wanted is None or row["district_name"].upper() in wanted)
        ]
        return sorted(rows, key=lambda r: r["district_name"])

    def list_financial_years(self):
        return sorted((dict(r) for r in self.financial_years.values()), key=lambda r: r["fin_year"], reverse=True)

    def fetch_performance(
        self,
        *,
        state_code,
        district_codes=None,
        fin_years=None,
        month=None,
        order_by_period=False,
        limit=None,
    ):
        rows = []
        for perf in self.performance.values():
            district = self.districts[perf["district_code"]]
            if district["state_code"] != state_code:
                continue
            if district_codes is not None and perf["district_code"] not in district_codes:
                continue
            if fin_years is not None and perf["fin_year"] not in fin_years:
                continue
            if month and perf["month"] != month:
                continue
            fy = self.financial_years[perf["fin_year"]]
            row = {
                **perf,
                "district_name": district["district_name"],
                "state_code": state_code,
                "state_name": self.states[state_code]["state_name"],
                "start_year": fy["start_year"],
                "end_year": fy["end_year"],
                "em_id": None,
            }
            ext = self.extended.get(perf["id"])
            if ext is not None:
                row["em_id"] = ext["id"]
                for name in EXTENDED_METRIC_FIELDS:
                    row[f"em_{name}"] = ext[name]
            rows.append(row)

        rows.sort(key=lambda r: r["updated_at"], reverse=True)
        rows.sort(key=lambda r: r["month"], reverse=True)
        if order_by_period:
            rows.sort(key=lambda r: r["fin_year"], reverse=True)
        return rows[:limit] if limit is not None else rows

    def upsert_states(self, rows):
        self._maybe_fail("states")
        for row in rows:
            for code, stored in self.states.items():
                if code != row["state_code"] and stored["state_name"].upper() == row["state_name"].upper():
                    raise psycopg.errors.UniqueViolation("uq_states_name_ci")
            existing = self.states.get(row["state_code"])
            if existing:
                existing["state_name"] = row["state_name"]
            else:
                self.states[row["state_code"]] = dict(row)

    def upsert_districts(self, rows):
        self._maybe_fail("districts")
        for row in rows:
            if row["state_code"] not in self.states:
                raise psycopg.errors.ForeignKeyViolation("districts.state_code")
            self.districts[row["district_code"]] = dict(row)

    def upsert_financial_years(self, rows):
        self._maybe_fail("financial_years")
        for row in rows:
            self.financial_years.setdefault(row["fin_year"], dict(row))

    def upsert_performance(self, rows):
        self._maybe_fail("performance")
        touched = []
        for row in rows:
            if row["district_code"] not in self.districts:
                raise psycopg.errors.ForeignKeyViolation("district_performance.district_code")
            if row["fin_year"] not in self.financial_years:
                raise psycopg.errors.ForeignKeyViolation("district_performance.fin_year")
            key = (row["district_code"], row["fin_year"], row["month"])
            now = self._now()
            existing = self.performance.get(key)
            if existing:
                for name in PERFORMANCE_METRIC_FIELDS:
                    existing[name] = row[name]
                existing["updated_at"] = now
            else:
                existing = {**row, "id": self._next_id, "created_at": now, "updated_at": now}
                self._next_id += 1
                self.performance[key] = existing
            touched.append(existing)
        return [
            {k: r[k] for k in ("id", "district_code", "fin_year", "month", "updated_at")}
            for r in sorted(touched, key=lambda r: r["id"])
        ]

    def insert_missing_extended_metrics(self, rows):
        self._maybe_fail("extended_metrics")
        perf_ids = {r["id"] for r in self.performance.values()}
        for row in rows:
            if row["performance_id"] not in perf_ids:
                raise psycopg.errors.ForeignKeyViolation("district_extended_metrics.performance_id")
            if row["performance_id"] in self.extended:
                continue
            self.extended[row["performance_id"]] = {**row, "id": len(self.extended) + 1}


class FakeUpstream:
    """Counts calls; answers from a {(state, fin_year, district): [records]} table."""

    def __init__(self, responses=None, fail=False):
        self.responses = responses or {}
        self.fail = fail
        self.calls = []

    def fetch_records(self, state_name, fin_year, district_name=None):
        key = (state_name.upper(), fin_year, (district_name or "").upper() or None)
        self.calls.append(key)
        if self.fail:
            raise UpstreamUnavailableError("failed to fetch data from the external source")
        if key in self.responses:
            return list(self.responses[key])
        if key[2] is not None:
            unscoped = self.responses.get((key[0], fin_year, None), [])
            return [r for r in unscoped if r.district_name == key[2]]
        return []

    def fetch_states_list(self):
        return ["KERALA", "GOA"]

    def fetch_sub_regions_list(self, state_name):
        records = self.fetch_records(state_name, "2024-2025")
        return list(dict.fromkeys(r.district_name for r in records))


def make_record(state="KERALA", district="ALAPPUZHA", fin_year="2024-2025", month="APRIL", **metrics):
    state_code = derive_region_code(state)
    payload = {
        "state_code": state_code,
        "state_name": state,
        "district_code": derive_sub_region_code(district, state_code),
        "district_name": district,
        "fin_year": fin_year,
        "month": month,
        "average_days_employment": 45.0,
        "payment_within_15_days": 98.0,
        "women_persondays": 30.0,
        "completed_works": 60,
        "ongoing_works": 40,
        "total_households_worked": 1000,
        "total_workers": 5000,
    }
    payload.update(metrics)
    return CanonicalRecord(**payload)


@pytest.fixture
def repo():
    return InMemoryRepo()


@pytest.fixture
def kerala_records():
    return [
        make_record(district="ALAPPUZHA", average_days_employment=60.0),
        make_record(district="ERNAKULAM", average_days_employment=40.0),
        make_record(district="IDUKKI", average_days_employment=50.0),
    ]
