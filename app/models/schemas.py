from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

PERFORMANCE_INT_FIELDS = (
    "approved_labour_budget",
    "total_households_worked",
    "total_individuals_worked",
    "completed_works",
    "ongoing_works",
    "sc_persondays",
    "st_persondays",
    "total_expenditure",
    "wages",
    "households_100_days",
)
PERFORMANCE_FLOAT_FIELDS = (
    "average_wage_rate",
    "average_days_employment",
    "women_persondays",
    "payment_within_15_days",
)
PERFORMANCE_METRIC_FIELDS = PERFORMANCE_INT_FIELDS + PERFORMANCE_FLOAT_FIELDS

EXTENDED_INT_FIELDS = (
    "total_workers",
    "total_active_workers",
    "total_jobcards_issued",
    "total_active_jobcards",
    "sc_workers_active",
    "st_workers_active",
    "differently_abled_worked",
    "persondays_central_liability",
    "total_works_takenup",
    "gps_with_nil_exp",
)
EXTENDED_FLOAT_FIELDS = (
    "percent_nrm_expenditure",
    "percent_category_b_works",
    "percent_agriculture_allied",
    "total_admin_expenditure",
    "material_skilled_wages",
)
EXTENDED_METRIC_FIELDS = EXTENDED_INT_FIELDS + EXTENDED_FLOAT_FIELDS


class CanonicalRecord(BaseModel):
    """One upstream row after field-name normalization and code derivation."""

    model_config = ConfigDict(frozen=True)

    state_code: str
    state_name: str
    district_code: str
    district_name: str
    fin_year: str
    month: str = ""

    approved_labour_budget: int = 0
    average_wage_rate: float = 0.0
    average_days_employment: float = 0.0
    total_households_worked: int = 0
    total_individuals_worked: int = 0
    completed_works: int = 0
    ongoing_works: int = 0
    women_persondays: float = 0.0
    sc_persondays: int = 0
    st_persondays: int = 0
    total_expenditure: int = 0
    wages: int = 0
    households_100_days: int = 0
    payment_within_15_days: float = 0.0

    total_workers: int = 0
    total_active_workers: int = 0
    total_jobcards_issued: int = 0
    total_active_jobcards: int = 0
    sc_workers_active: int = 0
    st_workers_active: int = 0
    differently_abled_worked: int = 0
    percent_nrm_expenditure: float = 0.0
    percent_category_b_works: float = 0.0
    percent_agriculture_allied: float = 0.0
    total_admin_expenditure: float = 0.0
    material_skilled_wages: float = 0.0
    persondays_central_liability: int = 0
    total_works_takenup: int = 0
    gps_with_nil_exp: int = 0

    @property
    def natural_key(self) -> tuple[str, str, str]:
        return (self.district_code, self.fin_year, self.month)


class SubRegionOut(BaseModel):
    district_code: str
    district_name: str
    state_code: str
    state_name: str | None = None


class ReportingPeriodOut(BaseModel):
    fin_year: str
    start_year: int
    end_year: int


class GradeOut(BaseModel):
    grade: str
    label: str
    color: str


class ExtendedMetricsOut(BaseModel):
    total_workers: int = 0
    total_active_workers: int = 0
    total_jobcards_issued: int = 0
    total_active_jobcards: int = 0
    sc_workers_active: int = 0
    st_workers_active: int = 0
    differently_abled_worked: int = 0
    percent_nrm_expenditure: float = 0.0
    percent_category_b_works: float = 0.0
    percent_agriculture_allied: float = 0.0
    total_admin_expenditure: float = 0.0
    material_skilled_wages: float = 0.0
    persondays_central_liability: int = 0
    total_works_takenup: int = 0
    gps_with_nil_exp: int = 0


class PerformanceRecordOut(BaseModel):
    id: int
    district_code: str
    district_name: str | None = None
    state_code: str | None = None
    state_name: str | None = None
    fin_year: str
    start_year: int | None = None
    end_year: int | None = None
    month: str = ""

    approved_labour_budget: int = 0
    average_wage_rate: float = 0.0
    average_days_employment: float = 0.0
    total_households_worked: int = 0
    total_individuals_worked: int = 0
    completed_works: int = 0
    ongoing_works: int = 0
    women_persondays: float = 0.0
    sc_persondays: int = 0
    st_persondays: int = 0
    total_expenditure: int = 0
    wages: int = 0
    households_100_days: int = 0
    payment_within_15_days: float = 0.0

    performance_score: int
    performance_grade: GradeOut
    extended_metrics: ExtendedMetricsOut | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DataFreshnessOut(BaseModel):
    last_updated: datetime | None = None
    source: str = "database"


class TrendPointOut(BaseModel):
    fin_year: str
    avg_days_employment: float
    total_households: int
    avg_wage_rate: float
    women_participation: float
    record_count: int


class StateStatisticsOut(BaseModel):
    state: str
    state_code: str
    fin_year: str
    record_count: int = 0
    total_districts: int = 0
    total_households: int = 0
    total_individuals: int = 0
    avg_wage_rate: float = 0.0
    avg_days_employment: float = 0.0
    total_completed_works: int = 0
    total_ongoing_works: int = 0
    avg_women_participation: float = 0.0
    avg_payment_efficiency: float = 0.0
    total_expenditure: int = 0
    total_wages: int = 0


class ComparisonOut(BaseModel):
    districts: list[str] = Field(default_factory=list)
    metrics: dict[str, list[float]] = Field(default_factory=dict)
    rankings: dict[str, list[int]] = Field(default_factory=dict)


class DistrictDetailOut(SubRegionOut):
    performances: list[PerformanceRecordOut] = Field(default_factory=list)


class CompareIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    district_names: list[str] = Field(alias="districtNames", min_length=2, max_length=10)
    state: str = Field(min_length=1)
    fin_year: str = Field(alias="finYear", pattern=r"^\d{4}-\d{4}$")


class RefreshIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    state: str = Field(min_length=1)
    fin_year: str = Field(alias="finYear", pattern=r"^\d{4}-\d{4}$")
    district: str | None = None


class RefreshOut(BaseModel):
    state: str
    fin_year: str
    district: str | None = None
    fetched_count: int
    stored_count: int


class ErrorOut(BaseModel):
    kind: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ApiResponse(BaseModel):
    success: bool = True
    data: Any = None
    count: int | None = None
    timestamp: datetime
    error: ErrorOut | None = None
    source: str | None = None
    metric: str | None = None
    data_freshness: DataFreshnessOut | None = None
    trends: list[TrendPointOut] | None = None
