import math
import re
from typing import Any

from app.models.schemas import (
    EXTENDED_FLOAT_FIELDS,
    EXTENDED_INT_FIELDS,
    PERFORMANCE_FLOAT_FIELDS,
    PERFORMANCE_INT_FIELDS,
    CanonicalRecord,
)
from app.services.region_codes import derive_region_code, derive_sub_region_code, normalize_month, normalize_name

# Upstream column names drift between releases; every alias is matched case-insensitively.
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "state_code": ("state_code",),
    "state_name": ("state_name", "state"),
    "district_code": ("district_code",),
    "district_name": ("district_name", "district"),
    "fin_year": ("fin_year", "financial_year"),
    "month": ("month",),
    "approved_labour_budget": ("Approved_Labour_Budget",),
    "average_wage_rate": ("Average_Wage_rate_per_day_per_person", "Average_Wage_Rate"),
    "average_days_employment": (
        "Average_days_of_employment_provided_per_Household",
        "Average_Days_Of_Employment",
    ),
    "total_households_worked": ("Total_Households_Worked",),
    "total_individuals_worked": ("Total_Individuals_Worked",),
    "completed_works": ("Number_of_Completed_Works",),
    "ongoing_works": ("Number_of_Ongoing_Works",),
    "women_persondays": ("Women_Persondays",),
    "sc_persondays": ("SC_persondays",),
    "st_persondays": ("ST_persondays",),
    "total_expenditure": ("Total_Exp",),
    "wages": ("Wages",),
    "households_100_days": ("Total_No_of_HHs_completed_100_Days_of_Wage_Employment",),
    "payment_within_15_days": (
        "percentage_payments_gererated_within_15_days",
        "percentage_payments_generated_within_15_days",
    ),
    "total_workers": ("Total_No_of_Workers",),
    "total_active_workers": ("Total_No_of_Active_Workers",),
    "total_jobcards_issued": ("Total_No_of_JobCards_issued",),
    "total_active_jobcards": ("Total_No_of_Active_Job_Cards",),
    "sc_workers_active": ("SC_workers_against_active_workers",),
    "st_workers_active": ("ST_workers_against_active_workers",),
    "differently_abled_worked": ("Differently_abled_persons_worked",),
    "percent_nrm_expenditure": ("percent_of_NRM_Expenditure",),
    "percent_category_b_works": ("percent_of_Category_B_Works",),
    "percent_agriculture_allied": ("percent_of_Expenditure_on_Agriculture_Allied_Works",),
    "total_admin_expenditure": ("Total_Adm_Expenditure",),
    "material_skilled_wages": ("Material_and_skilled_Wages",),
    "persondays_central_liability": ("Persondays_of_Central_Liability_so_far",),
    "total_works_takenup": ("Total_No_of_Works_Takenup",),
    "gps_with_nil_exp": ("Number_of_GPs_with_NIL_exp",),
}

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")


def _lookup(raw: dict[str, Any], field: str) -> Any:
    lowered = {str(k).lower(): v for k, v in raw.items()}
    for alias in FIELD_ALIASES.get(field, (field,)):
        value = lowered.get(alias.lower())
        if value is not None and str(value).strip() != "":
            return value
    return None


def parse_float(value: Any) -> float:
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        matched = _NUMBER_RE.search(str(value).replace(",", ""))
        if not matched:
            return 0.0
        number = float(matched.group(0))
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


def parse_int(value: Any) -> int:
    return int(parse_float(value))


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def normalize_record(raw: dict[str, Any]) -> CanonicalRecord:
    state_name = normalize_name(_lookup(raw, "state_name"))
    state_code = _text(_lookup(raw, "state_code")).upper() or derive_region_code(state_name)
    district_name = normalize_name(_lookup(raw, "district_name"))
    district_code = _text(_lookup(raw, "district_code")).upper() or derive_sub_region_code(district_name, state_code)

    payload: dict[str, Any] = {
        "state_code": state_code,
        "state_name": state_name,
        "district_code": district_code,
        "district_name": district_name,
        "fin_year": _text(_lookup(raw, "fin_year")),
        "month": normalize_month(_lookup(raw, "month")),
    }
    for field in PERFORMANCE_INT_FIELDS + EXTENDED_INT_FIELDS:
        payload[field] = parse_int(_lookup(raw, field))
    for field in PERFORMANCE_FLOAT_FIELDS + EXTENDED_FLOAT_FIELDS:
        payload[field] = parse_float(_lookup(raw, field))
    return CanonicalRecord(**payload)


def normalize_records(raw_records: list[dict[str, Any]]) -> list[CanonicalRecord]:
    return [normalize_record(row) for row in raw_records if isinstance(row, dict)]
