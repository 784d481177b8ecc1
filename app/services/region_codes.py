from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

STATE_CODE_MAP = {
    "ANDHRA PRADESH": "AP",
    "ARUNACHAL PRADESH": "AR",
    "ASSAM": "AS",
    "BIHAR": "BR",
    "CHHATTISGARH": "CG",
    "GOA": "GA",
    "GUJARAT": "GJ",
    "HARYANA": "HR",
    "HIMACHAL PRADESH": "HP",
    "JHARKHAND": "JH",
    "KARNATAKA": "KA",
    "KERALA": "KL",
    "MADHYA PRADESH": "MP",
    "MAHARASHTRA": "MH",
    "MANIPUR": "MN",
    "MEGHALAYA": "ML",
    "MIZORAM": "MZ",
    "NAGALAND": "NL",
    "ODISHA": "OR",
    "PUNJAB": "PB",
    "RAJASTHAN": "RJ",
    "SIKKIM": "SK",
    "TAMIL NADU": "TN",
    "TELANGANA": "TG",
    "TRIPURA": "TR",
    "UTTAR PRADESH": "UP",
    "UTTARAKHAND": "UK",
    "WEST BENGAL": "WB",
}

STATE_NAMES = tuple(STATE_CODE_MAP)

MONTHS = (
    "APRIL",
    "MAY",
    "JUNE",
    "JULY",
    "AUGUST",
    "SEPTEMBER",
    "OCTOBER",
    "NOVEMBER",
    "DECEMBER",
    "JANUARY",
    "FEBRUARY",
    "MARCH",
)

UNKNOWN_REGION_CODE = "XX"
UNKNOWN_SUB_REGION_CODE = "UNKNOWN"

_FIN_YEAR_RE = re.compile(r"^\s*(\d{4})\s*-\s*(\d{4})\s*$")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ReportingPeriodSpan:
    fin_year: str
    start_year: int
    end_year: int


def normalize_name(value: str | None) -> str:
    text = _WHITESPACE_RE.sub(" ", str(value or "")).strip()
    return text.upper()


def string_hash(text: str) -> int:
    # 32-bit signed rolling hash (h = 31*h + c), stable across processes unlike hash().
    h = 0
    for ch in text:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def derive_region_code(state_name: str | None) -> str:
    name = normalize_name(state_name)
    if not name:
        return UNKNOWN_REGION_CODE
    return STATE_CODE_MAP.get(name) or name[:2]


def derive_sub_region_code(district_name: str | None, region_code: str | None) -> str:
    name = normalize_name(district_name)
    if not name or not region_code:
        return UNKNOWN_SUB_REGION_CODE
    prefix = name[:3]
    suffix = abs(string_hash(name)) % 1000
    return f"{region_code}{prefix}{suffix:03d}"


def parse_reporting_period(fin_year: str | None, *, today: date | None = None) -> ReportingPeriodSpan:
    """Split a "YYYY-YYYY" label; malformed labels fall back to the current year span."""
    label = str(fin_year or "").strip()
    match = _FIN_YEAR_RE.match(label)
    if match:
        return ReportingPeriodSpan(fin_year=label, start_year=int(match.group(1)), end_year=int(match.group(2)))
    current = (today or date.today()).year
    return ReportingPeriodSpan(fin_year=label, start_year=current, end_year=current + 1)


def is_valid_fin_year(fin_year: str | None) -> bool:
    return bool(_FIN_YEAR_RE.match(str(fin_year or "")))


def normalize_month(month: str | None) -> str:
    return normalize_name(month)


def previous_periods(fin_year: str, count: int) -> list[str]:
    span = parse_reporting_period(fin_year)
    return [f"{span.start_year - i}-{span.start_year - i + 1}" for i in range(max(count, 0))]
