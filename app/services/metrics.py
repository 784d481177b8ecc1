"""Derived metrics.

Score and grade are recomputed on every read from the stored numeric
fields; nothing here touches storage or the upstream source.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

from app.models.schemas import (
    EXTENDED_METRIC_FIELDS,
    ExtendedMetricsOut,
    GradeOut,
    PerformanceRecordOut,
    StateStatisticsOut,
    TrendPointOut,
)

GRADE_BANDS = (
    (80, "A", "Excellent", "#43A047"),
    (60, "B", "Good", "#7CB342"),
    (40, "C", "Average", "#FB8C00"),
    (20, "D", "Below Average", "#F57C00"),
    (0, "E", "Poor", "#E65100"),
)

# Public metric names accepted by ranking endpoints -> stored field.
RANKABLE_METRICS = {
    "averageDaysEmployment": "average_days_employment",
    "averageWageRate": "average_wage_rate",
    "totalHouseholdsWorked": "total_households_worked",
    "totalIndividualsWorked": "total_individuals_worked",
    "completedWorks": "completed_works",
    "womenPersondays": "women_persondays",
    "totalExpenditure": "total_expenditure",
    "paymentWithin15Days": "payment_within_15_days",
    "performanceScore": "performance_score",
}

COMPARISON_METRICS = {
    "averageDaysEmployment": "average_days_employment",
    "averageWageRate": "average_wage_rate",
    "totalHouseholdsWorked": "total_households_worked",
    "womenPersondays": "women_persondays",
    "paymentWithin15Days": "payment_within_15_days",
    "completedWorks": "completed_works",
}


def _num(record: Any, name: str) -> float:
    if isinstance(record, dict):
        value = record.get(name)
    else:
        value = getattr(record, name, None)
    if value is None:
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number):
        return 0.0
    return number


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def performance_score(record: Any) -> int:
    days = max(_num(record, "average_days_employment"), 0.0)
    payment = min(max(_num(record, "payment_within_15_days"), 0.0), 100.0)
    women = max(_num(record, "women_persondays"), 0.0)
    completed = max(_num(record, "completed_works"), 0.0)
    ongoing = max(_num(record, "ongoing_works"), 0.0)

    score = min(days / 100 * 30, 30.0)
    score += payment * 0.25
    score += min(women / 50 * 20, 20.0)
    total_works = completed + ongoing
    if total_works > 0:
        score += completed / total_works * 25
    return _round_half_up(score)


def performance_grade(score: int | float) -> GradeOut:
    for threshold, grade, label, color in GRADE_BANDS:
        if score >= threshold:
            return GradeOut(grade=grade, label=label, color=color)
    _, grade, label, color = GRADE_BANDS[-1]
    return GradeOut(grade=grade, label=label, color=color)


def sc_st_percentage(record: Any) -> float:
    total = _num(record, "total_individuals_worked") or 1.0
    sc_st = _num(record, "sc_persondays") + _num(record, "st_persondays")
    return round(sc_st / total * 100, 2)


def women_percentage(record: Any) -> float:
    total = _num(record, "total_individuals_worked") or 1.0
    return round(_num(record, "women_persondays") / total * 100, 2)


def completion_rate(record: Any) -> float:
    completed = _num(record, "completed_works")
    total = completed + _num(record, "ongoing_works")
    if total == 0:
        return 0.0
    return round(completed / total * 100, 2)


def budget_utilization(record: Any) -> float:
    budget = _num(record, "approved_labour_budget") or 1.0
    return round(_num(record, "total_expenditure") / budget * 100, 2)


def to_performance_out(row: dict) -> PerformanceRecordOut:
    """Build the response record, overwriting any score/grade with fresh values."""
    payload = {k: v for k, v in row.items() if not k.startswith("em_")}
    for key in ("performance_score", "performance_grade", "extended_metrics"):
        payload.pop(key, None)
    score = performance_score(row)
    extended = None
    if row.get("em_id") is not None:
        extended = ExtendedMetricsOut(**{name: row.get(f"em_{name}") or 0 for name in EXTENDED_METRIC_FIELDS})
    return PerformanceRecordOut(
        **payload,
        performance_score=score,
        performance_grade=performance_grade(score),
        extended_metrics=extended,
    )


def latest_updated_at(rows: list[dict]) -> datetime | None:
    stamps = [row["updated_at"] for row in rows if row.get("updated_at") is not None]
    return max(stamps) if stamps else None


def _mean(values: list[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def trend_data(rows: list[dict]) -> list[TrendPointOut]:
    grouped: dict[str, list[dict]] = {}
    for row in rows:
        grouped.setdefault(str(row.get("fin_year") or ""), []).append(row)

    points = []
    for fin_year, items in grouped.items():
        points.append(
            TrendPointOut(
                fin_year=fin_year,
                avg_days_employment=_mean([_num(r, "average_days_employment") for r in items]),
                total_households=int(sum(_num(r, "total_households_worked") for r in items)),
                avg_wage_rate=_mean([_num(r, "average_wage_rate") for r in items]),
                women_participation=_mean([_num(r, "women_persondays") for r in items]),
                record_count=len(items),
            )
        )
    return sorted(points, key=lambda p: p.fin_year, reverse=True)


def state_statistics(state: dict, fin_year: str, rows: list[dict]) -> StateStatisticsOut:
    return StateStatisticsOut(
        state=state["state_name"],
        state_code=state["state_code"],
        fin_year=fin_year,
        record_count=len(rows),
        total_districts=len({row.get("district_code") for row in rows}),
        total_households=int(sum(_num(r, "total_households_worked") for r in rows)),
        total_individuals=int(sum(_num(r, "total_individuals_worked") for r in rows)),
        avg_wage_rate=_mean([_num(r, "average_wage_rate") for r in rows]),
        avg_days_employment=_mean([_num(r, "average_days_employment") for r in rows]),
        total_completed_works=int(sum(_num(r, "completed_works") for r in rows)),
        total_ongoing_works=int(sum(_num(r, "ongoing_works") for r in rows)),
        avg_women_participation=_mean([_num(r, "women_persondays") for r in rows]),
        avg_payment_efficiency=_mean([_num(r, "payment_within_15_days") for r in rows]),
        total_expenditure=int(sum(_num(r, "total_expenditure") for r in rows)),
        total_wages=int(sum(_num(r, "wages") for r in rows)),
    )


def rank_values(values: list[float]) -> list[int]:
    """Rank by descending value; ties share the rank of their first position."""
    ordered = sorted(values, reverse=True)
    return [ordered.index(v) + 1 for v in values]


def compare_districts(rows: list[dict]) -> dict[str, Any]:
    districts = []
    series: dict[str, list[float]] = {name: [] for name in COMPARISON_METRICS}
    series["performanceScores"] = []

    for row in rows:
        districts.append(row.get("district_name") or "Unknown")
        for name, column in COMPARISON_METRICS.items():
            series[name].append(_num(row, column))
        series["performanceScores"].append(float(performance_score(row)))

    return {
        "districts": districts,
        "metrics": series,
        "rankings": {name: rank_values(values) for name, values in series.items()},
    }


def metric_value(row: dict, metric: str) -> float:
    column = RANKABLE_METRICS[metric]
    if column == "performance_score":
        return float(performance_score(row))
    return _num(row, column)


def top_performers(rows: list[dict], metric: str, limit: int) -> list[dict]:
    return sorted(rows, key=lambda row: metric_value(row, metric), reverse=True)[:limit]
