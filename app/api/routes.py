import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Path, Query

from app.api.dependencies import get_district_service, get_query_resolver, require_internal_job_token
from app.models.schemas import ApiResponse, CompareIn, DataFreshnessOut, RefreshIn, RefreshOut
from app.services.errors import QueryValidationError
from app.services.metrics import RANKABLE_METRICS
from app.services.region_codes import MONTHS, normalize_month, normalize_name

router = APIRouter(prefix="/api/v1", tags=["v1"])
logger = logging.getLogger(__name__)

FIN_YEAR_PATTERN = r"^\d{4}-\d{4}$"


def _envelope(data: Any, count: int | None = None, **extra: Any) -> ApiResponse:
    return ApiResponse(success=True, data=data, count=count, timestamp=datetime.now(timezone.utc), **extra)


def _validate_month(month: str | None) -> str | None:
    if month is None or not month.strip():
        return None
    normalized = normalize_month(month)
    if normalized not in MONTHS:
        raise QueryValidationError(
            "Invalid month. Must be a month name",
            details={"allowed": list(MONTHS)},
        )
    return normalized


def _validate_metric(metric: str) -> str:
    if metric not in RANKABLE_METRICS:
        raise QueryValidationError("Invalid metric", details={"allowed": list(RANKABLE_METRICS)})
    return metric


@router.get("/districts/states", response_model=ApiResponse, response_model_exclude_none=True)
def list_states(service=Depends(get_district_service)):
    states = service.list_states()
    return _envelope(states, count=len(states), source="api")


@router.get("/districts/financial-years", response_model=ApiResponse, response_model_exclude_none=True)
def list_financial_years(service=Depends(get_district_service)):
    periods = service.list_periods()
    return _envelope(periods, count=len(periods))


@router.get("/districts/list", response_model=ApiResponse, response_model_exclude_none=True)
def list_districts(
    state: str = Query(..., min_length=1),
    service=Depends(get_district_service),
):
    districts, source = service.list_districts(state)
    return _envelope(districts, count=len(districts), source=source)


@router.get("/districts", response_model=ApiResponse, response_model_exclude_none=True)
def get_district_performance(
    state: str = Query(..., min_length=1),
    fin_year: str = Query(..., alias="finYear", pattern=FIN_YEAR_PATTERN),
    district: str | None = Query(default=None),
    month: str | None = Query(default=None),
    resolver=Depends(get_query_resolver),
):
    normalized_month = _validate_month(month)
    resolved = resolver.resolve_performance(state, fin_year, district_name=district, month=normalized_month)
    logger.info(
        "performance_resolved state=%s fin_year=%s district=%s records=%s upstream_calls=%s",
        resolved.state["state_name"],
        fin_year,
        normalize_name(district) or "all",
        len(resolved.records),
        resolved.upstream_calls,
    )
    return _envelope(
        resolved.records,
        count=len(resolved.records),
        data_freshness=DataFreshnessOut(last_updated=resolved.last_updated, source="database"),
    )


@router.get("/districts/historical", response_model=ApiResponse, response_model_exclude_none=True)
def get_historical(
    state: str = Query(..., min_length=1),
    district_name: str = Query(..., alias="districtName", min_length=1),
    years: int = Query(default=5, ge=1, le=10),
    service=Depends(get_district_service),
):
    records, trends = service.historical(state, district_name, years)
    return _envelope(records, count=len(records), trends=trends)


@router.get("/districts/statistics", response_model=ApiResponse, response_model_exclude_none=True)
def get_state_statistics(
    state: str = Query(..., min_length=1),
    fin_year: str = Query(..., alias="finYear", pattern=FIN_YEAR_PATTERN),
    service=Depends(get_district_service),
):
    return _envelope(service.statistics(state, fin_year))


@router.get("/districts/top-performers", response_model=ApiResponse, response_model_exclude_none=True)
def get_top_performers(
    state: str = Query(..., min_length=1),
    fin_year: str = Query(..., alias="finYear", pattern=FIN_YEAR_PATTERN),
    metric: str = Query(default="averageDaysEmployment"),
    limit: int = Query(default=10, ge=1, le=50),
    service=Depends(get_district_service),
):
    metric = _validate_metric(metric)
    records = service.top_performers(state, fin_year, metric, limit)
    return _envelope(records, count=len(records), metric=metric)


@router.post("/districts/compare", response_model=ApiResponse, response_model_exclude_none=True)
def compare_districts(payload: CompareIn, service=Depends(get_district_service)):
    comparison, count = service.compare(payload.state, payload.fin_year, payload.district_names)
    return _envelope(comparison, count=count)


@router.get("/districts/{district_name}", response_model=ApiResponse, response_model_exclude_none=True)
def get_district_details(
    district_name: str = Path(..., min_length=1, max_length=100),
    state: str = Query(..., min_length=1),
    service=Depends(get_district_service),
):
    return _envelope(service.district_details(state, district_name))


@router.post("/jobs/refresh", response_model=ApiResponse, response_model_exclude_none=True)
def run_refresh_job(
    payload: RefreshIn,
    _=Depends(require_internal_job_token),
    resolver=Depends(get_query_resolver),
):
    fetched_count, result = resolver.refresh(payload.state, payload.fin_year, payload.district)
    logger.info(
        "refresh_job state=%s fin_year=%s district=%s fetched=%s stored=%s",
        normalize_name(payload.state),
        payload.fin_year,
        normalize_name(payload.district) or "all",
        fetched_count,
        result.stored_count,
    )
    return _envelope(
        RefreshOut(
            state=normalize_name(payload.state),
            fin_year=payload.fin_year,
            district=normalize_name(payload.district) or None,
            fetched_count=fetched_count,
            stored_count=result.stored_count,
        )
    )
