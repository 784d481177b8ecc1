import logging
from dataclasses import dataclass
from secrets import compare_digest

import psycopg
from fastapi import Depends, Header, HTTPException, Request

from app.config import get_settings
from app.db import DatabaseConfigurationError, DatabaseConnectionError, get_connection
from app.schema_guard import heal_schema_once, is_schema_mismatch_sqlstate
from app.services.cache import InMemoryTransport, ResponseCache
from app.services.data_gov_client import DataGovClient, DataGovConfig
from app.services.district_service import DistrictService
from app.services.errors import StorageError
from app.services.query_resolver import QueryResolver
from app.services.repository import PostgresRepository

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_PERIODS = ["2023-2024", "2022-2023", "2021-2022"]


@dataclass
class AppComponents:
    cache: ResponseCache
    upstream: DataGovClient
    fallback_periods: list[str]


def build_components() -> AppComponents:
    try:
        settings = get_settings()
        config = DataGovConfig(
            endpoint_url=settings.data_gov_endpoint_url,
            api_key=settings.data_gov_in_key,
            timeout_sec=settings.data_gov_timeout_sec,
            max_retries=settings.data_gov_max_retries,
            page_size=settings.data_gov_page_size,
            requests_per_sec=settings.data_gov_requests_per_sec,
            records_cache_ttl_sec=settings.records_cache_ttl_sec,
            states_cache_ttl_sec=settings.states_cache_ttl_sec,
            latest_period=settings.latest_period,
        )
        cache = ResponseCache(InMemoryTransport(max_entries=settings.cache_max_entries))
        fallback_periods = settings.fallback_period_list
    except Exception as exc:  # noqa: BLE001
        logger.warning("components_unconfigured error=%s", exc)
        config = DataGovConfig(endpoint_url="", api_key=None)
        cache = ResponseCache()
        fallback_periods = list(DEFAULT_FALLBACK_PERIODS)
    return AppComponents(cache=cache, upstream=DataGovClient(config, cache), fallback_periods=fallback_periods)


def get_components(request: Request) -> AppComponents:
    components = getattr(request.app.state, "components", None)
    if components is None:
        components = build_components()
        request.app.state.components = components
    return components


def get_repository():
    try:
        with get_connection() as conn:
            yield PostgresRepository(conn)
    except DatabaseConfigurationError as exc:
        raise StorageError("database is not configured") from exc
    except DatabaseConnectionError as exc:
        raise StorageError(str(exc)) from exc
    except psycopg.Error as exc:
        if is_schema_mismatch_sqlstate(getattr(exc, "sqlstate", None)):
            try:
                healed = heal_schema_once()
            except Exception:  # noqa: BLE001
                healed = False
            if healed:
                raise StorageError("database schema auto-healed; retry request") from exc
            raise StorageError("database schema mismatch detected") from exc
        raise StorageError(f"database query failed ({exc.sqlstate or 'unknown'})") from exc


def get_upstream_client(components: AppComponents = Depends(get_components)) -> DataGovClient:
    return components.upstream


def get_fallback_periods(components: AppComponents = Depends(get_components)) -> list[str]:
    return components.fallback_periods


def get_query_resolver(
    repo=Depends(get_repository),
    upstream=Depends(get_upstream_client),
    fallback_periods: list[str] = Depends(get_fallback_periods),
) -> QueryResolver:
    return QueryResolver(repo, upstream, fallback_periods)


def get_district_service(
    repo=Depends(get_repository),
    upstream=Depends(get_upstream_client),
) -> DistrictService:
    return DistrictService(repo, upstream)


def require_internal_job_token(
    authorization: str | None = Header(default=None),
):
    settings = get_settings()
    expected = settings.internal_job_token
    if not expected:
        raise HTTPException(status_code=503, detail="internal job token is not configured")

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")

    token = authorization.removeprefix("Bearer ").strip()
    if not compare_digest(token, expected):
        raise HTTPException(status_code=403, detail="invalid bearer token")
