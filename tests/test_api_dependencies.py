from contextlib import contextmanager

import psycopg
import pytest
from fastapi import HTTPException

import app.api.dependencies as deps
from app.db import DatabaseConfigurationError, DatabaseConnectionError
from app.services.errors import StorageError


@contextmanager
def _fake_connection():
    yield object()


def _make_psycopg_error(sqlstate: str) -> psycopg.Error:
    err = psycopg.ProgrammingError("boom")
    err.sqlstate = sqlstate
    return err


def _raising_connection(exc: Exception):
    @contextmanager
    def factory():
        raise exc
        yield  # pragma: no cover

    return factory


def test_get_repository_schema_mismatch_triggers_heal(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(deps, "get_connection", _fake_connection)
    monkeypatch.setattr(deps, "heal_schema_once", lambda: True)

    gen = deps.get_repository()
    _ = next(gen)

    with pytest.raises(StorageError) as exc_info:
        gen.throw(_make_psycopg_error("42P01"))

    assert exc_info.value.status_code == 503
    assert exc_info.value.message == "database schema auto-healed; retry request"


def test_get_repository_schema_mismatch_reports_detected_when_heal_not_applied(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(deps, "get_connection", _fake_connection)
    monkeypatch.setattr(deps, "heal_schema_once", lambda: False)

    gen = deps.get_repository()
    _ = next(gen)

    with pytest.raises(StorageError) as exc_info:
        gen.throw(_make_psycopg_error("42703"))

    assert exc_info.value.message == "database schema mismatch detected"


def test_get_repository_non_schema_db_error_keeps_sqlstate_detail(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(deps, "get_connection", _fake_connection)

    gen = deps.get_repository()
    _ = next(gen)

    with pytest.raises(StorageError) as exc_info:
        gen.throw(_make_psycopg_error("40001"))

    assert exc_info.value.message == "database query failed (40001)"


@pytest.mark.parametrize(
    ("error", "message"),
    [
        (DatabaseConfigurationError("DATABASE_URL is empty"), "database is not configured"),
        (DatabaseConnectionError("database connection failed (connection_refused)"),
         "database connection failed (connection_refused)"),
    ],
)
def test_get_repository_maps_connection_failures_to_storage_error(monkeypatch, error, message):
    monkeypatch.setattr(deps, "get_connection", _raising_connection(error))

    with pytest.raises(StorageError) as exc_info:
        next(deps.get_repository())

    assert exc_info.value.to_error()["kind"] == "StorageError"
    assert exc_info.value.message == message


def test_build_components_without_settings_yields_unconfigured_client(monkeypatch):
    def _broken_settings():
        raise RuntimeError("DATABASE_URL missing")

    monkeypatch.setattr(deps, "get_settings", _broken_settings)

    components = deps.build_components()

    assert components.upstream.is_configured() is False
    assert components.fallback_periods == deps.DEFAULT_FALLBACK_PERIODS


class _TokenSettings:
    def __init__(self, token):
        self.internal_job_token = token


@pytest.mark.parametrize(
    ("configured", "header", "status"),
    [
        (None, "Bearer abc", 503),
        ("abc", None, 401),
        ("abc", "Token abc", 401),
        ("abc", "Bearer nope", 403),
    ],
)
def test_require_internal_job_token_rejects(monkeypatch, configured, header, status):
    monkeypatch.setattr(deps, "get_settings", lambda: _TokenSettings(configured))

    with pytest.raises(HTTPException) as exc_info:
        deps.require_internal_job_token(authorization=header)

    assert exc_info.value.status_code == status


def test_require_internal_job_token_accepts_matching_token(monkeypatch):
    monkeypatch.setattr(deps, "get_settings", lambda: _TokenSettings("abc"))

    assert deps.require_internal_job_token(authorization="Bearer abc") is None
