import logging
import os
from datetime import datetime, timezone

import psycopg
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.dependencies import build_components
from app.api.routes import router as api_router
from app.db import DatabaseConfigurationError, DatabaseConnectionError, get_connection
from app.schema_guard import (
    SchemaStatus,
    bootstrap_schema,
    find_missing_tables,
    heal_schema_once,
    is_schema_mismatch_sqlstate,
)
from app.services.errors import ServiceError

DEFAULT_CORS_ALLOW_ORIGINS = "http://127.0.0.1:3000,http://localhost:3000"

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _resolve_cors_allow_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", DEFAULT_CORS_ALLOW_ORIGINS)
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


def _error_response(status_code: int, kind: str, message: str, details: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "data": None,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "error": {"kind": kind, "message": message, "details": details or {}},
        },
    )


_configure_logging()

app = FastAPI(title="District Programme Performance API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=_resolve_cors_allow_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(api_router)


@app.on_event("startup")
def startup():
    status = bootstrap_schema()
    logger.info(
        "startup_schema_check ready=%s missing=%s applied=%s error=%s",
        status.ready,
        ",".join(status.missing_tables) or "none",
        status.applied,
        status.error,
    )
    app.state.schema_status = status
    app.state.components = build_components()


@app.exception_handler(ServiceError)
def handle_service_error(_: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.warning("request_failed kind=%s message=%s", exc.kind, exc.message)
    return _error_response(exc.status_code, exc.kind, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
def handle_request_validation_error(_: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return _error_response(400, "ValidationError", "Invalid request parameters", {"errors": errors})


@app.exception_handler(HTTPException)
def handle_http_exception(_: Request, exc: HTTPException):
    return _error_response(exc.status_code, "HTTPError", str(exc.detail))


@app.exception_handler(psycopg.Error)
def handle_psycopg_error(_: Request, exc: psycopg.Error):
    message = "database query failed"
    sqlstate = getattr(exc, "sqlstate", None)

    if is_schema_mismatch_sqlstate(sqlstate):
        try:
            healed = heal_schema_once()
        except Exception as heal_exc:  # noqa: BLE001
            logger.exception("schema_auto_heal_failed: %s", heal_exc)
            healed = False
        message = "database schema auto-healed; retry request" if healed else "database schema mismatch detected"
    elif sqlstate:
        message = f"database query failed ({sqlstate})"

    return _error_response(503, "StorageError", message)


@app.get("/health")
def health_check():
    return {"status": "ok"}


@app.get("/health/db")
def health_db_check():
    try:
        with get_connection() as conn:
            missing = find_missing_tables(conn)
    except DatabaseConfigurationError as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "error", "reason": "database_not_configured", "detail": str(exc)},
        )
    except DatabaseConnectionError as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "error", "reason": "database_connection_failed", "detail": str(exc)},
        )
    except psycopg.Error as exc:
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "db": "error", "reason": "database_query_failed", "sqlstate": exc.sqlstate},
        )

    startup_status = getattr(app.state, "schema_status", None) or SchemaStatus()
    body = {
        "status": "degraded" if missing else "ok",
        "db": "ok",
        "missing_tables": missing,
        "startup": startup_status.to_dict(),
    }
    if missing:
        return JSONResponse(status_code=503, content=body)
    return body
