from typing import Any


class ServiceError(Exception):
    """Base for failures that map onto a response envelope."""

    kind = "ServiceError"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_error(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class QueryValidationError(ServiceError):
    kind = "ValidationError"
    status_code = 400


class RegionNotFoundError(ServiceError):
    kind = "NotFoundRegion"
    status_code = 404


class SubRegionNotFoundError(ServiceError):
    kind = "NotFoundSubRegion"
    status_code = 404


class DataNotFoundError(ServiceError):
    kind = "NotFoundData"
    status_code = 404


class UpstreamUnavailableError(ServiceError):
    kind = "UpstreamUnavailable"
    status_code = 503


class StorageError(ServiceError):
    kind = "StorageError"
    status_code = 503
