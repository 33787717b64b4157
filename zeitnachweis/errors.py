from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class ValidationError(ApiError):
    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR", details: dict[str, Any] | None = None):
        super().__init__(400, code, message, details)


class NotFoundError(ApiError):
    def __init__(self, message: str, *, code: str = "NOT_FOUND"):
        super().__init__(404, code, message)


class ConflictError(ApiError):
    # Duplicate keys are reported as 400 to keep the admin client contract.
    def __init__(self, message: str, *, code: str = "CONFLICT"):
        super().__init__(400, code, message)


class AuthError(ApiError):
    def __init__(self, message: str, *, code: str = "UNAUTHORIZED"):
        super().__init__(401, code, message)


class UploadWindowClosedError(ApiError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None):
        super().__init__(403, "UPLOAD_WINDOW_CLOSED", message, details)


class StorageError(ApiError):
    def __init__(self, message: str, *, code: str = "STORAGE_ERROR"):
        super().__init__(500, code, message)


class DeliveryError(ApiError):
    def __init__(self, message: str, *, code: str = "DELIVERY_FAILED", details: dict[str, Any] | None = None):
        super().__init__(500, code, message, details)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "request_id": get_request_id(request),
    }
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})
