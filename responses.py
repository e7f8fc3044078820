"""
Uniform response envelope and the process-wide error responder.

Success: {"success": true, "statusCode": 200, "message": "...", "data": ...}
Failure: {"success": false, "statusCode": 4xx/5xx, "message": "...", "data": null, "errors": [...]}
"""
import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from storage import StorageError

logger = logging.getLogger(__name__)


class ApiError(HTTPException):
    """HTTPException that also carries a structured list of errors."""

    def __init__(self, status_code: int, message: str = "Something went wrong",
                 errors: Optional[List[Any]] = None, headers: Optional[Dict[str, str]] = None):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.errors = errors or []


def api_response(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    body = {
        "success": 200 <= status_code < 300,
        "statusCode": status_code,
        "message": message,
        "data": data,
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def error_response(status_code: int, message: str, errors: Optional[List[Any]] = None,
                   headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    body = {
        "success": False,
        "statusCode": status_code,
        "message": message,
        "data": None,
        "errors": errors or [],
    }
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body), headers=headers)


def _field_errors(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    out = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        out.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return out


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return error_response(exc.status_code, str(exc.detail), getattr(exc, "errors", None),
                          getattr(exc, "headers", None))


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(400, "Validation failed", _field_errors(exc.errors()))


async def model_validation_handler(request: Request, exc: ValidationError):
    return error_response(400, "Validation failed", _field_errors(exc.errors()))


async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
    return error_response(500, f"File storage failed: {exc}")


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Error in request %s %s", request.method, request.url.path)
    return error_response(500, "Internal Server Error")


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(ValidationError, model_validation_handler)
    app.add_exception_handler(StorageError, storage_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
