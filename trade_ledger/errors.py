from __future__ import annotations

import logging

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


def _error_payload(message: object, details: object = None) -> dict:
    payload = {"error": message}
    if details is not None:
        payload["details"] = details
    return payload


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for error in exc.errors():
        loc = [part for part in error.get("loc", ()) if part != "body"]
        details.append(
            {
                "field": ".".join(str(part) for part in loc),
                "message": str(error.get("msg", "")),
                "type": str(error.get("type", "")),
            }
        )
    return details


def register_error_handlers(app) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_payload(exc.detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(StarletteHTTPException)
    async def starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        detail = exc.detail if getattr(exc, "detail", None) is not None else "Request failed"
        return JSONResponse(status_code=exc.status_code, content=_error_payload(detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info("Rejected %s %s: %s", request.method, request.url.path, details)
        return JSONResponse(status_code=422, content=_error_payload("Validation failed", details))

    @app.exception_handler(SQLAlchemyError)
    async def database_exception_handler(request: Request, exc: SQLAlchemyError):
        # the failing session has already been rolled back by the crud layer
        logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
        message = str(getattr(exc, "orig", None) or exc).splitlines()[0]
        return JSONResponse(status_code=400, content=_error_payload(message))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content=_error_payload("Internal server error"))
