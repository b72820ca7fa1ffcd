"""
Middleware and exception handlers for the FastAPI application.
"""

import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

import structlog

from teller.core.config import settings as default_settings, Settings
from teller.core.exceptions import (
    TellerException, ValidationError, NotFoundError, PaymentRequiredError,
    PaymentAlreadyProcessedError, UpstreamUnavailableError
)


logger = structlog.get_logger(__name__)


STATUS_BY_EXCEPTION = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PaymentRequiredError, status.HTTP_402_PAYMENT_REQUIRED),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PaymentAlreadyProcessedError, status.HTTP_409_CONFLICT),
    (UpstreamUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
]


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()

        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.perf_counter() - start_time
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                process_time=process_time,
            )
            return error_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "INTERNAL_SERVER_ERROR",
                "An internal server error occurred",
            )

        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(process_time)

        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=process_time,
        )
        return response


def error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
    extra: Optional[dict] = None
) -> JSONResponse:
    content = {
        "success": False,
        "error": error,
        "message": message,
        "details": details or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if extra:
        content.update(extra)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def payment_required_headers(payment: dict) -> Dict[str, str]:
    """x402 headers describing the payment a client must make."""
    return {
        "X-Payment-Required": "true",
        "X-Payment-Chain": str(payment.get("chain", "")),
        "X-Payment-Token": str(payment.get("token", "")),
        "X-Payment-Amount": str(payment.get("amount", "")),
        "X-Payment-Address": str(payment.get("recipient") or ""),
        "X-Payment-Description": str(payment.get("description", "")),
    }


async def teller_exception_handler(request: Request, exc: TellerException) -> JSONResponse:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for exc_type, code in STATUS_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            status_code = code
            break

    if isinstance(exc, PaymentRequiredError):
        payment = exc.details.get("payment", {})
        return error_response(
            status_code,
            exc.code,
            exc.message,
            details=exc.details,
            headers=payment_required_headers(payment),
            extra={"payment": payment, "instructions": exc.details.get("instructions")},
        )

    log = logger.error if status_code >= 500 else logger.info
    log("Request rejected", path=request.url.path, code=exc.code, message=exc.message)

    return error_response(status_code, exc.code, exc.message, details=exc.details)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"loc": list(error.get("loc", [])), "msg": error.get("msg")}
        for error in exc.errors()
    ]
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        "VALIDATION_ERROR",
        "Invalid request",
        details={"errors": errors},
    )


def add_middleware(app: FastAPI, app_settings: Optional[Settings] = None) -> None:
    """Add middleware and exception handlers to the FastAPI app."""

    app_settings = app_settings or default_settings

    if app_settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["X-Payment-Required", "X-Payment-Chain", "X-Payment-Token",
                            "X-Payment-Amount", "X-Payment-Address", "X-Payment-Description"],
        )

    # Logging (last added runs first)
    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(TellerException, teller_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    logger.info("Middleware configured successfully")
