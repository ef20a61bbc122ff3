"""Request id propagation, engine error mapping and request logging."""

import time
import uuid
from datetime import datetime
from typing import Callable
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .exceptions import (
    TriggerPayloadError,
    UnknownTriggerError,
    WorkflowEngineError,
    WorkflowStateError,
    WorkflowValidationError,
    create_error_response,
)
from .logging import get_logger, set_logging_context, clear_logging_context


logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

# First match wins; anything else is a server-side failure
ERROR_STATUS_CODES = (
    ((WorkflowValidationError, TriggerPayloadError, UnknownTriggerError), 400),
    ((WorkflowStateError,), 409),
)


def status_code_for_error(error: WorkflowEngineError) -> int:
    """HTTP status code for an engine error."""
    for error_types, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_types):
            return status_code
    return 500


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Tags each request with an id (the caller's ``X-Request-ID`` when sent) and
    renders engine errors that escape a route as JSON."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        started = time.time()
        set_logging_context(request_id=request_id, method=request.method, path=request.url.path)

        try:
            response = await call_next(request)
            logger.info(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"in {time.time() - started:.3f}s"
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            return response

        except WorkflowEngineError as e:
            logger.warning(
                f"{request.method} {request.url.path} failed with {e.error_code}: {e.message}",
                extra={"extra_fields": {"error_details": e.to_dict()}}
            )
            return JSONResponse(
                status_code=status_code_for_error(e),
                content=create_error_response(e),
                headers={REQUEST_ID_HEADER: request_id}
            )

        except Exception as e:
            logger.error(f"Unexpected error on {request.method} {request.url.path}: {str(e)}", exc_info=True)
            return JSONResponse(
                status_code=500,
                content={
                    "error": "InternalServerError",
                    "message": "An unexpected error occurred",
                    "details": {"error_type": type(e).__name__, "timestamp": datetime.utcnow().isoformat()},
                    "request_id": request_id
                },
                headers={REQUEST_ID_HEADER: request_id}
            )

        finally:
            clear_logging_context("request_id", "method", "path")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Debug-level request and response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.time()
        logger.debug(f"Request {request.method} {request.url} query={dict(request.query_params)}")

        response = await call_next(request)

        logger.debug(f"Response {response.status_code} after {time.time() - started:.3f}s")
        return response
