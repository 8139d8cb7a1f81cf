"""FastAPI exception handlers for webhook errors.

Stripe only looks at the status code: 2xx acknowledges the event, anything
else is redelivered later. Authentication failures are answered with 400 so
forged or misrouted requests are not retried; every other error is a 500 so
Stripe retries and the idempotent pipeline picks the event up again.

Usage:
    from api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_400_BAD_REQUEST, HTTP_500_INTERNAL_SERVER_ERROR

from reconciler.models.errors import AUTHENTICATION_CODES, ErrorCode, WebhookError

logger = logging.getLogger(__name__)


def get_http_status_for_error(code: ErrorCode) -> int:
    """Get HTTP status code for an ErrorCode.

    Args:
        code: The ErrorCode to map

    Returns:
        400 for authentication errors, 500 for everything else.
    """
    if code in AUTHENTICATION_CODES:
        return HTTP_400_BAD_REQUEST
    return HTTP_500_INTERNAL_SERVER_ERROR


async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    """Convert a WebhookError to ``{"error": message}`` with its status code."""
    status_code = get_http_status_for_error(exc.code)
    if status_code >= HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("Webhook failed (%s): %s", exc.code.value, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_response())


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for uncaught exceptions: 500 with the exception message."""
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": str(exc) or exc.__class__.__name__},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register the exception handlers with the FastAPI app.

    Args:
        app: The FastAPI application instance.
    """
    app.add_exception_handler(WebhookError, webhook_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
