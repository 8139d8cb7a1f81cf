"""Correlation ID middleware for request tracing.

Every webhook delivery gets a correlation ID (taken from X-Correlation-ID when
a caller supplies one) so the verification, reconciliation and receipt log
lines of one delivery can be grepped together.
"""

import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from reconciler.utils.logging import clear_correlation_id, get_logger, set_correlation_id

CORRELATION_ID_HEADER = "X-Correlation-ID"

logger = get_logger(__name__)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware that manages correlation IDs for request tracing."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Set the correlation ID, run the request and echo the ID back.

        Args:
            request: Incoming request
            call_next: Next middleware/handler in chain

        Returns:
            Response with correlation ID header
        """
        correlation_id = set_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        started = time.monotonic()

        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = correlation_id
            logger.info(
                "%s %s -> %d (%d ms)",
                request.method,
                request.url.path,
                response.status_code,
                int((time.monotonic() - started) * 1000),
            )
            return response
        finally:
            clear_correlation_id()
