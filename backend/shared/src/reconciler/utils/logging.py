"""Structured logging utilities with correlation ID support.

Provides:
- Correlation ID context management for request tracing
- Structured logging formatter for consistent log output
- Helpers for webhook events and reconciliation steps

Usage:
    from reconciler.utils.logging import get_logger, set_correlation_id

    # In middleware/request handler:
    set_correlation_id(request.headers.get("X-Correlation-ID"))

    # In service code:
    logger = get_logger(__name__)
    logger.info("Sponsorship created", extra={"sponsorship_id": "..."})
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any

# Context variable for correlation ID - thread-safe and async-safe
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def generate_correlation_id() -> str:
    """Generate a new correlation ID.

    Returns:
        UUID-based correlation ID string
    """
    return str(uuid.uuid4())


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Set the correlation ID for the current request context.

    Args:
        correlation_id: Optional existing correlation ID. If None, generates new one.

    Returns:
        The correlation ID that was set
    """
    cid = correlation_id or generate_correlation_id()
    _correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return _correlation_id.get()


def clear_correlation_id() -> None:
    """Clear the correlation ID context."""
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    """Logging filter that adds correlation_id to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "no-correlation-id"
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter for structured log output with correlation ID."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = get_correlation_id() or "no-correlation-id"

        base = super().format(record)

        # Correlation ID prefix for easy grep/filtering
        return f"[{record.correlation_id}] {base}"


def configure_logging(level: int = logging.INFO) -> None:
    """Install the structured formatter on the root logger.

    Safe to call more than once; an existing structured handler is reused.
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if isinstance(handler.formatter, StructuredFormatter):
            return

    handler = logging.StreamHandler()
    handler.setFormatter(
        StructuredFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    )
    handler.addFilter(CorrelationIdFilter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with correlation ID support.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationIdFilter) for f in logger.filters):
        logger.addFilter(CorrelationIdFilter())

    return logger


def log_reconcile_operation(
    logger: logging.Logger,
    operation: str,
    *,
    record_type: str | None = None,
    record_id: str | None = None,
    subscription_id: str | None = None,
    session_id: str | None = None,
    mode: str | None = None,
    warning: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a reconciliation step with structured context.

    Args:
        logger: Logger instance
        operation: Operation name (e.g., "sponsorship_created", "receipt_issued")
        record_type: sponsorship, donation or receipt
        record_id: Internal id of the record touched
        subscription_id: Stripe subscription id if relevant
        session_id: Stripe checkout session id if relevant
        mode: test or live
        warning: Reason for a non-fatal anomaly (logged at WARNING)
        error: Error message if the step failed (logged at ERROR)
        **extra: Additional context fields
    """
    context: dict[str, Any] = {"operation": operation}

    if record_type:
        context["record_type"] = record_type
    if record_id:
        context["record_id"] = record_id
    if subscription_id:
        context["subscription_id"] = subscription_id
    if session_id:
        context["session_id"] = session_id
    if mode:
        context["stripe_mode"] = mode
    if warning:
        context["warning"] = warning
    if error:
        context["error"] = error

    context.update(extra)

    msg_parts = [f"Reconcile: {operation}"]
    for key, value in context.items():
        if key != "operation":
            msg_parts.append(f"{key}={value}")

    message = " | ".join(msg_parts)

    if error:
        logger.error(message, extra=context)
    elif warning:
        logger.warning(message, extra=context)
    else:
        logger.info(message, extra=context)


def log_webhook_event(
    logger: logging.Logger,
    event_type: str,
    event_id: str,
    *,
    mode: str | None = None,
    result: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log a webhook event with structured context.

    Args:
        logger: Logger instance
        event_type: Stripe event type (e.g., "checkout.session.completed")
        event_id: Stripe event ID
        mode: test or live
        result: received, success, duplicate, skipped or failed
        error: Error message if processing failed
        **extra: Additional context fields
    """
    context: dict[str, Any] = {
        "event_type": event_type,
        "event_id": event_id,
    }

    if mode:
        context["stripe_mode"] = mode
    if result:
        context["result"] = result
    if error:
        context["error"] = error

    context.update(extra)

    msg_parts = [f"Webhook event: {event_type} ({event_id})"]
    if mode:
        msg_parts.append(f"mode={mode}")
    if result:
        msg_parts.append(f"result={result}")
    if error:
        msg_parts.append(f"error={error}")

    message = " | ".join(msg_parts)

    if result == "failed":
        logger.error(message, extra=context)
    elif result == "duplicate" or result == "skipped":
        logger.warning(message, extra=context)
    else:
        logger.info(message, extra=context)
