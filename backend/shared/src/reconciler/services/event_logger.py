"""Audit trail for webhook deliveries.

Each verified event gets one row per (event id, mode) in the
``stripe-webhook-logs`` table. The row is opened as ``processing`` before any
reconciliation and closed exactly once with a terminal status. A closed row
never goes back to ``processing``; only a ``failed`` row can be closed again
by a later redelivery.
"""

import time
from typing import Any

from pydantic import BaseModel, Field

from reconciler.models.enums import ProcessingStatus, RecordType, StripeMode
from reconciler.models.stripe_webhook import StripeWebhookLog
from reconciler.utils.conversions import utc_now_iso
from reconciler.utils.logging import get_logger

from .dynamodb import WEBHOOK_LOGS_TABLE, DynamoDBService, get_dynamodb_service
from .stripe_service import VerifiedEvent

logger = get_logger(__name__)

REPLAYABLE_STATUSES = (ProcessingStatus.PROCESSING, ProcessingStatus.FAILED)


class LogHandle(BaseModel):
    """In-flight state of one processing attempt."""

    event_id: str
    event_type: str
    mode: StripeMode
    started_at: float = Field(default_factory=time.monotonic)
    retry_count: int = 0
    already_completed: bool = False
    previous_status: ProcessingStatus | None = None
    steps: list[str] = Field(default_factory=list)
    customer_id: str | None = None
    customer_email: str | None = None
    related_record_type: RecordType | None = None
    related_record_id: str | None = None

    def step(self, name: str) -> None:
        """Record a pipeline step; steps are written when the row is closed."""
        self.steps.append(name)

    def relate(self, record_type: RecordType, record_id: str) -> None:
        self.related_record_type = record_type
        self.related_record_id = record_id


class EventLogger:
    """Opens and closes audit rows around a processing attempt."""

    def __init__(self, db: DynamoDBService | None = None) -> None:
        self._db = db or get_dynamodb_service()

    @staticmethod
    def _key(event_id: str, mode: StripeMode) -> dict[str, str]:
        return {"event_id": event_id, "stripe_mode": mode.value}

    def open(self, verified: VerifiedEvent) -> LogHandle:
        """Insert the audit row with status processing.

        A redelivered event reuses its row: if the row is already success or
        skipped the handle is marked ``already_completed`` and the caller must
        not reprocess; otherwise ``retry_count`` is incremented.
        """
        handle = LogHandle(
            event_id=verified.event_id,
            event_type=verified.event_type,
            mode=verified.mode,
        )
        data_object = verified.data_object
        customer = data_object.get("customer")
        handle.customer_id = customer if isinstance(customer, str) else None
        handle.customer_email = (
            (data_object.get("customer_details") or {}).get("email")
            or data_object.get("customer_email")
        )

        row = StripeWebhookLog(
            event_id=verified.event_id,
            stripe_mode=verified.mode,
            event_type=verified.event_type,
            raw_event=verified.event,
            created_at=utc_now_iso(),
            customer_id=handle.customer_id,
            customer_email=handle.customer_email,
        )
        created = self._db.put_item(
            WEBHOOK_LOGS_TABLE,
            row.to_item(),
            condition_expression="attribute_not_exists(event_id)",
        )
        if created:
            return handle

        existing = self._db.get_item(WEBHOOK_LOGS_TABLE, self._key(handle.event_id, handle.mode))
        status = ProcessingStatus((existing or {}).get("processing_status", "processing"))
        handle.previous_status = status

        if status not in REPLAYABLE_STATUSES:
            handle.already_completed = True
            logger.info(
                "Event %s (%s) already %s, not reprocessing",
                handle.event_id,
                handle.mode.value,
                status.value,
            )
            return handle

        updated = self._db.update_item(
            WEBHOOK_LOGS_TABLE,
            self._key(handle.event_id, handle.mode),
            "ADD retry_count :one",
            {":one": 1},
        )
        handle.retry_count = int((updated or {}).get("retry_count", 0))
        logger.info(
            "Redelivery %d of event %s (previous status %s)",
            handle.retry_count,
            handle.event_id,
            status.value,
        )
        return handle

    def close(
        self,
        handle: LogHandle,
        status: ProcessingStatus,
        *,
        error_message: str | None = None,
        http_status_code: int | None = None,
    ) -> bool:
        """Write the terminal status of the attempt.

        Returns:
            True if the row was updated, False if it had already reached
            success or skipped through another delivery.

        Raises:
            ValueError: If ``status`` is not terminal.
        """
        if not status.is_terminal:
            raise ValueError("An audit row can only be closed with a terminal status")

        duration_ms = int((time.monotonic() - handle.started_at) * 1000)
        set_parts = [
            "processing_status = :status",
            "completed_at = :now",
            "processing_duration_ms = :duration",
            "processing_steps = :steps",
        ]
        values: dict[str, Any] = {
            ":status": status.value,
            ":now": utc_now_iso(),
            ":duration": duration_ms,
            ":steps": handle.steps,
            ":processing": ProcessingStatus.PROCESSING.value,
            ":failed": ProcessingStatus.FAILED.value,
        }
        remove_parts: list[str] = []

        if http_status_code is not None:
            set_parts.append("http_status_code = :http")
            values[":http"] = http_status_code
        if error_message:
            set_parts.append("error_message = :error")
            values[":error"] = error_message
        else:
            remove_parts.append("error_message")
        if handle.related_record_type and handle.related_record_id:
            set_parts.append("related_record_type = :rtype, related_record_id = :rid")
            values[":rtype"] = handle.related_record_type.value
            values[":rid"] = handle.related_record_id

        expression = "SET " + ", ".join(set_parts)
        if remove_parts:
            expression += " REMOVE " + ", ".join(remove_parts)

        updated = self._db.update_item(
            WEBHOOK_LOGS_TABLE,
            self._key(handle.event_id, handle.mode),
            expression,
            values,
            condition_expression="processing_status IN (:processing, :failed)",
        )
        if updated is None:
            logger.warning(
                "Audit row for %s (%s) already closed by another delivery",
                handle.event_id,
                handle.mode.value,
            )
            return False
        return True
