"""Stripe webhook log model for auditing and redelivery handling."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from reconciler.models.enums import ProcessingStatus, RecordType, StripeMode


class StripeWebhookLog(BaseModel):
    """Audit row for one received Stripe event in one mode.

    Used for:
    - Auditing: every verified delivery leaves a row behind
    - Redelivery: rows already in success/skipped short-circuit replays
    - Debugging: processing steps, duration and error of the last attempt
    """

    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(
        ...,
        description="Stripe event ID (evt_xxx)",
        examples=["evt_1ABC123DEF456"],
    )
    stripe_mode: StripeMode = Field(
        ...,
        description="Mode whose signing secret verified the payload",
    )
    event_type: str = Field(
        ...,
        description="Stripe event type",
        examples=["checkout.session.completed", "invoice.paid"],
    )
    processing_status: ProcessingStatus = Field(
        default=ProcessingStatus.PROCESSING,
        description="processing until closed, then success, failed or skipped",
    )
    raw_event: dict[str, Any] = Field(
        ...,
        description="Full event payload as received",
    )
    created_at: str = Field(..., description="When the first delivery was logged")
    completed_at: str | None = None
    processing_duration_ms: int | None = None
    retry_count: int = Field(default=0, description="Redeliveries after the first")
    customer_id: str | None = None
    customer_email: str | None = None
    processing_steps: list[str] = Field(default_factory=list)
    related_record_type: RecordType | None = None
    related_record_id: str | None = None
    error_message: str | None = None
    http_status_code: int | None = None

    def to_item(self) -> dict[str, Any]:
        """Serialize for DynamoDB (None attributes are omitted)."""
        return self.model_dump(exclude_none=True)
