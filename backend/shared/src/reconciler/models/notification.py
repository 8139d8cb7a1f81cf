"""Receipt email request and outbox models."""

from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from reconciler.models.enums import NotificationStatus, StripeMode


class ReceiptEmailRequest(BaseModel):
    """Body accepted by the receipt email collaborator (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    sponsor_email: str
    sponsor_name: str | None = None
    bestie_name: str
    amount: Decimal
    frequency: str
    transaction_id: str
    transaction_date: str
    stripe_mode: StripeMode

    def to_item(self) -> dict[str, Any]:
        """camelCase dict with the amount kept as Decimal for DynamoDB."""
        return self.model_dump(by_alias=True)

    def to_payload(self) -> dict[str, Any]:
        """camelCase JSON body; the collaborator expects a numeric amount."""
        payload = self.model_dump(by_alias=True, mode="json")
        payload["amount"] = float(self.amount)
        return payload


class ReceiptNotification(BaseModel):
    """Outbox row for one receipt email."""

    model_config = ConfigDict(use_enum_values=True)

    notification_id: str
    receipt_number: str
    payload: dict[str, Any] = Field(..., description="camelCase request body")
    status: NotificationStatus = NotificationStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    created_at: str
    updated_at: str
    sent_at: str | None = None

    def to_item(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
