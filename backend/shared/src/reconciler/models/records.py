"""Domain records written by the reconciler: sponsorships, donations, receipts."""

from decimal import Decimal
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, model_validator

from reconciler.models.enums import (
    DonationFrequency,
    DonationStatus,
    SponsorshipStatus,
    StripeMode,
)


def _check_single_identity(user_id: str | None, email: str | None, label: str) -> None:
    if user_id and email:
        raise ValueError(f"{label} must be identified by user id or email, not both")
    if not user_id and not email:
        raise ValueError(f"{label} requires a user id or an email")


class _Record(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    def to_item(self) -> dict[str, Any]:
        """Serialize for DynamoDB.

        None attributes are omitted because GSI key attributes may not be NULL.
        """
        return self.model_dump(exclude_none=True)


class Sponsorship(_Record):
    """Recurring pledge from a sponsor to one sponsor bestie."""

    sponsorship_id: str
    sponsor_id: str | None = Field(default=None, description="Internal user id")
    sponsor_email: str | None = Field(default=None, description="Guest sponsor email")
    sponsor_bestie_id: str = Field(..., description="sponsor-besties row from metadata")
    bestie_id: str | None = Field(default=None, description="Beneficiary user id")
    amount: Decimal = Field(..., description="Monthly amount in dollars")
    frequency: str = "monthly"
    status: SponsorshipStatus = SponsorshipStatus.ACTIVE
    started_at: str
    ended_at: str | None = None
    stripe_subscription_id: str | None = Field(default=None, description="Recurring sponsorships")
    stripe_payment_intent_id: str | None = Field(default=None, description="One-time sponsorships")
    stripe_customer_id: str | None = None
    stripe_checkout_session_id: str | None = None
    stripe_mode: StripeMode
    created_at: str
    updated_at: str

    @model_validator(mode="after")
    def _one_sponsor_and_one_payment(self) -> Self:
        _check_single_identity(self.sponsor_id, self.sponsor_email, "Sponsorship")
        if bool(self.stripe_subscription_id) == bool(self.stripe_payment_intent_id):
            raise ValueError(
                "Sponsorship needs a subscription id or a payment intent id, not both"
            )
        return self


class Donation(_Record):
    """General (not bestie-targeted) one-time or monthly contribution."""

    donation_id: str
    donor_id: str | None = None
    donor_email: str | None = None
    amount: Decimal
    amount_charged: Decimal | None = None
    currency: str = "usd"
    frequency: DonationFrequency
    status: DonationStatus
    stripe_checkout_session_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_payment_intent_id: str | None = None
    stripe_customer_id: str | None = None
    stripe_mode: StripeMode
    started_at: str | None = None
    ended_at: str | None = None
    created_at: str
    updated_at: str

    @model_validator(mode="after")
    def _one_donor_identity(self) -> Self:
        _check_single_identity(self.donor_id, self.donor_email, "Donation")
        return self


class Receipt(_Record):
    """Immutable tax receipt for a single successful transaction."""

    receipt_number: str = Field(..., examples=["RCP-20260115-1768435200000-k3x9qa"])
    sponsorship_id: str | None = Field(
        default=None, description="None for general donations"
    )
    user_id: str | None = None
    sponsor_email: str
    sponsor_name: str | None = None
    bestie_name: str = "General Support"
    amount: Decimal
    frequency: str
    transaction_id: str
    transaction_date: str
    stripe_mode: StripeMode
    organization_name: str | None = None
    organization_ein: str | None = None
    tax_year: int
    created_at: str
    sent_at: str | None = None
