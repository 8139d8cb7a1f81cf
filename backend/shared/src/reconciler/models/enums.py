"""Enumerations shared by the reconciler models."""

from enum import Enum


class StripeMode(str, Enum):
    """Stripe environment an event was signed for."""

    TEST = "test"
    LIVE = "live"


class ProcessingStatus(str, Enum):
    """Lifecycle of an audit log row."""

    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not ProcessingStatus.PROCESSING


class SponsorshipStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    SCHEDULED_CANCEL = "scheduled_cancel"


class DonationStatus(str, Enum):
    """Donation status.

    PENDING is written by the checkout-session creator before payment;
    the reconciler moves one-time donations to COMPLETED and recurring
    ones to ACTIVE. A recurring donation scheduled to cancel stays ACTIVE
    with ended_at set until Stripe cancels it.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class DonationFrequency(str, Enum):
    ONE_TIME = "one-time"
    MONTHLY = "monthly"


class RecordType(str, Enum):
    """Domain record an external id is attached to."""

    SPONSORSHIP = "sponsorship"
    DONATION = "donation"
    RECEIPT = "receipt"


class ClaimKind(str, Enum):
    """Kind of external identifier guarded by the claims table."""

    SUBSCRIPTION = "subscription"
    PAYMENT_INTENT = "payment_intent"
    CHECKOUT_SESSION = "checkout_session"
    TRANSACTION = "transaction"


class NotificationStatus(str, Enum):
    """Outbox row status. SENDING is held by one worker while it posts."""

    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
