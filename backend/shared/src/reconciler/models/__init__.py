"""Pydantic models for webhook logs, domain records and notifications."""

from .enums import (
    ClaimKind,
    DonationFrequency,
    DonationStatus,
    NotificationStatus,
    ProcessingStatus,
    RecordType,
    SponsorshipStatus,
    StripeMode,
)
from .errors import (
    ConfigurationError,
    DataIntegrityError,
    ErrorCode,
    SignatureError,
    WebhookError,
)
from .notification import ReceiptEmailRequest, ReceiptNotification
from .records import Donation, Receipt, Sponsorship
from .results import ReconcileResult
from .stripe_webhook import StripeWebhookLog

__all__ = [
    "ClaimKind",
    "ConfigurationError",
    "DataIntegrityError",
    "Donation",
    "DonationFrequency",
    "DonationStatus",
    "ErrorCode",
    "NotificationStatus",
    "ProcessingStatus",
    "Receipt",
    "ReceiptEmailRequest",
    "ReceiptNotification",
    "ReconcileResult",
    "RecordType",
    "SignatureError",
    "Sponsorship",
    "SponsorshipStatus",
    "StripeMode",
    "StripeWebhookLog",
    "WebhookError",
]
