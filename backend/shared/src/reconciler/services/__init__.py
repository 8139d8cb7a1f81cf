"""Services for the Stripe webhook reconciler."""

from .classifier import Classification, Route, classify
from .donation_reconciler import DonationReconciler
from .dynamodb import DynamoDBService, get_dynamodb_service, reset_dynamodb_service
from .event_logger import EventLogger, LogHandle
from .notification_dispatcher import NotificationDispatcher
from .receipt_generator import ReceiptGenerator, generate_receipt_number
from .recurring_payments import RecurringPaymentHandler, invoice_subscription_id
from .sponsorship_reconciler import SponsorshipReconciler, derive_subscription_status
from .ssm_service import SSMService, SSMServiceError, get_ssm_service
from .stripe_service import (
    StripeService,
    StripeServiceError,
    VerifiedEvent,
    get_stripe_service,
)
from .webhook_processor import ProcessingOutcome, WebhookProcessor

__all__ = [
    "Classification",
    "DonationReconciler",
    "DynamoDBService",
    "EventLogger",
    "LogHandle",
    "NotificationDispatcher",
    "ProcessingOutcome",
    "ReceiptGenerator",
    "RecurringPaymentHandler",
    "Route",
    "SSMService",
    "SSMServiceError",
    "SponsorshipReconciler",
    "StripeService",
    "StripeServiceError",
    "VerifiedEvent",
    "WebhookProcessor",
    "classify",
    "derive_subscription_status",
    "generate_receipt_number",
    "get_dynamodb_service",
    "get_ssm_service",
    "get_stripe_service",
    "invoice_subscription_id",
    "reset_dynamodb_service",
]
