"""Dependency providers for the webhook route.

Services share the DynamoDB singleton (``get_dynamodb_service``) and the
cached SSM and Stripe services, so building them per request is cheap and
always picks up the current singletons.

Service Dependency Graph:
    DynamoDBService (singleton via get_dynamodb_service)
        ├── WebhookProcessor
        │       ├── EventLogger
        │       ├── SponsorshipReconciler ── StripeService
        │       ├── DonationReconciler
        │       └── ReceiptGenerator
        └── NotificationDispatcher ── SSMService

Testing:
    Use reset_services() to clear cached instances between tests.
"""

from reconciler.services.dynamodb import get_dynamodb_service, reset_dynamodb_service
from reconciler.services.notification_dispatcher import NotificationDispatcher
from reconciler.services.ssm_service import SSMService, get_ssm_service
from reconciler.services.stripe_service import StripeService, get_stripe_service
from reconciler.services.webhook_processor import WebhookProcessor


def get_notification_dispatcher() -> NotificationDispatcher:
    """Get a NotificationDispatcher bound to the DynamoDB singleton."""
    return NotificationDispatcher(db=get_dynamodb_service())


def get_webhook_processor(stripe_service: StripeService | None = None) -> WebhookProcessor:
    """Get a WebhookProcessor bound to the DynamoDB singleton.

    Args:
        stripe_service: Stripe service used for subscription lookups.
            Defaults to the cached instance, resolved on first use.
    """
    return WebhookProcessor(
        db=get_dynamodb_service(),
        stripe_service=stripe_service,
        notifications=get_notification_dispatcher(),
    )


def reset_services() -> None:
    """Clear all cached service instances.

    Call this in test fixtures to ensure clean state between tests.
    """
    get_stripe_service.cache_clear()
    get_ssm_service.cache_clear()
    SSMService.reset()
    reset_dynamodb_service()
