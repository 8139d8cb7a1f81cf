"""Webhook pipeline: audit, classify, reconcile, close the audit row.

Provides business logic for handling verified Stripe events separate from
HTTP routing concerns, so it can be exercised without a request and reused
by operator scripts.
"""

from pydantic import BaseModel, Field

from reconciler.models.enums import ProcessingStatus, StripeMode
from reconciler.models.results import ReconcileResult
from reconciler.utils.logging import get_logger, log_webhook_event

from .classifier import Route, classify
from .donation_reconciler import DonationReconciler
from .dynamodb import DynamoDBService, get_dynamodb_service
from .event_logger import EventLogger, LogHandle
from .notification_dispatcher import NotificationDispatcher
from .receipt_generator import ReceiptGenerator
from .recurring_payments import RecurringPaymentHandler
from .sponsorship_reconciler import SponsorshipReconciler
from .stripe_service import StripeService, VerifiedEvent

logger = get_logger(__name__)

SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class ProcessingOutcome(BaseModel):
    """What happened to one delivery, as seen by the HTTP layer."""

    event_id: str
    mode: StripeMode
    status: ProcessingStatus
    duplicate: bool = False
    notification_ids: list[str] = Field(default_factory=list)


class WebhookProcessor:
    """Runs one verified event through the reconciliation pipeline.

    The audit row is opened before anything else and closed after
    everything else: ``success`` or ``skipped`` when the event was handled,
    ``failed`` (and the exception re-raised) when it was not.
    """

    def __init__(
        self,
        db: DynamoDBService | None = None,
        stripe_service: StripeService | None = None,
        notifications: NotificationDispatcher | None = None,
    ) -> None:
        self._db = db or get_dynamodb_service()
        self._event_logger = EventLogger(self._db)
        receipts = ReceiptGenerator(self._db)
        notifications = notifications or NotificationDispatcher(self._db)
        self._sponsorships = SponsorshipReconciler(
            self._db, receipts, notifications, stripe_service
        )
        self._donations = DonationReconciler(self._db, receipts, notifications)
        self._recurring = RecurringPaymentHandler(self._sponsorships, self._donations)

    def process(self, verified: VerifiedEvent) -> ProcessingOutcome:
        """Process a verified event.

        Args:
            verified: Event whose signature verified, with its mode

        Returns:
            Outcome with the closing status and any queued notification ids

        Raises:
            WebhookError: If reconciliation failed; the audit row is already
                closed as ``failed``.
        """
        handle = self._event_logger.open(verified)
        mode = verified.mode.value

        if handle.already_completed:
            log_webhook_event(
                logger,
                verified.event_type,
                verified.event_id,
                mode=mode,
                result="duplicate",
                previous_status=handle.previous_status.value if handle.previous_status else None,
            )
            return ProcessingOutcome(
                event_id=verified.event_id,
                mode=verified.mode,
                status=handle.previous_status or ProcessingStatus.SUCCESS,
                duplicate=True,
            )

        log_webhook_event(
            logger,
            verified.event_type,
            verified.event_id,
            mode=mode,
            result="received",
            retry_count=handle.retry_count,
        )
        handle.step("log_opened")

        try:
            result = self._dispatch(verified, handle)
        except Exception as e:
            handle.step("failed")
            self._event_logger.close(
                handle,
                ProcessingStatus.FAILED,
                error_message=str(e),
                http_status_code=500,
            )
            log_webhook_event(
                logger,
                verified.event_type,
                verified.event_id,
                mode=mode,
                result="failed",
                error=str(e),
            )
            raise

        self._record_result(handle, result)
        self._event_logger.close(handle, result.status, http_status_code=200)
        log_webhook_event(
            logger,
            verified.event_type,
            verified.event_id,
            mode=mode,
            result=result.status.value,
            note=result.note,
        )
        return ProcessingOutcome(
            event_id=verified.event_id,
            mode=verified.mode,
            status=result.status,
            notification_ids=result.notification_ids,
        )

    def _dispatch(self, verified: VerifiedEvent, handle: LogHandle) -> ReconcileResult:
        data_object = verified.data_object
        classification = classify(verified.event_type, data_object)
        handle.step(f"classified:{classification.route.value}")

        if classification.route is Route.IGNORED:
            logger.info(
                "Skipping %s (%s): %s",
                verified.event_type,
                verified.event_id,
                classification.reason,
            )
            return ReconcileResult.noop(
                classification.reason or "ignored", ProcessingStatus.SKIPPED
            )

        if classification.route is Route.UNCLASSIFIED_CHECKOUT:
            logger.warning(
                "Checkout session %s not reconciled: %s",
                data_object.get("id"),
                classification.reason,
            )
            return ReconcileResult.noop(classification.reason or "unclassified checkout")

        if classification.route is Route.SPONSORSHIP_CHECKOUT:
            return self._sponsorships.handle_checkout(data_object, verified.mode)

        if classification.route is Route.DONATION_CHECKOUT:
            return self._donations.handle_checkout(data_object, verified.mode)

        if classification.route is Route.RECURRING_INVOICE:
            return self._recurring.handle(data_object, verified.mode)

        deleted = verified.event_type == SUBSCRIPTION_DELETED
        result = self._sponsorships.handle_lifecycle_change(data_object, verified.mode, deleted)
        if result is None:
            result = self._donations.handle_lifecycle_change(data_object, verified.mode, deleted)
        if result is None:
            logger.info(
                "No sponsorship or donation for subscription %s, nothing to update",
                data_object.get("id"),
            )
            return ReconcileResult.noop("no record for subscription")
        return result

    @staticmethod
    def _record_result(handle: LogHandle, result: ReconcileResult) -> None:
        if result.record_type and result.record_id:
            handle.relate(result.record_type, result.record_id)
            handle.step(f"{result.record_type.value}_reconciled")
        if result.receipt_number:
            handle.step("receipt_issued")
        if result.notification_ids:
            handle.step("notification_queued")
        handle.step(f"closed:{result.status.value}")
