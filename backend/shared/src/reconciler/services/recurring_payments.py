"""Receipts for subscription renewals (invoice.paid)."""

from typing import Any

from reconciler.models.enums import ProcessingStatus, StripeMode
from reconciler.models.errors import DataIntegrityError, ErrorCode
from reconciler.models.results import ReconcileResult
from reconciler.utils.conversions import stripe_id
from reconciler.utils.logging import get_logger, log_reconcile_operation

from .classifier import SUBSCRIPTION_CREATE_REASON
from .donation_reconciler import DonationReconciler
from .sponsorship_reconciler import SponsorshipReconciler

logger = get_logger(__name__)


def invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription an invoice bills, or None for a standalone invoice.

    Newer API versions moved the id under ``parent.subscription_details``;
    older ones expose it on the invoice and on each line item.
    """
    subscription_id = stripe_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id

    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    subscription_id = stripe_id(details.get("subscription"))
    if subscription_id:
        return subscription_id

    for line in (invoice.get("lines") or {}).get("data") or []:
        subscription_id = stripe_id(line.get("subscription"))
        if subscription_id:
            return subscription_id
        item_details = (line.get("parent") or {}).get("subscription_item_details") or {}
        subscription_id = stripe_id(item_details.get("subscription"))
        if subscription_id:
            return subscription_id
    return None


class RecurringPaymentHandler:
    """Routes a paid renewal invoice to the sponsorship or donation it belongs to."""

    def __init__(
        self,
        sponsorships: SponsorshipReconciler,
        donations: DonationReconciler,
    ) -> None:
        self._sponsorships = sponsorships
        self._donations = donations

    def handle(self, invoice: dict[str, Any], mode: StripeMode) -> ReconcileResult:
        """Issue the renewal receipt for a paid invoice.

        Sponsorships are tried before donations; whichever owns the
        subscription issues exactly one receipt.

        Raises:
            DataIntegrityError: If no sponsorship or donation uses the
                invoice's subscription. The event is failed so Stripe retries it,
                covering a renewal that arrives before its checkout event.
        """
        invoice_id = invoice.get("id")
        if not invoice_id:
            raise DataIntegrityError(ErrorCode.MALFORMED_EVENT, "Invoice event without id")

        if invoice.get("billing_reason") == SUBSCRIPTION_CREATE_REASON:
            logger.info("Invoice %s is a subscription's first invoice, skipping", invoice_id)
            return ReconcileResult.noop(
                "first invoice is reconciled from checkout", ProcessingStatus.SKIPPED
            )

        subscription_id = invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info("Invoice %s is not linked to a subscription, nothing to do", invoice_id)
            return ReconcileResult.noop("invoice has no subscription")

        result = self._sponsorships.handle_recurring_invoice(invoice, subscription_id, mode)
        if result is None:
            result = self._donations.handle_recurring_invoice(invoice, subscription_id, mode)
        if result is not None:
            return result

        log_reconcile_operation(
            logger,
            "orphan_invoice",
            subscription_id=subscription_id,
            mode=mode.value,
            invoice_id=invoice_id,
            warning="no sponsorship or donation for subscription",
        )
        raise DataIntegrityError(
            ErrorCode.ORPHAN_INVOICE,
            f"No sponsorship or donation found for subscription {subscription_id}",
        )
