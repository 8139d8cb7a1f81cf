"""Routing of Stripe events to reconciliation branches."""

from enum import Enum
from typing import Any

from pydantic import BaseModel

SUBSCRIPTION_LIFECYCLE_EVENTS = frozenset(
    {
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
CHECKOUT_COMPLETED_EVENTS = frozenset({"checkout.session.completed"})
INVOICE_PAID_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})

# billing_reason of the first invoice of a subscription; that payment is
# reconciled from checkout.session.completed
SUBSCRIPTION_CREATE_REASON = "subscription_create"


class Route(str, Enum):
    SUBSCRIPTION_LIFECYCLE = "subscription_lifecycle"
    SPONSORSHIP_CHECKOUT = "sponsorship_checkout"
    DONATION_CHECKOUT = "donation_checkout"
    RECURRING_INVOICE = "recurring_invoice"
    UNCLASSIFIED_CHECKOUT = "unclassified_checkout"
    IGNORED = "ignored"


class Classification(BaseModel):
    route: Route
    reason: str | None = None

    @property
    def is_ignored(self) -> bool:
        return self.route is Route.IGNORED


def classify_checkout(session: dict[str, Any]) -> Classification:
    """Decide whether a completed checkout session is a sponsorship or a donation.

    A bestie reference in the metadata always wins over the ``type`` tag.
    """
    metadata = session.get("metadata") or {}

    if session.get("payment_status") == "unpaid":
        return Classification(route=Route.IGNORED, reason="payment_status is unpaid")

    if metadata.get("bestie_id"):
        return Classification(route=Route.SPONSORSHIP_CHECKOUT)
    if metadata.get("type") == "donation":
        return Classification(route=Route.DONATION_CHECKOUT)

    return Classification(
        route=Route.UNCLASSIFIED_CHECKOUT,
        reason="checkout session has neither bestie_id nor donation type",
    )


def classify(event_type: str, data_object: dict[str, Any]) -> Classification:
    """Map an event to the branch that reconciles it.

    Unknown event types are ignored rather than failed so new Stripe event
    types never block the endpoint.
    """
    if event_type in SUBSCRIPTION_LIFECYCLE_EVENTS:
        return Classification(route=Route.SUBSCRIPTION_LIFECYCLE)

    if event_type in CHECKOUT_COMPLETED_EVENTS:
        return classify_checkout(data_object)

    if event_type in INVOICE_PAID_EVENTS:
        if data_object.get("billing_reason") == SUBSCRIPTION_CREATE_REASON:
            return Classification(
                route=Route.IGNORED,
                reason="initial subscription invoice is handled by checkout.session.completed",
            )
        return Classification(route=Route.RECURRING_INVOICE)

    return Classification(route=Route.IGNORED, reason=f"unhandled event type {event_type}")
