"""Donation reconciliation from checkout, subscription and invoice events.

The checkout-session creator normally writes a ``pending`` donation before the
payer reaches Stripe; this reconciler moves it to ``completed`` (one-time) or
``active`` (monthly). When no pending row exists the donation is created here.
Either way the checkout session id (and the subscription id for monthly
donations) is claimed in the same transaction as the write.
"""

import uuid
from typing import Any

from reconciler.models.enums import (
    ClaimKind,
    DonationFrequency,
    DonationStatus,
    RecordType,
    SponsorshipStatus,
    StripeMode,
)
from reconciler.models.errors import DataIntegrityError, ErrorCode
from reconciler.models.records import Donation
from reconciler.models.results import ReconcileResult
from reconciler.utils.conversions import (
    cents_to_dollars,
    session_email,
    stripe_id,
    timestamp_to_iso,
    utc_now_iso,
)
from reconciler.utils.logging import get_logger, log_reconcile_operation

from .dynamodb import DONATIONS_TABLE, DynamoDBService, get_dynamodb_service
from .notification_dispatcher import NotificationDispatcher
from .receipt_generator import ReceiptGenerator
from .sponsorship_reconciler import derive_subscription_status

logger = get_logger(__name__)

# Subscription status -> donation status. A scheduled cancellation keeps the
# donation active (with ended_at) so renewals before the end still get receipts.
_LIFECYCLE_STATUS = {
    SponsorshipStatus.ACTIVE: DonationStatus.ACTIVE,
    SponsorshipStatus.SCHEDULED_CANCEL: DonationStatus.ACTIVE,
    SponsorshipStatus.PAUSED: DonationStatus.PAUSED,
    SponsorshipStatus.CANCELLED: DonationStatus.CANCELLED,
}


class DonationReconciler:
    """Completes, creates and tracks general donations."""

    def __init__(
        self,
        db: DynamoDBService | None = None,
        receipts: ReceiptGenerator | None = None,
        notifications: NotificationDispatcher | None = None,
    ) -> None:
        self._db = db or get_dynamodb_service()
        self._receipts = receipts or ReceiptGenerator(self._db)
        self._notifications = notifications or NotificationDispatcher(self._db)

    # ------------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------------

    def handle_checkout(self, session: dict[str, Any], mode: StripeMode) -> ReconcileResult:
        """Complete (or create) the donation for a donation checkout.

        Raises:
            DataIntegrityError: If the payer email is missing or the donation
                cannot be written.
        """
        session_id = session.get("id")
        email = session_email(session)
        if not email:
            raise DataIntegrityError(
                ErrorCode.MISSING_PAYER_EMAIL,
                f"No customer email in checkout session {session_id}",
            )
        if not session_id:
            raise DataIntegrityError(ErrorCode.MALFORMED_EVENT, "Checkout session without id")

        recurring = session.get("mode") == "subscription"
        subscription_id = stripe_id(session.get("subscription")) if recurring else None
        if recurring and not subscription_id:
            raise DataIntegrityError(
                ErrorCode.MALFORMED_EVENT,
                f"Subscription checkout {session_id} has no subscription id",
            )

        if subscription_id and self._db.find_sponsorship_by_subscription(subscription_id, mode):
            return self._conflict(subscription_id, session_id, mode)

        existing = self._db.find_donation_by_checkout_session(session_id, mode)
        if existing:
            return self._complete_pending(existing, session, email, subscription_id, mode)
        return self._create(session, email, subscription_id, mode)

    @staticmethod
    def _status_fields(subscription_id: str | None) -> tuple[DonationStatus, DonationFrequency]:
        if subscription_id:
            return DonationStatus.ACTIVE, DonationFrequency.MONTHLY
        return DonationStatus.COMPLETED, DonationFrequency.ONE_TIME

    def _complete_pending(
        self,
        donation: dict[str, Any],
        session: dict[str, Any],
        email: str,
        subscription_id: str | None,
        mode: StripeMode,
    ) -> ReconcileResult:
        donation_id = donation["donation_id"]
        session_id = session["id"]

        if donation.get("status") != DonationStatus.PENDING.value:
            return self._duplicate(donation, session, email, mode)

        status, frequency = self._status_fields(subscription_id)
        now = utc_now_iso()
        amount_charged = cents_to_dollars(session.get("amount_total"))

        set_parts = [
            "#status = :status",
            "amount_charged = :charged",
            "updated_at = :now",
            "started_at = if_not_exists(started_at, :started)",
        ]
        values: dict[str, Any] = {
            ":status": status.value,
            ":charged": amount_charged,
            ":now": now,
            ":started": timestamp_to_iso(session.get("created")) or now,
            ":pending": DonationStatus.PENDING.value,
        }
        customer_id = stripe_id(session.get("customer"))
        if customer_id:
            set_parts.append("stripe_customer_id = :customer")
            values[":customer"] = customer_id
        if subscription_id:
            set_parts.append("stripe_subscription_id = :subscription")
            values[":subscription"] = subscription_id
        else:
            payment_intent_id = stripe_id(session.get("payment_intent"))
            if payment_intent_id:
                set_parts.append("stripe_payment_intent_id = :pi")
                values[":pi"] = payment_intent_id

        items = [
            self._db.update_in_transaction(
                DONATIONS_TABLE,
                {"donation_id": donation_id},
                "SET " + ", ".join(set_parts),
                values,
                {"#status": "status"},
                condition_expression="#status = :pending",
            ),
            *self._claims(mode, session_id, subscription_id, donation_id, now),
        ]
        if not self._db.transact_write(items):
            return self._resolve_lost_write(donation_id, session, email, subscription_id, mode)

        log_reconcile_operation(
            logger,
            "donation_completed",
            record_type=RecordType.DONATION.value,
            record_id=donation_id,
            session_id=session_id,
            subscription_id=subscription_id,
            mode=mode.value,
            status=status.value,
        )

        result = ReconcileResult(record_type=RecordType.DONATION, record_id=donation_id)
        self._issue_receipt(
            result,
            payer_email=self._resolve_email(donation, email),
            user_id=donation.get("donor_id"),
            amount=amount_charged,
            frequency=frequency,
            transaction_id=session_id,
            transaction_date=timestamp_to_iso(session.get("created")) or now,
            mode=mode,
        )
        return result

    def _create(
        self,
        session: dict[str, Any],
        email: str,
        subscription_id: str | None,
        mode: StripeMode,
    ) -> ReconcileResult:
        session_id = session["id"]
        metadata = session.get("metadata") or {}
        status, frequency = self._status_fields(subscription_id)
        now = utc_now_iso()
        started_at = timestamp_to_iso(session.get("created")) or now
        amount = cents_to_dollars(session.get("amount_total"))

        # Donor is either a known user or a bare email, never both
        donor_id = metadata.get("user_id") or metadata.get("donor_id") or None
        donation = Donation(
            donation_id=str(uuid.uuid4()),
            donor_id=donor_id,
            donor_email=None if donor_id else email,
            amount=amount,
            amount_charged=amount,
            currency=session.get("currency") or "usd",
            frequency=frequency,
            status=status,
            stripe_checkout_session_id=session_id,
            stripe_subscription_id=subscription_id,
            stripe_payment_intent_id=None if subscription_id else stripe_id(session.get("payment_intent")),
            stripe_customer_id=stripe_id(session.get("customer")),
            stripe_mode=mode,
            started_at=started_at,
            created_at=now,
            updated_at=now,
        )

        items = [
            self._db.put_if_absent(DONATIONS_TABLE, donation.to_item(), "donation_id"),
            *self._claims(mode, session_id, subscription_id, donation.donation_id, now),
        ]
        if not self._db.transact_write(items):
            return self._resolve_lost_write(None, session, email, subscription_id, mode)

        log_reconcile_operation(
            logger,
            "donation_created",
            record_type=RecordType.DONATION.value,
            record_id=donation.donation_id,
            session_id=session_id,
            subscription_id=subscription_id,
            mode=mode.value,
            status=status.value,
            fallback=True,
        )

        result = ReconcileResult(record_type=RecordType.DONATION, record_id=donation.donation_id)
        self._issue_receipt(
            result,
            payer_email=email,
            user_id=donor_id,
            amount=amount,
            frequency=frequency,
            transaction_id=session_id,
            transaction_date=started_at,
            mode=mode,
        )
        return result

    def _claims(
        self,
        mode: StripeMode,
        session_id: str,
        subscription_id: str | None,
        donation_id: str,
        now: str,
    ) -> list[dict[str, Any]]:
        claims = [
            self._db.claim(
                mode, ClaimKind.CHECKOUT_SESSION, session_id, RecordType.DONATION, donation_id, now
            )
        ]
        if subscription_id:
            claims.append(
                self._db.claim(
                    mode, ClaimKind.SUBSCRIPTION, subscription_id, RecordType.DONATION, donation_id, now
                )
            )
        return claims

    def _resolve_lost_write(
        self,
        donation_id: str | None,
        session: dict[str, Any],
        email: str,
        subscription_id: str | None,
        mode: StripeMode,
    ) -> ReconcileResult:
        """Explain a cancelled donation transaction."""
        session_id = session["id"]
        if subscription_id:
            claim = self._db.get_claim(mode, ClaimKind.SUBSCRIPTION, subscription_id)
            if claim and claim["record_type"] != RecordType.DONATION.value:
                return self._conflict(subscription_id, session_id, mode)

        claim = self._db.get_claim(mode, ClaimKind.CHECKOUT_SESSION, session_id)
        if claim and claim["record_type"] == RecordType.DONATION.value:
            current = self._db.get_item(DONATIONS_TABLE, {"donation_id": claim["record_id"]})
            return self._duplicate(
                current or {"donation_id": claim["record_id"]}, session, email, mode
            )

        if donation_id:
            current = self._db.get_item(DONATIONS_TABLE, {"donation_id": donation_id})
            if current and current.get("status") != DonationStatus.PENDING.value:
                return self._duplicate(current, session, email, mode)

        raise DataIntegrityError(
            ErrorCode.DONATION_WRITE_FAILED,
            f"Failed to write donation for checkout session {session_id}",
        )

    def _duplicate(
        self,
        donation: dict[str, Any],
        session: dict[str, Any],
        email: str,
        mode: StripeMode,
    ) -> ReconcileResult:
        """Result for a checkout whose donation is already past pending.

        The checkout receipt is requested again so that a receipt lost to a
        failure on an earlier delivery is issued now; the transaction claim
        makes this a no-op when the receipt exists.
        """
        donation_id = donation["donation_id"]
        session_id = session["id"]
        log_reconcile_operation(
            logger,
            "donation_duplicate",
            record_type=RecordType.DONATION.value,
            record_id=donation_id,
            session_id=session_id,
            mode=mode.value,
        )
        result = ReconcileResult(
            record_type=RecordType.DONATION,
            record_id=donation_id,
            note="donation already processed",
        )
        if (
            donation.get("stripe_checkout_session_id") == session_id
            and donation.get("status") not in (None, DonationStatus.PENDING.value)
        ):
            subscription_id = donation.get("stripe_subscription_id")
            _, frequency = self._status_fields(subscription_id)
            self._issue_receipt(
                result,
                payer_email=self._resolve_email(donation, email),
                user_id=donation.get("donor_id"),
                amount=donation.get("amount_charged") or donation["amount"],
                frequency=frequency,
                transaction_id=session_id,
                transaction_date=timestamp_to_iso(session.get("created"))
                or donation.get("started_at")
                or utc_now_iso(),
                mode=mode,
            )
        return result

    def _conflict(self, subscription_id: str, session_id: str, mode: StripeMode) -> ReconcileResult:
        log_reconcile_operation(
            logger,
            "donation_conflict",
            record_type=RecordType.DONATION.value,
            subscription_id=subscription_id,
            session_id=session_id,
            mode=mode.value,
            warning="subscription already belongs to a sponsorship",
        )
        return ReconcileResult.noop("subscription claimed by sponsorship")

    def _resolve_email(self, donation: dict[str, Any], session_email_value: str) -> str:
        """Donor email for the receipt: stored email, then profile, then session."""
        if donation.get("donor_email"):
            return donation["donor_email"]
        donor_id = donation.get("donor_id")
        if donor_id:
            profile_email = (self._db.get_profile(donor_id) or {}).get("email")
            if profile_email:
                return profile_email
        return session_email_value

    def _issue_receipt(
        self,
        result: ReconcileResult,
        *,
        payer_email: str,
        user_id: str | None,
        amount: Any,
        frequency: DonationFrequency,
        transaction_id: str,
        transaction_date: str,
        mode: StripeMode,
    ) -> None:
        payer_name = None
        if user_id:
            payer_name = (self._db.get_profile(user_id) or {}).get("display_name")
        receipt = self._receipts.generate(
            payer_email=payer_email,
            payer_name=payer_name,
            user_id=user_id,
            amount=amount,
            frequency=frequency.value,
            transaction_id=transaction_id,
            transaction_date=transaction_date,
            mode=mode,
        )
        if receipt is None:
            return
        result.receipt_number = receipt.receipt_number
        notification_id = self._notifications.enqueue(receipt)
        if notification_id:
            result.notification_ids.append(notification_id)

    # ------------------------------------------------------------------
    # customer.subscription.updated / deleted
    # ------------------------------------------------------------------

    def handle_lifecycle_change(
        self, subscription: dict[str, Any], mode: StripeMode, deleted: bool = False
    ) -> ReconcileResult | None:
        """Mirror a subscription change onto its monthly donation.

        Returns:
            The result, or None if no donation uses this subscription.
        """
        subscription_id = subscription.get("id")
        if not subscription_id:
            raise DataIntegrityError(ErrorCode.MALFORMED_EVENT, "Subscription event without id")

        donation = self._db.find_donation_by_subscription(subscription_id, mode)
        if not donation:
            return None

        sponsorship_status, ended_at = derive_subscription_status(subscription, deleted)
        status = _LIFECYCLE_STATUS[sponsorship_status]
        values: dict[str, Any] = {":status": status.value, ":now": utc_now_iso()}
        expression = "SET #status = :status, updated_at = :now"
        if ended_at:
            expression += ", ended_at = :ended_at"
            values[":ended_at"] = ended_at
        else:
            expression += " REMOVE ended_at"

        condition = None
        if status is not DonationStatus.CANCELLED:
            condition = "#status <> :cancelled"
            values[":cancelled"] = DonationStatus.CANCELLED.value

        updated = self._db.update_item(
            DONATIONS_TABLE,
            {"donation_id": donation["donation_id"]},
            expression,
            values,
            {"#status": "status"},
            condition_expression=condition,
        )
        log_reconcile_operation(
            logger,
            "donation_status_updated" if updated is not None else "donation_status_ignored",
            record_type=RecordType.DONATION.value,
            record_id=donation["donation_id"],
            subscription_id=subscription_id,
            mode=mode.value,
            status=status.value,
            warning=None if updated is not None else "donation is cancelled",
        )
        return ReconcileResult(record_type=RecordType.DONATION, record_id=donation["donation_id"])

    # ------------------------------------------------------------------
    # invoice.paid (renewals)
    # ------------------------------------------------------------------

    def handle_recurring_invoice(
        self, invoice: dict[str, Any], subscription_id: str, mode: StripeMode
    ) -> ReconcileResult | None:
        """Issue the receipt for a monthly donation renewal.

        Returns:
            The result, or None if no donation uses this subscription.
        """
        donation = self._db.find_donation_by_subscription(subscription_id, mode)
        if not donation:
            return None

        donation_id = donation["donation_id"]
        if donation.get("status") != DonationStatus.ACTIVE.value:
            log_reconcile_operation(
                logger,
                "donation_renewal_skipped",
                record_type=RecordType.DONATION.value,
                record_id=donation_id,
                subscription_id=subscription_id,
                mode=mode.value,
                warning=f"donation status is {donation.get('status')}, no receipt",
            )
            return ReconcileResult(
                record_type=RecordType.DONATION,
                record_id=donation_id,
                note="donation not active",
            )

        email = self._resolve_email(donation, invoice.get("customer_email") or "")
        if not email:
            raise DataIntegrityError(
                ErrorCode.MISSING_PAYER_EMAIL,
                f"No payer email for invoice {invoice.get('id')}",
            )

        result = ReconcileResult(record_type=RecordType.DONATION, record_id=donation_id)
        self._issue_receipt(
            result,
            payer_email=email,
            user_id=donation.get("donor_id"),
            amount=cents_to_dollars(invoice.get("amount_paid")),
            frequency=DonationFrequency.MONTHLY,
            transaction_id=invoice["id"],
            transaction_date=timestamp_to_iso(invoice.get("created")) or utc_now_iso(),
            mode=mode,
        )
        return result
