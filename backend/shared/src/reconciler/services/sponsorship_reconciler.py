"""Sponsorship reconciliation from checkout, subscription and invoice events.

A recurring sponsorship is keyed by (Stripe subscription id, mode), a one-time
sponsorship by (payment intent id, mode). Creation writes the sponsorship
together with claims on that id and the checkout session id in one DynamoDB
transaction, so a replayed checkout event and a donation racing for the same
subscription both lose cleanly.
"""

import datetime as dt
import uuid
from decimal import Decimal
from typing import Any

from reconciler.models.enums import (
    ClaimKind,
    RecordType,
    SponsorshipStatus,
    StripeMode,
)
from reconciler.models.errors import DataIntegrityError, ErrorCode
from reconciler.models.records import Sponsorship
from reconciler.models.results import ReconcileResult
from reconciler.utils.conversions import (
    cents_to_dollars,
    parse_amount,
    session_email,
    stripe_id,
    timestamp_to_iso,
    utc_now_iso,
)
from reconciler.utils.logging import get_logger, log_reconcile_operation

from .dynamodb import SPONSORSHIPS_TABLE, DynamoDBService, get_dynamodb_service
from .notification_dispatcher import NotificationDispatcher
from .receipt_generator import ReceiptGenerator
from .stripe_service import StripeService, StripeServiceError, get_stripe_service

logger = get_logger(__name__)

ONE_TIME_SPONSORSHIP_DAYS = 30
TERMINAL_SUBSCRIPTION_STATUSES = frozenset({"canceled", "incomplete_expired"})
INTERVAL_FREQUENCIES = {"month": "monthly", "year": "yearly"}


def derive_subscription_status(
    subscription: dict[str, Any], deleted: bool = False
) -> tuple[SponsorshipStatus, str | None]:
    """Map a Stripe subscription to a sponsorship status and end date.

    Priority: canceled > paused > cancel_at_period_end > active. Only a
    cancellation (actual or scheduled) carries an end date.
    """
    stripe_status = subscription.get("status")

    if deleted or stripe_status in TERMINAL_SUBSCRIPTION_STATUSES:
        ended_at = (
            timestamp_to_iso(subscription.get("ended_at"))
            or timestamp_to_iso(subscription.get("canceled_at"))
            or utc_now_iso()
        )
        return SponsorshipStatus.CANCELLED, ended_at

    if stripe_status == "paused" or subscription.get("pause_collection"):
        return SponsorshipStatus.PAUSED, None

    if subscription.get("cancel_at_period_end"):
        ended_at = timestamp_to_iso(subscription.get("cancel_at")) or timestamp_to_iso(
            subscription.get("current_period_end")
        )
        return SponsorshipStatus.SCHEDULED_CANCEL, ended_at

    return SponsorshipStatus.ACTIVE, None


class SponsorshipReconciler:
    """Creates sponsorships and keeps their status in sync with Stripe."""

    def __init__(
        self,
        db: DynamoDBService | None = None,
        receipts: ReceiptGenerator | None = None,
        notifications: NotificationDispatcher | None = None,
        stripe_service: StripeService | None = None,
    ) -> None:
        self._db = db or get_dynamodb_service()
        self._receipts = receipts or ReceiptGenerator(self._db)
        self._notifications = notifications or NotificationDispatcher(self._db)
        self._stripe = stripe_service

    @property
    def stripe(self) -> StripeService:
        if self._stripe is None:
            self._stripe = get_stripe_service()
        return self._stripe

    # ------------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------------

    def _frequency(self, session: dict[str, Any], subscription_id: str | None, mode: StripeMode) -> str:
        metadata = session.get("metadata") or {}
        if metadata.get("frequency"):
            return str(metadata["frequency"])
        if session.get("mode") == "payment" or not subscription_id:
            return "one-time"
        try:
            interval = self.stripe.get_subscription_interval(subscription_id, mode)
        except StripeServiceError as e:
            logger.warning(
                "Could not read interval of %s, assuming monthly: %s", subscription_id, e
            )
            return "monthly"
        return INTERVAL_FREQUENCIES.get(interval or "month", "monthly")

    def handle_checkout(self, session: dict[str, Any], mode: StripeMode) -> ReconcileResult:
        """Create the sponsorship for a completed sponsorship checkout.

        Raises:
            DataIntegrityError: If the bestie reference or payer email is missing,
                the bestie does not exist, or the sponsorship cannot be written.
        """
        metadata = session.get("metadata") or {}
        session_id = session.get("id")
        sponsor_bestie_id = metadata.get("bestie_id")
        if not sponsor_bestie_id:
            raise DataIntegrityError(ErrorCode.MISSING_BENEFICIARY)

        email = session_email(session)
        if not email:
            raise DataIntegrityError(
                ErrorCode.MISSING_PAYER_EMAIL,
                f"No customer email in checkout session {session_id}",
            )

        bestie = self._db.get_sponsor_bestie(sponsor_bestie_id)
        if not bestie:
            raise DataIntegrityError(
                ErrorCode.BENEFICIARY_NOT_FOUND,
                f"Sponsor bestie {sponsor_bestie_id} not found",
            )

        subscription_id = stripe_id(session.get("subscription"))
        payment_intent_id = None if subscription_id else stripe_id(session.get("payment_intent"))
        if not (subscription_id or payment_intent_id) or not session_id:
            raise DataIntegrityError(
                ErrorCode.MALFORMED_EVENT,
                f"Checkout session {session_id} has no subscription or payment intent",
            )

        existing = self._find_existing(subscription_id, session_id, mode)
        if existing:
            return self._duplicate(existing["sponsorship_id"], existing, session, email, bestie, mode)

        if subscription_id and self._db.find_donation_by_subscription(subscription_id, mode):
            return self._conflict(subscription_id, session_id, mode, RecordType.DONATION)

        user_id = metadata.get("user_id") or None
        now = utc_now_iso()
        started_at = timestamp_to_iso(session.get("created")) or now
        frequency = self._frequency(session, subscription_id, mode)
        ended_at = None
        if frequency == "one-time":
            ended_at = (
                dt.datetime.fromisoformat(started_at) + dt.timedelta(days=ONE_TIME_SPONSORSHIP_DAYS)
            ).isoformat()

        sponsorship = Sponsorship(
            sponsorship_id=str(uuid.uuid4()),
            sponsor_id=user_id,
            sponsor_email=None if user_id else email,
            sponsor_bestie_id=sponsor_bestie_id,
            bestie_id=bestie.get("bestie_id"),
            amount=parse_amount(metadata.get("amount")) or cents_to_dollars(session.get("amount_total")),
            frequency=frequency,
            status=SponsorshipStatus.ACTIVE,
            started_at=started_at,
            ended_at=ended_at,
            stripe_subscription_id=subscription_id,
            stripe_payment_intent_id=payment_intent_id,
            stripe_customer_id=stripe_id(session.get("customer")),
            stripe_checkout_session_id=session_id,
            stripe_mode=mode,
            created_at=now,
            updated_at=now,
        )

        claims = self._claim_targets(subscription_id, payment_intent_id, session_id)
        written = self._db.transact_write(
            [
                self._db.put_if_absent(SPONSORSHIPS_TABLE, sponsorship.to_item(), "sponsorship_id"),
                *(
                    self._db.claim(
                        mode, kind, external_id,
                        RecordType.SPONSORSHIP, sponsorship.sponsorship_id, now,
                    )
                    for kind, external_id in claims
                ),
            ]
        )
        if not written:
            return self._resolve_lost_insert(claims, session, email, bestie, mode)

        log_reconcile_operation(
            logger,
            "sponsorship_created",
            record_type=RecordType.SPONSORSHIP.value,
            record_id=sponsorship.sponsorship_id,
            subscription_id=subscription_id,
            payment_intent_id=payment_intent_id,
            session_id=session_id,
            mode=mode.value,
            amount=sponsorship.amount,
        )

        result = ReconcileResult(
            record_type=RecordType.SPONSORSHIP,
            record_id=sponsorship.sponsorship_id,
        )
        self._issue_receipt(
            result,
            sponsorship_id=sponsorship.sponsorship_id,
            payer_email=email,
            user_id=user_id,
            bestie_name=bestie.get("bestie_name"),
            amount=sponsorship.amount,
            frequency=frequency,
            transaction_id=session_id,
            transaction_date=started_at,
            mode=mode,
        )
        return result

    @staticmethod
    def _claim_targets(
        subscription_id: str | None, payment_intent_id: str | None, session_id: str
    ) -> list[tuple[ClaimKind, str]]:
        if subscription_id:
            targets = [(ClaimKind.SUBSCRIPTION, subscription_id)]
        else:
            targets = [(ClaimKind.PAYMENT_INTENT, payment_intent_id)]
        targets.append((ClaimKind.CHECKOUT_SESSION, session_id))
        return targets

    def _find_existing(
        self, subscription_id: str | None, session_id: str, mode: StripeMode
    ) -> dict[str, Any] | None:
        """Sponsorship already created for this subscription or checkout session."""
        if subscription_id:
            existing = self._db.find_sponsorship_by_subscription(subscription_id, mode)
            if existing:
                return existing
        claim = self._db.get_claim(mode, ClaimKind.CHECKOUT_SESSION, session_id)
        if claim and claim["record_type"] == RecordType.SPONSORSHIP.value:
            return self._db.get_item(SPONSORSHIPS_TABLE, {"sponsorship_id": claim["record_id"]})
        return None

    def _duplicate(
        self,
        sponsorship_id: str,
        sponsorship: dict[str, Any] | None,
        session: dict[str, Any],
        email: str,
        bestie: dict[str, Any],
        mode: StripeMode,
    ) -> ReconcileResult:
        """Result for a checkout whose sponsorship already exists.

        The checkout receipt is requested again: if an earlier delivery wrote
        the sponsorship but failed on the receipt, this delivery issues it, and
        the transaction claim keeps it to one receipt otherwise.
        """
        session_id = session["id"]
        log_reconcile_operation(
            logger,
            "sponsorship_duplicate",
            record_type=RecordType.SPONSORSHIP.value,
            record_id=sponsorship_id,
            session_id=session_id,
            mode=mode.value,
        )
        result = ReconcileResult(
            record_type=RecordType.SPONSORSHIP,
            record_id=sponsorship_id,
            note="sponsorship already exists",
        )
        if sponsorship and sponsorship.get("stripe_checkout_session_id") == session_id:
            self._issue_receipt(
                result,
                sponsorship_id=sponsorship_id,
                payer_email=email,
                user_id=sponsorship.get("sponsor_id"),
                bestie_name=bestie.get("bestie_name"),
                amount=sponsorship["amount"],
                frequency=sponsorship.get("frequency", "monthly"),
                transaction_id=session_id,
                transaction_date=sponsorship["started_at"],
                mode=mode,
            )
        return result

    def _conflict(
        self, subscription_id: str, session_id: str | None, mode: StripeMode, holder: RecordType
    ) -> ReconcileResult:
        log_reconcile_operation(
            logger,
            "sponsorship_conflict",
            record_type=RecordType.SPONSORSHIP.value,
            subscription_id=subscription_id,
            session_id=session_id,
            mode=mode.value,
            warning=f"subscription already belongs to a {holder.value}",
        )
        return ReconcileResult.noop(f"subscription claimed by {holder.value}")

    def _resolve_lost_insert(
        self,
        claims: list[tuple[ClaimKind, str]],
        session: dict[str, Any],
        email: str,
        bestie: dict[str, Any],
        mode: StripeMode,
    ) -> ReconcileResult:
        """Explain a cancelled creation transaction from the claims it collided with."""
        for kind, external_id in claims:
            claim = self._db.get_claim(mode, kind, external_id)
            if not claim:
                continue
            if claim["record_type"] == RecordType.SPONSORSHIP.value:
                sponsorship = self._db.get_item(
                    SPONSORSHIPS_TABLE, {"sponsorship_id": claim["record_id"]}
                )
                return self._duplicate(claim["record_id"], sponsorship, session, email, bestie, mode)
            return self._conflict(
                external_id, session["id"], mode, RecordType(claim["record_type"])
            )

        raise DataIntegrityError(
            ErrorCode.SPONSORSHIP_INSERT_FAILED,
            f"Failed to create sponsorship for checkout session {session['id']}",
        )

    def _payer_name(self, user_id: str | None) -> str | None:
        if not user_id:
            return None
        profile = self._db.get_profile(user_id)
        return (profile or {}).get("display_name")

    def _issue_receipt(
        self,
        result: ReconcileResult,
        *,
        sponsorship_id: str,
        payer_email: str,
        user_id: str | None,
        bestie_name: str | None,
        amount: Decimal,
        frequency: str,
        transaction_id: str,
        transaction_date: str,
        mode: StripeMode,
    ) -> None:
        receipt = self._receipts.generate(
            payer_email=payer_email,
            payer_name=self._payer_name(user_id),
            user_id=user_id,
            sponsorship_id=sponsorship_id,
            bestie_name=bestie_name,
            amount=amount,
            frequency=frequency,
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
        """Sync a sponsorship's status with its Stripe subscription.

        Returns:
            The result, or None if no sponsorship uses this subscription.
        """
        subscription_id = subscription.get("id")
        if not subscription_id:
            raise DataIntegrityError(ErrorCode.MALFORMED_EVENT, "Subscription event without id")

        sponsorship = self._db.find_sponsorship_by_subscription(subscription_id, mode)
        if not sponsorship:
            return None

        status, ended_at = derive_subscription_status(subscription, deleted)
        set_parts = ["#status = :status", "updated_at = :now"]
        values: dict[str, Any] = {":status": status.value, ":now": utc_now_iso()}
        if ended_at:
            set_parts.append("ended_at = :ended_at")
            values[":ended_at"] = ended_at
            expression = "SET " + ", ".join(set_parts)
        else:
            expression = "SET " + ", ".join(set_parts) + " REMOVE ended_at"

        condition = None
        if status is not SponsorshipStatus.CANCELLED:
            # cancelled is terminal; a late "updated" event must not revive it
            condition = "#status <> :cancelled"
            values[":cancelled"] = SponsorshipStatus.CANCELLED.value

        updated = self._db.update_item(
            SPONSORSHIPS_TABLE,
            {"sponsorship_id": sponsorship["sponsorship_id"]},
            expression,
            values,
            {"#status": "status"},
            condition_expression=condition,
        )
        if updated is None:
            log_reconcile_operation(
                logger,
                "sponsorship_status_ignored",
                record_type=RecordType.SPONSORSHIP.value,
                record_id=sponsorship["sponsorship_id"],
                subscription_id=subscription_id,
                mode=mode.value,
                warning=f"sponsorship is cancelled, ignoring {status.value}",
            )
            return ReconcileResult(
                record_type=RecordType.SPONSORSHIP,
                record_id=sponsorship["sponsorship_id"],
                note="sponsorship already cancelled",
            )

        log_reconcile_operation(
            logger,
            "sponsorship_status_updated",
            record_type=RecordType.SPONSORSHIP.value,
            record_id=sponsorship["sponsorship_id"],
            subscription_id=subscription_id,
            mode=mode.value,
            status=status.value,
            ended_at=ended_at,
        )
        return ReconcileResult(
            record_type=RecordType.SPONSORSHIP,
            record_id=sponsorship["sponsorship_id"],
        )

    # ------------------------------------------------------------------
    # invoice.paid (renewals)
    # ------------------------------------------------------------------

    def handle_recurring_invoice(
        self, invoice: dict[str, Any], subscription_id: str, mode: StripeMode
    ) -> ReconcileResult | None:
        """Issue the receipt for a sponsorship renewal.

        Returns:
            The result, or None if no sponsorship uses this subscription.
        """
        sponsorship = self._db.find_sponsorship_by_subscription(subscription_id, mode)
        if not sponsorship:
            return None

        user_id = sponsorship.get("sponsor_id")
        email = invoice.get("customer_email") or sponsorship.get("sponsor_email")
        if not email and user_id:
            email = (self._db.get_profile(user_id) or {}).get("email")
        if not email:
            raise DataIntegrityError(
                ErrorCode.MISSING_PAYER_EMAIL,
                f"No payer email for invoice {invoice.get('id')}",
            )

        bestie = self._db.get_sponsor_bestie(sponsorship["sponsor_bestie_id"]) or {}
        result = ReconcileResult(
            record_type=RecordType.SPONSORSHIP,
            record_id=sponsorship["sponsorship_id"],
        )
        self._issue_receipt(
            result,
            sponsorship_id=sponsorship["sponsorship_id"],
            payer_email=email,
            user_id=user_id,
            bestie_name=bestie.get("bestie_name"),
            amount=cents_to_dollars(invoice.get("amount_paid")),
            frequency=sponsorship.get("frequency", "monthly"),
            transaction_id=invoice["id"],
            transaction_date=timestamp_to_iso(invoice.get("created")) or utc_now_iso(),
            mode=mode,
        )
        return result

