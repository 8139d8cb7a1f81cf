"""Unit tests for sponsorship reconciliation against mocked DynamoDB."""

from decimal import Decimal
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest
from boto3.dynamodb.conditions import Key

from reconciler.models.enums import (
    ClaimKind,
    RecordType,
    SponsorshipStatus,
    StripeMode,
)
from reconciler.models.errors import DataIntegrityError, ErrorCode
from reconciler.services.notification_dispatcher import NotificationDispatcher
from reconciler.services.receipt_generator import ReceiptGenerator
from reconciler.services.sponsorship_reconciler import (
    SponsorshipReconciler,
    derive_subscription_status,
)
from reconciler.services.stripe_service import StripeServiceError

TEST = StripeMode.TEST


@pytest.fixture
def reconciler(db, stripe_lookup) -> SponsorshipReconciler:
    return SponsorshipReconciler(
        db,
        ReceiptGenerator(db),
        NotificationDispatcher(db, ssm=MagicMock()),
        stripe_lookup,
    )


def _all(table: Callable[[str], Any], name: str) -> list[dict[str, Any]]:
    return table(name).scan()["Items"]


# === Checkout ===


class TestHandleCheckout:
    def test_creates_sponsorship_receipt_and_notification(
        self, reconciler, bestie, make_session, table
    ):
        session = make_session(metadata={"bestie_id": "b1", "amount": "25"})

        result = reconciler.handle_checkout(session, TEST)

        sponsorships = _all(table, "sponsorships")
        assert len(sponsorships) == 1
        sponsorship = sponsorships[0]
        assert sponsorship["sponsorship_id"] == result.record_id
        assert sponsorship["status"] == "active"
        assert sponsorship["sponsor_email"] == "a@x.com"
        assert "sponsor_id" not in sponsorship
        assert sponsorship["bestie_id"] == "u1"
        assert sponsorship["sponsor_bestie_id"] == "b1"
        assert sponsorship["amount"] == Decimal("25.00")
        assert sponsorship["frequency"] == "monthly"
        assert sponsorship["stripe_subscription_id"] == "sub_123"
        assert sponsorship["stripe_mode"] == "test"

        receipts = _all(table, "sponsorship-receipts")
        assert len(receipts) == 1
        assert receipts[0]["receipt_number"] == result.receipt_number
        assert receipts[0]["bestie_name"] == "Sunny"
        assert receipts[0]["sponsorship_id"] == result.record_id
        assert receipts[0]["transaction_id"] == "cs_test_abc123"

        outbox = _all(table, "receipt-email-outbox")
        assert [row["notification_id"] for row in outbox] == result.notification_ids
        assert outbox[0]["status"] == "pending"
        assert outbox[0]["payload"]["sponsorEmail"] == "a@x.com"
        assert outbox[0]["payload"]["bestieName"] == "Sunny"

    def test_known_user_is_stored_by_id_only(self, reconciler, bestie, make_session, table):
        table("profiles").put_item(Item={"id": "user-9", "display_name": "Ada", "email": "a@x.com"})
        session = make_session(metadata={"bestie_id": "b1", "user_id": "user-9"})

        reconciler.handle_checkout(session, TEST)

        sponsorship = _all(table, "sponsorships")[0]
        assert sponsorship["sponsor_id"] == "user-9"
        assert "sponsor_email" not in sponsorship
        assert _all(table, "sponsorship-receipts")[0]["sponsor_name"] == "Ada"

    def test_amount_falls_back_to_amount_total(self, reconciler, bestie, make_session, table):
        reconciler.handle_checkout(
            make_session(metadata={"bestie_id": "b1"}, amount_total=1999), TEST
        )

        assert _all(table, "sponsorships")[0]["amount"] == Decimal("19.99")

    def test_replayed_checkout_is_a_noop(self, reconciler, bestie, make_session, table):
        session = make_session(metadata={"bestie_id": "b1"})
        first = reconciler.handle_checkout(session, TEST)

        second = reconciler.handle_checkout(session, TEST)

        assert second.record_id == first.record_id
        assert second.receipt_number is None
        assert len(_all(table, "sponsorships")) == 1
        assert len(_all(table, "sponsorship-receipts")) == 1

    def test_replay_issues_receipt_missing_from_first_delivery(
        self, reconciler, bestie, make_session, table
    ):
        session = make_session(metadata={"bestie_id": "b1"})
        first = reconciler.handle_checkout(session, TEST)
        # Leave the sponsorship without its receipt
        table("sponsorship-receipts").delete_item(Key={"receipt_number": first.receipt_number})
        table("stripe-claims").delete_item(Key={"claim_key": "test#transaction#cs_test_abc123"})

        second = reconciler.handle_checkout(session, TEST)

        assert second.record_id == first.record_id
        assert second.note == "sponsorship already exists"
        assert second.receipt_number is not None
        assert len(second.notification_ids) == 1
        receipts = _all(table, "sponsorship-receipts")
        assert len(receipts) == 1
        assert receipts[0]["sponsorship_id"] == first.record_id
        assert receipts[0]["transaction_id"] == "cs_test_abc123"
        assert receipts[0]["amount"] == Decimal("25")
        assert len(_all(table, "sponsorships")) == 1

    def test_same_subscription_in_other_mode_is_separate(
        self, reconciler, bestie, make_session, table
    ):
        session = make_session(metadata={"bestie_id": "b1"})
        reconciler.handle_checkout(session, StripeMode.TEST)
        reconciler.handle_checkout(session, StripeMode.LIVE)

        modes = sorted(row["stripe_mode"] for row in _all(table, "sponsorships"))
        assert modes == ["live", "test"]

    def test_lost_race_resolves_to_existing_sponsorship(
        self, reconciler, db, bestie, make_session, table
    ):
        """A concurrent delivery already claimed the subscription."""
        db.transact_write(
            [db.claim(TEST, ClaimKind.SUBSCRIPTION, "sub_123", RecordType.SPONSORSHIP, "sp_other", "now")]
        )

        result = reconciler.handle_checkout(make_session(metadata={"bestie_id": "b1"}), TEST)

        assert result.record_id == "sp_other"
        assert _all(table, "sponsorships") == []
        assert _all(table, "sponsorship-receipts") == []

    def test_subscription_owned_by_donation_is_a_conflict(
        self, reconciler, bestie, make_session, table
    ):
        table("donations").put_item(
            Item={
                "donation_id": "d1",
                "donor_email": "a@x.com",
                "amount": Decimal("10"),
                "frequency": "monthly",
                "status": "active",
                "stripe_subscription_id": "sub_123",
                "stripe_mode": "test",
            }
        )

        result = reconciler.handle_checkout(make_session(metadata={"bestie_id": "b1"}), TEST)

        assert result.record_id is None
        assert "donation" in result.note
        assert _all(table, "sponsorships") == []

    def test_missing_bestie_reference_fails(self, reconciler, make_session):
        with pytest.raises(DataIntegrityError) as exc_info:
            reconciler.handle_checkout(make_session(metadata={"type": "donation"}), TEST)

        assert exc_info.value.code is ErrorCode.MISSING_BENEFICIARY

    def test_unknown_bestie_fails(self, reconciler, db, make_session):
        with pytest.raises(DataIntegrityError) as exc_info:
            reconciler.handle_checkout(make_session(metadata={"bestie_id": "nope"}), TEST)

        assert exc_info.value.code is ErrorCode.BENEFICIARY_NOT_FOUND

    def test_missing_email_fails(self, reconciler, bestie, make_session):
        with pytest.raises(DataIntegrityError) as exc_info:
            reconciler.handle_checkout(make_session(metadata={"bestie_id": "b1"}, email=None), TEST)

        assert exc_info.value.code is ErrorCode.MISSING_PAYER_EMAIL


class TestFrequency:
    def test_metadata_frequency_wins(self, reconciler, bestie, make_session, table, stripe_lookup):
        reconciler.handle_checkout(
            make_session(metadata={"bestie_id": "b1", "frequency": "monthly"}), TEST
        )

        stripe_lookup.get_subscription_interval.assert_not_called()

    def test_yearly_interval_from_stripe(self, reconciler, bestie, make_session, table, stripe_lookup):
        stripe_lookup.get_subscription_interval.return_value = "year"

        reconciler.handle_checkout(make_session(metadata={"bestie_id": "b1"}), TEST)

        assert _all(table, "sponsorships")[0]["frequency"] == "yearly"

    def test_lookup_failure_assumes_monthly(
        self, reconciler, bestie, make_session, table, stripe_lookup
    ):
        stripe_lookup.get_subscription_interval.side_effect = StripeServiceError("down")

        reconciler.handle_checkout(make_session(metadata={"bestie_id": "b1"}), TEST)

        assert _all(table, "sponsorships")[0]["frequency"] == "monthly"

    def test_one_time_payment_ends_after_thirty_days(self, reconciler, bestie, make_session, table):
        session = make_session(
            mode="payment", metadata={"bestie_id": "b1"}, payment_intent="pi_1"
        )

        reconciler.handle_checkout(session, TEST)

        sponsorship = _all(table, "sponsorships")[0]
        assert sponsorship["frequency"] == "one-time"
        assert sponsorship["stripe_payment_intent_id"] == "pi_1"
        assert "stripe_subscription_id" not in sponsorship
        assert sponsorship["ended_at"].startswith("2026-01-31")

    def test_one_time_replay_is_a_noop(self, reconciler, bestie, make_session, table):
        session = make_session(
            mode="payment", metadata={"bestie_id": "b1"}, subscription=None, payment_intent="pi_1"
        )
        first = reconciler.handle_checkout(session, TEST)

        second = reconciler.handle_checkout(session, TEST)

        assert second.record_id == first.record_id
        assert second.receipt_number is None
        assert len(_all(table, "sponsorships")) == 1
        assert len(_all(table, "sponsorship-receipts")) == 1
        claim = table("stripe-claims").get_item(Key={"claim_key": "test#payment_intent#pi_1"})["Item"]
        assert claim["record_id"] == first.record_id


# === Subscription lifecycle ===


class TestDeriveSubscriptionStatus:
    def test_scheduled_cancel_uses_cancel_at(self, make_subscription):
        status, ended_at = derive_subscription_status(
            make_subscription(cancel_at_period_end=True, cancel_at=1772323200)
        )

        assert status is SponsorshipStatus.SCHEDULED_CANCEL
        assert ended_at.startswith("2026-03-01")

    def test_canceled_beats_paused(self, make_subscription):
        status, ended_at = derive_subscription_status(
            make_subscription(status="canceled", pause_collection={"behavior": "void"}, canceled_at=1772323200)
        )

        assert status is SponsorshipStatus.CANCELLED
        assert ended_at.startswith("2026-03-01")

    def test_paused_beats_scheduled_cancel(self, make_subscription):
        status, ended_at = derive_subscription_status(
            make_subscription(pause_collection={"behavior": "void"}, cancel_at_period_end=True)
        )

        assert status is SponsorshipStatus.PAUSED
        assert ended_at is None

    def test_deleted_event_is_cancelled(self, make_subscription):
        status, ended_at = derive_subscription_status(make_subscription(), deleted=True)

        assert status is SponsorshipStatus.CANCELLED
        assert ended_at

    def test_active(self, make_subscription):
        assert derive_subscription_status(make_subscription()) == (SponsorshipStatus.ACTIVE, None)


class TestHandleLifecycleChange:
    @pytest.fixture
    def sponsorship_id(self, reconciler, bestie, make_session) -> str:
        return reconciler.handle_checkout(make_session(metadata={"bestie_id": "b1"}), TEST).record_id

    def _sponsorship(self, table, sponsorship_id):
        return table("sponsorships").get_item(Key={"sponsorship_id": sponsorship_id})["Item"]

    def test_scheduled_cancel_then_resumed(self, reconciler, sponsorship_id, make_subscription, table):
        reconciler.handle_lifecycle_change(
            make_subscription(cancel_at_period_end=True, cancel_at=1772323200), TEST
        )
        sponsorship = self._sponsorship(table, sponsorship_id)
        assert sponsorship["status"] == "scheduled_cancel"
        assert sponsorship["ended_at"].startswith("2026-03-01")

        reconciler.handle_lifecycle_change(make_subscription(cancel_at_period_end=False), TEST)

        sponsorship = self._sponsorship(table, sponsorship_id)
        assert sponsorship["status"] == "active"
        assert "ended_at" not in sponsorship

    def test_cancelled_is_not_revived_by_late_update(
        self, reconciler, sponsorship_id, make_subscription, table
    ):
        reconciler.handle_lifecycle_change(make_subscription(status="canceled"), TEST, deleted=True)

        result = reconciler.handle_lifecycle_change(make_subscription(), TEST)

        assert result.note == "sponsorship already cancelled"
        assert self._sponsorship(table, sponsorship_id)["status"] == "cancelled"

    def test_unknown_subscription_returns_none(self, reconciler, db, make_subscription):
        assert reconciler.handle_lifecycle_change(make_subscription("sub_other"), TEST) is None

    def test_other_mode_is_not_touched(self, reconciler, sponsorship_id, make_subscription):
        assert (
            reconciler.handle_lifecycle_change(make_subscription(), StripeMode.LIVE) is None
        )


# === Renewals ===


class TestHandleRecurringInvoice:
    def test_renewal_issues_one_receipt(self, reconciler, bestie, make_session, make_invoice, table):
        created = reconciler.handle_checkout(make_session(metadata={"bestie_id": "b1"}), TEST)

        result = reconciler.handle_recurring_invoice(make_invoice(amount_paid=3000), "sub_123", TEST)

        assert result.record_id == created.record_id
        receipt = table("sponsorship-receipts").get_item(
            Key={"receipt_number": result.receipt_number}
        )["Item"]
        assert receipt["amount"] == Decimal("30.00")
        assert receipt["transaction_id"] == "in_123"
        assert receipt["tax_year"] == 2026
        assert receipt["bestie_name"] == "Sunny"

    def test_redelivered_invoice_does_not_duplicate_receipt(
        self, reconciler, bestie, make_session, make_invoice, table
    ):
        reconciler.handle_checkout(make_session(metadata={"bestie_id": "b1"}), TEST)
        reconciler.handle_recurring_invoice(make_invoice(), "sub_123", TEST)

        again = reconciler.handle_recurring_invoice(make_invoice(), "sub_123", TEST)

        assert again.receipt_number is None
        claims = table("stripe-claims").query(
            KeyConditionExpression=Key("claim_key").eq("test#transaction#in_123")
        )["Items"]
        assert len(claims) == 1
        assert len(_all(table, "sponsorship-receipts")) == 2  # checkout + one renewal

    def test_email_falls_back_to_profile(self, reconciler, bestie, make_session, make_invoice, table):
        table("profiles").put_item(Item={"id": "user-9", "email": "profile@x.com"})
        reconciler.handle_checkout(
            make_session(metadata={"bestie_id": "b1", "user_id": "user-9"}), TEST
        )

        result = reconciler.handle_recurring_invoice(
            make_invoice(customer_email=None), "sub_123", TEST
        )

        receipt = table("sponsorship-receipts").get_item(
            Key={"receipt_number": result.receipt_number}
        )["Item"]
        assert receipt["sponsor_email"] == "profile@x.com"

    def test_unknown_subscription_returns_none(self, reconciler, db, make_invoice):
        assert reconciler.handle_recurring_invoice(make_invoice(), "sub_none", TEST) is None
