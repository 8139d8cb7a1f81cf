"""Unit tests for the receipt email outbox and its delivery."""

import datetime as dt
import json
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from reconciler.models.enums import StripeMode
from reconciler.models.records import Receipt
from reconciler.services.notification_dispatcher import (
    SENDING_LEASE_SECONDS,
    NotificationDispatcher,
)
from reconciler.services.ssm_service import SSMServiceError

ENDPOINT = "https://mail.example.org/send-sponsorship-receipt"


def _receipt(receipt_number: str = "RCP-20260101-1767225600000-abc123") -> Receipt:
    return Receipt(
        receipt_number=receipt_number,
        sponsor_email="a@x.com",
        sponsor_name="Ada",
        bestie_name="Sunny",
        amount=Decimal("25.00"),
        frequency="monthly",
        transaction_id="cs_1",
        transaction_date="2026-01-01T00:00:00+00:00",
        stripe_mode=StripeMode.TEST,
        tax_year=2026,
        created_at="2026-01-01T00:00:00+00:00",
    )


@pytest.fixture
def ssm() -> MagicMock:
    ssm = MagicMock()
    ssm.get_optional_parameter.return_value = "token-123"
    return ssm


@pytest.fixture
def requests_seen() -> list[httpx.Request]:
    return []


def _client(requests_seen: list[httpx.Request], status_code: int = 200) -> httpx.Client:
    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        return httpx.Response(status_code, json={"ok": status_code < 400})

    return httpx.Client(transport=httpx.MockTransport(handler))


def _outbox_row(table, notification_id: str) -> dict[str, Any]:
    return table("receipt-email-outbox").get_item(Key={"notification_id": notification_id})["Item"]


class TestEnqueue:
    def test_enqueue_writes_pending_row(self, db, table, ssm):
        dispatcher = NotificationDispatcher(db, ssm=ssm, endpoint=ENDPOINT)

        notification_id = dispatcher.enqueue(_receipt())

        row = _outbox_row(table, notification_id)
        assert row["status"] == "pending"
        assert row["attempts"] == 0
        assert row["payload"] == {
            "sponsorEmail": "a@x.com",
            "sponsorName": "Ada",
            "bestieName": "Sunny",
            "amount": Decimal("25.00"),
            "frequency": "monthly",
            "transactionId": "cs_1",
            "transactionDate": "2026-01-01T00:00:00+00:00",
            "stripeMode": "test",
        }


class TestDeliver:
    def test_successful_delivery(self, db, table, ssm, requests_seen):
        table("sponsorship-receipts").put_item(Item=_receipt().to_item())
        dispatcher = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen), endpoint=ENDPOINT
        )
        notification_id = dispatcher.enqueue(_receipt())

        assert dispatcher.deliver(notification_id)

        request = requests_seen[0]
        assert str(request.url) == ENDPOINT
        assert request.headers["Authorization"] == "Bearer token-123"
        body = json.loads(request.content)
        assert body["sponsorEmail"] == "a@x.com"
        assert body["amount"] == 25.0
        assert body["stripeMode"] == "test"

        row = _outbox_row(table, notification_id)
        assert row["status"] == "sent"
        assert row["attempts"] == 1
        receipt = table("sponsorship-receipts").get_item(
            Key={"receipt_number": _receipt().receipt_number}
        )["Item"]
        assert "sent_at" in receipt

    def test_sent_notification_is_not_sent_twice(self, db, ssm, requests_seen):
        dispatcher = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen), endpoint=ENDPOINT
        )
        notification_id = dispatcher.enqueue(_receipt())
        dispatcher.deliver(notification_id)

        assert not dispatcher.deliver(notification_id)
        assert len(requests_seen) == 1

    def test_failure_is_recorded_not_raised(self, db, table, ssm, requests_seen):
        dispatcher = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen, 502), endpoint=ENDPOINT
        )
        notification_id = dispatcher.enqueue(_receipt())

        assert not dispatcher.deliver(notification_id)

        row = _outbox_row(table, notification_id)
        assert row["status"] == "pending"
        assert row["attempts"] == 1
        assert "502" in row["last_error"]

    def test_gives_up_after_max_attempts(self, db, table, ssm, requests_seen):
        dispatcher = NotificationDispatcher(
            db,
            ssm=ssm,
            http_client=_client(requests_seen, 500),
            endpoint=ENDPOINT,
            max_attempts=2,
        )
        notification_id = dispatcher.enqueue(_receipt())

        dispatcher.deliver(notification_id)
        dispatcher.deliver(notification_id)

        row = _outbox_row(table, notification_id)
        assert row["status"] == "failed"
        assert row["attempts"] == 2
        assert not dispatcher.deliver(notification_id)
        assert len(requests_seen) == 2

    def test_token_lookup_failure_is_recorded(self, db, table, requests_seen):
        ssm = MagicMock()
        ssm.get_optional_parameter.side_effect = SSMServiceError("Access denied")
        dispatcher = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen), endpoint=ENDPOINT
        )
        notification_id = dispatcher.enqueue(_receipt())

        assert not dispatcher.deliver(notification_id)
        assert _outbox_row(table, notification_id)["last_error"] == "Access denied"
        assert requests_seen == []

    def test_missing_endpoint_leaves_row_pending(self, db, table, ssm):
        dispatcher = NotificationDispatcher(db, ssm=ssm)
        notification_id = dispatcher.enqueue(_receipt())

        assert not dispatcher.deliver(notification_id)

        row = _outbox_row(table, notification_id)
        assert row["status"] == "pending"
        assert row["attempts"] == 0

    def test_row_being_sent_by_another_worker_is_skipped(self, db, table, ssm, requests_seen):
        dispatcher = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen), endpoint=ENDPOINT
        )
        notification_id = dispatcher.enqueue(_receipt())
        table("receipt-email-outbox").update_item(
            Key={"notification_id": notification_id},
            UpdateExpression="SET #s = :sending, updated_at = :now",
            ExpressionAttributeNames={"#s": "status"},
            ExpressionAttributeValues={
                ":sending": "sending",
                ":now": dt.datetime.now(dt.UTC).isoformat(),
            },
        )

        assert not dispatcher.deliver(notification_id)
        assert requests_seen == []
        assert _outbox_row(table, notification_id)["status"] == "sending"

    def test_abandoned_sending_row_is_delivered(self, db, table, ssm, requests_seen):
        dispatcher = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen), endpoint=ENDPOINT
        )
        notification_id = dispatcher.enqueue(_receipt())
        long_ago = dt.datetime.now(dt.UTC) - dt.timedelta(seconds=SENDING_LEASE_SECONDS + 60)
        table("receipt-email-outbox").update_item(
            Key={"notification_id": notification_id},
            UpdateExpression="SET #s = :sending, updated_at = :then",
            ExpressionAttributeNames={"#s": "status"},
            ExpressionAttributeValues={":sending": "sending", ":then": long_ago.isoformat()},
        )

        assert dispatcher.deliver_pending() == 1
        assert len(requests_seen) == 1
        assert _outbox_row(table, notification_id)["status"] == "sent"

    def test_second_delivery_of_same_row_posts_once(self, db, table, ssm, requests_seen):
        dispatcher = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen), endpoint=ENDPOINT
        )
        notification_id = dispatcher.enqueue(_receipt())
        other_worker = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen), endpoint=ENDPOINT
        )
        original_post = dispatcher._post

        def post_while_other_worker_runs(payload):
            assert not other_worker.deliver(notification_id)
            original_post(payload)

        dispatcher._post = post_while_other_worker_runs

        assert dispatcher.deliver(notification_id)
        assert len(requests_seen) == 1
        assert _outbox_row(table, notification_id)["status"] == "sent"

    def test_unknown_notification(self, db, ssm):
        dispatcher = NotificationDispatcher(db, ssm=ssm, endpoint=ENDPOINT)

        assert not dispatcher.deliver("missing")


class TestDeliverPending:
    def test_redrives_pending_rows(self, db, table, ssm, requests_seen):
        dispatcher = NotificationDispatcher(
            db, ssm=ssm, http_client=_client(requests_seen), endpoint=ENDPOINT
        )
        first = dispatcher.enqueue(_receipt("RCP-1"))
        second = dispatcher.enqueue(_receipt("RCP-2"))

        assert dispatcher.deliver_pending() == 2
        assert _outbox_row(table, first)["status"] == "sent"
        assert _outbox_row(table, second)["status"] == "sent"
        assert dispatcher.deliver_pending() == 0
