"""Pytest configuration and fixtures for the giving webhooks backend tests.

This module provides reusable fixtures for testing:
- DynamoDB and SSM mocking with moto
- Reference data (sponsor besties, profiles)
- Stripe event builders for checkout sessions, subscriptions and invoices
"""

import os
import time
from typing import Any, Callable, Generator
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ["AWS_DEFAULT_REGION"] = "eu-west-1"
os.environ["ENVIRONMENT"] = "dev"
os.environ["DYNAMODB_TABLE_PREFIX"] = "test-giving"
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

TABLE_PREFIX = "test-giving"
LIVE_WEBHOOK_SECRET = "whsec_live_secret_for_testing"
TEST_WEBHOOK_SECRET = "whsec_test_secret_for_testing"

BESTIE_ROW = {
    "id": "b1",
    "bestie_id": "u1",
    "bestie_name": "Sunny",
}


# === Service Reset ===


@pytest.fixture(autouse=True)
def reset_services(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Reset service singletons before and after each test.

    This ensures tests using mock_aws get fresh boto3 clients inside the
    mock context rather than reusing a singleton from a previous test.
    """
    from reconciler.services.dynamodb import reset_dynamodb_service
    from reconciler.services.ssm_service import SSMService, get_ssm_service
    from reconciler.services.stripe_service import get_stripe_service

    monkeypatch.delenv("RECEIPT_EMAIL_URL", raising=False)

    def _reset() -> None:
        reset_dynamodb_service()
        get_stripe_service.cache_clear()
        get_ssm_service.cache_clear()
        SSMService.reset()

    _reset()
    yield
    _reset()


# === AWS Fixtures ===


@pytest.fixture
def aws() -> Generator[None, None, None]:
    """Mock AWS with every reconciler table created."""
    from reconciler.services.dynamodb_schema import create_tables

    with mock_aws():
        create_tables(boto3.client("dynamodb", region_name="eu-west-1"), TABLE_PREFIX)
        yield


@pytest.fixture
def db(aws: None) -> Any:
    """DynamoDBService bound to the mocked tables."""
    from reconciler.services.dynamodb import get_dynamodb_service

    return get_dynamodb_service()


@pytest.fixture
def table(aws: None) -> Callable[[str], Any]:
    """Return a boto3 Table resource for an unprefixed table name."""
    resource = boto3.resource("dynamodb", region_name="eu-west-1")

    def _table(name: str) -> Any:
        return resource.Table(f"{TABLE_PREFIX}-{name}")

    return _table


@pytest.fixture
def webhook_secrets(aws: None) -> dict[str, str]:
    """Store both modes' webhook secrets in (mocked) SSM."""
    ssm = boto3.client("ssm", region_name="eu-west-1")
    secrets = {"live": LIVE_WEBHOOK_SECRET, "test": TEST_WEBHOOK_SECRET}
    for mode, secret in secrets.items():
        ssm.put_parameter(
            Name=f"/giving/dev/stripe/{mode}/webhook_secret",
            Value=secret,
            Type="SecureString",
        )
    return secrets


@pytest.fixture
def bestie(table: Callable[[str], Any]) -> dict[str, Any]:
    """Sponsor bestie b1 pointing at beneficiary u1."""
    table("sponsor-besties").put_item(Item=BESTIE_ROW)
    return BESTIE_ROW


@pytest.fixture
def stripe_lookup() -> MagicMock:
    """StripeService stand-in for subscription interval lookups."""
    service = MagicMock()
    service.get_subscription_interval.return_value = "month"
    return service


# === Stripe Event Builders ===


@pytest.fixture
def make_event() -> Callable[..., dict[str, Any]]:
    """Wrap a data object in a Stripe event envelope."""

    def _make(
        event_type: str,
        data_object: dict[str, Any],
        event_id: str = "evt_1ABC123DEF456",
        livemode: bool = False,
    ) -> dict[str, Any]:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "livemode": livemode,
            "created": int(time.time()),
            "data": {"object": data_object},
        }

    return _make


@pytest.fixture
def make_session() -> Callable[..., dict[str, Any]]:
    """Build a completed checkout session."""

    def _make(
        session_id: str = "cs_test_abc123",
        mode: str = "subscription",
        metadata: dict[str, Any] | None = None,
        amount_total: int = 2500,
        email: str | None = "a@x.com",
        subscription: str | None = "sub_123",
        payment_intent: str | None = None,
        created: int = 1767225600,  # 2026-01-01 00:00:00 UTC
        payment_status: str = "paid",
    ) -> dict[str, Any]:
        return {
            "id": session_id,
            "object": "checkout.session",
            "mode": mode,
            "payment_status": payment_status,
            "amount_total": amount_total,
            "currency": "usd",
            "customer": "cus_123",
            "customer_details": {"email": email} if email else {},
            "subscription": subscription if mode == "subscription" else None,
            "payment_intent": payment_intent,
            "metadata": metadata or {},
            "created": created,
        }

    return _make


@pytest.fixture
def make_subscription() -> Callable[..., dict[str, Any]]:
    """Build a Stripe subscription object."""

    def _make(
        subscription_id: str = "sub_123",
        status: str = "active",
        **fields: Any,
    ) -> dict[str, Any]:
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "status": status,
            "customer": "cus_123",
            "cancel_at_period_end": False,
            "cancel_at": None,
            "canceled_at": None,
            "ended_at": None,
            "pause_collection": None,
            "current_period_end": 1769904000,
        }
        subscription.update(fields)
        return subscription

    return _make


@pytest.fixture
def make_invoice() -> Callable[..., dict[str, Any]]:
    """Build a paid Stripe invoice."""

    def _make(
        invoice_id: str = "in_123",
        subscription: str | None = "sub_123",
        billing_reason: str = "subscription_cycle",
        amount_paid: int = 2500,
        created: int = 1769904000,  # 2026-02-01 00:00:00 UTC
        customer_email: str | None = "a@x.com",
    ) -> dict[str, Any]:
        return {
            "id": invoice_id,
            "object": "invoice",
            "subscription": subscription,
            "billing_reason": billing_reason,
            "amount_paid": amount_paid,
            "created": created,
            "customer": "cus_123",
            "customer_email": customer_email,
        }

    return _make
