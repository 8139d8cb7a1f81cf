"""Stripe webhook verification with separate test and live credentials.

One endpoint receives events from both Stripe modes. The mode of an event is
decided by which signing secret verifies it, never by anything the caller
sends. Credentials come from SSM Parameter Store:

    /giving/{environment}/stripe/{mode}/webhook_secret
    /giving/{environment}/stripe/{mode}/secret_key
"""

import json
import logging
import os
from decimal import Decimal
from functools import lru_cache
from typing import Any

import stripe
from pydantic import BaseModel
from stripe import StripeClient

from reconciler.models.enums import StripeMode
from reconciler.models.errors import (
    ConfigurationError,
    DataIntegrityError,
    ErrorCode,
    SignatureError,
)

from .ssm_service import SSMServiceError, get_ssm_service

logger = logging.getLogger(__name__)

SIGNATURE_TOLERANCE_SECONDS = stripe.Webhook.DEFAULT_TOLERANCE


class StripeServiceError(Exception):
    """Raised when a Stripe API call fails."""

    def __init__(self, message: str, stripe_error_code: str | None = None) -> None:
        super().__init__(message)
        self.stripe_error_code = stripe_error_code


class VerifiedEvent(BaseModel):
    """A Stripe event whose signature verified, and the mode it verified for."""

    event: dict[str, Any]
    mode: StripeMode

    @property
    def event_id(self) -> str:
        return self.event["id"]

    @property
    def event_type(self) -> str:
        return self.event["type"]

    @property
    def data_object(self) -> dict[str, Any]:
        return self.event.get("data", {}).get("object", {}) or {}


class StripeService:
    """Service for Stripe webhook verification and API lookups.

    Usage:
        stripe_svc = get_stripe_service()
        verified = stripe_svc.verify_webhook_signature(payload, signature)
        verified.mode  # StripeMode.LIVE or StripeMode.TEST
    """

    def __init__(self, environment: str | None = None) -> None:
        """Initialize Stripe service.

        Args:
            environment: Environment name (dev, prod). Defaults to ENVIRONMENT env var.
        """
        self._environment = environment or os.environ.get("ENVIRONMENT", "dev")
        self._ssm = get_ssm_service()
        self._clients: dict[StripeMode, StripeClient] = {}

    def _parameter(self, mode: StripeMode, name: str) -> str:
        return f"/giving/{self._environment}/stripe/{mode.value}/{name}"

    def _get_webhook_secret(self, mode: StripeMode) -> str | None:
        """Get a mode's webhook signing secret, or None if it is not configured."""
        try:
            return self._ssm.get_optional_parameter(self._parameter(mode, "webhook_secret"))
        except SSMServiceError as e:
            raise ConfigurationError(
                ErrorCode.NO_WEBHOOK_SECRETS, f"Failed to load webhook secret: {e}"
            ) from e

    def get_client(self, mode: StripeMode) -> StripeClient:
        """Get or create the Stripe client for a mode (lazy initialization).

        Raises:
            StripeServiceError: If the API key cannot be retrieved.
        """
        if mode not in self._clients:
            try:
                secret_key = self._ssm.get_parameter(self._parameter(mode, "secret_key"))
            except SSMServiceError as e:
                raise StripeServiceError(f"Failed to initialize Stripe client: {e}") from e
            self._clients[mode] = StripeClient(secret_key)
            logger.info("Stripe client initialized for %s mode", mode.value)
        return self._clients[mode]

    @staticmethod
    def candidate_modes(payload: bytes) -> list[StripeMode]:
        """Order in which signing secrets are tried.

        The ``livemode`` flag in the unverified body only picks which secret is
        tried first. Both secrets are always tried before rejecting.
        """
        if b'"livemode": false' in payload or b'"livemode":false' in payload:
            return [StripeMode.TEST, StripeMode.LIVE]
        return [StripeMode.LIVE, StripeMode.TEST]

    def verify_webhook_signature(self, payload: bytes, signature: str) -> VerifiedEvent:
        """Verify a webhook signature against both modes and parse the event.

        Args:
            payload: Raw request body bytes, exactly as received.
            signature: Stripe-Signature header value.

        Returns:
            The parsed event and the mode whose secret verified it.

        Raises:
            SignatureError: If no configured secret verifies the payload.
            ConfigurationError: If no webhook secret is configured at all.
            DataIntegrityError: If the verified body is not a Stripe event.
        """
        if not signature:
            raise SignatureError(ErrorCode.MISSING_SIGNATURE)

        body = payload.decode("utf-8")
        configured = 0

        for mode in self.candidate_modes(payload):
            secret = self._get_webhook_secret(mode)
            if not secret:
                continue
            configured += 1
            try:
                stripe.WebhookSignature.verify_header(
                    body, signature, secret, SIGNATURE_TOLERANCE_SECONDS
                )
            except stripe.SignatureVerificationError as e:
                logger.info("Webhook signature did not verify for %s mode: %s", mode.value, e)
                continue

            logger.info("Webhook signature verified for %s mode", mode.value)
            return VerifiedEvent(event=self._parse_event(body, mode), mode=mode)

        if configured == 0:
            raise ConfigurationError(ErrorCode.NO_WEBHOOK_SECRETS)

        logger.warning("Invalid webhook signature for all configured modes")
        raise SignatureError(ErrorCode.INVALID_SIGNATURE)

    @staticmethod
    def _parse_event(body: str, mode: StripeMode) -> dict[str, Any]:
        # Floats become Decimal so the raw event can be stored in DynamoDB
        try:
            event = json.loads(body, parse_float=Decimal)
        except json.JSONDecodeError as e:
            raise DataIntegrityError(ErrorCode.MALFORMED_EVENT, f"Invalid JSON body: {e}") from e

        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise DataIntegrityError(ErrorCode.MALFORMED_EVENT)

        livemode = event.get("livemode")
        if livemode is not None and bool(livemode) != (mode is StripeMode.LIVE):
            logger.warning(
                "Event %s livemode=%s but verified with %s secret",
                event["id"],
                livemode,
                mode.value,
            )
        return event

    def get_subscription_interval(self, subscription_id: str, mode: StripeMode) -> str | None:
        """Get the billing interval ("month", "year") of a subscription.

        Raises:
            StripeServiceError: If the subscription cannot be retrieved.
        """
        client = self.get_client(mode)
        try:
            subscription = client.subscriptions.retrieve(subscription_id)
        except stripe.StripeError as e:
            error_code = getattr(e, "code", None)
            logger.error(
                "Failed to retrieve subscription %s: %s (code: %s)",
                subscription_id,
                str(e),
                error_code,
            )
            raise StripeServiceError(
                f"Failed to retrieve subscription: {e}", stripe_error_code=error_code
            ) from e

        try:
            interval: str = subscription["items"]["data"][0]["price"]["recurring"]["interval"]
        except (KeyError, IndexError, TypeError):
            return None
        return interval


@lru_cache(maxsize=1)
def get_stripe_service() -> StripeService:
    """Get the shared StripeService instance."""
    return StripeService()
