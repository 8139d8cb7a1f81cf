"""Receipt email delivery through a DynamoDB outbox.

Reconciliation only enqueues a ``pending`` outbox row. Delivery happens after
the webhook response (FastAPI background task) or from the re-drive script,
so a failing email collaborator never causes a payment event to be
reprocessed. Delivery errors are recorded on the row and logged; they are
never raised.
"""

import datetime as dt
import os
import uuid
from typing import Any, Iterable

import httpx
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from reconciler.models.enums import NotificationStatus
from reconciler.models.errors import ConfigurationError, ErrorCode
from reconciler.models.notification import ReceiptEmailRequest, ReceiptNotification
from reconciler.models.records import Receipt
from reconciler.utils.conversions import utc_now_iso
from reconciler.utils.logging import get_logger

from .dynamodb import (
    OUTBOX_STATUS_INDEX,
    OUTBOX_TABLE,
    RECEIPTS_TABLE,
    DynamoDBService,
    get_dynamodb_service,
)
from .ssm_service import SSMService, SSMServiceError, get_ssm_service

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
REQUEST_TIMEOUT_SECONDS = 10.0
SENDING_LEASE_SECONDS = 300


def _lease_cutoff(now: dt.datetime) -> str:
    """Rows in sending last updated before this are treated as abandoned."""
    return (now - dt.timedelta(seconds=SENDING_LEASE_SECONDS)).isoformat()


class NotificationDispatcher:
    """Enqueues and delivers receipt emails."""

    def __init__(
        self,
        db: DynamoDBService | None = None,
        ssm: SSMService | None = None,
        http_client: httpx.Client | None = None,
        endpoint: str | None = None,
        max_attempts: int | None = None,
        environment: str | None = None,
    ) -> None:
        self._db = db or get_dynamodb_service()
        self._ssm = ssm or get_ssm_service()
        self._http = http_client
        self._endpoint = endpoint or os.getenv("RECEIPT_EMAIL_URL")
        self._max_attempts = max_attempts or int(
            os.getenv("RECEIPT_EMAIL_MAX_ATTEMPTS", str(DEFAULT_MAX_ATTEMPTS))
        )
        self._environment = environment or os.getenv("ENVIRONMENT", "dev")

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(self, receipt: Receipt) -> str | None:
        """Queue the receipt email for a newly issued receipt.

        Returns:
            The notification id, or None if the outbox write failed.
        """
        request = ReceiptEmailRequest(
            sponsor_email=receipt.sponsor_email,
            sponsor_name=receipt.sponsor_name,
            bestie_name=receipt.bestie_name,
            amount=receipt.amount,
            frequency=receipt.frequency,
            transaction_id=receipt.transaction_id,
            transaction_date=receipt.transaction_date,
            stripe_mode=receipt.stripe_mode,
        )
        now = utc_now_iso()
        notification = ReceiptNotification(
            notification_id=str(uuid.uuid4()),
            receipt_number=receipt.receipt_number,
            payload=request.to_item(),
            created_at=now,
            updated_at=now,
        )
        try:
            self._db.put_item(OUTBOX_TABLE, notification.to_item())
        except ClientError as e:
            logger.error(
                "Failed to enqueue receipt email for %s: %s", receipt.receipt_number, e
            )
            return None

        logger.info(
            "Receipt email queued: notification=%s receipt=%s",
            notification.notification_id,
            receipt.receipt_number,
        )
        return notification.notification_id

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def _auth_token(self) -> str | None:
        return self._ssm.get_optional_parameter(
            f"/giving/{self._environment}/receipt_email/token"
        )

    def _post(self, payload: dict[str, Any]) -> None:
        if not self._endpoint:
            raise ConfigurationError(ErrorCode.EMAIL_ENDPOINT_NOT_CONFIGURED)

        headers = {"Content-Type": "application/json"}
        token = self._auth_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        if self._http is not None:
            response = self._http.post(self._endpoint, json=payload, headers=headers)
        else:
            with httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS) as client:
                response = client.post(self._endpoint, json=payload, headers=headers)
        response.raise_for_status()

    def _claim(self, notification_id: str) -> dict[str, Any] | None:
        """Move a row to sending so only one worker posts it.

        A row left in sending longer than the lease (worker died mid-send) can
        be claimed again.
        """
        now = dt.datetime.now(dt.UTC)
        stale_before = _lease_cutoff(now)
        return self._db.update_item(
            OUTBOX_TABLE,
            {"notification_id": notification_id},
            "SET #status = :sending, updated_at = :now",
            {
                ":sending": NotificationStatus.SENDING.value,
                ":pending": NotificationStatus.PENDING.value,
                ":now": now.isoformat(),
                ":stale": stale_before,
            },
            {"#status": "status"},
            condition_expression=(
                "#status = :pending OR (#status = :sending AND updated_at < :stale)"
            ),
        )

    def deliver(self, notification_id: str) -> bool:
        """Send one pending receipt email.

        Returns:
            True if the collaborator accepted the email.
        """
        if not self._endpoint:
            # Left pending for the re-drive script once the URL is configured
            logger.warning(
                "RECEIPT_EMAIL_URL is not configured, notification %s stays pending",
                notification_id,
            )
            return False

        try:
            item = self._claim(notification_id)
        except ClientError as e:
            logger.error("Failed to claim notification %s: %s", notification_id, e)
            return False

        if item is None:
            logger.info("Notification %s was not claimed, skipping", notification_id)
            return False

        payload = ReceiptEmailRequest.model_validate(item["payload"]).to_payload()

        try:
            self._post(payload)
        except (httpx.HTTPError, SSMServiceError) as e:
            self._record_failure(item, str(e))
            return False

        try:
            self._record_success(item)
        except ClientError as e:
            logger.error(
                "Receipt email %s sent but status update failed: %s", notification_id, e
            )
        return True

    def _record_success(self, item: dict[str, Any]) -> None:
        now = utc_now_iso()
        self._db.update_item(
            OUTBOX_TABLE,
            {"notification_id": item["notification_id"]},
            "SET #status = :sent, sent_at = :now, updated_at = :now, attempts = :attempts",
            {
                ":sent": NotificationStatus.SENT.value,
                ":now": now,
                ":attempts": int(item.get("attempts", 0)) + 1,
            },
            {"#status": "status"},
        )
        self._db.update_item(
            RECEIPTS_TABLE,
            {"receipt_number": item["receipt_number"]},
            "SET sent_at = :now",
            {":now": now},
            condition_expression="attribute_exists(receipt_number)",
        )
        logger.info(
            "Receipt email sent: notification=%s receipt=%s",
            item["notification_id"],
            item["receipt_number"],
        )

    def _record_failure(self, item: dict[str, Any], error: str) -> None:
        attempts = int(item.get("attempts", 0)) + 1
        status = (
            NotificationStatus.FAILED
            if attempts >= self._max_attempts
            else NotificationStatus.PENDING
        )
        logger.error(
            "Receipt email delivery failed (attempt %d/%d) for %s: %s",
            attempts,
            self._max_attempts,
            item["notification_id"],
            error,
        )
        try:
            self._db.update_item(
                OUTBOX_TABLE,
                {"notification_id": item["notification_id"]},
                "SET #status = :status, attempts = :attempts, last_error = :error, updated_at = :now",
                {
                    ":status": status.value,
                    ":attempts": attempts,
                    ":error": error,
                    ":now": utc_now_iso(),
                },
                {"#status": "status"},
            )
        except ClientError as e:
            logger.error(
                "Failed to record delivery failure for %s: %s", item["notification_id"], e
            )

    def deliver_many(self, notification_ids: Iterable[str]) -> int:
        """Deliver several notifications; returns how many were sent."""
        return sum(1 for notification_id in notification_ids if self.deliver(notification_id))

    def deliver_pending(self, limit: int = 25) -> int:
        """Re-drive pending notifications left by failed or skipped deliveries.

        Rows stuck in sending past the lease are picked up as well.
        """
        stale_before = _lease_cutoff(dt.datetime.now(dt.UTC))
        pending = self._db.query_by_gsi(
            OUTBOX_TABLE, OUTBOX_STATUS_INDEX, "status", NotificationStatus.PENDING.value
        ) + self._db.query_by_gsi(
            OUTBOX_TABLE,
            OUTBOX_STATUS_INDEX,
            "status",
            NotificationStatus.SENDING.value,
            filter_expression=Attr("updated_at").lt(stale_before),
        )
        pending = pending[:limit]
        logger.info("Re-driving %d pending receipt emails", len(pending))
        return self.deliver_many(item["notification_id"] for item in pending)
