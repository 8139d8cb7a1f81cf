"""Tax receipt generation for sponsorship and donation payments."""

import datetime as dt
import os
import secrets
import string
from decimal import Decimal

from botocore.exceptions import ClientError

from reconciler.models.enums import ClaimKind, RecordType, StripeMode
from reconciler.models.errors import DataIntegrityError, ErrorCode
from reconciler.models.records import Receipt
from reconciler.utils.conversions import tax_year_for, utc_now_iso
from reconciler.utils.logging import get_logger, log_reconcile_operation

from .dynamodb import RECEIPTS_TABLE, DynamoDBService, get_dynamodb_service

logger = get_logger(__name__)

GENERAL_SUPPORT = "General Support"
_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def generate_receipt_number(now: dt.datetime | None = None) -> str:
    """Human-readable receipt number: RCP-{date}-{epoch ms}-{random suffix}."""
    now = now or dt.datetime.now(dt.UTC)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"RCP-{now:%Y%m%d}-{int(now.timestamp() * 1000)}-{suffix}"


class ReceiptGenerator:
    """Issues one immutable receipt per (transaction id, mode).

    The receipt insert and a claim on the transaction id are written in one
    DynamoDB transaction, so a redelivered payment never yields a second
    receipt.
    """

    def __init__(self, db: DynamoDBService | None = None) -> None:
        self._db = db or get_dynamodb_service()

    def _organization(self) -> tuple[str | None, str | None]:
        default_name = os.getenv("DEFAULT_ORGANIZATION_NAME")
        try:
            settings = self._db.get_receipt_settings()
        except ClientError as e:
            logger.warning("Receipt settings lookup failed, using defaults: %s", e)
            return default_name, None
        if not settings:
            return default_name, None
        return settings.get("organization_name") or default_name, settings.get("organization_ein")

    def generate(
        self,
        *,
        payer_email: str,
        amount: Decimal,
        frequency: str,
        transaction_id: str,
        transaction_date: str,
        mode: StripeMode,
        payer_name: str | None = None,
        user_id: str | None = None,
        sponsorship_id: str | None = None,
        bestie_name: str | None = None,
    ) -> Receipt | None:
        """Create the receipt for a successful payment.

        Returns:
            The new receipt, or None if this transaction already has one.

        Raises:
            DataIntegrityError: If the receipt could not be written.
        """
        organization_name, organization_ein = self._organization()
        now = utc_now_iso()

        receipt = Receipt(
            receipt_number=generate_receipt_number(),
            sponsorship_id=sponsorship_id,
            user_id=user_id,
            sponsor_email=payer_email,
            sponsor_name=payer_name or payer_email.split("@")[0],
            bestie_name=bestie_name or GENERAL_SUPPORT,
            amount=amount,
            frequency=frequency,
            transaction_id=transaction_id,
            transaction_date=transaction_date,
            stripe_mode=mode,
            organization_name=organization_name,
            organization_ein=organization_ein,
            tax_year=tax_year_for(transaction_date),
            created_at=now,
        )

        written = self._db.transact_write(
            [
                self._db.put_if_absent(RECEIPTS_TABLE, receipt.to_item(), "receipt_number"),
                self._db.claim(
                    mode,
                    ClaimKind.TRANSACTION,
                    transaction_id,
                    RecordType.RECEIPT,
                    receipt.receipt_number,
                    now,
                ),
            ]
        )
        if not written:
            existing = self._db.get_claim(mode, ClaimKind.TRANSACTION, transaction_id)
            if existing:
                log_reconcile_operation(
                    logger,
                    "receipt_duplicate",
                    record_type=RecordType.RECEIPT.value,
                    record_id=existing.get("record_id"),
                    mode=mode.value,
                    transaction_id=transaction_id,
                )
                return None
            raise DataIntegrityError(
                ErrorCode.RECEIPT_INSERT_FAILED,
                f"Failed to create receipt for transaction {transaction_id}",
            )

        log_reconcile_operation(
            logger,
            "receipt_issued",
            record_type=RecordType.RECEIPT.value,
            record_id=receipt.receipt_number,
            mode=mode.value,
            transaction_id=transaction_id,
            tax_year=receipt.tax_year,
        )
        return receipt
