"""Standard error codes for the Stripe webhook reconciler.

Every failure the webhook can surface maps to one ErrorCode. The HTTP layer
turns authentication codes into 400 responses and everything else into 500,
which tells Stripe to redeliver the event.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Error codes raised while verifying and reconciling webhook events."""

    # Authentication (ERR_SIG_001-ERR_SIG_002)
    MISSING_SIGNATURE = "ERR_SIG_001"
    INVALID_SIGNATURE = "ERR_SIG_002"

    # Configuration (ERR_CFG_001-ERR_CFG_002)
    NO_WEBHOOK_SECRETS = "ERR_CFG_001"
    EMAIL_ENDPOINT_NOT_CONFIGURED = "ERR_CFG_002"

    # Data integrity (ERR_DATA_001-ERR_DATA_008)
    MISSING_PAYER_EMAIL = "ERR_DATA_001"
    MISSING_BENEFICIARY = "ERR_DATA_002"
    BENEFICIARY_NOT_FOUND = "ERR_DATA_003"
    SPONSORSHIP_INSERT_FAILED = "ERR_DATA_004"
    DONATION_WRITE_FAILED = "ERR_DATA_005"
    RECEIPT_INSERT_FAILED = "ERR_DATA_006"
    ORPHAN_INVOICE = "ERR_DATA_007"
    MALFORMED_EVENT = "ERR_DATA_008"

    # Anything else raised while processing
    PROCESSING_FAILED = "ERR_INTERNAL"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.MISSING_SIGNATURE: "Missing stripe-signature header",
    ErrorCode.INVALID_SIGNATURE: "Invalid signature",
    ErrorCode.NO_WEBHOOK_SECRETS: "No webhook secrets configured",
    ErrorCode.EMAIL_ENDPOINT_NOT_CONFIGURED: "Receipt email endpoint is not configured",
    ErrorCode.MISSING_PAYER_EMAIL: "No customer email in checkout session",
    ErrorCode.MISSING_BENEFICIARY: "No bestie_id in session metadata",
    ErrorCode.BENEFICIARY_NOT_FOUND: "Sponsor bestie not found",
    ErrorCode.SPONSORSHIP_INSERT_FAILED: "Failed to create sponsorship",
    ErrorCode.DONATION_WRITE_FAILED: "Failed to write donation",
    ErrorCode.RECEIPT_INSERT_FAILED: "Failed to create receipt",
    ErrorCode.ORPHAN_INVOICE: "No sponsorship or donation found for invoice subscription",
    ErrorCode.MALFORMED_EVENT: "Event payload is missing required fields",
    ErrorCode.PROCESSING_FAILED: "Webhook processing failed",
}

AUTHENTICATION_CODES = frozenset(
    {ErrorCode.MISSING_SIGNATURE, ErrorCode.INVALID_SIGNATURE}
)


class WebhookError(Exception):
    """Exception raised by webhook verification and reconciliation.

    The message defaults to the code's standard message; pass ``message`` to
    carry a more specific one (it becomes the ``error`` field of the response
    and the ``error_message`` of the audit row).
    """

    def __init__(
        self,
        code: ErrorCode,
        message: Optional[str] = None,
        details: Optional[dict[str, str]] = None,
    ):
        self.code = code
        self.message = message or ERROR_MESSAGES[code]
        self.details = details
        super().__init__(self.message)

    @property
    def is_authentication_error(self) -> bool:
        return self.code in AUTHENTICATION_CODES

    def to_response(self) -> dict[str, str]:
        """Build the JSON body returned to the caller."""
        return {"error": self.message}


class SignatureError(WebhookError):
    """Raised when the payload's authenticity cannot be established."""


class ConfigurationError(WebhookError):
    """Raised when required credentials or endpoints are missing."""


class DataIntegrityError(WebhookError):
    """Raised when an event cannot be reconciled and must be retried."""
