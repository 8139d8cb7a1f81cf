"""Webhook endpoint for Stripe events.

Handles, for both test and live mode:
- checkout.session.completed: creates sponsorships / completes donations
- customer.subscription.updated / deleted: keeps statuses in sync
- invoice.paid / invoice.payment_succeeded: renewal receipts

This endpoint does NOT require authentication; payloads are signed by Stripe
and verified against the webhook secrets of both modes.
"""

from fastapi import APIRouter, BackgroundTasks, Request, Response
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from starlette.status import HTTP_200_OK

from api.dependencies import get_notification_dispatcher, get_webhook_processor
from reconciler.models.errors import ErrorCode, SignatureError, WebhookError
from reconciler.services.stripe_service import get_stripe_service
from reconciler.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["webhooks"])

SIGNATURE_HEADER = "stripe-signature"


class WebhookResponse(BaseModel):
    """Acknowledgement returned to Stripe."""

    received: bool = True


class WebhookErrorResponse(BaseModel):
    """Error body for rejected or failed deliveries."""

    error: str


@router.options("/webhooks/stripe", include_in_schema=False)
async def stripe_webhook_preflight() -> Response:
    """CORS preflight: empty 200."""
    return Response(status_code=HTTP_200_OK)


@router.post(
    "/webhooks/stripe",
    summary="Receive Stripe webhook events",
    description="""
Endpoint for Stripe webhook events from both test and live mode.

**No authentication required** - the signature is verified with the webhook
secret of each mode; the mode is the one whose secret verifies.

**Idempotent**: redelivered events are acknowledged without reprocessing
once they have succeeded.
""",
    response_model=WebhookResponse,
    responses={
        200: {"description": "Event received and processed (or acknowledged)"},
        400: {"description": "Missing or invalid signature", "model": WebhookErrorResponse},
        500: {"description": "Processing failed; Stripe will retry", "model": WebhookErrorResponse},
    },
)
async def handle_stripe_webhook(
    request: Request, background_tasks: BackgroundTasks
) -> WebhookResponse:
    """Verify, reconcile and acknowledge one Stripe event.

    Receipt emails queued while reconciling are sent after the response.
    """
    signature = request.headers.get(SIGNATURE_HEADER)
    if not signature:
        logger.warning("Webhook request missing Stripe-Signature header")
        raise SignatureError(ErrorCode.MISSING_SIGNATURE)

    # Raw body: the signature covers the exact bytes
    payload = await request.body()

    try:
        stripe_service = get_stripe_service()
        verified = await run_in_threadpool(
            stripe_service.verify_webhook_signature, payload, signature
        )
        processor = get_webhook_processor(stripe_service)
        outcome = await run_in_threadpool(processor.process, verified)
    except WebhookError:
        raise
    except Exception as e:
        logger.exception("Unexpected error processing webhook: %s", e)
        raise WebhookError(ErrorCode.PROCESSING_FAILED, str(e) or None) from e

    if outcome.notification_ids:
        background_tasks.add_task(
            get_notification_dispatcher().deliver_many, outcome.notification_ids
        )

    return WebhookResponse(received=True)
