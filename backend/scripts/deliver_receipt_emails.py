#!/usr/bin/env python3
"""Re-drive pending receipt emails from the outbox.

Receipt emails are normally sent right after the webhook response. Rows left
``pending`` (collaborator down, URL not configured, Lambda timed out) are
picked up here; rows that exhausted RECEIPT_EMAIL_MAX_ATTEMPTS stay ``failed``.

Usage:
    python backend/scripts/deliver_receipt_emails.py --env dev
    python backend/scripts/deliver_receipt_emails.py --env prod --limit 100
    python backend/scripts/deliver_receipt_emails.py --env dev --notification-id <id>
"""

import argparse
import logging
import os
import sys

from reconciler.services.dynamodb import get_dynamodb_service
from reconciler.services.notification_dispatcher import NotificationDispatcher
from reconciler.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def main() -> int:
    """Run the re-drive."""
    parser = argparse.ArgumentParser(description="Send pending receipt emails")
    parser.add_argument(
        "--env",
        default=os.getenv("ENVIRONMENT", "dev"),
        help="Environment name (default: ENVIRONMENT or dev)",
    )
    parser.add_argument("--region", help="AWS region (default: from AWS config)")
    parser.add_argument(
        "--limit", type=int, default=25, help="Maximum notifications to send (default: 25)"
    )
    parser.add_argument(
        "--notification-id",
        action="append",
        dest="notification_ids",
        help="Send only these notifications (repeatable)",
    )
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    os.environ["ENVIRONMENT"] = args.env
    if args.region:
        os.environ["AWS_DEFAULT_REGION"] = args.region

    dispatcher = NotificationDispatcher(
        db=get_dynamodb_service(args.env), environment=args.env
    )
    if args.notification_ids:
        sent = dispatcher.deliver_many(args.notification_ids)
        total = len(args.notification_ids)
    else:
        sent = dispatcher.deliver_pending(limit=args.limit)
        total = None

    logger.info("Sent %d receipt emails%s", sent, f" of {total}" if total else "")
    return 0 if total is None or sent == total else 1


if __name__ == "__main__":
    sys.exit(main())
