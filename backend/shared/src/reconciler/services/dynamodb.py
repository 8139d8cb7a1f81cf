"""DynamoDB service wrapper for reconciler table operations."""

import os
from typing import Any

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from reconciler.models.enums import ClaimKind, RecordType, StripeMode

# Table names without prefix
WEBHOOK_LOGS_TABLE = "stripe-webhook-logs"
SPONSORSHIPS_TABLE = "sponsorships"
DONATIONS_TABLE = "donations"
RECEIPTS_TABLE = "sponsorship-receipts"
CLAIMS_TABLE = "stripe-claims"
SPONSOR_BESTIES_TABLE = "sponsor-besties"
PROFILES_TABLE = "profiles"
RECEIPT_SETTINGS_TABLE = "receipt-settings"
OUTBOX_TABLE = "receipt-email-outbox"

SUBSCRIPTION_INDEX = "stripe_subscription_id-index"
CHECKOUT_SESSION_INDEX = "stripe_checkout_session_id-index"
OUTBOX_STATUS_INDEX = "status-index"

# Module-level singleton for connection reuse across warm invocations
_dynamodb_service_instance: "DynamoDBService | None" = None


def get_dynamodb_service(environment: str | None = None) -> "DynamoDBService":
    """Get or create the singleton DynamoDB service instance.

    Args:
        environment: Environment name. Only used on first call.

    Returns:
        Shared DynamoDBService instance
    """
    global _dynamodb_service_instance
    if _dynamodb_service_instance is None:
        _dynamodb_service_instance = DynamoDBService(environment)
    return _dynamodb_service_instance


def reset_dynamodb_service() -> None:
    """Reset the singleton instance (for testing only).

    This allows tests to create a fresh DynamoDBService inside
    a mock_aws context.
    """
    global _dynamodb_service_instance
    _dynamodb_service_instance = None


def claim_key(mode: StripeMode | str, kind: ClaimKind, external_id: str) -> str:
    """Build the claims table key for an external id in one mode."""
    mode_value = mode.value if isinstance(mode, StripeMode) else mode
    return f"{mode_value}#{kind.value}#{external_id}"


class DynamoDBService:
    """Service for DynamoDB operations with environment-aware table names."""

    def __init__(self, environment: str | None = None) -> None:
        """Initialize DynamoDB service.

        Args:
            environment: Environment name (dev/prod). Defaults to ENVIRONMENT env var.
        """
        self.environment = environment or os.getenv("ENVIRONMENT", "dev")
        # Allow override via DYNAMODB_TABLE_PREFIX for testing
        self.name_prefix = os.getenv(
            "DYNAMODB_TABLE_PREFIX", f"giving-{self.environment}"
        )
        self._dynamodb = boto3.resource("dynamodb")
        self._client = boto3.client("dynamodb")
        self._serializer = TypeSerializer()

    def table_name(self, table: str) -> str:
        """Get full table name with prefix."""
        return f"{self.name_prefix}-{table}"

    def _get_table(self, table: str) -> Any:
        """Get DynamoDB table resource."""
        return self._dynamodb.Table(self.table_name(table))

    def _serialize(self, item: dict[str, Any]) -> dict[str, Any]:
        """Convert a plain item to the low-level attribute-value format."""
        return {k: self._serializer.serialize(v) for k, v in item.items()}

    # Generic CRUD operations

    def get_item(
        self,
        table: str,
        key: dict[str, Any],
    ) -> dict[str, Any] | None:
        """Get a single item by key.

        Args:
            table: Table name without prefix
            key: Primary key dict

        Returns:
            Item dict or None if not found
        """
        response = self._get_table(table).get_item(Key=key, ConsistentRead=True)
        item: dict[str, Any] | None = response.get("Item")
        return item

    def put_item(
        self,
        table: str,
        item: dict[str, Any],
        condition_expression: str | None = None,
    ) -> bool:
        """Put an item into the table.

        Args:
            table: Table name without prefix
            item: Item to store
            condition_expression: Optional condition for write

        Returns:
            True if successful, False if condition failed
        """
        try:
            kwargs: dict[str, Any] = {"Item": item}
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression

            self._get_table(table).put_item(**kwargs)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise

    def update_item(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any] | None = None,
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any] | None:
        """Update an item with expressions.

        Args:
            table: Table name without prefix
            key: Primary key dict
            update_expression: DynamoDB update expression
            expression_attribute_values: Values for expression
            expression_attribute_names: Names for expression (for reserved words)
            condition_expression: Optional condition for update

        Returns:
            Updated attributes or None if condition failed
        """
        try:
            kwargs: dict[str, Any] = {
                "Key": key,
                "UpdateExpression": update_expression,
                "ReturnValues": "ALL_NEW",
            }
            if expression_attribute_values:
                kwargs["ExpressionAttributeValues"] = expression_attribute_values
            if expression_attribute_names:
                kwargs["ExpressionAttributeNames"] = expression_attribute_names
            if condition_expression:
                kwargs["ConditionExpression"] = condition_expression

            response = self._get_table(table).update_item(**kwargs)
            attrs: dict[str, Any] | None = response.get("Attributes")
            return attrs
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return None
            raise

    def query(
        self,
        table: str,
        key_condition: Any,
        index_name: str | None = None,
        filter_expression: Any | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Query table or GSI.

        Args:
            table: Table name without prefix
            key_condition: Boto3 Key condition
            index_name: GSI name (optional)
            filter_expression: Additional filter (optional)
            limit: Max items to evaluate

        Returns:
            List of items
        """
        kwargs: dict[str, Any] = {"KeyConditionExpression": key_condition}
        if index_name:
            kwargs["IndexName"] = index_name
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression
        if limit:
            kwargs["Limit"] = limit

        response = self._get_table(table).query(**kwargs)
        items: list[dict[str, Any]] = response.get("Items", [])
        return items

    def query_by_gsi(
        self,
        table: str,
        index_name: str,
        partition_key_name: str,
        partition_key_value: str,
        filter_expression: Any | None = None,
    ) -> list[dict[str, Any]]:
        """Query a GSI by partition key.

        Args:
            table: Table name without prefix
            index_name: GSI name
            partition_key_name: Name of partition key attribute
            partition_key_value: Value to query
            filter_expression: Optional filter on non-key attributes

        Returns:
            List of items
        """
        key_condition = Key(partition_key_name).eq(partition_key_value)
        return self.query(
            table, key_condition, index_name=index_name, filter_expression=filter_expression
        )

    def scan(self, table: str, limit: int | None = None) -> list[dict[str, Any]]:
        """Scan a small table (settings rows)."""
        kwargs: dict[str, Any] = {}
        if limit:
            kwargs["Limit"] = limit
        response = self._get_table(table).scan(**kwargs)
        items: list[dict[str, Any]] = response.get("Items", [])
        return items

    def transact_write(
        self,
        items: list[dict[str, Any]],
    ) -> bool:
        """Execute transactional write for multiple items.

        Args:
            items: List of TransactWriteItem dicts (low-level format)

        Returns:
            True if successful, False if the transaction was cancelled
            (a condition check failed)
        """
        try:
            self._client.transact_write_items(TransactItems=items)  # type: ignore[arg-type]
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "TransactionCanceledException":
                return False
            raise

    # Transaction item builders

    def put_if_absent(self, table: str, item: dict[str, Any], key_name: str) -> dict[str, Any]:
        """TransactWriteItem that inserts ``item`` only if its key is unused."""
        return {
            "Put": {
                "TableName": self.table_name(table),
                "Item": self._serialize(item),
                "ConditionExpression": "attribute_not_exists(#k)",
                "ExpressionAttributeNames": {"#k": key_name},
            }
        }

    def claim(
        self,
        mode: StripeMode | str,
        kind: ClaimKind,
        external_id: str,
        record_type: RecordType,
        record_id: str,
        created_at: str,
    ) -> dict[str, Any]:
        """TransactWriteItem claiming an external id for one record.

        The claim succeeds when the key is unused or already held by the
        same record, so a retried write for the same record is accepted.
        """
        item = {
            "claim_key": claim_key(mode, kind, external_id),
            "record_type": record_type.value,
            "record_id": record_id,
            "created_at": created_at,
        }
        return {
            "Put": {
                "TableName": self.table_name(CLAIMS_TABLE),
                "Item": self._serialize(item),
                "ConditionExpression": "attribute_not_exists(claim_key) OR record_id = :rid",
                "ExpressionAttributeValues": {":rid": {"S": record_id}},
            }
        }

    def update_in_transaction(
        self,
        table: str,
        key: dict[str, Any],
        update_expression: str,
        expression_attribute_values: dict[str, Any],
        expression_attribute_names: dict[str, str] | None = None,
        condition_expression: str | None = None,
    ) -> dict[str, Any]:
        """TransactWriteItem wrapping an update expression."""
        update: dict[str, Any] = {
            "TableName": self.table_name(table),
            "Key": self._serialize(key),
            "UpdateExpression": update_expression,
            "ExpressionAttributeValues": self._serialize(expression_attribute_values),
        }
        if expression_attribute_names:
            update["ExpressionAttributeNames"] = expression_attribute_names
        if condition_expression:
            update["ConditionExpression"] = condition_expression
        return {"Update": update}

    # =========================================================================
    # Claims
    # =========================================================================

    def get_claim(
        self, mode: StripeMode | str, kind: ClaimKind, external_id: str
    ) -> dict[str, Any] | None:
        """Get the claim held on an external id, if any."""
        return self.get_item(CLAIMS_TABLE, {"claim_key": claim_key(mode, kind, external_id)})

    # =========================================================================
    # Sponsorship / donation lookups
    # =========================================================================

    def find_sponsorship_by_subscription(
        self, subscription_id: str, mode: StripeMode | str
    ) -> dict[str, Any] | None:
        """Get the sponsorship for a Stripe subscription in one mode."""
        results = self.query_by_gsi(
            SPONSORSHIPS_TABLE,
            SUBSCRIPTION_INDEX,
            "stripe_subscription_id",
            subscription_id,
            filter_expression=Attr("stripe_mode").eq(_mode_value(mode)),
        )
        return results[0] if results else None

    def find_donation_by_subscription(
        self, subscription_id: str, mode: StripeMode | str
    ) -> dict[str, Any] | None:
        """Get the recurring donation for a Stripe subscription in one mode."""
        results = self.query_by_gsi(
            DONATIONS_TABLE,
            SUBSCRIPTION_INDEX,
            "stripe_subscription_id",
            subscription_id,
            filter_expression=Attr("stripe_mode").eq(_mode_value(mode)),
        )
        return results[0] if results else None

    def find_donation_by_checkout_session(
        self, session_id: str, mode: StripeMode | str
    ) -> dict[str, Any] | None:
        """Get the donation created for a checkout session in one mode."""
        results = self.query_by_gsi(
            DONATIONS_TABLE,
            CHECKOUT_SESSION_INDEX,
            "stripe_checkout_session_id",
            session_id,
            filter_expression=Attr("stripe_mode").eq(_mode_value(mode)),
        )
        return results[0] if results else None

    # =========================================================================
    # Reference data owned by other parts of the platform
    # =========================================================================

    def get_sponsor_bestie(self, sponsor_bestie_id: str) -> dict[str, Any] | None:
        return self.get_item(SPONSOR_BESTIES_TABLE, {"id": sponsor_bestie_id})

    def get_profile(self, user_id: str) -> dict[str, Any] | None:
        return self.get_item(PROFILES_TABLE, {"id": user_id})

    def get_receipt_settings(self) -> dict[str, Any] | None:
        """Get the organization's receipt settings row, if one exists."""
        results = self.scan(RECEIPT_SETTINGS_TABLE, limit=1)
        return results[0] if results else None


def _mode_value(mode: StripeMode | str) -> str:
    return mode.value if isinstance(mode, StripeMode) else mode
