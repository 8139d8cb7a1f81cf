"""Key schemas of the reconciler's DynamoDB tables.

Used by ``scripts/create_tables.py`` for local stacks and by the test suite;
deployed stacks define the same tables in infrastructure code.
"""

from typing import Any

from .dynamodb import (
    CHECKOUT_SESSION_INDEX,
    CLAIMS_TABLE,
    DONATIONS_TABLE,
    OUTBOX_STATUS_INDEX,
    OUTBOX_TABLE,
    PROFILES_TABLE,
    RECEIPT_SETTINGS_TABLE,
    RECEIPTS_TABLE,
    SPONSOR_BESTIES_TABLE,
    SPONSORSHIPS_TABLE,
    SUBSCRIPTION_INDEX,
    WEBHOOK_LOGS_TABLE,
)


def _gsi(name: str, attribute: str) -> dict[str, Any]:
    return {
        "IndexName": name,
        "KeySchema": [{"AttributeName": attribute, "KeyType": "HASH"}],
        "Projection": {"ProjectionType": "ALL"},
    }


def _table(
    name: str,
    key: str,
    *,
    range_key: str | None = None,
    indexes: dict[str, str] | None = None,
) -> dict[str, Any]:
    key_schema = [{"AttributeName": key, "KeyType": "HASH"}]
    attributes = {key}
    if range_key:
        key_schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
        attributes.add(range_key)

    definition: dict[str, Any] = {
        "TableName": name,
        "KeySchema": key_schema,
        "BillingMode": "PAY_PER_REQUEST",
    }
    if indexes:
        definition["GlobalSecondaryIndexes"] = [
            _gsi(index_name, attribute) for index_name, attribute in indexes.items()
        ]
        attributes.update(indexes.values())

    definition["AttributeDefinitions"] = [
        {"AttributeName": attribute, "AttributeType": "S"} for attribute in sorted(attributes)
    ]
    return definition


def table_definitions(prefix: str) -> list[dict[str, Any]]:
    """CreateTable requests for every table, named ``{prefix}-{table}``."""
    return [
        _table(f"{prefix}-{WEBHOOK_LOGS_TABLE}", "event_id", range_key="stripe_mode"),
        _table(
            f"{prefix}-{SPONSORSHIPS_TABLE}",
            "sponsorship_id",
            indexes={SUBSCRIPTION_INDEX: "stripe_subscription_id"},
        ),
        _table(
            f"{prefix}-{DONATIONS_TABLE}",
            "donation_id",
            indexes={
                CHECKOUT_SESSION_INDEX: "stripe_checkout_session_id",
                SUBSCRIPTION_INDEX: "stripe_subscription_id",
            },
        ),
        _table(f"{prefix}-{RECEIPTS_TABLE}", "receipt_number"),
        _table(f"{prefix}-{CLAIMS_TABLE}", "claim_key"),
        _table(f"{prefix}-{SPONSOR_BESTIES_TABLE}", "id"),
        _table(f"{prefix}-{PROFILES_TABLE}", "id"),
        _table(f"{prefix}-{RECEIPT_SETTINGS_TABLE}", "settings_id"),
        _table(
            f"{prefix}-{OUTBOX_TABLE}",
            "notification_id",
            indexes={OUTBOX_STATUS_INDEX: "status"},
        ),
    ]


def create_tables(client: Any, prefix: str) -> list[str]:
    """Create any missing tables with a low-level DynamoDB client.

    Returns:
        Names of the tables that were created.
    """
    existing = set(client.list_tables().get("TableNames", []))
    created = []
    for definition in table_definitions(prefix):
        if definition["TableName"] in existing:
            continue
        client.create_table(**definition)
        created.append(definition["TableName"])
    return created
