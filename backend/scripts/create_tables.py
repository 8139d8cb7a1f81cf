#!/usr/bin/env python3
"""Create the reconciler's DynamoDB tables (local stacks and sandboxes).

Usage:
    python backend/scripts/create_tables.py --env dev
    python backend/scripts/create_tables.py --prefix giving-local \
        --endpoint-url http://localhost:8000
"""

import argparse
import sys

import boto3

from reconciler.services.dynamodb_schema import create_tables


def main() -> int:
    parser = argparse.ArgumentParser(description="Create reconciler DynamoDB tables")
    parser.add_argument("--env", default="dev", help="Environment name (default: dev)")
    parser.add_argument("--prefix", help="Table prefix (default: giving-{env})")
    parser.add_argument("--region", help="AWS region (default: from AWS config)")
    parser.add_argument("--endpoint-url", help="DynamoDB endpoint, e.g. DynamoDB Local")
    args = parser.parse_args()

    client = boto3.client(
        "dynamodb", region_name=args.region, endpoint_url=args.endpoint_url
    )
    created = create_tables(client, args.prefix or f"giving-{args.env}")
    for name in created:
        print(f"Created {name}")
    if not created:
        print("All tables already exist")
    return 0


if __name__ == "__main__":
    sys.exit(main())
