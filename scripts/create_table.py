#!/usr/bin/env python3
"""Create the DynamoDB appointments and reservations tables (local or AWS). Set DYNAMODB_ENDPOINT_URL for local."""

import os
import sys
from pathlib import Path

import boto3
from dotenv import load_dotenv

# Load .env from repo root so AWS_REGION etc. are set
_repo_root = Path(__file__).resolve().parent.parent
load_dotenv(_repo_root / ".env")
load_dotenv(_repo_root / ".env.local")

APPOINTMENTS_TABLE = os.environ.get("APPOINTMENTS_TABLE_NAME", "clinic_appointments")
RESERVATIONS_TABLE = os.environ.get("RESERVATIONS_TABLE_NAME", "clinic_reservations")


def _gsi(name, hash_key, range_key=None):
    schema = [{"AttributeName": hash_key, "KeyType": "HASH"}]
    if range_key:
        schema.append({"AttributeName": range_key, "KeyType": "RANGE"})
    return {"IndexName": name, "KeySchema": schema, "Projection": {"ProjectionType": "ALL"}}


def create_appointments(client):
    client.create_table(
        TableName=APPOINTMENTS_TABLE,
        KeySchema=[{"AttributeName": "id", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": name, "AttributeType": "S"}
            for name in ("id", "practitioner_id", "branch_id", "patient_id", "date", "token")
        ],
        GlobalSecondaryIndexes=[
            _gsi("practitioner_date", "practitioner_id", "date"),
            _gsi("branch_date", "branch_id", "date"),
            _gsi("patient", "patient_id", "date"),
            _gsi("token", "token"),
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    print(f"Created table: {APPOINTMENTS_TABLE}")


def create_reservations(client):
    client.create_table(
        TableName=RESERVATIONS_TABLE,
        KeySchema=[
            {"AttributeName": "slot_day", "KeyType": "HASH"},
            {"AttributeName": "slot_time", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "slot_day", "AttributeType": "S"},
            {"AttributeName": "slot_time", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )
    client.get_waiter("table_exists").wait(TableName=RESERVATIONS_TABLE)
    # Expired holds are ignored by the guard's conditions; TTL only reclaims storage.
    client.update_time_to_live(
        TableName=RESERVATIONS_TABLE,
        TimeToLiveSpecification={"Enabled": True, "AttributeName": "expires_at"},
    )
    print(f"Created table: {RESERVATIONS_TABLE} (TTL on expires_at)")


def main():
    endpoint = os.environ.get("DYNAMODB_ENDPOINT_URL")
    region = os.environ.get("AWS_REGION", "us-west-2")
    kwargs = {"region_name": region}
    if endpoint:
        kwargs["endpoint_url"] = endpoint
    client = boto3.client("dynamodb", **kwargs)
    failed = False
    for create in (create_appointments, create_reservations):
        try:
            create(client)
        except client.exceptions.ResourceInUseException:
            print(f"{create.__name__}: table already exists.", file=sys.stderr)
        except Exception as e:
            print(f"Error in {create.__name__}: {e}", file=sys.stderr)
            failed = True
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
