"""DynamoDB plumbing shared by the appointment store and the reservation guard."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from . import config
from .errors import StoreUnavailableError

_SERIALIZER = TypeSerializer()
_DESERIALIZER = TypeDeserializer()

CONDITIONAL_CHECK_FAILED = "ConditionalCheckFailedException"
TRANSIENT_CODES = frozenset({
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
    "InternalServerError",
    "ServiceUnavailable",
    "TransactionConflictException",
})


def make_client():
    """boto3 DynamoDB client. Set DYNAMODB_ENDPOINT_URL to target a local DynamoDB."""
    kwargs = {"region_name": config.aws_region()}
    endpoint = config.dynamodb_endpoint()
    if endpoint:
        kwargs["endpoint_url"] = endpoint
    return boto3.client("dynamodb", config=Config(retries={"mode": "standard", "max_attempts": 3}), **kwargs)


def _floats_to_decimal(value: Any) -> Any:
    """Recursively convert floats to Decimal so DynamoDB serializer accepts them."""
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _floats_to_decimal(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_floats_to_decimal(v) for v in value]
    return value


def _decimals_to_native(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _decimals_to_native(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decimals_to_native(v) for v in value]
    return value


def to_ddb(value: Any) -> dict[str, Any]:
    """Serialize a Python value to DynamoDB attribute format."""
    return _SERIALIZER.serialize(_floats_to_decimal(value))


def to_item(d: dict[str, Any]) -> dict[str, Any]:
    """Serialize a flat dict, dropping None values."""
    return {k: to_ddb(v) for k, v in d.items() if v is not None}


def from_item(item: dict[str, Any]) -> dict[str, Any]:
    return {k: _decimals_to_native(_DESERIALIZER.deserialize(v)) for k, v in item.items()}


def error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def is_conditional_failure(exc: ClientError) -> bool:
    return error_code(exc) == CONDITIONAL_CHECK_FAILED


def translate(exc: Exception, action: str) -> Exception:
    """Map transient AWS failures to StoreUnavailableError; return anything else unchanged."""
    if isinstance(exc, ClientError) and error_code(exc) not in TRANSIENT_CODES:
        return exc
    if isinstance(exc, (ClientError, BotoCoreError)):
        return StoreUnavailableError(f"Record store unavailable during {action}; please try again shortly.")
    return exc
