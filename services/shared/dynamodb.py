"""
DynamoDB Helpers
================
Small boto3 wrappers shared by the journal store and the operator scripts:
- Compare-and-swap writes on a version counter
- Decimal -> int/float conversion for anything read back from a table
"""
from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError


def get_table(table_name: str, region: str | None = None):
    dynamodb = boto3.resource(
        "dynamodb", region_name=region or os.environ.get("AWS_DEFAULT_REGION", "us-east-1")
    )
    return dynamodb.Table(table_name)


def put_item_with_optimistic_lock(
    table,
    item: dict,
    key_attribute: str,
    version_key: str = "version",
) -> int:
    """
    Write `item` only if the stored version still equals item[version_key].

    Version 0 means "must not exist yet". The written item carries version+1,
    which is returned. Raises OptimisticLockError on a mismatch.
    """
    current_version = int(item.get(version_key, 0))
    new_item = {**item, version_key: current_version + 1}

    if current_version == 0:
        condition = Attr(key_attribute).not_exists()
    else:
        condition = Attr(version_key).eq(current_version)

    try:
        table.put_item(Item=new_item, ConditionExpression=condition)
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            raise OptimisticLockError(
                f"Item was modified by another process (version mismatch at v{current_version})"
            ) from e
        raise
    return current_version + 1


class OptimisticLockError(Exception):
    """Raised when a concurrent update was detected."""


def decimal_to_python(obj: Any) -> Any:
    """DynamoDB returns Decimals for all numbers; convert recursively."""
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    if isinstance(obj, dict):
        return {k: decimal_to_python(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [decimal_to_python(v) for v in obj]
    return obj
