"""
DynamoDB implementation of the key-value backend.

Uses the low-level boto3 client so that every write is a single-item
``PutItem`` / ``DeleteItem`` with an explicit ``ConditionExpression``. The
store gives per-item atomicity only; uniqueness across tables is synthesized
by the registration protocol on top of these calls.

Environment (see userauth.settings):
- DYNAMODB_ENDPOINT_URL: optional, e.g. "http://127.0.0.1:8000" for DynamoDB Local
- AWS_REGION / AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

from userauth.backend import Condition, Item, key_schemas
from userauth.errors import ConditionFailed, UnprocessedWrites
from userauth.settings import Settings, TableConfig

logger = logging.getLogger("userauth.backend.dynamodb")

_BATCH_LIMIT = 25

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


def _marshal(item: Item) -> Dict[str, Any]:
    return {k: _serializer.serialize(v) for k, v in item.items() if v is not None}


def _unmarshal(raw: Dict[str, Any]) -> Item:
    return {k: _deserializer.deserialize(v) for k, v in raw.items()}


def _is_condition_failure(e: ClientError) -> bool:
    return (e.response.get("Error") or {}).get("Code") == "ConditionalCheckFailedException"


def create_client(settings: Settings):
    """Create a boto3 DynamoDB client from settings."""
    kwargs: Dict[str, Any] = {"region_name": settings.aws_region}
    endpoint = settings.endpoint_url()
    if endpoint:
        kwargs["endpoint_url"] = endpoint
    if settings.aws_access_key_id and settings.aws_secret_access_key:
        kwargs["aws_access_key_id"] = settings.aws_access_key_id
        kwargs["aws_secret_access_key"] = settings.aws_secret_access_key
    return boto3.client("dynamodb", **kwargs)


class DynamoDbBackend:
    def __init__(
        self,
        client,
        tables: TableConfig,
        *,
        max_batch_attempts: int = 5,
        backoff_seconds: float = 0.05,
    ):
        self._client = client
        self._tables = tables
        self._schemas = key_schemas(tables)
        self._max_batch_attempts = max(1, int(max_batch_attempts))
        self._backoff_seconds = backoff_seconds

    def _key(self, table: str, item: Item) -> Dict[str, Any]:
        return _marshal({name: item[name] for name in self._schemas[table]})

    def _condition_args(self, table: str, condition: Condition) -> Dict[str, Any]:
        if condition.kind == "absent":
            return {
                "ConditionExpression": "attribute_not_exists(#k)",
                "ExpressionAttributeNames": {"#k": self._schemas[table][0]},
            }
        if condition.kind == "owned_by":
            return {
                "ConditionExpression": "#o = :owner",
                "ExpressionAttributeNames": {"#o": condition.owner_field},
                "ExpressionAttributeValues": {":owner": _serializer.serialize(condition.owner)},
            }
        raise ValueError(f"Unknown condition kind {condition.kind!r}")

    def get(self, table: str, key: Item) -> Optional[Item]:
        resp = self._client.get_item(TableName=table, Key=self._key(table, key), ConsistentRead=True)
        raw = resp.get("Item")
        return _unmarshal(raw) if raw else None

    def conditional_put(self, table: str, item: Item, condition: Condition) -> None:
        try:
            self._client.put_item(TableName=table, Item=_marshal(item), **self._condition_args(table, condition))
        except ClientError as e:
            if _is_condition_failure(e):
                key = item.get(self._schemas[table][0])
                logger.debug("Conditional put rejected on %s[%r] (%s)", table, key, condition.kind)
                raise ConditionFailed(table, key) from e
            raise

    def put(self, table: str, item: Item) -> None:
        self._client.put_item(TableName=table, Item=_marshal(item))

    def delete(self, table: str, key: Item) -> None:
        self._client.delete_item(TableName=table, Key=self._key(table, key))

    def _query_pages(self, **kwargs) -> List[Item]:
        out: List[Item] = []
        paginator = self._client.get_paginator("query")
        for page in paginator.paginate(**kwargs):
            out.extend(_unmarshal(raw) for raw in page.get("Items", []))
        return out

    def query(self, table: str, field: str, value: Any, *, index: Optional[str] = None) -> List[Item]:
        """Items whose ``field`` equals ``value``, from the table or one of its secondary indexes.

        Secondary index reads are eventually consistent; the uniqueness
        protocol never relies on them.
        """
        kwargs: Dict[str, Any] = {
            "TableName": table,
            "KeyConditionExpression": "#f = :v",
            "ExpressionAttributeNames": {"#f": field},
            "ExpressionAttributeValues": {":v": _serializer.serialize(value)},
        }
        if index:
            kwargs["IndexName"] = index
        else:
            kwargs["ConsistentRead"] = True
        return self._query_pages(**kwargs)

    def delete_many(self, table: str, keys: Iterable[Item]) -> None:
        """Batch-delete ``keys``, resubmitting unprocessed items with exponential backoff.

        Raises UnprocessedWrites once ``max_batch_attempts`` calls for one
        chunk still leave items behind.
        """
        requests = [{"DeleteRequest": {"Key": self._key(table, k)}} for k in keys]
        for start in range(0, len(requests), _BATCH_LIMIT):
            pending: Dict[str, Any] = {table: requests[start : start + _BATCH_LIMIT]}
            attempt = 0
            while pending:
                attempt += 1
                resp = self._client.batch_write_item(RequestItems=pending)
                pending = resp.get("UnprocessedItems") or {}
                if not pending:
                    break
                remaining = len(pending.get(table, []))
                if attempt >= self._max_batch_attempts:
                    raise UnprocessedWrites(table, remaining, attempt)
                delay = self._backoff_seconds * (2 ** (attempt - 1))
                logger.debug("%d writes to %s unprocessed; retrying in %.2fs", remaining, table, delay)
                time.sleep(delay)

    def provision(self, read_capacity: int = 5, write_capacity: int = 1) -> bool:
        """Create the four tables (and the two secondary indexes) if missing.

        Returns True when tables were created. Existing tables are left alone;
        the primary table's presence stands in for all four. The email and
        username indexes serve ``query(..., index=...)``; uniqueness and login
        lookups use the mapping tables, which allow consistent reads.
        """
        t = self._tables
        f = t.fields
        throughput = {"ReadCapacityUnits": read_capacity, "WriteCapacityUnits": write_capacity}
        try:
            self._client.describe_table(TableName=t.user_auth_table)
            return False
        except ClientError as e:
            if (e.response.get("Error") or {}).get("Code") != "ResourceNotFoundException":
                raise

        def gsi(name: str, attr: str) -> Dict[str, Any]:
            return {
                "IndexName": name,
                "KeySchema": [{"AttributeName": attr, "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
                "ProvisionedThroughput": {"ReadCapacityUnits": 5, "WriteCapacityUnits": 1},
            }

        requests = [
            {
                "TableName": t.user_auth_table,
                "AttributeDefinitions": [
                    {"AttributeName": f.id, "AttributeType": "N"},
                    {"AttributeName": f.user_name, "AttributeType": "S"},
                    {"AttributeName": f.email, "AttributeType": "S"},
                ],
                "KeySchema": [{"AttributeName": f.id, "KeyType": "HASH"}],
                "GlobalSecondaryIndexes": [gsi(t.email_index, f.email), gsi(t.user_name_index, f.user_name)],
            },
            {
                "TableName": t.user_auth_details_table,
                "AttributeDefinitions": [
                    {"AttributeName": f.user_auth_id, "AttributeType": "N"},
                    {"AttributeName": f.provider, "AttributeType": "S"},
                ],
                "KeySchema": [
                    {"AttributeName": f.user_auth_id, "KeyType": "HASH"},
                    {"AttributeName": f.provider, "KeyType": "RANGE"},
                ],
            },
            {
                "TableName": t.user_name_mapping_table,
                "AttributeDefinitions": [{"AttributeName": f.user_name, "AttributeType": "S"}],
                "KeySchema": [{"AttributeName": f.user_name, "KeyType": "HASH"}],
            },
            {
                "TableName": t.email_mapping_table,
                "AttributeDefinitions": [{"AttributeName": f.email, "AttributeType": "S"}],
                "KeySchema": [{"AttributeName": f.email, "KeyType": "HASH"}],
            },
        ]
        logger.debug("Creating tables")
        for req in requests:
            self._client.create_table(ProvisionedThroughput=throughput, **req)
        waiter = self._client.get_waiter("table_exists")
        for req in requests:
            waiter.wait(TableName=req["TableName"])
        logger.info("Created tables %s", ", ".join(r["TableName"] for r in requests))
        return True


class DynamoDbIdGenerator:
    """Atomic counter kept in the primary table under the reserved id 0.

    User ids start at 1, so the counter item never collides with a user.
    """

    def __init__(self, client, tables: TableConfig, *, counter_attribute: str = "Counter"):
        self._client = client
        self._table = tables.user_auth_table
        self._key = {tables.fields.id: {"N": "0"}}
        self._attr = counter_attribute

    def next(self) -> int:
        resp = self._client.update_item(
            TableName=self._table,
            Key=self._key,
            UpdateExpression="ADD #c :one",
            ExpressionAttributeNames={"#c": self._attr},
            ExpressionAttributeValues={":one": {"N": "1"}},
            ReturnValues="UPDATED_NEW",
        )
        return int(resp["Attributes"][self._attr]["N"])
