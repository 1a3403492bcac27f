"""
DynamoDB storage backend.

Table layout: partition key `_` (collection name), sort key `id`, and one
local secondary index per slot attribute (`_1`..`_5`), each ranging over a
string attribute holding composite keys.

Tables are created with `create_table()` (see `table_definition`). Local
secondary indexes can only be declared at creation time, so an existing table
without them has to be recreated to gain slots.
"""
import asyncio
import logging
from decimal import Decimal
from functools import reduce
from typing import Any, Dict, List, Optional, Tuple

import aioboto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from storage_backend import (
    BEGINS_WITH, DEFAULT_SLOT_FIELDS, EQ, IN, SELECT_ALL, SELECT_COUNT, SORT_KEY,
    BackendLimits, Condition, IndexSlot, QueryResult, StorageBackend, index_name_for,
)
from store_errors import BackendCallError

logger = logging.getLogger(__name__)

_BACKEND_ERRORS = (ClientError, BotoCoreError)


def table_definition(table_name: str, slot_fields: Tuple[str, ...] = DEFAULT_SLOT_FIELDS, partition_key: str = "_") -> Dict[str, Any]:
    def key_schema(hash_attr: str, range_attr: str) -> List[Dict[str, str]]:
        return [
            {"AttributeName": hash_attr, "KeyType": "HASH"},
            {"AttributeName": range_attr, "KeyType": "RANGE"},
        ]

    attrs = [partition_key, SORT_KEY, *slot_fields]
    return {
        "TableName": table_name,
        "AttributeDefinitions": [{"AttributeName": a, "AttributeType": "S"} for a in attrs],
        "KeySchema": key_schema(partition_key, SORT_KEY),
        "LocalSecondaryIndexes": [
            {
                "IndexName": index_name_for(f, partition_key),
                "KeySchema": key_schema(partition_key, f),
                "Projection": {"ProjectionType": "ALL"},
            }
            for f in slot_fields
        ],
        "BillingMode": "PAY_PER_REQUEST",
    }


def to_dynamo(obj: Any) -> Any:
    """Python values to what the boto3 resource layer accepts (no floats)."""
    if isinstance(obj, dict):
        return {k: to_dynamo(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_dynamo(v) for v in obj]
    if isinstance(obj, float):
        return Decimal(str(obj))
    return obj


def from_dynamo(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: from_dynamo(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [from_dynamo(v) for v in obj]
    if isinstance(obj, Decimal):
        return int(obj) if obj % 1 == 0 else float(obj)
    return obj


def _key_expression(c: Condition):
    if c.op == EQ:
        return Key(c.field).eq(c.value)
    if c.op == BEGINS_WITH:
        return Key(c.field).begins_with(c.value)
    raise ValueError(f"Operator {c.op} cannot be used in a key condition")


def _filter_expression(c: Condition):
    # Attr splits dotted names into nested paths
    value = to_dynamo(c.value)
    if c.op == EQ:
        return Attr(c.field).eq(value)
    if c.op == BEGINS_WITH:
        return Attr(c.field).begins_with(value)
    if c.op == IN:
        return Attr(c.field).is_in(value)
    raise ValueError(f"Unknown operator {c.op}")


class DynamoDBBackend(StorageBackend):
    def __init__(
        self,
        table_name: str = "documents",
        region_name: str = "us-east-1",
        endpoint_url: Optional[str] = None,
        slot_fields: Tuple[str, ...] = DEFAULT_SLOT_FIELDS,
        limits: Optional[BackendLimits] = None,
        max_unprocessed_attempts: int = 3,
    ):
        self.table_name = table_name
        self.slot_fields = tuple(slot_fields)
        self.limits = limits or BackendLimits()
        self.max_unprocessed_attempts = max_unprocessed_attempts

        self._resource_kwargs: Dict[str, Any] = {
            "region_name": region_name,
            "config": Config(retries={"max_attempts": 3, "mode": "standard"}),
        }
        if endpoint_url:
            self._resource_kwargs["endpoint_url"] = endpoint_url

        # Created on first use, kept for the lifetime of the backend
        self._session = aioboto3.Session()
        self._resource_context: Optional[Any] = None
        self._resource: Optional[Any] = None
        self._table: Optional[Any] = None
        self._lock = asyncio.Lock()

    async def _get_resource(self) -> Any:
        if self._resource is None:
            async with self._lock:
                if self._resource is None:
                    self._resource_context = self._session.resource("dynamodb", **self._resource_kwargs)
                    self._resource = await self._resource_context.__aenter__()
        return self._resource

    async def _get_table(self) -> Any:
        if self._table is None:
            resource = await self._get_resource()
            self._table = await resource.Table(self.table_name)
        return self._table

    async def _client(self) -> Any:
        return (await self._get_resource()).meta.client

    def _key(self, partition: str, id: str) -> Dict[str, str]:
        return {self.partition_key: partition, SORT_KEY: id}

    async def describe_table(self) -> List[IndexSlot]:
        try:
            client = await self._client()
            response = await client.describe_table(TableName=self.table_name)
        except _BACKEND_ERRORS as e:
            raise BackendCallError(f"DynamoDB describe error: {e}", operation="describe_table") from e

        slots = []
        for index in response["Table"].get("LocalSecondaryIndexes", []):
            range_attr = next(k["AttributeName"] for k in index["KeySchema"] if k["KeyType"] == "RANGE")
            slots.append(IndexSlot(range_attr, index["IndexName"]))
        return sorted(slots, key=lambda s: s.index_name)

    async def query(
        self,
        partition: str,
        key_condition: Optional[Condition] = None,
        index_name: Optional[str] = None,
        filters: Optional[List[Condition]] = None,
        forward: bool = False,
        limit: Optional[int] = None,
        select: str = SELECT_ALL,
    ) -> QueryResult:
        key_expr = Key(self.partition_key).eq(partition)
        if key_condition is not None:
            key_expr = key_expr & _key_expression(key_condition)

        kwargs: Dict[str, Any] = {"KeyConditionExpression": key_expr, "ScanIndexForward": forward}
        if index_name:
            kwargs["IndexName"] = index_name
        if filters:
            kwargs["FilterExpression"] = reduce(lambda a, b: a & b, [_filter_expression(c) for c in filters])
        if select == SELECT_COUNT:
            kwargs["Select"] = "COUNT"

        # DynamoDB applies Limit before filtering, so page until enough matches
        items: List[Dict[str, Any]] = []
        count = 0
        table = await self._get_table()
        try:
            while True:
                response = await table.query(**kwargs)
                if select == SELECT_COUNT:
                    count += response.get("Count", 0)
                else:
                    items.extend(from_dynamo(i) for i in response.get("Items", []))
                    count = len(items)
                if limit is not None and count >= limit:
                    break
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        except _BACKEND_ERRORS as e:
            raise BackendCallError(f"DynamoDB query error: {e}", operation="query") from e

        if limit is not None:
            items = items[:limit]
            count = min(count, limit)
        return QueryResult(items=items, count=count)

    async def put_or_update(self, partition: str, id: str, puts: Dict[str, Any], removes: List[str]) -> Dict[str, Any]:
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        set_parts = []
        remove_parts = []
        for i, (k, v) in enumerate(puts.items()):
            names[f"#p{i}"] = k
            values[f":p{i}"] = to_dynamo(v)
            set_parts.append(f"#p{i} = :p{i}")
        for i, k in enumerate(removes):
            names[f"#r{i}"] = k
            remove_parts.append(f"#r{i}")

        expression = []
        if set_parts:
            expression.append("SET " + ", ".join(set_parts))
        if remove_parts:
            expression.append("REMOVE " + ", ".join(remove_parts))

        kwargs: Dict[str, Any] = {"Key": self._key(partition, id), "ReturnValues": "ALL_NEW"}
        if expression:
            kwargs["UpdateExpression"] = " ".join(expression)
            kwargs["ExpressionAttributeNames"] = names
        if values:
            kwargs["ExpressionAttributeValues"] = values

        table = await self._get_table()
        try:
            response = await table.update_item(**kwargs)
        except _BACKEND_ERRORS as e:
            raise BackendCallError(f"DynamoDB update error: {e}", operation="put_or_update") from e
        return from_dynamo(response.get("Attributes") or self._key(partition, id))

    async def delete_point(self, partition: str, id: str) -> Optional[Dict[str, Any]]:
        table = await self._get_table()
        try:
            response = await table.delete_item(Key=self._key(partition, id), ReturnValues="ALL_OLD")
        except _BACKEND_ERRORS as e:
            raise BackendCallError(f"DynamoDB delete error: {e}", operation="delete_point") from e
        attributes = response.get("Attributes")
        return from_dynamo(attributes) if attributes else None

    async def batch_put(self, partition: str, records: List[Dict[str, Any]]):
        if not records:
            return
        requests = []
        for r in records:
            item = to_dynamo(dict(r))
            item[self.partition_key] = partition
            requests.append({"PutRequest": {"Item": item}})

        resource = await self._get_resource()
        request_items = {self.table_name: requests}
        try:
            for attempt in range(self.max_unprocessed_attempts + 1):
                if attempt:
                    await asyncio.sleep(0.1 * (2 ** (attempt - 1)))
                    logger.warning(
                        "Resubmitting %d unprocessed items (attempt %d/%d)",
                        len(request_items[self.table_name]), attempt, self.max_unprocessed_attempts,
                    )
                response = await resource.batch_write_item(RequestItems=request_items)
                request_items = response.get("UnprocessedItems") or {}
                if not request_items.get(self.table_name):
                    return
        except _BACKEND_ERRORS as e:
            raise BackendCallError(f"DynamoDB batch write error: {e}", operation="batch_put") from e
        raise BackendCallError(
            f"{len(request_items[self.table_name])} items left unprocessed", operation="batch_put"
        )

    async def batch_get(self, partition: str, ids: List[str]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        resource = await self._get_resource()
        request_items: Dict[str, Any] = {self.table_name: {"Keys": [self._key(partition, id) for id in ids]}}
        results: List[Dict[str, Any]] = []
        try:
            for attempt in range(self.max_unprocessed_attempts + 1):
                if attempt:
                    await asyncio.sleep(0.1 * (2 ** (attempt - 1)))
                    logger.warning("Resubmitting unprocessed keys (attempt %d/%d)", attempt, self.max_unprocessed_attempts)
                response = await resource.batch_get_item(RequestItems=request_items)
                results.extend(from_dynamo(i) for i in response.get("Responses", {}).get(self.table_name, []))
                request_items = response.get("UnprocessedKeys") or {}
                if not request_items.get(self.table_name):
                    return results
        except _BACKEND_ERRORS as e:
            raise BackendCallError(f"DynamoDB batch get error: {e}", operation="batch_get") from e
        raise BackendCallError("Keys left unprocessed", operation="batch_get")

    async def create_table(self):
        resource = await self._get_resource()
        client = resource.meta.client
        try:
            await resource.create_table(**table_definition(self.table_name, self.slot_fields, self.partition_key))
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceInUseException":
                raise BackendCallError(f"DynamoDB create error: {e}", operation="create_table") from e
        waiter = client.get_waiter("table_exists")
        await waiter.wait(TableName=self.table_name)

    async def drop_table(self):
        client = await self._client()
        try:
            await client.delete_table(TableName=self.table_name)
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceNotFoundException":
                raise BackendCallError(f"DynamoDB drop error: {e}", operation="drop_table") from e
            return
        waiter = client.get_waiter("table_not_exists")
        await waiter.wait(TableName=self.table_name)
        self._table = None

    async def close(self):
        if self._resource_context is not None:
            await self._resource_context.__aexit__(None, None, None)
        self._resource_context = None
        self._resource = None
        self._table = None
