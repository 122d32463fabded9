"""Amazon DynamoDB backend adapter."""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import math
import threading
import time
from decimal import Decimal
from typing import Any, Sequence

import boto3
from boto3.dynamodb.types import Binary, TypeDeserializer, TypeSerializer
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from polydoc.config import PolydocConfig
from polydoc.errors import (
    NotInitializedError,
    StorageBackendError,
    WriteConflictError,
)
from polydoc.evaluation import element_matches, evaluate
from polydoc.filters import Condition
from polydoc.pagination import ScanPage, decode_native_cursor, encode_native_cursor
from polydoc.primitive import PrimitiveKind
from polydoc.types import DbKey, Document, WriteMode

logger = logging.getLogger(__name__)

RETRIABLE_ERROR_CODES = frozenset(
    {
        "TransactionConflictException",
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "InternalServerError",
        "LimitExceededException",
    }
)

_BATCH_GET_LIMIT = 100


def _error_code(err: BaseException) -> str:
    if isinstance(err, ClientError):
        return str(err.response.get("Error", {}).get("Code", ""))
    return ""


def _to_dynamo(value: Any) -> Any:
    """JSON value -> value TypeSerializer accepts (floats become Decimal)."""
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise StorageBackendError("serialize", f"DynamoDB cannot store {value!r}")
        return Decimal(repr(value))
    if isinstance(value, int):
        return value
    if isinstance(value, dict):
        return {str(k): _to_dynamo(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_dynamo(v) for v in value]
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return str(value)


def _from_dynamo(value: Any) -> Any:
    """Deserialized DynamoDB value -> JSON value."""
    if isinstance(value, Decimal):
        if value == value.to_integral_value():
            return int(value)
        return float(value)
    if isinstance(value, Binary):
        return base64.b64encode(value.value).decode("ascii")
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, dict):
        return {k: _from_dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_from_dynamo(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_from_dynamo(v) for v in value), key=str)
    return value


def _key_attribute_type(key: DbKey) -> str:
    kind = key.value.kind
    if kind in (PrimitiveKind.INTEGER, PrimitiveKind.DOUBLE):
        return "N"
    if kind is PrimitiveKind.BYTE_ARRAY:
        return "B"
    return "S"


def _key_native_value(key: DbKey) -> Any:
    kind = key.value.kind
    if kind is PrimitiveKind.DOUBLE:
        return Decimal(repr(key.value.as_double()))
    if kind is PrimitiveKind.BOOLEAN:
        return key.value.canonical_string()
    return key.value.value


def _cursor_from_last_key(last_key: dict[str, Any] | None) -> dict[str, Any] | None:
    if not last_key:
        return None
    out: dict[str, Any] = {}
    for name, av in last_key.items():
        if "B" in av:
            out[name] = {"B": base64.b64encode(bytes(av["B"])).decode("ascii")}
        else:
            out[name] = dict(av)
    return out


def _last_key_from_cursor(cursor: dict[str, Any] | None) -> dict[str, Any] | None:
    if not cursor:
        return None
    out: dict[str, Any] = {}
    for name, av in cursor.items():
        if not isinstance(av, dict):
            return None
        if "B" in av:
            try:
                out[name] = {"B": base64.b64decode(av["B"], validate=True)}
            except (binascii.Error, TypeError, ValueError):
                logger.warning("Ignoring native cursor with invalid binary key; restarting scan")
                return None
        else:
            out[name] = av
    return out


class DynamoDBBackend:
    """One DynamoDB table per logical table, named ``<database>-<table>``.

    Tables are created lazily on first write with the written key as hash key
    (on-demand billing). Physical writes use ``attribute_not_exists`` /
    ``attribute_exists`` conditions for CREATE / REPLACE modes.
    """

    name = "dynamodb"

    def __init__(
        self,
        *,
        database_name: str = "default",
        region: str | None = None,
        endpoint_url: str | None = None,
        config: PolydocConfig | None = None,
        client: Any | None = None,
    ) -> None:
        cfg = config or PolydocConfig()
        self.database_name = database_name
        self._table_prefix = f"{database_name}-"
        if client is None:
            try:
                session = boto3.Session(region_name=region)
                client = session.client(
                    "dynamodb",
                    region_name=region,
                    endpoint_url=endpoint_url,
                    config=BotoConfig(
                        connect_timeout=cfg.dynamodb_request_timeout_s,
                        read_timeout=cfg.dynamodb_request_timeout_s,
                        retries={"max_attempts": 5, "mode": "standard"},
                    ),
                )
            except (BotoCoreError, ValueError) as e:
                raise NotInitializedError(self.name, str(e)) from e
        self._client = client
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()
        self._known_tables: dict[str, str] = {}
        self._tables_lock = threading.Lock()
        self._initialized = True

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # --- Helpers ---

    def _physical(self, table: str) -> str:
        return f"{self._table_prefix}{table}"

    def _serialize_item(self, document: Document) -> dict[str, Any]:
        return {k: self._serializer.serialize(_to_dynamo(v)) for k, v in document.items()}

    def _deserialize_item(self, item: dict[str, Any]) -> Document:
        return {k: _from_dynamo(self._deserializer.deserialize(v)) for k, v in item.items()}

    def _key_item(self, key: DbKey) -> dict[str, Any]:
        return {key.name: self._serializer.serialize(_key_native_value(key))}

    def _ensure_table(self, table: str, key: DbKey) -> None:
        physical = self._physical(table)
        with self._tables_lock:
            known = self._known_tables.get(physical)
        if known is None:
            try:
                desc = self._client.describe_table(TableName=physical)
                known = str(desc["Table"]["KeySchema"][0]["AttributeName"])
            except ClientError as e:
                if _error_code(e) != "ResourceNotFoundException":
                    raise
                known = self._create_table(physical, key)
            with self._tables_lock:
                self._known_tables[physical] = known
        if known != key.name:
            raise StorageBackendError(
                "write",
                f"DynamoDB table '{physical}' is keyed by '{known}', not '{key.name}'",
            )

    def _create_table(self, physical: str, key: DbKey) -> str:
        logger.info(f"Creating DynamoDB table {physical} with hash key '{key.name}'")
        try:
            self._client.create_table(
                TableName=physical,
                KeySchema=[{"AttributeName": key.name, "KeyType": "HASH"}],
                AttributeDefinitions=[
                    {"AttributeName": key.name, "AttributeType": _key_attribute_type(key)}
                ],
                BillingMode="PAY_PER_REQUEST",
            )
        except ClientError as e:
            if _error_code(e) != "ResourceInUseException":
                raise
        self._client.get_waiter("table_exists").wait(TableName=physical)
        desc = self._client.describe_table(TableName=physical)
        return str(desc["Table"]["KeySchema"][0]["AttributeName"])

    # --- Sync implementations (run in worker threads) ---

    def _get_sync(self, table: str, key: DbKey) -> Document | None:
        try:
            resp = self._client.get_item(
                TableName=self._physical(table),
                Key=self._key_item(key),
                ConsistentRead=True,
            )
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                return None
            raise
        item = resp.get("Item")
        if not item:
            return None
        return self._deserialize_item(item)

    def _get_many_sync(self, table: str, keys: Sequence[DbKey]) -> list[Document]:
        physical = self._physical(table)
        unique: dict[tuple[str, str], DbKey] = {}
        for key in keys:
            unique.setdefault((key.name, key.value.canonical_string()), key)
        returned: list[Document] = []
        pending = [self._key_item(k) for k in unique.values()]
        while pending:
            chunk, pending = pending[:_BATCH_GET_LIMIT], pending[_BATCH_GET_LIMIT:]
            request: dict[str, Any] = {physical: {"Keys": chunk, "ConsistentRead": True}}
            while request:
                try:
                    resp = self._client.batch_get_item(RequestItems=request)
                except ClientError as e:
                    if _error_code(e) == "ResourceNotFoundException":
                        return []
                    raise
                returned.extend(
                    self._deserialize_item(raw)
                    for raw in resp.get("Responses", {}).get(physical, [])
                )
                request = resp.get("UnprocessedKeys") or {}
                if request:
                    time.sleep(0.05)
        # Stored key values come back widened (whole doubles as int, booleans as text).
        out: list[Document] = []
        for key in unique.values():
            for doc in returned:
                if key.name in doc and element_matches(doc[key.name], key.value):
                    out.append(doc)
                    break
        return out

    def _write_sync(self, table: str, key: DbKey, document: Document, mode: WriteMode) -> None:
        self._ensure_table(table, key)
        item = self._serialize_item({k: v for k, v in document.items() if k != key.name})
        item.update(self._key_item(key))
        kwargs: dict[str, Any] = {"TableName": self._physical(table), "Item": item}
        if mode is WriteMode.CREATE:
            kwargs["ConditionExpression"] = "attribute_not_exists(#k)"
            kwargs["ExpressionAttributeNames"] = {"#k": key.name}
        elif mode is WriteMode.REPLACE:
            kwargs["ConditionExpression"] = "attribute_exists(#k)"
            kwargs["ExpressionAttributeNames"] = {"#k": key.name}
        try:
            self._client.put_item(**kwargs)
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                raise WriteConflictError(
                    f"Item {key} changed concurrently in DynamoDB table '{table}'"
                ) from e
            raise

    def _delete_sync(self, table: str, key: DbKey) -> bool:
        try:
            resp = self._client.delete_item(
                TableName=self._physical(table),
                Key=self._key_item(key),
                ReturnValues="ALL_OLD",
            )
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                return False
            raise
        return bool(resp.get("Attributes"))

    def _scan_sync(
        self,
        table: str,
        condition: Condition | None,
        cursor: str | None,
        page_size: int | None,
    ) -> ScanPage[Document]:
        kwargs: dict[str, Any] = {"TableName": self._physical(table), "ConsistentRead": True}
        start = _last_key_from_cursor(decode_native_cursor(cursor)) if page_size else None
        resuming = start is not None
        items: list[Document] = []
        while True:
            if start:
                kwargs["ExclusiveStartKey"] = start
            if page_size is not None:
                kwargs["Limit"] = page_size - len(items)
            try:
                resp = self._client.scan(**kwargs)
            except ClientError as e:
                if _error_code(e) == "ResourceNotFoundException":
                    return ScanPage(items=[], next_cursor=None, total_count=0)
                if _error_code(e) == "ValidationException" and resuming:
                    # The cursor key no longer fits the table schema.
                    logger.warning(f"Ignoring stale native cursor for '{table}'; restarting scan")
                    kwargs.pop("ExclusiveStartKey", None)
                    start = None
                    resuming = False
                    continue
                raise
            resuming = False
            for raw in resp.get("Items", []):
                doc = self._deserialize_item(raw)
                if condition is None or evaluate(doc, condition):
                    items.append(doc)
            start = resp.get("LastEvaluatedKey")
            if not start:
                break
            if page_size is not None and len(items) >= page_size:
                break
        if page_size is None:
            return ScanPage(items=items, next_cursor=None, total_count=len(items))
        return ScanPage(
            items=items,
            next_cursor=encode_native_cursor(_cursor_from_last_key(start)),
            total_count=None,
        )

    def _list_tables_sync(self) -> list[str]:
        names: list[str] = []
        paginator = self._client.get_paginator("list_tables")
        for page in paginator.paginate():
            for physical in page.get("TableNames", []):
                if physical.startswith(self._table_prefix):
                    names.append(physical[len(self._table_prefix) :])
        return sorted(names)

    def _drop_table_sync(self, table: str) -> bool:
        physical = self._physical(table)
        with self._tables_lock:
            self._known_tables.pop(physical, None)
        try:
            self._client.delete_table(TableName=physical)
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                return False
            raise
        self._client.get_waiter("table_not_exists").wait(TableName=physical)
        return True

    def _increment_sync(
        self,
        table: str,
        key: DbKey,
        segments: tuple[str, ...],
        delta: int | float,
    ) -> tuple[float, bool] | None:
        if len(segments) != 1:
            return None
        self._ensure_table(table, key)
        try:
            resp = self._client.update_item(
                TableName=self._physical(table),
                Key=self._key_item(key),
                UpdateExpression="SET #a = if_not_exists(#a, :zero) + :delta",
                ExpressionAttributeNames={"#a": segments[0]},
                ExpressionAttributeValues={
                    ":zero": {"N": "0"},
                    ":delta": self._serializer.serialize(_to_dynamo(delta)),
                },
                ReturnValues="ALL_OLD",
            )
        except ClientError as e:
            if _error_code(e) == "ValidationException":
                # Existing non-numeric value; let the coordinator overwrite it.
                logger.debug(f"Native increment rejected for {key} in '{table}': {e}")
                return None
            raise
        old_item = resp.get("Attributes")
        if not old_item:
            return float(delta), True
        old = self._deserialize_item(old_item).get(segments[0])
        base = old if isinstance(old, (int, float)) and not isinstance(old, bool) else 0
        return float(base + delta), False

    # --- Adapter contract ---

    async def exists(self, table: str, key: DbKey) -> bool:
        return await asyncio.to_thread(self._get_sync, table, key) is not None

    async def get(self, table: str, key: DbKey) -> Document | None:
        return await asyncio.to_thread(self._get_sync, table, key)

    async def get_many(self, table: str, keys: Sequence[DbKey]) -> list[Document]:
        if not keys:
            return []
        return await asyncio.to_thread(self._get_many_sync, table, keys)

    async def write(
        self,
        table: str,
        key: DbKey,
        document: Document,
        mode: WriteMode = WriteMode.UPSERT,
    ) -> None:
        await asyncio.to_thread(self._write_sync, table, key, document, mode)

    async def delete(self, table: str, key: DbKey) -> bool:
        return await asyncio.to_thread(self._delete_sync, table, key)

    async def scan(
        self,
        table: str,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> ScanPage[Document]:
        return await asyncio.to_thread(self._scan_sync, table, None, cursor, page_size)

    async def scan_filtered(
        self,
        table: str,
        condition: Condition,
        cursor: str | None = None,
        page_size: int | None = None,
    ) -> ScanPage[Document]:
        return await asyncio.to_thread(self._scan_sync, table, condition, cursor, page_size)

    async def list_tables(self) -> list[str]:
        return await asyncio.to_thread(self._list_tables_sync)

    async def drop_table(self, table: str) -> bool:
        return await asyncio.to_thread(self._drop_table_sync, table)

    async def increment(
        self,
        table: str,
        key: DbKey,
        segments: tuple[str, ...],
        delta: int | float,
    ) -> tuple[float, bool] | None:
        return await asyncio.to_thread(self._increment_sync, table, key, segments, delta)

    def is_retriable(self, exc: BaseException) -> bool:
        if isinstance(exc, WriteConflictError):
            return True
        return _error_code(exc) in RETRIABLE_ERROR_CODES

    def close(self) -> None:
        self._initialized = False
        close = getattr(self._client, "close", None)
        if callable(close):
            close()

    def storage_info(self) -> dict[str, Any]:
        return {"backend": self.name, "table_prefix": self._table_prefix}
