"""
Key-value store for the proxy's bookkeeping: per-second rate counters and
per-prefix breaker records.

Two backends share one interface:

- ``InMemoryProxyStateStore``: process-local, for single-instance deployments
  and tests. Rate caps only hold per process.
- ``DynamoDbProxyStateStore``: a DynamoDB table shared by every instance.
  Counter increments are a single ``UpdateItem ADD`` so concurrent callers
  never lose an increment. Expired items are removed by the table's TTL on
  the ``expiresAt`` attribute.

Backends raise ``ProxyStateStoreError`` for any storage failure; callers
decide whether to fail open.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from app.vars import (
    AWS_ENDPOINT_URL_DYNAMODB,
    AWS_REGION,
    PROXY_STATE_STORE,
    STATE_TABLE_NAME,
)

logger = logging.getLogger("uvicorn.error")

EXPIRY_ATTRIBUTE = "expiresAt"


class ProxyStateStoreError(Exception):
    """Raised when the backing store cannot be read or written."""


class ProxyStateStoreBase(ABC):
    @abstractmethod
    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Atomically add one to the counter at ``key`` and return the new value."""

    @abstractmethod
    async def get(self, key: str) -> Optional[dict[str, Any]]:
        pass

    @abstractmethod
    async def put(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        pass

    async def close(self) -> None:
        return None


def proxy_state_store(name: str = PROXY_STATE_STORE) -> ProxyStateStoreBase:
    name = (name or "memory").lower()
    if name in ("memory", "inmemory"):
        return InMemoryProxyStateStore()
    if name in ("dynamo", "dynamodb"):
        return DynamoDbProxyStateStore()
    raise ValueError(f"Unknown proxy state store type: {name}")


class InMemoryProxyStateStore(ProxyStateStoreBase):
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._items: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[dict[str, Any]]:
        item = self._items.get(key)
        if item is None:
            return None
        if item[EXPIRY_ATTRIBUTE] <= self._clock():
            del self._items[key]
            return None
        return item

    def _sweep(self) -> None:
        now = self._clock()
        expired = [k for k, v in self._items.items() if v[EXPIRY_ATTRIBUTE] <= now]
        for key in expired:
            del self._items[key]

    async def increment(self, key: str, ttl_seconds: int) -> int:
        async with self._lock:
            item = self._live(key)
            if item is None:
                self._sweep()
                item = {"count": 0, EXPIRY_ATTRIBUTE: int(self._clock()) + ttl_seconds}
                self._items[key] = item
            item["count"] += 1
            return item["count"]

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        async with self._lock:
            item = self._live(key)
            return dict(item) if item is not None else None

    async def put(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        async with self._lock:
            self._items[key] = {
                **value,
                EXPIRY_ATTRIBUTE: int(self._clock()) + ttl_seconds,
            }


def _plain(value: Any) -> Any:
    """DynamoDB returns numbers as Decimal."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


class DynamoDbProxyStateStore(ProxyStateStoreBase):
    """
    Proxy state in a DynamoDB table keyed by the string attribute ``stateKey``.

    boto3 is synchronous; every call runs in a worker thread.
    """

    def __init__(
        self,
        table_name: str = STATE_TABLE_NAME,
        table=None,
        clock: Callable[[], float] = time.time,
    ):
        self.table_name = table_name
        self._table = table
        self._clock = clock

    def _get_table(self):
        if self._table is None:
            kwargs = {"region_name": AWS_REGION}
            if AWS_ENDPOINT_URL_DYNAMODB:
                kwargs["endpoint_url"] = AWS_ENDPOINT_URL_DYNAMODB
            self._table = boto3.resource("dynamodb", **kwargs).Table(self.table_name)
            logger.info(
                f"[StateStore] Using DynamoDB table {self.table_name} in {AWS_REGION}"
            )
        return self._table

    def _expires_at(self, ttl_seconds: int) -> int:
        return int(self._clock()) + ttl_seconds

    async def _call(self, operation: str, key: str, fn, **kwargs):
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise ProxyStateStoreError(
                f"DynamoDB {operation} failed for {key} in {self.table_name}"
            ) from e

    async def increment(self, key: str, ttl_seconds: int) -> int:
        table = self._get_table()
        response = await self._call(
            "update_item",
            key,
            table.update_item,
            Key={"stateKey": key},
            UpdateExpression="ADD #count :one SET #expires = if_not_exists(#expires, :expires)",
            ExpressionAttributeNames={"#count": "count", "#expires": EXPIRY_ATTRIBUTE},
            ExpressionAttributeValues={":one": 1, ":expires": self._expires_at(ttl_seconds)},
            ReturnValues="UPDATED_NEW",
        )
        return int(response["Attributes"]["count"])

    async def get(self, key: str) -> Optional[dict[str, Any]]:
        table = self._get_table()
        response = await self._call(
            "get_item", key, table.get_item, Key={"stateKey": key}, ConsistentRead=True
        )
        item = response.get("Item")
        if not item:
            return None
        # TTL deletion lags; treat an expired item as absent
        expires_at = _plain(item.get(EXPIRY_ATTRIBUTE, 0))
        if expires_at and expires_at <= self._clock():
            return None
        return {k: _plain(v) for k, v in item.items() if k != "stateKey"}

    async def put(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        table = self._get_table()
        await self._call(
            "put_item",
            key,
            table.put_item,
            Item={
                "stateKey": key,
                **value,
                EXPIRY_ATTRIBUTE: self._expires_at(ttl_seconds),
            },
        )
