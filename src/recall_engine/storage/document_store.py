# storage/document_store.py
"""
Durable key-value stores for document bodies, source metadata and blobs.

Records are JSON-compatible dicts grouped by namespace. Blobs are dicts
whose ``data`` field holds raw bytes and whose other fields are scalar flags.
"""

import copy
import json
from typing import Any, AsyncIterator, Optional, Protocol

from loguru import logger
from redis import asyncio as aioredis

from ..config import Config
from ..errors import StorageError


class DocumentStore(Protocol):
    """Namespaced async key-value store with cursor-style scans."""

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        """Return the record for key, or None."""

    async def put(self, namespace: str, key: str, record: dict[str, Any]) -> None:
        """Insert or replace a record."""

    async def delete(self, namespace: str, key: str) -> None:
        """Remove a record if present."""

    async def get_all(self, namespace: str) -> list[dict[str, Any]]:
        """Return every record in a namespace."""

    def scan(self, namespace: str) -> AsyncIterator[dict[str, Any]]:
        """Iterate a namespace incrementally."""

    async def clear(self, namespace: str) -> None:
        """Drop every record in a namespace."""

    async def get_blob(self, key: str) -> Optional[dict[str, Any]]:
        """Return a stored blob record, or None."""

    async def put_blob(self, key: str, record: dict[str, Any]) -> None:
        """Store a blob record (``data`` is bytes)."""


class InMemoryDocumentStore:
    """
    Process-local DocumentStore.

    Records are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._namespaces: dict[str, dict[str, dict[str, Any]]] = {}
        self._blobs: dict[str, dict[str, Any]] = {}

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        record = self._namespaces.get(namespace, {}).get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, namespace: str, key: str, record: dict[str, Any]) -> None:
        self._namespaces.setdefault(namespace, {})[key] = copy.deepcopy(record)

    async def delete(self, namespace: str, key: str) -> None:
        self._namespaces.get(namespace, {}).pop(key, None)

    async def get_all(self, namespace: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self._namespaces.get(namespace, {}).values()]

    async def scan(self, namespace: str) -> AsyncIterator[dict[str, Any]]:
        # Snapshot keys so writes during iteration don't break the scan
        records = self._namespaces.get(namespace, {})
        for key in list(records.keys()):
            record = records.get(key)
            if record is not None:
                yield copy.deepcopy(record)

    async def clear(self, namespace: str) -> None:
        self._namespaces.pop(namespace, None)

    async def get_blob(self, key: str) -> Optional[dict[str, Any]]:
        record = self._blobs.get(key)
        return dict(record) if record is not None else None

    async def put_blob(self, key: str, record: dict[str, Any]) -> None:
        self._blobs[key] = dict(record)

    def namespaces(self) -> list[str]:
        return list(self._namespaces.keys())


class RedisDocumentStore:
    """
    Redis-backed DocumentStore.

    Layout:
    - ``<prefix>:ns:<namespace>``: hash of key -> JSON record
    - ``<prefix>:blob:<key>``: hash with a binary ``data`` field plus flags

    Two clients share connection settings: one decodes responses (JSON
    records), one does not (blobs).
    """

    def __init__(
        self,
        url: str = Config.REDIS_URL,
        prefix: str = Config.REDIS_NAMESPACE_PREFIX,
        socket_timeout: float = Config.REDIS_SOCKET_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
        blob_client: Optional[aioredis.Redis] = None,
        scan_count: int = 200,
    ):
        self.prefix = prefix
        self.scan_count = scan_count
        self._client = client or aioredis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )
        self._blob_client = blob_client or aioredis.from_url(
            url,
            decode_responses=False,
            socket_connect_timeout=socket_timeout,
            socket_timeout=socket_timeout,
        )

    def _ns_key(self, namespace: str) -> str:
        return f"{self.prefix}:ns:{namespace}"

    def _blob_key(self, key: str) -> str:
        return f"{self.prefix}:blob:{key}"

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[dict[str, Any]]:
        if raw is None:
            return None
        return json.loads(raw)

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        try:
            raw = await self._client.hget(self._ns_key(namespace), key)
        except aioredis.RedisError as e:
            raise StorageError(f"Redis read failed for {namespace}/{key}: {e}") from e
        return self._decode(raw)

    async def put(self, namespace: str, key: str, record: dict[str, Any]) -> None:
        try:
            await self._client.hset(
                self._ns_key(namespace), key, json.dumps(record, ensure_ascii=False)
            )
        except aioredis.RedisError as e:
            raise StorageError(f"Redis write failed for {namespace}/{key}: {e}") from e

    async def delete(self, namespace: str, key: str) -> None:
        try:
            await self._client.hdel(self._ns_key(namespace), key)
        except aioredis.RedisError as e:
            raise StorageError(f"Redis delete failed for {namespace}/{key}: {e}") from e

    async def get_all(self, namespace: str) -> list[dict[str, Any]]:
        try:
            values = await self._client.hvals(self._ns_key(namespace))
        except aioredis.RedisError as e:
            raise StorageError(f"Redis read failed for namespace {namespace}: {e}") from e
        return [json.loads(v) for v in values]

    async def scan(self, namespace: str) -> AsyncIterator[dict[str, Any]]:
        try:
            async for _key, raw in self._client.hscan_iter(
                self._ns_key(namespace), count=self.scan_count
            ):
                yield json.loads(raw)
        except aioredis.RedisError as e:
            raise StorageError(f"Redis scan failed for namespace {namespace}: {e}") from e

    async def clear(self, namespace: str) -> None:
        try:
            await self._client.delete(self._ns_key(namespace))
        except aioredis.RedisError as e:
            raise StorageError(f"Redis clear failed for namespace {namespace}: {e}") from e

    async def get_blob(self, key: str) -> Optional[dict[str, Any]]:
        try:
            raw = await self._blob_client.hgetall(self._blob_key(key))
        except aioredis.RedisError as e:
            raise StorageError(f"Redis blob read failed for {key}: {e}") from e
        if not raw:
            return None

        record: dict[str, Any] = {}
        for field_name, value in raw.items():
            name = field_name.decode("utf-8")
            if name == "data":
                record[name] = value
            else:
                record[name] = json.loads(value.decode("utf-8"))
        return record

    async def put_blob(self, key: str, record: dict[str, Any]) -> None:
        mapping: dict[str, Any] = {}
        for name, value in record.items():
            mapping[name] = value if name == "data" else json.dumps(value)
        try:
            redis_key = self._blob_key(key)
            async with self._blob_client.pipeline(transaction=True) as pipe:
                pipe.delete(redis_key)
                pipe.hset(redis_key, mapping=mapping)
                await pipe.execute()
        except aioredis.RedisError as e:
            raise StorageError(f"Redis blob write failed for {key}: {e}") from e
        logger.debug(f"Stored blob {key} ({len(record.get('data', b''))} bytes)")

    async def aclose(self) -> None:
        await self._client.aclose()
        await self._blob_client.aclose()
