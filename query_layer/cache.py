"""Tagged cache facade over an external key-value store.

The cache is strictly an optimization: every failure talking to the store is
logged and turned into a miss (reads) or a no-op (writes). A tag index never
expires before the keys listed in it; it may list keys that have already
expired, and invalidation simply deletes those again.

Cached payloads keep their driver types: datetimes, Decimals and bytes are
written as tagged JSON objects and rebuilt on read, so a hit returns the same
values a miss does.
"""
import datetime
import decimal
import hashlib
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol

import redis.asyncio as redis

logger = logging.getLogger(__name__)

NO_EXPIRY = -1


class CacheStore(Protocol):
    """Minimal string-keyed store the facade needs"""
    async def get(self, key: str) -> Optional[str]: ...
    async def set(self, key: str, value: str, ttl: int) -> None: ...
    async def delete(self, key: str) -> bool: ...
    async def exists(self, key: str) -> bool: ...
    async def ttl(self, key: str) -> int:
        """Seconds left, ``NO_EXPIRY`` for a persistent key, -2 when missing."""
        ...


class RedisCacheStore:
    def __init__(self, url: str):
        self.client = redis.Redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        if ttl > 0:
            await self.client.set(key, value, ex=ttl)
        else:
            await self.client.set(key, value)

    async def delete(self, key: str) -> bool:
        return await self.client.delete(key) > 0

    async def exists(self, key: str) -> bool:
        return await self.client.exists(key) > 0

    async def ttl(self, key: str) -> int:
        return await self.client.ttl(key)

    async def close(self) -> None:
        await self.client.aclose()


def _json_default(value: Any) -> Any:
    """Readable JSON for tool output and cache-key hashing."""
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, datetime.timedelta):
        return value.total_seconds()
    if isinstance(value, decimal.Decimal):
        # str keeps every digit of an Oracle NUMBER
        return int(value) if value == value.to_integral_value() else str(value)
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True)


def hash_key(*parts: Any) -> str:
    """Short stable digest for building cache keys out of SQL and arguments."""
    return hashlib.sha256(dumps(parts).encode("utf-8")).hexdigest()[:16]


_TYPE = "__type__"


def _encode_typed(value: Any) -> Any:
    if isinstance(value, datetime.datetime):
        return {_TYPE: "datetime", "value": value.isoformat()}
    if isinstance(value, datetime.date):
        return {_TYPE: "date", "value": value.isoformat()}
    if isinstance(value, datetime.timedelta):
        return {_TYPE: "timedelta", "value": [value.days, value.seconds, value.microseconds]}
    if isinstance(value, decimal.Decimal):
        return {_TYPE: "decimal", "value": str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {_TYPE: "bytes", "value": value.hex()}
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


_DECODERS = {
    "datetime": datetime.datetime.fromisoformat,
    "date": datetime.date.fromisoformat,
    "timedelta": lambda parts: datetime.timedelta(*parts),
    "decimal": decimal.Decimal,
    "bytes": bytes.fromhex,
}


def _decode_typed(obj: dict) -> Any:
    if len(obj) == 2 and obj.get(_TYPE) in _DECODERS and "value" in obj:
        return _DECODERS[obj[_TYPE]](obj["value"])
    return obj


def encode_payload(value: Any) -> str:
    return json.dumps(value, default=_encode_typed)


def decode_payload(raw: str) -> Any:
    return json.loads(raw, object_hook=_decode_typed)


class CacheService:
    def __init__(self, store: Optional[CacheStore], key_prefix: str = "app", default_ttl: int = 300):
        self.store = store
        self.key_prefix = key_prefix
        self.default_ttl = default_ttl

    @property
    def enabled(self) -> bool:
        return self.store is not None

    def generate_key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def _tag_key(self, tag: str) -> str:
        return self.generate_key(f"tag:{tag}")

    async def get(self, key: str) -> Any:
        """Return the cached value, or None on a miss or any store failure."""
        if not self.enabled:
            return None
        cache_key = self.generate_key(key)
        try:
            raw = await self.store.get(cache_key)
            if raw is None:
                logger.debug("Cache miss: %s", cache_key)
                return None
            logger.debug("Cache hit: %s", cache_key)
            return decode_payload(raw)
        except Exception as e:
            logger.error("Cache get failed for %s: %s", cache_key, e)
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None, tags: Iterable[str] = ()) -> None:
        if not self.enabled:
            return
        await self._write(key, encode_payload(value), ttl, tags)

    async def _write(self, key: str, payload: str, ttl: Optional[int], tags: Iterable[str]) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        tags = list(tags)
        cache_key = self.generate_key(key)
        try:
            await self.store.set(cache_key, payload, ttl)
            for tag in tags:
                await self._add_to_tag(tag, cache_key, ttl)
            logger.debug("Cache set: %s (ttl=%ss, tags=%s)", cache_key, ttl, tags)
        except Exception as e:
            logger.error("Cache set failed for %s: %s", cache_key, e)

    async def _add_to_tag(self, tag: str, cache_key: str, ttl: int) -> None:
        """Add ``cache_key`` to the tag index without shortening the index's life."""
        tag_key = self._tag_key(tag)
        raw = await self.store.get(tag_key)
        members: List[str] = json.loads(raw) if raw else []
        if cache_key not in members:
            members.append(cache_key)

        index_ttl = ttl if ttl > 0 else 0
        if raw and index_ttl:
            remaining = await self.store.ttl(tag_key)
            if remaining == NO_EXPIRY:
                index_ttl = 0
            else:
                index_ttl = max(remaining, index_ttl)
        await self.store.set(tag_key, json.dumps(members), index_ttl)

    async def delete(self, key: str) -> bool:
        if not self.enabled:
            return False
        cache_key = self.generate_key(key)
        try:
            existed = await self.store.delete(cache_key)
            logger.debug("Cache delete: %s (existed=%s)", cache_key, existed)
            return existed
        except Exception as e:
            logger.error("Cache delete failed for %s: %s", cache_key, e)
            return False

    async def exists(self, key: str) -> bool:
        if not self.enabled:
            return False
        try:
            return await self.store.exists(self.generate_key(key))
        except Exception as e:
            logger.error("Cache exists check failed for %s: %s", key, e)
            return False

    async def remember(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> Any:
        """Return the cached value for ``key`` or load, cache and return it.

        A freshly loaded value goes through the same encoding as a cached one,
        so both paths hand back identical values.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if not self.enabled:
            return value
        payload = encode_payload(value)
        await self._write(key, payload, ttl, tags)
        return decode_payload(payload)

    async def invalidate_by_tags(self, tags: Iterable[str]) -> None:
        """Delete every key indexed under each tag, then the tag index itself.

        Each tag is handled independently; a failure midway leaves the rest of
        that tag's keys to expire by TTL.
        """
        if not self.enabled:
            return
        for tag in tags:
            tag_key = self._tag_key(tag)
            try:
                raw = await self.store.get(tag_key)
                if not raw:
                    continue
                for member in json.loads(raw):
                    await self.store.delete(member)
                await self.store.delete(tag_key)
                logger.debug("Cache tag invalidated: %s", tag)
            except Exception as e:
                logger.error("Cache invalidation failed for tag %s: %s", tag, e)
