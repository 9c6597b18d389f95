"""Redis-backed shared fragment cache.

Key layout (``prefix`` defaults to ``memory``)::

    {prefix}:user:{user_id}:active              hash  fragment id -> entry JSON   (active TTL)
    {prefix}:user:{user_id}:important           JSON list of top fragments       (important TTL)
    {prefix}:user:{user_id}:context:{digest}    JSON list of retrieval results   (context TTL)

Every call is bounded by a short timeout. Timeouts, connection errors and a
disabled client all surface as ``CacheUnavailable`` so callers can fall
through to the next tier.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
import time
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from loguru import logger
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..config import DistributedCacheConfig
from ..exceptions import CacheUnavailable
from ..models import CacheEntry, MemoryFragment

T = TypeVar("T")

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def _ms(seconds: float) -> int:
    return max(1, int(seconds * 1000))


def _glob_escape(value: str) -> str:
    return _GLOB_SPECIAL.sub(r"\\\1", value)


class DistributedCache:
    """Shared tier with TTL classes for active, important and context sets."""

    name = "distributed"

    def __init__(self, client: Redis | None, config: DistributedCacheConfig | None = None):
        self._client = client
        self.config = config or DistributedCacheConfig()
        self.prefix = self.config.key_prefix
        self._timeout = self.config.timeout_ms / 1000.0

    @classmethod
    def from_config(cls, config: DistributedCacheConfig) -> "DistributedCache":
        if not config.enabled:
            return cls(None, config)
        client = Redis.from_url(config.url, decode_responses=True)
        return cls(client, config)

    @property
    def enabled(self) -> bool:
        return self._client is not None

    # ------------------------------------------------------------------
    # Keys and encoding
    # ------------------------------------------------------------------

    def _user_prefix(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}"

    def _active_key(self, user_id: str) -> str:
        return f"{self._user_prefix(user_id)}:active"

    def _important_key(self, user_id: str) -> str:
        return f"{self._user_prefix(user_id)}:important"

    def _context_key(self, user_id: str, query: str) -> str:
        digest = hashlib.sha1(query.encode("utf-8")).hexdigest()[:16]
        return f"{self._user_prefix(user_id)}:context:{digest}"

    @staticmethod
    def _encode_entry(fragment: MemoryFragment, expires_at: float) -> str:
        return json.dumps(
            {
                "fragment": fragment.model_dump(mode="json"),
                "expires_at": expires_at,
                "dirty": False,
            },
            ensure_ascii=False,
        )

    @staticmethod
    def _decode_entry(raw: str) -> CacheEntry:
        data = json.loads(raw)
        return CacheEntry(
            fragment=MemoryFragment.model_validate(data["fragment"]),
            expires_at=data.get("expires_at"),
            dirty=bool(data.get("dirty", False)),
        )

    @staticmethod
    def _encode_list(fragments: Iterable[MemoryFragment]) -> str:
        return json.dumps(
            [f.model_dump(mode="json") for f in fragments], ensure_ascii=False
        )

    @staticmethod
    def _decode_list(raw: str | None) -> list[MemoryFragment]:
        if not raw:
            return []
        return [MemoryFragment.model_validate(item) for item in json.loads(raw)]

    async def _call(self, op: str, fn: Callable[[Redis], Awaitable[T]]) -> T:
        if self._client is None:
            raise CacheUnavailable(self.name, "disabled")
        try:
            return await asyncio.wait_for(fn(self._client), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise CacheUnavailable(
                self.name, f"{op} timed out after {self.config.timeout_ms}ms"
            ) from e
        except (RedisError, OSError) as e:
            raise CacheUnavailable(self.name, f"{op} failed: {e}") from e
        except (ValueError, KeyError) as e:
            raise CacheUnavailable(self.name, f"{op} returned a corrupt entry: {e}") from e

    # ------------------------------------------------------------------
    # Active set (tier contract)
    # ------------------------------------------------------------------

    async def get(self, user_id: str, key: str) -> MemoryFragment | None:
        async def op(r: Redis) -> CacheEntry | None:
            raw = await r.hget(self._active_key(user_id), key)
            return None if raw is None else self._decode_entry(raw)

        entry = await self._call("get", op)
        if entry is None or entry.expired(time.time()):
            return None
        return entry.fragment

    async def get_entries(self, user_id: str) -> list[CacheEntry]:
        async def op(r: Redis) -> list[CacheEntry]:
            raw = await r.hgetall(self._active_key(user_id))
            return [self._decode_entry(value) for value in raw.values()]

        entries = await self._call("get_entries", op)
        now = time.time()
        entries = [e for e in entries if not e.expired(now)]
        entries.sort(key=lambda e: e.fragment.rank_key)
        return entries

    async def get_all(self, user_id: str) -> list[MemoryFragment]:
        return [entry.fragment for entry in await self.get_entries(user_id)]

    async def put(
        self, user_id: str, fragment: MemoryFragment, ttl: float | None = None
    ) -> None:
        ttl = ttl or self.config.active_ttl_seconds
        key = self._active_key(user_id)
        value = self._encode_entry(fragment, time.time() + ttl)

        async def op(r: Redis) -> int:
            async with r.pipeline(transaction=True) as pipe:
                pipe.hset(key, fragment.id, value)
                pipe.pexpire(key, _ms(ttl))
                pipe.hlen(key)
                _, _, size = await pipe.execute()
            return int(size)

        size = await self._call("put", op)
        if size > self.config.capacity_per_user:
            await self._trim(user_id)

    async def delete(self, user_id: str, key: str) -> bool:
        removed = await self._call("delete", lambda r: r.hdel(self._active_key(user_id), key))
        return bool(removed)

    async def _trim(self, user_id: str) -> None:
        entries = await self.get_entries(user_id)
        excess = [e.fragment.id for e in entries[self.config.capacity_per_user :]]
        if excess:
            await self._call("trim", lambda r: r.hdel(self._active_key(user_id), *excess))
            logger.debug(f"Trimmed {len(excess)} fragments from distributed set of {user_id}")

    async def replace_all(
        self,
        user_id: str,
        fragments: Iterable[MemoryFragment],
        ttl: float | None = None,
        expires_at: float | None = None,
    ) -> None:
        """Overwrite a user's active set.

        A fresh fill expires ``ttl`` from now. Passing ``expires_at`` keeps an
        existing set's deadline instead, so merging new fragments into a
        set never extends the life of the entries already in it.
        """
        if expires_at is None:
            expires_at = time.time() + (ttl or self.config.active_ttl_seconds)
        remaining = expires_at - time.time()
        ranked = sorted(fragments, key=lambda f: f.rank_key)[: self.config.capacity_per_user]
        key = self._active_key(user_id)
        mapping = {f.id: self._encode_entry(f, expires_at) for f in ranked}

        async def op(r: Redis) -> None:
            async with r.pipeline(transaction=True) as pipe:
                pipe.delete(key)
                if mapping and remaining > 0:
                    pipe.hset(key, mapping=mapping)
                    pipe.pexpire(key, _ms(remaining))
                await pipe.execute()

        await self._call("replace_all", op)

    async def refresh_fragment(self, user_id: str, fragment: MemoryFragment) -> bool:
        """Overwrite a cached copy in place, keeping its expiry.

        Returns False when the fragment is not cached.
        """
        key = self._active_key(user_id)

        async def op(r: Redis) -> bool:
            raw = await r.hget(key, fragment.id)
            if raw is None:
                return False
            entry = self._decode_entry(raw)
            await r.hset(key, fragment.id, self._encode_entry(fragment, entry.expires_at))
            return True

        return await self._call("refresh_fragment", op)

    async def clear(self, user_id: str) -> int:
        """Delete every key of a user (active, important and context sets)."""
        pattern = f"{_glob_escape(self._user_prefix(user_id))}:*"

        async def op(r: Redis) -> int:
            keys = [k async for k in r.scan_iter(match=pattern)]
            if not keys:
                return 0
            return int(await r.delete(*keys))

        return await self._call("clear", op)

    # ------------------------------------------------------------------
    # Important and context sets
    # ------------------------------------------------------------------

    async def refresh_important(
        self, user_id: str, fragments: Iterable[MemoryFragment]
    ) -> list[MemoryFragment]:
        important = sorted(
            (f for f in fragments if f.importance_score > self.config.important_threshold),
            key=lambda f: f.rank_key,
        )[: self.config.important_limit]
        key = self._important_key(user_id)
        if important:
            payload = self._encode_list(important)
            ttl_ms = _ms(self.config.important_ttl_seconds)
            await self._call("refresh_important", lambda r: r.set(key, payload, px=ttl_ms))
        else:
            await self._call("refresh_important", lambda r: r.delete(key))
        return important

    async def get_important(self, user_id: str) -> list[MemoryFragment]:
        async def op(r: Redis) -> list[MemoryFragment]:
            return self._decode_list(await r.get(self._important_key(user_id)))

        return await self._call("get_important", op)

    async def get_context(self, user_id: str, query: str) -> list[MemoryFragment] | None:
        """Cached retrieval result; None on a miss, possibly [] on a hit."""

        async def op(r: Redis) -> list[MemoryFragment] | None:
            raw = await r.get(self._context_key(user_id, query))
            return None if raw is None else self._decode_list(raw)

        return await self._call("get_context", op)

    async def put_context(
        self, user_id: str, query: str, fragments: Iterable[MemoryFragment]
    ) -> None:
        payload = self._encode_list(fragments)
        ttl_ms = _ms(self.config.context_ttl_seconds)
        await self._call(
            "put_context",
            lambda r: r.set(self._context_key(user_id, query), payload, px=ttl_ms),
        )

    async def invalidate_derived(self, user_id: str) -> int:
        """Drop the important and context sets, keeping the active set."""
        pattern = f"{_glob_escape(self._user_prefix(user_id))}:context:*"

        async def op(r: Redis) -> int:
            keys = [self._important_key(user_id)]
            keys += [k async for k in r.scan_iter(match=pattern)]
            return int(await r.delete(*keys))

        return await self._call("invalidate_derived", op)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def ping(self) -> bool:
        try:
            return bool(await self._call("ping", lambda r: r.ping()))
        except CacheUnavailable as e:
            logger.debug(f"Distributed cache ping failed: {e}")
            return False

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "prefix": self.prefix,
            "capacity_per_user": self.config.capacity_per_user,
            "timeout_ms": self.config.timeout_ms,
        }
