"""Key-value persistence for crawl state (dedup ledger, statistics, recovery)."""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# Failures a store may raise on get/set
PERSISTENCE_ERRORS = (OSError, RedisError)


class KeyValueStore(Protocol):
    """Minimal get/set store for JSON-serializable values."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def close(self) -> None:
        ...


class FileKeyValueStore:
    """
    Stores each key as a JSON file under a directory.

    Writes go to a temporary file that is then renamed over the target, so a
    crash mid-write leaves the previous value intact.
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._lock = asyncio.Lock()

    def _path_for(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return self.base_path / f"{safe}.json"

    async def get(self, key: str) -> Optional[Any]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt value for {key} in {path}: {e}")
            return None

    async def set(self, key: str, value: Any) -> None:
        path = self._path_for(key)
        tmp_path = path.with_suffix(".json.tmp")
        async with self._lock:
            tmp_path.write_text(json.dumps(value, ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(path)

    async def close(self) -> None:
        return None


class RedisKeyValueStore:
    """Stores values as JSON strings in redis under a namespace prefix."""

    def __init__(self, redis_url: str, namespace: str = "hm_crawler"):
        self.redis_url = redis_url
        self.namespace = namespace
        self._redis: redis.Redis | None = None

    async def _get_redis(self) -> redis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = await redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        client = await self._get_redis()
        raw = await client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring corrupt value for {key} in redis: {e}")
            return None

    async def set(self, key: str, value: Any) -> None:
        client = await self._get_redis()
        await client.set(self._key(key), json.dumps(value, ensure_ascii=False))

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None


def open_key_value_store(
    backend: str,
    storage_dir: str | Path,
    redis_url: Optional[str] = None,
    namespace: str = "hm_crawler",
) -> KeyValueStore:
    """Create the configured key-value store."""
    if backend == "redis":
        if not redis_url:
            raise ValueError("redis backend requires a redis_url")
        logger.info(f"Using redis key-value store at {redis_url}")
        return RedisKeyValueStore(redis_url, namespace=namespace)
    if backend == "file":
        path = Path(storage_dir) / "key_value_stores" / namespace
        logger.info(f"Using file key-value store at {path}")
        return FileKeyValueStore(path)
    raise ValueError(f"Unknown key-value backend '{backend}' (expected 'file' or 'redis')")
