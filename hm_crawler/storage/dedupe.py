"""Deduplication ledger: at-most-once emission of each product per market."""

import asyncio
import logging
from typing import Iterable, Optional

from hm_crawler.markets import SCRAPED_PRODUCTS_KEY
from hm_crawler.storage.kv_store import PERSISTENCE_ERRORS, KeyValueStore

logger = logging.getLogger(__name__)


def make_dedup_key(article_no: str, market_code: str) -> str:
    """Dedup key for a product variant in one market."""
    return f"{article_no}_{market_code}"


class DedupLedger:
    """
    Persisted set of claimed product keys shared by every crawl worker.

    ``try_claim`` is the only way to insert a key and it is serialized by a
    lock, so two workers reaching the same product through different
    categories can never both be told to emit it. Keys are never removed.

    Only committed keys are persisted. A key is committed once the record it
    was claimed for has been written to the dataset, so a crashed run never
    leaves behind a key whose record was lost in the save buffer.
    """

    def __init__(self, store: KeyValueStore, key: str = SCRAPED_PRODUCTS_KEY):
        self.store = store
        self.key = key
        self._claimed: set[str] = set()
        self._committed: set[str] = set()
        self._lock = asyncio.Lock()
        self._dirty = False
        self._autosave_task: Optional[asyncio.Task] = None

    async def load(self) -> int:
        """Load previously committed keys (from an earlier, interrupted run)."""
        stored = await self.store.get(self.key)
        async with self._lock:
            if isinstance(stored, dict):
                self._committed.update(k for k, v in stored.items() if v)
            elif isinstance(stored, list):
                self._committed.update(str(k) for k in stored)
            self._claimed.update(self._committed)
        if self._claimed:
            logger.info(f"Loaded {len(self._claimed)} already scraped products")
        return len(self._claimed)

    async def try_claim(self, key: str) -> bool:
        """
        Claim a key.

        Returns:
            True if the key was unseen and is now claimed, False if it was
            already claimed.
        """
        async with self._lock:
            if key in self._claimed:
                return False
            self._claimed.add(key)
            return True

    async def commit(self, keys: Iterable[str]) -> int:
        """Mark claimed keys as durable; their records are in the dataset."""
        async with self._lock:
            fresh = {key for key in keys if key in self._claimed} - self._committed
            if fresh:
                self._committed.update(fresh)
                self._dirty = True
        return len(fresh)

    def is_claimed(self, key: str) -> bool:
        return key in self._claimed

    @property
    def committed(self) -> int:
        return len(self._committed)

    def __len__(self) -> int:
        return len(self._claimed)

    async def persist(self) -> None:
        """Write the committed set to the key-value store if it changed."""
        async with self._lock:
            if not self._dirty:
                return
            snapshot = {key: True for key in self._committed}
            self._dirty = False
        await self.store.set(self.key, snapshot)
        logger.debug(f"Persisted {len(snapshot)} scraped product keys")

    def start_autosave(self, interval: float) -> None:
        """Persist the ledger every ``interval`` seconds until closed."""
        if self._autosave_task is None:
            self._autosave_task = asyncio.create_task(self._autosave_loop(interval))

    async def _autosave_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.persist()
            except PERSISTENCE_ERRORS as e:
                logger.error(f"Failed to persist dedup ledger: {e}")

    async def close(self) -> None:
        """Stop autosaving and write the final state."""
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            try:
                await self._autosave_task
            except asyncio.CancelledError:
                pass
            self._autosave_task = None
        await self.persist()
