"""Crawl statistics: saved counts, record cap and errors grouped by URL path."""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlsplit

from hm_crawler.markets import STATISTICS_KEY
from hm_crawler.storage.kv_store import PERSISTENCE_ERRORS, KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class CrawlLimitState:
    """Saved-record count against an optional cap."""

    saved_count: int = 0
    optional_cap: Optional[int] = None

    def has_reached_limit(self) -> bool:
        return self.optional_cap is not None and self.saved_count >= self.optional_cap

    def remaining(self) -> Optional[int]:
        """Records still allowed, or None when uncapped."""
        if self.optional_cap is None:
            return None
        return max(self.optional_cap - self.saved_count, 0)


class CrawlStatistics:
    """Run-wide counters, persisted so a resumed run continues its totals."""

    def __init__(
        self,
        store: KeyValueStore,
        cap: Optional[int] = None,
        key: str = STATISTICS_KEY,
    ):
        self.store = store
        self.key = key
        self.limit = CrawlLimitState(optional_cap=cap)
        # Saved records that have reached the dataset
        self.written = 0
        self.errors: dict[str, list[str]] = {}
        self.rejected = 0
        self.duplicates = 0
        self._quality_total = 0
        self._quality_count = 0
        self._log_task: Optional[asyncio.Task] = None

    async def load(self) -> None:
        stored = await self.store.get(self.key)
        if not isinstance(stored, dict):
            return
        self.errors = {str(k): list(v) for k, v in (stored.get("errors") or {}).items()}
        self.limit.saved_count = int(stored.get("saved") or 0)
        self.written = self.limit.saved_count
        self.rejected = int(stored.get("rejected") or 0)
        self.duplicates = int(stored.get("duplicates") or 0)
        logger.info(f"Resuming statistics: {self.limit.saved_count} products already saved")

    async def persist(self) -> None:
        await self.store.set(self.key, {
            "errors": self.errors,
            "saved": self.written,
            "rejected": self.rejected,
            "duplicates": self.duplicates,
        })

    @property
    def saved(self) -> int:
        return self.limit.saved_count

    def has_reached_limit(self) -> bool:
        return self.limit.has_reached_limit()

    def remaining_to_limit(self) -> Optional[int]:
        return self.limit.remaining()

    def increment_saved(self, count: int = 1) -> None:
        self.limit.saved_count += count

    def mark_written(self, count: int) -> None:
        self.written += count

    def save_error(self, url: str, error: str) -> None:
        """Record an error under the path of the URL it happened on."""
        path = urlsplit(url).path or url
        self.errors.setdefault(path, []).append(str(error))

    def record_rejected(self) -> None:
        self.rejected += 1

    def record_duplicate(self) -> None:
        self.duplicates += 1

    def record_quality(self, score: int) -> None:
        self._quality_total += score
        self._quality_count += 1

    @property
    def average_quality(self) -> Optional[float]:
        if not self._quality_count:
            return None
        return round(self._quality_total / self._quality_count, 2)

    def summary(self) -> dict[str, Any]:
        return {
            "totalSaved": self.limit.saved_count,
            "written": self.written,
            "cap": self.limit.optional_cap,
            "remaining": self.remaining_to_limit(),
            "rejected": self.rejected,
            "duplicates": self.duplicates,
            "averageQualityScore": self.average_quality,
            "errorCount": sum(len(v) for v in self.errors.values()),
            "errors": self.errors,
        }

    def log_statistics(self) -> None:
        logger.info("---- statistics state: ----")
        logger.info(json.dumps(self.summary(), ensure_ascii=False))

    def start_periodic_logging(self, interval: float) -> None:
        if interval and self._log_task is None:
            self._log_task = asyncio.create_task(self._log_loop(interval))

    async def _log_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.log_statistics()
            try:
                await self.persist()
            except PERSISTENCE_ERRORS as e:
                logger.error(f"Failed to persist statistics: {e}")

    async def close(self) -> None:
        """Stop periodic logging and persist the final counters."""
        if self._log_task is not None:
            self._log_task.cancel()
            try:
                await self._log_task
            except asyncio.CancelledError:
                pass
            self._log_task = None
        await self.persist()
