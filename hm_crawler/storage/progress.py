"""Progress & recovery ledger: buffered record saving and resumable run state."""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from hm_crawler import metrics
from hm_crawler.markets import PERSISTENCE_KEY
from hm_crawler.models import ProductRecord
from hm_crawler.storage.dataset import JsonlDataset
from hm_crawler.storage.dedupe import DedupLedger, make_dedup_key
from hm_crawler.storage.kv_store import PERSISTENCE_ERRORS, KeyValueStore
from hm_crawler.storage.statistics import CrawlStatistics

logger = logging.getLogger(__name__)


@dataclass
class RecoveryState:
    """What a restarted run needs to know about the previous one."""

    saved_count: int = 0
    handled_requests: int = 0
    flushed_batches: int = 0
    last_flush_at: Optional[str] = None
    started_at: Optional[str] = None
    finished: bool = False
    abort_reason: Optional[str] = None


class ProgressLedger:
    """
    Buffers accepted records and flushes them to the dataset in batches.

    ``add`` enforces the record cap: once the statistics say the limit is
    reached, further records are refused. Buffered records are flushed when
    the batch fills up, on a timer, and on close.

    A successful flush commits the batch: its dedup keys and its saved count
    become durable together with the records, so the persisted ledger and
    statistics never run ahead of the dataset.
    """

    def __init__(
        self,
        dataset: JsonlDataset,
        statistics: CrawlStatistics,
        store: KeyValueStore,
        batch_size: int = 50,
        flush_interval: float = 30.0,
        key: str = PERSISTENCE_KEY,
        ledger: Optional[DedupLedger] = None,
    ):
        self.dataset = dataset
        self.statistics = statistics
        self.store = store
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.key = key
        self.ledger = ledger
        self.state = RecoveryState()
        self._buffer: list[ProductRecord] = []
        self._lock = asyncio.Lock()
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    async def load_state(self) -> bool:
        """
        Load the previous run's recovery state.

        Returns:
            True if the previous run was interrupted and this run resumes it,
            False if this run starts fresh.
        """
        stored = await self.store.get(self.key)
        resumed = isinstance(stored, dict) and not stored.get("finished")
        if resumed:
            known = RecoveryState.__dataclass_fields__
            self.state = RecoveryState(**{k: v for k, v in stored.items() if k in known})
            logger.info(
                f"Resuming interrupted run: {self.state.saved_count} saved, "
                f"{self.state.handled_requests} requests handled"
            )
        else:
            self.state = RecoveryState()
        self.state.finished = False
        self.state.abort_reason = None
        self.state.started_at = datetime.now(timezone.utc).isoformat()
        return resumed

    async def save_state(self) -> None:
        self.state.saved_count = self.statistics.written
        await self.store.set(self.key, asdict(self.state))

    def mark_request_handled(self) -> None:
        self.state.handled_requests += 1

    async def add(self, record: ProductRecord) -> bool:
        """
        Buffer a record for saving.

        Returns:
            False if the record cap was already reached, True otherwise.
        """
        async with self._lock:
            if self.statistics.has_reached_limit():
                return False
            self._buffer.append(record)
            self.statistics.increment_saved()
            if record.quality_score is not None:
                self.statistics.record_quality(record.quality_score)
            metrics.record_products_saved(record.market)
            if len(self._buffer) >= self.batch_size:
                await self._flush_locked()
        return True

    async def flush(self) -> int:
        async with self._lock:
            return await self._flush_locked()

    async def _flush_locked(self) -> int:
        if not self._buffer:
            return 0
        batch = self._buffer
        try:
            written = await self.dataset.push(record.to_dict() for record in batch)
        except OSError as e:
            # Keep the batch buffered; the next flush retries it
            logger.error(f"Failed to flush {len(batch)} records: {e}")
            return 0
        self._buffer = []
        self.state.flushed_batches += 1
        self.state.last_flush_at = datetime.now(timezone.utc).isoformat()
        self.statistics.mark_written(len(batch))
        logger.info(f"Flushed {written} records ({self.statistics.written} written in total)")
        await self._commit(batch)
        return written

    async def _commit(self, batch: list[ProductRecord]) -> None:
        try:
            if self.ledger is not None:
                await self.ledger.commit(make_dedup_key(r.article_no, r.market) for r in batch)
                await self.ledger.persist()
            await self.statistics.persist()
            await self.save_state()
        except PERSISTENCE_ERRORS as e:
            logger.error(f"Failed to persist progress after flush: {e}")

    def start_periodic_flush(self) -> None:
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_loop())

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            await self.flush()
            try:
                await self.save_state()
            except PERSISTENCE_ERRORS as e:
                logger.error(f"Failed to persist recovery state: {e}")

    async def close(self, abort_reason: Optional[str] = None) -> None:
        """Flush everything still buffered and persist the final recovery state."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        await self.flush()
        if self._buffer:
            logger.error(f"{len(self._buffer)} records could not be written to {self.dataset.path}")
        self.state.finished = abort_reason is None or abort_reason == "limit"
        self.state.abort_reason = abort_reason
        await self.save_state()
