"""Tests for key-value stores, statistics, the dataset and the progress ledger."""

from unittest.mock import AsyncMock

import pytest
import redis.asyncio as redis
from redis.exceptions import RedisError

from hm_crawler.config import settings
from hm_crawler.normalize.processor import ProductNormalizer
from hm_crawler.storage.dataset import JsonlDataset
from hm_crawler.storage.dedupe import DedupLedger, make_dedup_key
from hm_crawler.storage.kv_store import (
    FileKeyValueStore,
    RedisKeyValueStore,
    open_key_value_store,
)
from hm_crawler.storage.progress import ProgressLedger
from hm_crawler.storage.statistics import CrawlLimitState, CrawlStatistics

from tests.conftest import UK


async def _redis_available() -> bool:
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        await client.ping()
        await client.aclose()
        return True
    except (RedisError, OSError):
        return False


def _record(article_no: str):
    return ProductNormalizer(UK).normalize(
        article_no=article_no,
        product_name="Slim Jeans",
        list_price="29.99",
        url=f"/en_gb/productpage.{article_no}.html",
    )


class TestKeyValueStores:
    """Tests for the file and redis stores."""

    @pytest.mark.asyncio
    async def test_file_store_round_trip(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        assert await store.get("STATISTICS") is None
        await store.set("STATISTICS", {"saved": 3, "errors": {}})
        assert await store.get("STATISTICS") == {"saved": 3, "errors": {}}
        assert not list(tmp_path.glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_file_store_ignores_corrupt_value(self, tmp_path):
        store = FileKeyValueStore(tmp_path)
        (tmp_path / "STATISTICS.json").write_text("{not json", encoding="utf-8")
        assert await store.get("STATISTICS") is None

    def test_open_file_store(self, tmp_path):
        store = open_key_value_store("file", tmp_path, namespace="run")
        assert isinstance(store, FileKeyValueStore)
        assert store.base_path == tmp_path / "key_value_stores" / "run"

    def test_open_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError):
            open_key_value_store("sqlite", tmp_path)

    @pytest.mark.asyncio
    async def test_redis_store_round_trip(self):
        if not await _redis_available():
            pytest.skip("Redis not available")

        store = RedisKeyValueStore(settings.redis_url, namespace="hm_crawler_test")
        await store.set("SCRAPED_PRODUCTS", {"0970819001_en_gb": True})
        assert await store.get("SCRAPED_PRODUCTS") == {"0970819001_en_gb": True}
        await store.close()


class TestStatistics:
    """Tests for crawl statistics and the record cap."""

    def test_limit_state(self):
        assert CrawlLimitState(saved_count=5).has_reached_limit() is False
        assert CrawlLimitState(saved_count=5).remaining() is None
        assert CrawlLimitState(saved_count=5, optional_cap=5).has_reached_limit() is True
        assert CrawlLimitState(saved_count=7, optional_cap=5).remaining() == 0
        assert CrawlLimitState(saved_count=2, optional_cap=5).remaining() == 3

    @pytest.mark.asyncio
    async def test_errors_grouped_by_path(self, store):
        statistics = CrawlStatistics(store)
        statistics.save_error("https://www2.hm.com/en_gb/men/jeans.html?offset=0", "boom")
        statistics.save_error("https://www2.hm.com/en_gb/men/jeans.html?offset=128", "bang")
        assert statistics.errors == {"/en_gb/men/jeans.html": ["boom", "bang"]}
        assert statistics.summary()["errorCount"] == 2

    @pytest.mark.asyncio
    async def test_persist_and_load(self, store):
        statistics = CrawlStatistics(store, cap=10)
        statistics.increment_saved(4)
        statistics.mark_written(4)
        statistics.record_duplicate()
        await statistics.persist()

        resumed = CrawlStatistics(store, cap=10)
        await resumed.load()
        assert resumed.saved == 4
        assert resumed.duplicates == 1
        assert resumed.remaining_to_limit() == 6
        assert resumed.summary()["remaining"] == 6

    @pytest.mark.asyncio
    async def test_persists_only_written_records(self, store):
        statistics = CrawlStatistics(store)
        statistics.increment_saved(3)
        statistics.mark_written(1)
        await statistics.persist()

        resumed = CrawlStatistics(store)
        await resumed.load()
        assert resumed.saved == 1
        assert resumed.written == 1

    def test_average_quality(self, store):
        statistics = CrawlStatistics(store)
        assert statistics.average_quality is None
        statistics.record_quality(50)
        statistics.record_quality(75)
        assert statistics.average_quality == 62.5


class TestProgressLedger:
    """Tests for buffered saving and recovery state."""

    @pytest.mark.asyncio
    async def test_flushes_full_batches(self, store, dataset):
        statistics = CrawlStatistics(store)
        progress = ProgressLedger(dataset, statistics, store, batch_size=2)

        assert await progress.add(_record("1000001001"))
        assert dataset.read() == []
        assert await progress.add(_record("1000002001"))

        assert [row["article_no"] for row in dataset.read()] == ["1000001001", "1000002001"]
        assert progress.buffered == 0
        assert progress.state.flushed_batches == 1

    @pytest.mark.asyncio
    async def test_refuses_records_past_cap(self, store, dataset):
        statistics = CrawlStatistics(store, cap=2)
        progress = ProgressLedger(dataset, statistics, store, batch_size=10)

        assert await progress.add(_record("1000001001"))
        assert await progress.add(_record("1000002001"))
        assert await progress.add(_record("1000003001")) is False
        assert statistics.saved == 2

        await progress.close("limit")
        assert len(dataset.read()) == 2
        assert (await store.get("SCRAPER_PERSISTENCE"))["finished"] is True

    @pytest.mark.asyncio
    async def test_close_after_timeout_is_resumable(self, store, dataset):
        statistics = CrawlStatistics(store)
        progress = ProgressLedger(dataset, statistics, store)
        await progress.load_state()
        await progress.add(_record("1000001001"))
        progress.mark_request_handled()
        await progress.close("timeout")

        assert len(dataset.read()) == 1
        state = await store.get("SCRAPER_PERSISTENCE")
        assert state["finished"] is False
        assert state["abort_reason"] == "timeout"
        assert state["saved_count"] == 1

        resumed = ProgressLedger(dataset, CrawlStatistics(store), store)
        assert await resumed.load_state() is True
        assert resumed.state.handled_requests == 1

    @pytest.mark.asyncio
    async def test_finished_run_starts_fresh(self, store, dataset):
        progress = ProgressLedger(dataset, CrawlStatistics(store), store)
        await progress.close()

        again = ProgressLedger(dataset, CrawlStatistics(store), store)
        assert await again.load_state() is False
        assert again.state.handled_requests == 0

    @pytest.mark.asyncio
    async def test_failed_flush_keeps_buffer(self, store, tmp_path, monkeypatch):
        dataset = JsonlDataset(tmp_path / "out.jsonl")
        progress = ProgressLedger(dataset, CrawlStatistics(store), store, batch_size=10)
        await progress.add(_record("1000001001"))

        monkeypatch.setattr(dataset, "push", AsyncMock(side_effect=OSError("disk full")))
        assert await progress.flush() == 0
        assert progress.buffered == 1
        dataset.push.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_flush_commits_keys_and_counts(self, store, dataset):
        statistics = CrawlStatistics(store)
        ledger = DedupLedger(store)
        progress = ProgressLedger(dataset, statistics, store, batch_size=2, ledger=ledger)

        for article_no in ("1000001001", "1000002001", "1000003001"):
            assert await ledger.try_claim(make_dedup_key(article_no, "en_gb"))
            await progress.add(_record(article_no))

        # Two records flushed, the third is still buffered
        assert await store.get("SCRAPED_PRODUCTS") == {
            "1000001001_en_gb": True,
            "1000002001_en_gb": True,
        }
        assert (await store.get("STATISTICS"))["saved"] == 2
        assert (await store.get("SCRAPER_PERSISTENCE"))["saved_count"] == 2

    @pytest.mark.asyncio
    async def test_unflushed_records_are_recrawled_after_crash(self, store, dataset):
        statistics = CrawlStatistics(store)
        ledger = DedupLedger(store)
        progress = ProgressLedger(dataset, statistics, store, batch_size=10, ledger=ledger)
        await progress.load_state()
        await progress.save_state()

        assert await ledger.try_claim(make_dedup_key("1000001001", "en_gb"))
        await progress.add(_record("1000001001"))
        # Periodic persistence runs, then the process dies without a flush
        await ledger.persist()
        await statistics.persist()
        await progress.save_state()
        assert dataset.read() == []

        resumed_stats = CrawlStatistics(store)
        resumed_ledger = DedupLedger(store)
        resumed = ProgressLedger(dataset, resumed_stats, store, ledger=resumed_ledger)
        assert await resumed.load_state() is True
        await resumed_stats.load()
        await resumed_ledger.load()

        assert resumed_stats.saved == 0
        assert await resumed_ledger.try_claim(make_dedup_key("1000001001", "en_gb")) is True
        assert await resumed.add(_record("1000001001"))
        await resumed.close()
        assert [row["article_no"] for row in dataset.read()] == ["1000001001"]
