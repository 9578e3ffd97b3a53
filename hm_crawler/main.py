"""Command line entry point: crawl one H&M market into a JSON Lines dataset."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

from prometheus_client import start_http_server

from hm_crawler.config import Settings, settings
from hm_crawler.errors import ConfigurationError
from hm_crawler.ingest.backoff import BackoffPolicy
from hm_crawler.ingest.concurrency import AdaptiveConcurrencyController, ConcurrencyProfile
from hm_crawler.ingest.crawler_pool import CrawlerPool, Fetcher, PoolStats
from hm_crawler.ingest.http_client import FetchPolicy, HttpFetcher
from hm_crawler.ingest.proxy_manager import IdentityProvider
from hm_crawler.ingest.url_builder import SORT_OPTIONS, listing_url
from hm_crawler.logging_config import setup_logging
from hm_crawler.markets import SUPPORTED_MARKETS, Market, resolve_market
from hm_crawler.models import CrawlContext, CrawlTarget, ExtractionMode, PageLabel
from hm_crawler.storage.dataset import JsonlDataset
from hm_crawler.storage.dedupe import DedupLedger
from hm_crawler.storage.kv_store import open_key_value_store
from hm_crawler.storage.progress import ProgressLedger
from hm_crawler.storage.statistics import CrawlStatistics
from hm_crawler.worker.router import CrawlRouter

logger = logging.getLogger(__name__)


def build_seeds(
    market: Market,
    mode: ExtractionMode,
    start_urls: Iterable[str] = (),
    sort: Optional[str] = None,
) -> list[CrawlTarget]:
    """Initial targets: the market's navigation tree, or the given category URLs."""
    context = CrawlContext(market=market, mode=mode)
    start_urls = list(start_urls)
    if not start_urls:
        return [CrawlTarget(market.navigation_url, PageLabel.NAVIGATION, context)]
    return [
        CrawlTarget(listing_url(url, sort=sort), PageLabel.CATEGORY_COUNT, context)
        for url in start_urls
    ]


async def run_crawl(
    market: Market,
    *,
    mode: ExtractionMode = ExtractionMode.DEEP,
    max_items: Optional[int] = None,
    max_run_seconds: Optional[float] = None,
    start_urls: Iterable[str] = (),
    sort: Optional[str] = None,
    config: Settings = settings,
    fetcher: Optional[Fetcher] = None,
) -> PoolStats:
    """
    Crawl one market until the queue is exhausted, the cap is hit or time runs out.

    Buffered records are flushed and recovery state, statistics and the
    dedup ledger are persisted however the crawl ends.
    """
    store = open_key_value_store(config.kv_backend, config.storage_dir, config.redis_url)
    statistics = CrawlStatistics(store, cap=max_items)
    ledger = DedupLedger(store)
    dataset = JsonlDataset(Path(config.storage_dir) / "datasets" / f"{market.code}.jsonl")
    progress = ProgressLedger(
        dataset,
        statistics,
        store,
        batch_size=config.flush_batch_size,
        flush_interval=config.flush_interval_seconds,
        ledger=ledger,
    )

    if await progress.load_state():
        await statistics.load()
        await ledger.load()

    identities = IdentityProvider.from_urls(
        config.proxy_urls,
        user_agents=config.user_agents or None,
        cooldown_seconds=config.identity_cooldown_seconds,
    )
    owned_fetcher = None
    if fetcher is None:
        owned_fetcher = fetcher = HttpFetcher(
            identities,
            FetchPolicy.from_settings(config),
            max_connections=config.http_max_connections,
        )

    controller = AdaptiveConcurrencyController(ConcurrencyProfile.from_settings(config))
    router = CrawlRouter(ledger, progress, statistics, page_size=config.page_size)
    pool = CrawlerPool(
        fetcher,
        router,
        controller,
        BackoffPolicy.from_settings(config),
        identities,
        statistics=statistics,
        max_run_seconds=max_run_seconds,
        on_request_handled=progress.mark_request_handled,
    )

    ledger.start_autosave(config.state_autosave_seconds)
    statistics.start_periodic_logging(config.statistics_log_interval)
    progress.start_periodic_flush()

    seeds = build_seeds(market, mode, start_urls, sort)
    logger.info(
        f"Crawling {market.name} ({market.code}) in {mode.value} mode from {len(seeds)} seed(s)"
        + (f", cap {max_items}" if max_items else "")
    )
    try:
        stats = await pool.run(seeds)
    finally:
        await progress.close(pool.abort_reason)
        await statistics.close()
        await ledger.close()
        if owned_fetcher is not None:
            await owned_fetcher.close()
        await store.close()

    statistics.log_statistics()
    logger.info(f"Crawl finished: {statistics.saved} products saved to {dataset.path}")
    return stats


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hm-crawler",
        description="Crawl the H&M product catalog of one market",
    )
    parser.add_argument(
        "--market",
        default=settings.market,
        help=f"Market to crawl, one of: {', '.join(SUPPORTED_MARKETS)} (default: %(default)s)",
    )
    parser.add_argument(
        "--max-items",
        type=int,
        default=settings.max_items,
        help="Stop after this many products are saved",
    )
    parser.add_argument(
        "--max-run-seconds",
        type=float,
        default=settings.max_run_seconds,
        help="Abort the crawl after this many seconds",
    )
    parser.add_argument(
        "--mode",
        choices=[m.value for m in ExtractionMode],
        default=settings.extraction_mode,
        help="shallow: listing data only; deep: visit every product page (default: %(default)s)",
    )
    parser.add_argument(
        "--start-url",
        dest="start_urls",
        action="append",
        default=None,
        help="Category URL to crawl instead of the navigation tree (repeatable)",
    )
    parser.add_argument(
        "--sort",
        choices=SORT_OPTIONS,
        default=settings.sort_by,
        help="Sort order applied to start URLs",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=settings.debug,
        help="Enable debug logging",
    )
    return parser.parse_args(argv)


def cli(argv: Optional[list[str]] = None) -> None:
    """Console script entry point."""
    args = parse_args(argv)
    setup_logging(level="DEBUG" if args.debug else None)

    try:
        market = resolve_market(args.market)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(1)

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info(f"Prometheus metrics on port {settings.metrics_port}")

    asyncio.run(run_crawl(
        market,
        mode=ExtractionMode(args.mode),
        max_items=args.max_items,
        max_run_seconds=args.max_run_seconds,
        start_urls=args.start_urls if args.start_urls is not None else settings.start_urls,
        sort=args.sort,
    ))


if __name__ == "__main__":
    cli()
