"""Async crawler pool: shared request queue, dynamic concurrency and retries.

Workers pull CrawlTargets from one queue, fetch them, and hand the response
to a page handler. How many fetches run at once is decided by the adaptive
concurrency controller, never by the workers themselves. Failed requests are
retried according to the backoff policy; identity rotation happens on
blocking failures.
"""

import asyncio
import json
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from selectolax.parser import HTMLParser

from hm_crawler import metrics
from hm_crawler.errors import ClassifiedError, ErrorType, ParsingError, Severity, classify_error
from hm_crawler.ingest.backoff import BackoffPolicy
from hm_crawler.ingest.concurrency import AdaptiveConcurrencyController
from hm_crawler.ingest.http_client import FetchResponse
from hm_crawler.ingest.proxy_manager import IdentityProvider, IdentityRotationError
from hm_crawler.models import CrawlTarget, PageLabel
from hm_crawler.storage.statistics import CrawlStatistics

logger = logging.getLogger(__name__)

# Failure classes reported to the controller as "blocked"
BLOCK_SIGNALS = (ErrorType.BLOCKING, ErrorType.RATE_LIMIT)


class Outcome(str, Enum):
    ACCEPTED = "accepted"
    SKIP = "skip"
    RETRYABLE_FAILURE = "retryable_failure"


@dataclass(frozen=True)
class HandlerResult:
    """What a page handler made of a fetched page."""

    outcome: Outcome
    error_type: Optional[ErrorType] = None
    reason: str = ""
    retry_after: Optional[int] = None

    @classmethod
    def accepted(cls, reason: str = "") -> "HandlerResult":
        return cls(Outcome.ACCEPTED, reason=reason)

    @classmethod
    def skip(cls, reason: str) -> "HandlerResult":
        return cls(Outcome.SKIP, reason=reason)

    @classmethod
    def retry(cls, error_type: ErrorType, reason: str, retry_after: Optional[int] = None) -> "HandlerResult":
        return cls(Outcome.RETRYABLE_FAILURE, error_type=error_type, reason=reason, retry_after=retry_after)


@dataclass
class QueuedRequest:
    """A CrawlTarget waiting in, or taken from, the queue."""

    target: CrawlTarget
    retry_count: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class HandlerContext:
    """Everything a page handler gets to work with."""

    request: QueuedRequest
    response: FetchResponse
    enqueue: Callable[[Iterable[CrawlTarget]], Awaitable[int]]
    abort: Callable[[str], None]
    _tree: Optional[HTMLParser] = None

    @property
    def target(self) -> CrawlTarget:
        return self.request.target

    @property
    def body(self) -> str:
        return self.response.text

    @property
    def tree(self) -> HTMLParser:
        if self._tree is None:
            self._tree = HTMLParser(self.response.text)
        return self._tree

    def json(self) -> Any:
        try:
            return self.response.json()
        except json.JSONDecodeError as e:
            raise ParsingError(f"Invalid JSON from {self.response.url}: {e}") from e


class Fetcher(Protocol):
    async def fetch(self, url: str, expect_json: bool = False) -> FetchResponse:
        ...


Handler = Callable[[HandlerContext], Awaitable[HandlerResult]]


class RequestQueue:
    """FIFO queue that admits each unique key at most once per run."""

    def __init__(self):
        self._queue: asyncio.Queue[QueuedRequest] = asyncio.Queue()
        self._seen: set[str] = set()

    def add(self, target: CrawlTarget) -> bool:
        if target.unique_key in self._seen:
            return False
        self._seen.add(target.unique_key)
        self._queue.put_nowait(QueuedRequest(target))
        metrics.queue_size.set(self._queue.qsize())
        return True

    def requeue(self, request: QueuedRequest) -> None:
        """Put a request back for another attempt (its key is already admitted)."""
        self._queue.put_nowait(request)
        metrics.queue_size.set(self._queue.qsize())

    async def get(self) -> QueuedRequest:
        request = await self._queue.get()
        metrics.queue_size.set(self._queue.qsize())
        return request

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def drain(self) -> int:
        """Drop everything still queued."""
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
            dropped += 1
        metrics.queue_size.set(0)
        return dropped

    def qsize(self) -> int:
        return self._queue.qsize()


@dataclass
class PoolStats:
    """Statistics for the crawler pool."""
    enqueued: int = 0
    handled: int = 0
    skipped: int = 0
    failed: int = 0
    retried: int = 0
    identity_rotations: int = 0


class CrawlerPool:
    """
    Runs page handlers over a shared request queue.

    Features:
    - Dynamic concurrency read from the adaptive controller before every fetch
    - Per-run unique-key dedupe of queued targets
    - Backoff/retry with identity rotation on blocking
    - Global abort (record cap, deadline) that stops admitting new work
    """

    def __init__(
        self,
        fetcher: Fetcher,
        handler: Handler,
        controller: AdaptiveConcurrencyController,
        backoff: BackoffPolicy,
        identities: IdentityProvider,
        statistics: Optional[CrawlStatistics] = None,
        max_run_seconds: Optional[float] = None,
        on_request_handled: Optional[Callable[[], None]] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.fetcher = fetcher
        self.handler = handler
        self.controller = controller
        self.backoff = backoff
        self.identities = identities
        self.statistics = statistics
        self.max_run_seconds = max_run_seconds
        self._on_request_handled = on_request_handled
        self._sleep = sleep or self._interruptible_sleep

        self.queue = RequestQueue()
        self.stats = PoolStats()
        self.abort_reason: Optional[str] = None
        self._abort_event = asyncio.Event()
        self._active = 0
        self._slots = asyncio.Condition()

    @property
    def aborted(self) -> bool:
        return self._abort_event.is_set()

    async def enqueue(self, targets: Iterable[CrawlTarget]) -> int:
        """Add targets to the queue; duplicates (by unique key) are ignored."""
        if self.aborted:
            return 0
        added = sum(1 for target in targets if self.queue.add(target))
        self.stats.enqueued += added
        return added

    def abort(self, reason: str) -> None:
        """Stop admitting work. In-flight requests are allowed to finish."""
        if self.aborted:
            return
        self.abort_reason = reason
        self._abort_event.set()
        dropped = self.queue.drain()
        logger.warning(f"Aborting crawl ({reason}); dropped {dropped} queued requests")

    async def run(self, seeds: Iterable[CrawlTarget]) -> PoolStats:
        """Process ``seeds`` and everything they lead to, until done or aborted."""
        await self.enqueue(seeds)
        workers = [
            asyncio.create_task(self._worker(f"worker-{i}"))
            for i in range(self.controller.ceiling)
        ]
        deadline = None
        if self.max_run_seconds:
            deadline = asyncio.create_task(self._deadline(self.max_run_seconds))
        logger.info(f"Started crawler pool with {len(workers)} workers")

        try:
            await self.queue.join()
        finally:
            for task in workers + ([deadline] if deadline else []):
                task.cancel()
            await asyncio.gather(*workers, *([deadline] if deadline else []), return_exceptions=True)

        logger.info(
            f"Crawler pool finished: {self.stats.handled} handled, {self.stats.failed} failed, "
            f"{self.stats.retried} retries"
            + (f", aborted ({self.abort_reason})" if self.abort_reason else "")
        )
        return self.stats

    async def _deadline(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        logger.warning(f"Maximum run time of {seconds:g}s reached")
        self.abort("timeout")

    async def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep, returning early if the crawl is aborted."""
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _acquire_slot(self) -> None:
        async with self._slots:
            while self._active >= self.controller.current_concurrency() and not self.aborted:
                try:
                    # Re-check periodically: the controller may raise the limit at any time
                    await asyncio.wait_for(self._slots.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
            self._active += 1

    async def _release_slot(self) -> None:
        async with self._slots:
            self._active -= 1
            self._slots.notify_all()

    async def _worker(self, name: str) -> None:
        while True:
            request = await self.queue.get()
            try:
                if not self.aborted:
                    await self._process(request)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{name}: unexpected error on {request.target.url}: {e}", exc_info=True)
            finally:
                self.queue.task_done()

    async def _process(self, request: QueuedRequest) -> None:
        failure = await self._attempt(request)
        if failure is not None:
            await self._handle_failure(request, failure)

    async def _attempt(self, request: QueuedRequest) -> Optional[ClassifiedError]:
        """Fetch and handle one request. Returns the failure, if any."""
        target = request.target
        label = target.label.value

        await self._acquire_slot()
        try:
            if self.aborted:
                return None

            delay = self.controller.inter_request_delay
            if delay > 0:
                await self._sleep(delay * random.uniform(1.0, 1.3))

            started = time.monotonic()
            try:
                response = await self.fetcher.fetch(
                    target.url, expect_json=target.label == PageLabel.NAVIGATION
                )
            except Exception as e:
                failure = classify_error(e)
                self.controller.record_outcome(
                    False, (time.monotonic() - started) * 1000,
                    blocked=failure.error_type in BLOCK_SIGNALS,
                )
                metrics.record_request(label, "fetch_failed", time.monotonic() - started)
                return failure

            metrics.record_request(label, "fetched", response.latency_ms / 1000)

            # The controller hears about the page only once the handler has judged it
            context = HandlerContext(request, response, self.enqueue, self.abort)
            try:
                result = await self.handler(context)
            except Exception as e:
                failure = classify_error(e)
                self.controller.record_outcome(
                    False, response.latency_ms, blocked=failure.error_type in BLOCK_SIGNALS
                )
                logger.error(f"Handler for {label} failed on {target.url}: {e}")
                return failure

            if result.outcome == Outcome.RETRYABLE_FAILURE:
                error_type = result.error_type or ErrorType.UNKNOWN
                self.controller.record_outcome(
                    False, response.latency_ms, blocked=error_type in BLOCK_SIGNALS
                )
            else:
                self.controller.record_outcome(True, response.latency_ms)
        finally:
            await self._release_slot()

        if result.outcome == Outcome.RETRYABLE_FAILURE:
            return ClassifiedError(
                error_type=error_type,
                message=result.reason,
                retryable=True,
                severity=Severity.MEDIUM,
                retry_after=result.retry_after,
            )

        if result.outcome == Outcome.SKIP:
            self.stats.skipped += 1
            logger.debug(f"Skipped {target.url}: {result.reason}")
        else:
            self.stats.handled += 1
        if self._on_request_handled:
            self._on_request_handled()
        return None

    async def _handle_failure(self, request: QueuedRequest, failure: ClassifiedError) -> None:
        target = request.target
        request.errors.append(failure.message)
        decision = self.backoff.decide(
            failure.error_type,
            request.retry_count,
            retryable=failure.retryable,
            retry_after=failure.retry_after,
        )

        if not decision.retry or self.aborted:
            self.stats.failed += 1
            metrics.record_request_error(failure.error_type.value)
            if self.statistics is not None:
                self.statistics.save_error(target.url, failure.message)
            logger.warning(
                f"Request {target.url} failed permanently ({failure.error_type.value}): "
                f"{failure.message} - {decision.reason or 'crawl aborted'}"
            )
            return

        if decision.rotate_identity:
            try:
                await self.identities.rotate()
                self.stats.identity_rotations += 1
            except IdentityRotationError as e:
                logger.warning(f"Identity rotation failed, continuing with current identity: {e}")

        self.stats.retried += 1
        metrics.record_retry(failure.error_type.value)
        logger.info(
            f"Retrying {target.url} in {decision.delay:.1f}s ({decision.reason}): {failure.message}"
        )
        await self._sleep(decision.delay)
        request.retry_count += 1
        if not self.aborted:
            self.queue.requeue(request)
