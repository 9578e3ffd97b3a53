"""Prometheus metrics for the crawler."""

from prometheus_client import Counter, Gauge, Histogram, Info

crawler_info = Info("hm_crawler", "Crawler build info")
crawler_info.info({"version": "0.1.0", "name": "hm-crawler"})

# Request metrics
requests_total = Counter(
    "crawler_requests_total",
    "Total number of handled crawl requests",
    ["label", "status"],
)

request_errors_total = Counter(
    "crawler_request_errors_total",
    "Total number of failed crawl requests",
    ["error_type"],
)

request_retries_total = Counter(
    "crawler_request_retries_total",
    "Total number of scheduled request retries",
    ["error_type"],
)

fetch_duration_seconds = Histogram(
    "crawler_fetch_duration_seconds",
    "Time spent fetching pages",
    ["label"],
    buckets=[0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Product metrics
products_saved_total = Counter(
    "crawler_products_saved_total",
    "Total number of product records saved",
    ["market"],
)

products_rejected_total = Counter(
    "crawler_products_rejected_total",
    "Total number of product records rejected by validation",
    ["market"],
)

products_duplicate_total = Counter(
    "crawler_products_duplicate_total",
    "Total number of product combinations skipped as already claimed",
    ["market"],
)

# Scheduler metrics
desired_concurrency = Gauge(
    "crawler_desired_concurrency",
    "Concurrency currently requested by the adaptive controller",
)

queue_size = Gauge(
    "crawler_queue_size",
    "Number of requests waiting in the crawl queue",
)


def record_request(label: str, status: str, duration: float | None = None):
    """Record a handled request."""
    requests_total.labels(label=label, status=status).inc()
    if duration is not None:
        fetch_duration_seconds.labels(label=label).observe(duration)


def record_request_error(error_type: str):
    """Record a request that failed permanently."""
    request_errors_total.labels(error_type=error_type).inc()


def record_retry(error_type: str):
    """Record a scheduled retry."""
    request_retries_total.labels(error_type=error_type).inc()


def record_products_saved(market: str, count: int = 1):
    """Record saved product records."""
    products_saved_total.labels(market=market).inc(count)


def record_product_rejected(market: str):
    """Record a product rejected by validation."""
    products_rejected_total.labels(market=market).inc()


def record_product_duplicate(market: str):
    """Record a product combination skipped by the dedup ledger."""
    products_duplicate_total.labels(market=market).inc()
