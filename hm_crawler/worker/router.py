"""Page-type router: one handler per PageLabel, each deriving child targets.

NAVIGATION -> CATEGORY_COUNT -> LISTING_PAGE -> PRODUCT_DETAIL

Every handler first checks the record cap and aborts the whole crawl once
it is reached. Handlers return a HandlerResult instead of raising to ask
for a retry.
"""

import logging
from dataclasses import replace
from typing import Awaitable, Callable, Iterable

from hm_crawler import metrics
from hm_crawler.errors import ErrorType, ParsingError, ValidationError
from hm_crawler.ingest import page_extractor
from hm_crawler.ingest.crawler_pool import HandlerContext, HandlerResult
from hm_crawler.ingest.http_client import detect_block_reason
from hm_crawler.ingest.url_builder import (
    next_page_url,
    page_offsets,
    page_url,
    product_unique_key,
)
from hm_crawler.markets import DEFAULT_NUMBER_OF_PRODUCTS, MAX_PRODUCTS_PER_PAGE, Market
from hm_crawler.models import (
    CrawlContext,
    CrawlTarget,
    ExtractionMode,
    NavigationNode,
    PageLabel,
    ProductRecord,
    ProductStub,
)
from hm_crawler.normalize.processor import ProductNormalizer, absolute_url
from hm_crawler.storage.dedupe import DedupLedger, make_dedup_key
from hm_crawler.storage.progress import ProgressLedger
from hm_crawler.storage.statistics import CrawlStatistics

logger = logging.getLogger(__name__)

DIVISIONS_TO_KEEP = ("ladies", "men", "baby", "kids", "home", "beauty")
SHOP_BY_PRODUCT = "shop-by-product"
CATEGORIES_TO_SKIP = ("view-all", "last-chance", "the-bestsellers")

Handler = Callable[[HandlerContext], Awaitable[HandlerResult]]


def categories_from_navigation(data: dict, context: CrawlContext) -> list[CrawlTarget]:
    """
    CATEGORY_COUNT targets for every category under the kept divisions.

    Only the ``shop-by-product`` branch of each division is followed. A
    category with children yields its descendants and itself, since some
    products are assigned to the category but to none of its children.
    """
    if not isinstance(data, dict) or not isinstance(data.get("siteStructure"), list):
        raise ParsingError("Navigation payload has no siteStructure")

    targets = []
    for raw in data["siteStructure"]:
        if not isinstance(raw, dict):
            continue
        division = NavigationNode.from_dict(raw)
        if division.tracking_label not in DIVISIONS_TO_KEEP:
            continue
        shop_by_product = next(
            (child for child in division.children if child.tracking_label == SHOP_BY_PRODUCT),
            None,
        )
        if shop_by_product is None:
            logger.debug(f"Division {division.title} has no {SHOP_BY_PRODUCT} branch")
            continue
        for category in shop_by_product.children:
            if category.tracking_label in CATEGORIES_TO_SKIP:
                continue
            category_context = replace(context, division=division.title, category=category.title)
            targets.extend(_category_targets(category, category_context))
    return targets


def _category_targets(node: NavigationNode, context: CrawlContext) -> list[CrawlTarget]:
    targets = []
    for child in node.children:
        targets.extend(_category_targets(child, context))
    url = absolute_url(node.alias_path)
    if url:
        targets.append(CrawlTarget(url=url, label=PageLabel.CATEGORY_COUNT, context=context))
    return targets


class CrawlRouter:
    """Dispatches fetched pages to the handler registered for their label."""

    def __init__(
        self,
        ledger: DedupLedger,
        progress: ProgressLedger,
        statistics: CrawlStatistics,
        page_size: int = MAX_PRODUCTS_PER_PAGE,
    ):
        self.ledger = ledger
        self.progress = progress
        self.statistics = statistics
        self.page_size = page_size
        self._normalizers: dict[str, ProductNormalizer] = {}
        self._handlers: dict[PageLabel, Handler] = {
            PageLabel.NAVIGATION: self.handle_navigation,
            PageLabel.CATEGORY_COUNT: self.handle_category_count,
            PageLabel.LISTING_PAGE: self.handle_listing_page,
            PageLabel.PRODUCT_DETAIL: self.handle_product_detail,
        }

    async def __call__(self, ctx: HandlerContext) -> HandlerResult:
        target = ctx.target
        if self.statistics.has_reached_limit():
            ctx.abort("limit")
            return HandlerResult.skip("record limit reached")

        handler = self._handlers.get(target.label)
        if handler is None:
            logger.error(f"No handler for label {target.label}")
            return HandlerResult.skip(f"unknown label {target.label}")

        logger.info(f"{target.label.value}: country: {target.context.market.name} - {target.url}")
        return await handler(ctx)

    def _normalizer(self, market: Market) -> ProductNormalizer:
        if market.code not in self._normalizers:
            self._normalizers[market.code] = ProductNormalizer(market)
        return self._normalizers[market.code]

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_navigation(self, ctx: HandlerContext) -> HandlerResult:
        try:
            data = ctx.json()
        except ParsingError:
            reason = detect_block_reason(ctx.body)
            if reason:
                return HandlerResult.retry(ErrorType.BLOCKING, f"{reason} instead of navigation data")
            raise

        targets = categories_from_navigation(data, ctx.target.context)
        added = await ctx.enqueue(targets)
        logger.info(f"Enqueued {added} categories for {ctx.target.context.market.name}")
        return HandlerResult.accepted()

    async def handle_category_count(self, ctx: HandlerContext) -> HandlerResult:
        count = page_extractor.extract_product_count(ctx.body, ctx.tree)
        if count is None:
            logger.info(f"Number of products not found, using default {DEFAULT_NUMBER_OF_PRODUCTS}")
            count = DEFAULT_NUMBER_OF_PRODUCTS

        target = ctx.target
        pages = [
            CrawlTarget(
                url=page_url(ctx.response.url or target.url, offset, self.page_size),
                label=PageLabel.LISTING_PAGE,
                context=target.context,
            )
            for offset in page_offsets(count, self.page_size)
        ]
        await ctx.enqueue(pages)
        logger.info(f"productCount: {count} ({len(pages)} pages) - {target.url}")
        return HandlerResult.accepted()

    async def handle_listing_page(self, ctx: HandlerContext) -> HandlerResult:
        target = ctx.target
        page = page_extractor.extract(ctx.body, ctx.tree)
        if page is None:
            stubs = page_extractor.extract_product_links(ctx.tree)
            strategy = "links"
        else:
            stubs = page.products
            strategy = page.strategy

        if not stubs:
            logger.warning(f"No products found on {target.url}")
            return HandlerResult.skip("no products on listing page")
        logger.debug(f"Found {len(stubs)} products via {strategy} on {target.url}")

        detail_stubs = stubs
        if target.context.mode == ExtractionMode.SHALLOW:
            detail_stubs = []
            for stub in stubs:
                if stub.list_price is None:
                    # Link-only stub: nothing to emit without the detail page
                    detail_stubs.append(stub)
                    continue
                if not await self._emit_from_stub(stub, target.context):
                    ctx.abort("limit")
                    return HandlerResult.accepted("record limit reached")

        if detail_stubs:
            await ctx.enqueue(self._detail_targets(detail_stubs, target.context))

        # Without a total, follow the page's own next-page marker
        if page is not None and (page.total_count or page.next_page_available):
            following = next_page_url(ctx.response.url or target.url, page.total_count or None, self.page_size)
            if following:
                await ctx.enqueue([CrawlTarget(following, PageLabel.LISTING_PAGE, target.context)])
        return HandlerResult.accepted()

    async def handle_product_detail(self, ctx: HandlerContext) -> HandlerResult:
        target = ctx.target
        context = target.context
        try:
            detail = page_extractor.extract_detail(ctx.body, ctx.tree, hint=context.hint)
        except ParsingError as e:
            self.statistics.save_error(target.url, str(e))
            logger.warning(f"Could not parse product page {target.url}: {e}")
            return HandlerResult.skip("unparseable product payload")
        if detail is None:
            self.statistics.save_error(target.url, "No product data found")
            return HandlerResult.skip("no product data")

        # Breadcrumb categorization wins; otherwise use the path the product was found on.
        # Products with an incomplete breadcrumb are usually not in a subcategory.
        division = detail.division or context.division
        category = detail.category or context.category
        sub_category = detail.sub_category or context.category

        saved = 0
        for combination in detail.combinations:
            try:
                record = self._normalizer(context.market).normalize(
                    article_no=combination.article_no,
                    product_name=detail.product_name,
                    list_price=combination.list_price,
                    sale_price=combination.sale_price,
                    url=absolute_url(combination.url_path) or ctx.response.url or target.url,
                    division=division,
                    category=category,
                    sub_category=sub_category,
                    color=combination.description,
                    description=combination.description,
                    sizes=combination.sizes,
                    image_url=combination.image_url,
                    images=combination.images,
                )
            except ValidationError as e:
                self._reject(context.market, e)
                continue

            if not await self._claim(record):
                continue
            if not await self.progress.add(record):
                ctx.abort("limit")
                break
            saved += 1
            if self.statistics.has_reached_limit():
                logger.info("Product limit reached during processing")
                ctx.abort("limit")
                break

        logger.info(f"Processed {saved} products from {target.url}")
        return HandlerResult.accepted()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _detail_targets(self, stubs: Iterable[ProductStub], context: CrawlContext) -> list[CrawlTarget]:
        targets = []
        for stub in stubs:
            url = absolute_url(stub.url)
            if not url:
                continue
            targets.append(CrawlTarget(
                url=url,
                label=PageLabel.PRODUCT_DETAIL,
                context=replace(context, hint=stub),
                unique_key=product_unique_key(url, context.market.code) or "",
            ))
        return targets

    async def _emit_from_stub(self, stub: ProductStub, context: CrawlContext) -> bool:
        """Save a record built from listing data. Returns False once the cap is hit."""
        try:
            record = self._normalizer(context.market).normalize(
                article_no=stub.article_code,
                product_name=stub.title,
                list_price=stub.list_price,
                sale_price=stub.sale_price,
                url=stub.url,
                division=context.division,
                category=stub.category or context.category,
                sub_category=context.category,
                color=stub.colors[0] if stub.colors else None,
                sizes=stub.sizes,
                image_url=stub.image_url,
                images=[stub.image_url] if stub.image_url else [],
            )
        except ValidationError as e:
            self._reject(context.market, e)
            return True

        if not await self._claim(record):
            return True
        if not await self.progress.add(record):
            return False
        return not self.statistics.has_reached_limit()

    async def _claim(self, record: ProductRecord) -> bool:
        if await self.ledger.try_claim(make_dedup_key(record.article_no, record.market)):
            return True
        self.statistics.record_duplicate()
        metrics.record_product_duplicate(record.market)
        return False

    def _reject(self, market: Market, error: ValidationError) -> None:
        self.statistics.record_rejected()
        metrics.record_product_rejected(market.code)
        logger.debug(f"Rejected product: {error}")
