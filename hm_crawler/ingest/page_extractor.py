"""Extraction engine: turn fetched listing and product pages into typed data.

Listing pages go through an ordered fallback chain; the first strategy that
yields at least one product wins:

1. ``__NEXT_DATA__`` embedded state
2. ``window.*`` global assignments (near-JSON, repaired)
3. JSON-LD ``ItemList`` / ``ProductList`` blocks
4. DOM product cards

Heterogeneous payload field names are resolved through ordered accessor
tables (first non-empty value wins), so each alias list can be read and
tested on its own.
"""

import json
import logging
import re
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from selectolax.parser import HTMLParser, Node

from hm_crawler.errors import ParsingError
from hm_crawler.ingest.json_extractor import (
    extract_json_ld,
    extract_next_data,
    extract_product_article_details,
    extract_window_state,
    walk_path,
)
from hm_crawler.ingest.url_builder import product_page_id
from hm_crawler.models import ExtractedPage, ProductCombination, ProductDetail, ProductStub
from hm_crawler.normalize.processor import parse_price

logger = logging.getLogger(__name__)

Accessor = Callable[[dict], Any]


def key(name: str) -> Accessor:
    return lambda data: data.get(name)


def path(*keys: str) -> Accessor:
    return lambda data: walk_path(data, keys)


def first_match(data: dict, accessors: Iterable[Accessor]) -> Any:
    """Value of the first accessor that finds something non-empty."""
    for accessor in accessors:
        value = accessor(data)
        if value not in (None, "", [], {}):
            return value
    return None


STUB_FIELDS: dict[str, tuple[Accessor, ...]] = {
    "article_code": (key("articleCode"), key("code"), key("id")),
    "title": (key("title"), key("name"), key("productName")),
    "url": (key("pdpUrl"), key("url"), key("link")),
    "list_price": (key("regularPrice"), key("price"), key("whitePrice")),
    "sale_price": (key("redPrice"), key("salePrice"), key("discountedPrice")),
    "category": (key("category"), key("categoryName")),
    "image_url": (key("imageProductSrc"), key("imageUrl"), key("image")),
    "colors": (key("swatches"), key("colors")),
    "sizes": (key("sizes"),),
}
SWATCH_FIELDS: tuple[Accessor, ...] = (key("colorName"), key("hexColor"))
SIZE_FIELDS: tuple[Accessor, ...] = (key("sizeCode"), key("name"))

TOTAL_COUNT_FIELDS: tuple[Accessor, ...] = (
    key("totalHits"),
    key("total"),
    path("pagination", "totalCount"),
    path("pagination", "totalHits"),
)

JSON_LD_FIELDS: dict[str, tuple[Accessor, ...]] = {
    "article_code": (key("sku"), key("productID")),
    "title": (key("name"),),
    "url": (key("url"),),
    "list_price": (path("offers", "price"),),
    "category": (key("category"),),
    "image_url": (key("image"),),
}

NEXT_DATA_LISTING_PATHS = (
    ("props", "pageProps", "plpProps", "productListingProps"),
    ("props", "pageProps", "productListingProps"),
    ("props", "pageProps", "products"),
    ("pageProps", "plpProps", "productListingProps"),
)

NEXT_DATA_PRODUCT_PATHS = (
    ("props", "pageProps", "productPageProps", "productData"),
    ("props", "pageProps", "productData"),
    ("props", "pageProps", "product"),
)

DOM_CARD_SELECTORS = (
    "[data-product]",
    "[data-article-code]",
    "[data-product-id]",
    ".product-item[data-article]",
    'article[data-test="product-card"]',
    ".product-item",
)

# Attribute names are checked on the card before any sub-selector text
DOM_CARD_FIELDS: dict[str, tuple[tuple[str, ...], str]] = {
    "article_code": (
        ("data-article-code", "data-articlecode", "data-product-id", "data-article", "data-code", "data-product"),
        "",
    ),
    "title": (("data-title", "data-name"), '[data-test="product-title"], .product-title, .item-heading a, h2, h3'),
    "list_price": (("data-price", "data-regular-price"), '[data-test="product-price"], .price, .regular-price, .item-price'),
    "sale_price": (("data-sale-price", "data-red-price"), ".sale-price, .red-price"),
}

PRODUCT_LINK_SELECTORS = (
    ".product-item article .item-heading a",
    'a[href*="productpage."]',
)

COUNT_WIDGET_SELECTOR = ".filter-pagination"


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------

def _scalar_price(value: Any) -> Optional[Decimal]:
    if isinstance(value, dict):
        value = first_match(value, (key("value"), key("price"), key("amount")))
    if isinstance(value, list):
        value = value[0] if value else None
    return parse_price(value)


def _url_value(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = first_match(value, (key("url"), key("src"), key("href")))
    return str(value) if value else None


def _label_list(value: Any, accessors: tuple[Accessor, ...]) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    labels = []
    for entry in value:
        label = first_match(entry, accessors) if isinstance(entry, dict) else entry
        if label not in (None, ""):
            labels.append(str(label))
    return tuple(labels)


def _optional_str(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return str(value).strip() or None


def stub_from_mapping(data: Any, fields: dict[str, tuple[Accessor, ...]] = STUB_FIELDS) -> Optional[ProductStub]:
    """Map a heterogeneous product dict onto a ProductStub.

    Returns None unless the product can be identified (code or URL).
    """
    if not isinstance(data, dict):
        return None

    values = {name: first_match(data, accessors) for name, accessors in fields.items()}
    offers = data.get("offers")
    if values.get("list_price") is None and isinstance(offers, list) and offers:
        values["list_price"] = first_match(offers[0], (key("price"),)) if isinstance(offers[0], dict) else None

    url = _url_value(values.get("url"))
    code = _optional_str(values.get("article_code")) or (product_page_id(url) if url else None)
    if not code and not url:
        return None

    return ProductStub(
        article_code=code,
        title=_optional_str(values.get("title")),
        url=url,
        list_price=_scalar_price(values.get("list_price")),
        sale_price=_scalar_price(values.get("sale_price")),
        category=_optional_str(values.get("category")),
        image_url=_url_value(values.get("image_url")),
        colors=_label_list(values.get("colors"), SWATCH_FIELDS),
        sizes=_label_list(values.get("sizes"), SIZE_FIELDS),
    )


def _to_count(value: Any) -> Optional[int]:
    try:
        count = int(value)
    except (TypeError, ValueError):
        return None
    return count if count >= 0 else None


def _listing_from_container(container: Any) -> Optional[ExtractedPage]:
    """Build a page from a node holding ``hits``/``products`` (or a bare product list)."""
    if isinstance(container, list):
        items, meta = container, {}
    elif isinstance(container, dict):
        items = first_match(container, (key("hits"), key("products"), key("items")))
        meta = container
    else:
        return None
    if not isinstance(items, list):
        return None

    stubs = [stub for stub in (stub_from_mapping(item) for item in items) if stub]
    if not stubs:
        return None

    total = _to_count(first_match(meta, TOTAL_COUNT_FIELDS)) if meta else None
    next_page = bool(meta.get("nextPageUrl")) if meta else False
    pagination = meta.get("pagination") if meta else None
    if isinstance(pagination, dict):
        current = _to_count(pagination.get("currentPage"))
        pages = _to_count(pagination.get("totalPages"))
        if current is not None and pages is not None:
            next_page = next_page or current < pages

    return ExtractedPage(products=stubs, total_count=total, next_page_available=next_page)


# ---------------------------------------------------------------------------
# Listing strategies
# ---------------------------------------------------------------------------

def _from_next_data(body: str, tree: HTMLParser) -> Optional[ExtractedPage]:
    data = extract_next_data(tree)
    if data is None:
        return None
    for candidate in NEXT_DATA_LISTING_PATHS:
        page = _listing_from_container(walk_path(data, candidate))
        if page:
            return page
    return None


def _from_window_state(body: str, tree: HTMLParser) -> Optional[ExtractedPage]:
    for name, value in extract_window_state(body):
        containers = [value]
        if isinstance(value, dict) and isinstance(value.get("data"), (dict, list)):
            containers.append(value["data"])
        for container in containers:
            page = _listing_from_container(container)
            if page:
                logger.debug(f"Products found in window.{name}")
                return page
    return None


def _json_ld_nodes(objects: list[Any]) -> Iterable[dict]:
    for obj in objects:
        if isinstance(obj, list):
            yield from _json_ld_nodes(obj)
        elif isinstance(obj, dict):
            if isinstance(obj.get("@graph"), list):
                yield from _json_ld_nodes(obj["@graph"])
            yield obj


def _from_json_ld(body: str, tree: HTMLParser) -> Optional[ExtractedPage]:
    for node in _json_ld_nodes(extract_json_ld(tree)):
        if node.get("@type") not in ("ItemList", "ProductList"):
            continue
        entries = node.get("itemListElement") or []
        stubs = []
        for entry in entries:
            item = entry.get("item") if isinstance(entry, dict) and isinstance(entry.get("item"), dict) else entry
            stub = stub_from_mapping(item, JSON_LD_FIELDS)
            if stub:
                stubs.append(stub)
        if stubs:
            return ExtractedPage(products=stubs, total_count=_to_count(node.get("numberOfItems")))
    return None


def _attribute(node: Node, names: tuple[str, ...]) -> Optional[str]:
    attributes = node.attributes
    for name in names:
        value = attributes.get(name)
        if value:
            return value.strip()
    return None


def _sub_text(node: Node, selector: str) -> Optional[str]:
    if not selector:
        return None
    match = node.css_first(selector)
    if match is None:
        return None
    return match.text(strip=True) or None


def _card_stub(card: Node) -> Optional[ProductStub]:
    embedded = card.attributes.get("data-product")
    if embedded and embedded.lstrip().startswith("{"):
        try:
            stub = stub_from_mapping(json.loads(embedded))
        except json.JSONDecodeError:
            stub = None
        if stub:
            return stub

    values = {}
    for name, (attributes, selector) in DOM_CARD_FIELDS.items():
        values[name] = _attribute(card, attributes) or _sub_text(card, selector)

    link = card.css_first("a[href]")
    url = link.attributes.get("href") if link is not None else None
    code = values["article_code"]
    if code and code.startswith("{"):
        # Unreadable embedded object, not an article code
        code = None
    code = code or (product_page_id(url) if url else None)
    if not code or not values["title"]:
        return None

    image = card.css_first("img")
    image_url = None
    if image is not None:
        image_url = image.attributes.get("src") or image.attributes.get("data-src")

    return ProductStub(
        article_code=code,
        title=values["title"],
        url=url,
        list_price=parse_price(values["list_price"]),
        sale_price=parse_price(values["sale_price"]),
        image_url=image_url,
    )


def _from_dom(body: str, tree: HTMLParser) -> Optional[ExtractedPage]:
    for selector in DOM_CARD_SELECTORS:
        cards = tree.css(selector)
        if not cards:
            continue
        stubs = [stub for stub in (_card_stub(card) for card in cards) if stub]
        return ExtractedPage(products=stubs) if stubs else None
    return None


LISTING_STRATEGIES: tuple[tuple[str, Callable[[str, HTMLParser], Optional[ExtractedPage]]], ...] = (
    ("next_data", _from_next_data),
    ("window_state", _from_window_state),
    ("json_ld", _from_json_ld),
    ("dom", _from_dom),
)


def extract(body: str, tree: Optional[HTMLParser] = None) -> Optional[ExtractedPage]:
    """
    Extract products from a listing page.

    Args:
        body: Raw page HTML
        tree: Already parsed DOM for ``body`` (parsed here if omitted)

    Returns:
        The first strategy's result with at least one product, or None.
    """
    tree = tree if tree is not None else HTMLParser(body)
    for name, strategy in LISTING_STRATEGIES:
        try:
            page = strategy(body, tree)
        except (ValueError, TypeError, KeyError, AttributeError, ParsingError) as e:
            logger.debug(f"Extraction strategy {name} failed: {e}")
            continue
        if page and page.products:
            page.strategy = name
            logger.debug(f"Extracted {len(page.products)} products via {name}")
            return page
    return None


def extract_product_links(tree: HTMLParser) -> list[ProductStub]:
    """URL-only stubs for every product link on a listing page."""
    for selector in PRODUCT_LINK_SELECTORS:
        stubs = []
        seen = set()
        for link in tree.css(selector):
            href = link.attributes.get("href")
            if not href or href in seen:
                continue
            seen.add(href)
            stubs.append(ProductStub(
                article_code=product_page_id(href),
                title=link.text(strip=True) or None,
                url=href,
            ))
        if stubs:
            return stubs
    return []


def extract_product_count(body: str, tree: Optional[HTMLParser] = None) -> Optional[int]:
    """
    Total products in a category.

    Prefers the count from embedded state; falls back to the digits of the
    pagination widget text ("1 234 items" -> 1234).
    """
    tree = tree if tree is not None else HTMLParser(body)

    data = extract_next_data(tree)
    if data is not None:
        for candidate in NEXT_DATA_LISTING_PATHS:
            container = walk_path(data, candidate)
            if isinstance(container, dict):
                total = _to_count(first_match(container, TOTAL_COUNT_FIELDS))
                if total is not None:
                    return total

    for _name, value in extract_window_state(body):
        if isinstance(value, dict):
            total = _to_count(first_match(value, TOTAL_COUNT_FIELDS))
            if total is not None:
                return total

    widget = tree.css_first(COUNT_WIDGET_SELECTOR)
    if widget is not None:
        digits = "".join(re.findall(r"\d+", widget.text()))
        if digits:
            return int(digits)
    return None


# ---------------------------------------------------------------------------
# Product detail
# ---------------------------------------------------------------------------

COMBINATION_FIELDS: dict[str, tuple[Accessor, ...]] = {
    "article_no": (key("articleCode"), key("code"), key("id")),
    "description": (key("colorName"), key("description"), key("color")),
    "list_price": (key("whitePriceValue"), key("regularPrice"), key("whitePrice"), key("price")),
    "sale_price": (key("redPriceValue"), key("redPrice"), key("salePrice")),
    "url_path": (key("url"), key("pdpUrl")),
}


def main_image_from_miniature(image_url: str) -> str:
    """Swatch thumbnails point at the miniature rendition; the main one differs only by name."""
    full = image_url.replace("miniature", "main")
    return f"https:{full}" if full.startswith("//") else full


def combination_images(tree: HTMLParser) -> dict[str, str]:
    """Main image per article code from the color swatch links."""
    images = {}
    for link in tree.css(".product-colors a"):
        article = link.attributes.get("data-articlecode")
        image = link.css_first("img")
        src = image.attributes.get("src") if image is not None else None
        if article and src:
            images[article] = main_image_from_miniature(src)
    return images


def _breadcrumbs(tree: HTMLParser) -> tuple[Optional[str], Optional[str], Optional[str]]:
    # A complete breadcrumb reads Home / Division / Category / ... / SubCategory / Product
    parts = [node.text(strip=True) for node in tree.css(".breadcrumbs-placeholder li")]
    if len(parts) < 5:
        return None, None, None
    return parts[1] or None, parts[2] or None, parts[-2] or None


def _thumbnail(entry: dict) -> Optional[str]:
    images = entry.get("images")
    if isinstance(images, list) and images and isinstance(images[0], dict):
        return images[0].get("thumbnail") or images[0].get("image")
    return None


def _combinations_from_article_details(details: dict) -> list[ProductCombination]:
    combinations = []
    for article_no, entry in details.items():
        # Only variant entries carry a description; the rest is page metadata
        if not isinstance(entry, dict) or not entry.get("description"):
            continue
        combinations.append(ProductCombination(
            article_no=str(article_no),
            list_price=parse_price(entry.get("whitePriceValue")),
            sale_price=parse_price(entry.get("redPriceValue")) if entry.get("redPriceValue") else None,
            description=str(entry["description"]),
            url_path=entry.get("url"),
            image_url=_thumbnail(entry),
            sizes=list(_label_list(entry.get("sizes"), (key("name"), key("sizeCode")))),
        ))
    return combinations


def _combinations_from_next_data(product: dict) -> list[ProductCombination]:
    variants = first_match(product, (key("articlesList"), key("variations"), key("articles")))
    entries = variants if isinstance(variants, list) else [product]
    combinations = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        values = {name: first_match(entry, accessors) for name, accessors in COMBINATION_FIELDS.items()}
        if not values["article_no"]:
            continue
        image = first_match(entry, (key("imageUrl"), key("image"))) or _thumbnail(entry)
        combinations.append(ProductCombination(
            article_no=str(values["article_no"]),
            list_price=_scalar_price(values["list_price"]),
            sale_price=_scalar_price(values["sale_price"]),
            description=_optional_str(values["description"]),
            url_path=_url_value(values["url_path"]),
            image_url=_url_value(image),
            sizes=list(_label_list(entry.get("sizes"), SIZE_FIELDS)),
        ))
    return combinations


def _combination_from_hint(hint: ProductStub) -> Optional[ProductCombination]:
    if not hint.article_code:
        return None
    return ProductCombination(
        article_no=hint.article_code,
        list_price=hint.list_price,
        sale_price=hint.sale_price,
        description=hint.colors[0] if hint.colors else None,
        url_path=hint.url,
        image_url=hint.image_url,
        sizes=list(hint.sizes),
    )


def extract_detail(
    body: str,
    tree: Optional[HTMLParser] = None,
    hint: Optional[ProductStub] = None,
) -> Optional[ProductDetail]:
    """
    Extract a product and all of its color variants from a detail page.

    Args:
        body: Raw page HTML
        tree: Already parsed DOM for ``body`` (parsed here if omitted)
        hint: Listing data for this product, used when the page has no
              variant payload

    Returns:
        ProductDetail, or None when no variant data could be found.

    Raises:
        ParsingError: If the legacy product object is present but malformed.
    """
    tree = tree if tree is not None else HTMLParser(body)

    name_node = tree.css_first(".product-name-price h1") or tree.css_first("h1")
    product_name = name_node.text(strip=True) if name_node is not None else None
    division, category, sub_category = _breadcrumbs(tree)

    combinations: list[ProductCombination] = []
    details = extract_product_article_details(body)
    if details is not None:
        combinations = _combinations_from_article_details(details)
    else:
        data = extract_next_data(tree)
        for candidate in NEXT_DATA_PRODUCT_PATHS:
            product = walk_path(data, candidate) if data else None
            if isinstance(product, dict):
                combinations = _combinations_from_next_data(product)
                product_name = product_name or _optional_str(first_match(product, STUB_FIELDS["title"]))
                if combinations:
                    break

    if not combinations and hint is not None:
        fallback = _combination_from_hint(hint)
        if fallback:
            combinations = [fallback]
            product_name = product_name or hint.title

    if not combinations:
        return None

    images = combination_images(tree)
    for combination in combinations:
        swatch = images.get(combination.article_no)
        if swatch:
            combination.image_url = swatch
        if combination.image_url:
            combination.images = [combination.image_url]

    return ProductDetail(
        product_name=product_name,
        combinations=combinations,
        division=division,
        category=category,
        sub_category=sub_category,
    )
