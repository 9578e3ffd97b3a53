"""Build and parse product listing URLs (filters, pagination, sort)."""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlsplit

from hm_crawler.markets import BASE_URL, MAX_PRODUCTS_PER_PAGE

logger = logging.getLogger(__name__)

# Multi-value facets the site understands, in the order they are written out
KNOWN_FACETS = (
    "colorWithNames",
    "sizes",
    "clothingStyles",
    "materials",
    "patterns",
    "brandNames",
    "garmentLengths",
    "sleeveLengths",
    "fits",
    "contexts",
    "necklineStyles",
    "sustainabilities",
)

SORT_OPTIONS = ("stock", "newProduct", "ascPrice", "descPrice")

# Single-value parameters with a dedicated ListingQuery field
RESERVED_PARAMS = frozenset({
    "offset", "page-size", "sort", "priceRange", "sale",
    "storeAvailability", "image-size", "image",
})

_PRICE_RANGE = re.compile(r"^\[(\d+),(\d+)\]$")
_PRODUCT_PAGE = re.compile(r"productpage\.(\d+)\.html")


def clamp_page_size(page_size: int) -> int:
    """Clamp to the site's maximum page size."""
    return max(1, min(int(page_size), MAX_PRODUCTS_PER_PAGE))


@dataclass(frozen=True)
class ListingQuery:
    """Structured form of a listing URL.

    ``facets`` holds the known multi-value filters; ``custom`` keeps any other
    query parameter as an opaque key -> values mapping so that site facets we
    do not model survive a parse/build cycle.
    """

    path: str
    base_url: str = BASE_URL
    offset: Optional[int] = None
    page_size: Optional[int] = None
    sort: Optional[str] = None
    price_range: Optional[tuple[int, int]] = None
    sale: bool = False
    store_id: Optional[str] = None
    image_size: Optional[str] = None
    image: Optional[str] = None
    facets: dict[str, list[str]] = field(default_factory=dict)
    custom: dict[str, list[str]] = field(default_factory=dict)

    def __post_init__(self):
        if not self.path.startswith("/"):
            object.__setattr__(self, "path", f"/{self.path}")
        if self.page_size is not None:
            object.__setattr__(self, "page_size", clamp_page_size(self.page_size))

        unknown = set(self.facets) - set(KNOWN_FACETS)
        if unknown:
            raise ValueError(f"Unknown facets {sorted(unknown)}; pass them as custom filters")
        shadowed = (set(self.custom) & RESERVED_PARAMS) | (set(self.custom) & set(KNOWN_FACETS))
        if shadowed:
            raise ValueError(f"Custom filters shadow known parameters: {sorted(shadowed)}")

        # Empty value lists never reach the URL, so drop them up front
        object.__setattr__(self, "facets", {k: list(v) for k, v in self.facets.items() if v})
        object.__setattr__(self, "custom", {k: list(v) for k, v in self.custom.items() if v})


def build(query: ListingQuery) -> str:
    """Render a ListingQuery as an absolute URL."""
    params: list[tuple[str, str]] = []

    for name in KNOWN_FACETS:
        for value in query.facets.get(name, []):
            params.append((name, value))

    if query.price_range is not None:
        low, high = query.price_range
        params.append(("priceRange", f"[{low},{high}]"))
    if query.sale:
        params.append(("sale", "true"))
    if query.store_id:
        params.append(("storeAvailability", query.store_id))

    for key, values in query.custom.items():
        for value in values:
            params.append((key, value))

    if query.sort:
        params.append(("sort", query.sort))
    if query.image_size:
        params.append(("image-size", query.image_size))
    if query.image:
        params.append(("image", query.image))
    if query.offset is not None:
        params.append(("offset", str(query.offset)))
    if query.page_size is not None:
        params.append(("page-size", str(query.page_size)))

    url = f"{query.base_url}{query.path}"
    return f"{url}?{urlencode(params)}" if params else url


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse(url: str) -> ListingQuery:
    """Parse a listing URL (absolute or site-relative) back into a ListingQuery."""
    parts = urlsplit(url)
    base_url = f"{parts.scheme}://{parts.netloc}" if parts.scheme and parts.netloc else BASE_URL

    facets: dict[str, list[str]] = {}
    custom: dict[str, list[str]] = {}
    single: dict[str, str] = {}

    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key in KNOWN_FACETS:
            facets.setdefault(key, []).append(value)
        elif key in RESERVED_PARAMS and key not in single:
            single[key] = value
        else:
            custom.setdefault(key, []).append(value)

    offset = _to_int(single.get("offset")) if "offset" in single else None
    page_size = _to_int(single.get("page-size")) if "page-size" in single else None

    price_range = None
    if "priceRange" in single:
        match = _PRICE_RANGE.match(single["priceRange"])
        if match:
            price_range = (int(match.group(1)), int(match.group(2)))

    # Repeated reserved params keep their first value only
    duplicates = set(custom) & RESERVED_PARAMS
    if duplicates:
        logger.debug(f"Ignoring repeated listing params {sorted(duplicates)} in {url}")
        for key in duplicates:
            custom.pop(key)

    for key, parsed in (("offset", offset), ("page-size", page_size), ("priceRange", price_range)):
        if key in single and parsed is None:
            logger.debug(f"Ignoring unreadable {key}={single[key]!r} in {url}")

    return ListingQuery(
        path=parts.path or "/",
        base_url=base_url,
        offset=offset,
        page_size=page_size,
        sort=single.get("sort") or None,
        price_range=price_range,
        sale=single.get("sale") == "true",
        store_id=single.get("storeAvailability") or None,
        image_size=single.get("image-size") or None,
        image=single.get("image") or None,
        facets=facets,
        custom=custom,
    )


def page_url(url: str, offset: int, page_size: int) -> str:
    """URL of the listing page at ``offset`` with ``page_size`` items (clamped)."""
    return build(replace(parse(url), offset=offset, page_size=clamp_page_size(page_size)))


def page_offsets(total_count: int, page_size: int) -> list[int]:
    """Offsets 0, P, 2P, ... strictly below ``total_count``."""
    return list(range(0, max(total_count, 0), clamp_page_size(page_size)))


def next_page_url(url: str, total_count: Optional[int], page_size: int) -> Optional[str]:
    """URL of the page after ``url``, or None when ``total_count`` is exhausted.

    With no ``total_count`` the next offset is always returned.
    """
    query = parse(url)
    size = clamp_page_size(query.page_size or page_size)
    next_offset = (query.offset or 0) + size
    if total_count is not None and next_offset >= total_count:
        return None
    return build(replace(query, offset=next_offset, page_size=size))


def product_page_id(url: str) -> Optional[str]:
    """Article number in a ``productpage.<id>.html`` URL."""
    match = _PRODUCT_PAGE.search(url or "")
    return match.group(1) if match else None


def product_unique_key(url: str, market_code: str) -> Optional[str]:
    """Queue key shared by every color variant of a product page in one market.

    The last three digits of the article number identify the color, so they
    are dropped to avoid enqueueing the same product once per variant.
    """
    article = product_page_id(url)
    if not article:
        return None
    return f"productpage_{article[:-3]}_{market_code}"


def listing_url(
    path: str,
    *,
    sort: Optional[str] = None,
    offset: Optional[int] = None,
    page_size: Optional[int] = None,
) -> str:
    """Start URL for a category path or URL with an optional sort applied."""
    if sort is not None and sort not in SORT_OPTIONS:
        raise ValueError(f"Unsupported sort '{sort}'. Expected one of {', '.join(SORT_OPTIONS)}")
    query = parse(path)
    return build(replace(
        query,
        sort=sort or query.sort,
        offset=offset if offset is not None else query.offset,
        page_size=page_size if page_size is not None else query.page_size,
    ))
