"""Data models shared across the crawl pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from hm_crawler.markets import Market


class PageLabel(str, Enum):
    """Page types the router knows how to handle."""
    NAVIGATION = "NAVIGATION"
    CATEGORY_COUNT = "CATEGORY_COUNT"
    LISTING_PAGE = "LISTING_PAGE"
    PRODUCT_DETAIL = "PRODUCT_DETAIL"


class ExtractionMode(str, Enum):
    SHALLOW = "shallow"
    DEEP = "deep"


@dataclass(frozen=True)
class NavigationNode:
    """One entry of the site's taxonomy tree."""

    id: str
    title: str
    tracking_label: str
    alias_path: str = ""
    children: tuple[NavigationNode, ...] = ()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NavigationNode:
        children = tuple(
            cls.from_dict(child)
            for child in data.get("children") or []
            if isinstance(child, dict)
        )
        tracking_label = str(data.get("trackingLabel") or "")
        return cls(
            id=str(data.get("id") or tracking_label),
            title=str(data.get("title") or ""),
            tracking_label=tracking_label,
            alias_path=str(data.get("aliasPath") or data.get("path") or ""),
            children=children,
        )


@dataclass(frozen=True)
class ProductStub:
    """Product data as found on a listing page."""

    article_code: Optional[str] = None
    title: Optional[str] = None
    url: Optional[str] = None
    list_price: Optional[Decimal] = None
    sale_price: Optional[Decimal] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    colors: tuple[str, ...] = ()
    sizes: tuple[str, ...] = ()


@dataclass(frozen=True)
class CrawlContext:
    """Taxonomy and market information inherited from the parent request."""

    market: Market
    mode: ExtractionMode = ExtractionMode.DEEP
    division: Optional[str] = None
    category: Optional[str] = None
    hint: Optional[ProductStub] = None


def canonical_url(url: str) -> str:
    """Normalize a URL so equivalent requests compare equal (sorted query, no fragment)."""
    parts = urlsplit(url)
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, query, ""))


@dataclass(frozen=True)
class CrawlTarget:
    """A unit of crawl work: URL, page type and inherited context."""

    url: str
    label: PageLabel
    context: CrawlContext
    unique_key: str = ""

    def __post_init__(self):
        if not self.unique_key:
            object.__setattr__(self, "unique_key", canonical_url(self.url))


@dataclass
class ExtractedPage:
    """Products recovered from one listing page."""

    products: list[ProductStub]
    total_count: Optional[int] = None
    next_page_available: bool = False
    strategy: str = ""


@dataclass
class ProductCombination:
    """One color variant of a product as listed on its detail page."""

    article_no: str
    list_price: Optional[Decimal]
    sale_price: Optional[Decimal] = None
    description: Optional[str] = None
    url_path: Optional[str] = None
    image_url: Optional[str] = None
    sizes: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)


@dataclass
class ProductDetail:
    """Everything extracted from a product detail page."""

    product_name: Optional[str]
    combinations: list[ProductCombination]
    division: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None


@dataclass
class ProductRecord:
    """Canonical output record for one product variant in one market."""

    company: str
    country: str
    market: str
    currency: str
    article_no: str
    product_name: str
    list_price: Decimal
    url: str
    product_id: Optional[str] = None
    sku: Optional[str] = None
    division: Optional[str] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None
    sale_price: Optional[Decimal] = None
    discount_percentage: Optional[int] = None
    color: Optional[str] = None
    sizes: list[str] = field(default_factory=list)
    image_url: Optional[str] = None
    images: list[str] = field(default_factory=list)
    description: Optional[str] = None
    quality_score: Optional[int] = None
    scraped_at: Optional[datetime] = None

    def __post_init__(self):
        if self.scraped_at is None:
            self.scraped_at = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible types."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Decimal):
                data[key] = float(value)
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
        return data
