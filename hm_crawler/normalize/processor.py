"""Sanitize, validate and normalize raw product fields into ProductRecords."""

import html
import logging
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Optional

from hm_crawler.errors import ValidationError
from hm_crawler.markets import BASE_URL, COMPANY, Market
from hm_crawler.models import ProductRecord

logger = logging.getLogger(__name__)

TWO_PLACES = Decimal("0.01")

_NUMBER_RUN = re.compile(r"\d[\d.,\s ']*")
_GROUPING_CHARS = re.compile(r"[\s ']")
_SCRIPT_BLOCK = re.compile(r"<(script|style)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]+>")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_ARTICLE_NO = re.compile(r"^\d{6,10}$")


def _normalize_separators(number: str) -> str:
    """Turn a locale-formatted number ("1.234,56", "1,299", "12,99") into "1234.56" form."""
    last_dot = number.rfind(".")
    last_comma = number.rfind(",")

    if last_dot >= 0 and last_comma >= 0:
        # Whichever separator comes last is the decimal point
        if last_comma > last_dot:
            return number.replace(".", "").replace(",", ".")
        return number.replace(",", "")

    if last_dot < 0 and last_comma < 0:
        return number

    parts = number.split("," if last_comma >= 0 else ".")
    if len(parts) > 2 or (len(parts[-1]) == 3 and parts[0] not in ("", "0")):
        return "".join(parts)
    return f"{parts[0]}.{parts[1]}"


def parse_price(value: Any) -> Optional[Decimal]:
    """
    Parse a price from a number or locale-formatted text.

    Tolerates currency symbols, thousands separators and decimal commas.
    The result is rounded half-up to 2 decimal places.

    Returns:
        Decimal price, or None if no number could be read.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float, Decimal)):
        raw = str(value)
    else:
        match = _NUMBER_RUN.search(str(value))
        if not match:
            return None
        raw = _normalize_separators(_GROUPING_CHARS.sub("", match.group()).rstrip(".,"))

    try:
        amount = Decimal(raw)
    except InvalidOperation:
        logger.debug(f"Failed to parse price: {value!r}")
        return None

    if not amount.is_finite():
        return None
    return amount.quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def calculate_discount(list_price: Optional[Decimal], sale_price: Optional[Decimal]) -> Optional[int]:
    """Discount percentage, round((list - sale) / list * 100) with halves rounded up."""
    if list_price is None or sale_price is None or list_price <= 0:
        return None
    percent = (list_price - sale_price) / list_price * 100
    return int(percent.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def clean_text(value: Any) -> Optional[str]:
    """Strip markup and control characters, decode entities, collapse whitespace."""
    if value is None:
        return None
    text = str(value)
    text = _SCRIPT_BLOCK.sub(" ", text)
    text = _TAG.sub(" ", text)
    text = html.unescape(text)
    text = _CONTROL_CHARS.sub("", text)
    text = " ".join(text.split())
    return text or None


def absolute_url(value: Any, base_url: str = BASE_URL) -> Optional[str]:
    """Resolve protocol-relative and site-relative URLs; reject anything else."""
    if not value:
        return None
    url = str(value).strip()
    if url.startswith("//"):
        return f"https:{url}"
    if url.startswith("/"):
        return f"{base_url}{url}"
    if url.startswith(("http://", "https://")):
        return url
    return None


def base_product_id(article_no: str) -> str:
    """Product id shared by all color variants (article number minus its 3-digit suffix)."""
    return article_no[:-3] if len(article_no) > 3 else article_no


def quality_score(record: ProductRecord) -> int:
    """Score completeness of a record from 0 to 100."""
    score = 0
    for required in (record.article_no, record.product_name, record.list_price, record.url):
        if required:
            score += 10
    if record.sale_price is None or record.sale_price <= record.list_price:
        score += 10
    if record.image_url:
        score += 15
    if record.division and record.category:
        score += 15
    if record.color or record.description:
        score += 10
    if record.sizes:
        score += 10
    return score


class ProductNormalizer:
    """Build validated ProductRecords for one market."""

    MIN_PRICE = Decimal("0.01")
    MAX_PRICE = Decimal("10000")
    MIN_NAME_LENGTH = 3
    MAX_NAME_LENGTH = 200

    def __init__(self, market: Market):
        self.market = market

    def _valid_price(self, price: Optional[Decimal]) -> bool:
        return price is not None and self.MIN_PRICE <= price <= self.MAX_PRICE

    def normalize(
        self,
        *,
        article_no: Any,
        product_name: Any,
        list_price: Any,
        url: Any,
        sale_price: Any = None,
        discount_percentage: Any = None,
        division: Any = None,
        category: Any = None,
        sub_category: Any = None,
        color: Any = None,
        sizes: Iterable[Any] = (),
        image_url: Any = None,
        images: Iterable[Any] = (),
        description: Any = None,
    ) -> ProductRecord:
        """
        Sanitize raw fields and build a ProductRecord.

        Raises:
            ValidationError: If a required identifying field is missing or
                out of range. Invalid optional fields are dropped instead.
        """
        article = clean_text(article_no)
        if not article or not _ARTICLE_NO.match(article):
            raise ValidationError(f"Invalid or missing article number: {article_no!r}")

        name = clean_text(product_name)
        if not name or not (self.MIN_NAME_LENGTH <= len(name) <= self.MAX_NAME_LENGTH):
            raise ValidationError(f"Invalid or missing product name for {article}")

        regular = parse_price(list_price)
        if not self._valid_price(regular):
            raise ValidationError(f"Invalid or missing list price for {article}: {list_price!r}")

        product_url = absolute_url(url)
        if not product_url:
            raise ValidationError(f"Invalid or missing URL for {article}: {url!r}")

        sale = parse_price(sale_price)
        if sale is not None and (not self._valid_price(sale) or sale > regular):
            logger.debug(f"Dropping sale price {sale} for {article} (list price {regular})")
            sale = None

        discount = None
        if sale is not None:
            discount = calculate_discount(regular, sale)
            if discount_percentage is not None:
                try:
                    discount = int(Decimal(str(discount_percentage)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
                except InvalidOperation:
                    logger.debug(f"Ignoring unreadable discount {discount_percentage!r} for {article}")

        record = ProductRecord(
            company=COMPANY,
            country=self.market.name,
            market=self.market.code,
            currency=self.market.currency,
            article_no=article,
            product_id=base_product_id(article),
            sku=article,
            product_name=name,
            list_price=regular,
            sale_price=sale,
            discount_percentage=discount,
            url=product_url,
            division=clean_text(division),
            category=clean_text(category),
            sub_category=clean_text(sub_category),
            color=clean_text(color),
            sizes=[s for s in (clean_text(size) for size in sizes) if s],
            image_url=absolute_url(image_url),
            images=[u for u in (absolute_url(image) for image in images) if u],
            description=clean_text(description),
        )
        record.quality_score = quality_score(record)
        return record
