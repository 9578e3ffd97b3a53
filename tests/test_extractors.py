"""Tests for the extraction engine and embedded JSON handling."""

from decimal import Decimal

import pytest
from selectolax.parser import HTMLParser

from hm_crawler.errors import ParsingError
from hm_crawler.ingest import page_extractor
from hm_crawler.ingest.json_extractor import (
    SENTINEL,
    balanced_literal,
    extract_product_article_details,
    extract_window_state,
    repair_near_json,
    rewrite_product_details,
)
from hm_crawler.ingest.page_extractor import first_match, key, path, stub_from_mapping
from hm_crawler.models import ProductStub

from tests.conftest import (
    CATEGORY_PAGE_HTML,
    DOM_ONLY_LISTING_HTML,
    JSON_LD_LISTING_HTML,
    LINKS_ONLY_LISTING_HTML,
    LISTING_PAGE_HTML,
    PRODUCT_DETAIL_HTML,
    WINDOW_STATE_LISTING_HTML,
)


class TestAccessors:
    """Tests for ordered field alias resolution."""

    def test_first_non_empty_wins(self):
        data = {"code": "", "id": "123456001", "articleCode": None}
        assert first_match(data, (key("articleCode"), key("code"), key("id"))) == "123456001"

    def test_nested_path(self):
        data = {"pagination": {"totalCount": 42}}
        assert first_match(data, (key("total"), path("pagination", "totalCount"))) == 42

    def test_stub_from_aliased_fields(self):
        stub = stub_from_mapping({
            "code": "1234567001",
            "name": "Cotton Shirt",
            "url": "/en_gb/productpage.1234567001.html",
            "price": {"value": 19.99},
            "colors": ["Blue", "White"],
        })
        assert stub.article_code == "1234567001"
        assert stub.title == "Cotton Shirt"
        assert stub.list_price == Decimal("19.99")
        assert stub.colors == ("Blue", "White")

    def test_stub_code_from_url(self):
        stub = stub_from_mapping({"url": "/en_gb/productpage.1234567001.html"})
        assert stub.article_code == "1234567001"

    def test_unidentifiable_mapping(self):
        assert stub_from_mapping({"title": "Mystery"}) is None
        assert stub_from_mapping("not a dict") is None


class TestListingExtraction:
    """Tests for the listing fallback chain."""

    def test_embedded_state_wins_over_dom(self):
        page = page_extractor.extract(LISTING_PAGE_HTML)
        assert page.strategy == "next_data"
        codes = {stub.article_code for stub in page.products}
        assert codes == {"1111111001", "2222222001"}
        assert "9999999001" not in codes

    def test_next_data_fields(self):
        page = page_extractor.extract(LISTING_PAGE_HTML)
        first = page.products[0]
        assert first.title == "Oversized T-shirt"
        assert first.list_price == Decimal("12.99")
        assert first.sale_price == Decimal("9.99")
        assert first.colors == ("White",)
        assert first.sizes == ("S", "M")
        assert page.total_count == 300

    def test_window_state_fallback(self):
        page = page_extractor.extract(WINDOW_STATE_LISTING_HTML)
        assert page.strategy == "window_state"
        assert page.products[0].article_code == "5555555001"
        assert page.products[0].list_price == Decimal("34.99")
        assert page.total_count == 1

    def test_json_ld_fallback(self):
        page = page_extractor.extract(JSON_LD_LISTING_HTML)
        assert page.strategy == "json_ld"
        assert [stub.article_code for stub in page.products] == ["3333333001", "4444444001"]
        assert page.products[0].list_price == Decimal("29.99")
        assert page.total_count == 2

    def test_dom_fallback(self):
        page = page_extractor.extract(DOM_ONLY_LISTING_HTML)
        assert page.strategy == "dom"
        stub = page.products[0]
        assert stub.article_code == "9999999001"
        assert stub.title == "Card Hoodie"
        assert stub.list_price == Decimal("19.99")

    def test_dom_card_with_plain_product_attribute(self):
        body = '<div data-product="0970818001"><h3>Wide Trousers</h3><span class="price">£27.99</span></div>'
        page = page_extractor.extract(body)
        assert page.strategy == "dom"
        assert page.products[0].article_code == "0970818001"
        assert page.products[0].list_price == Decimal("27.99")

    def test_dom_card_with_broken_embedded_object(self):
        body = (
            "<div data-product='{broken'>"
            '<a href="/en_gb/productpage.0970818001.html"><h3>Wide Trousers</h3></a></div>'
        )
        page = page_extractor.extract(body)
        assert page.products[0].article_code == "0970818001"

    def test_no_products(self):
        assert page_extractor.extract("<html><body><p>Nothing here</p></body></html>") is None

    def test_product_links(self):
        assert page_extractor.extract(LINKS_ONLY_LISTING_HTML) is None
        stubs = page_extractor.extract_product_links(HTMLParser(LINKS_ONLY_LISTING_HTML))
        assert [stub.article_code for stub in stubs] == ["6666666001", "7777777001"]
        assert all(stub.list_price is None for stub in stubs)


class TestProductCount:
    """Tests for category product counts."""

    def test_count_from_embedded_state(self):
        assert page_extractor.extract_product_count(LISTING_PAGE_HTML) == 300

    def test_count_from_widget_text(self):
        assert page_extractor.extract_product_count(CATEGORY_PAGE_HTML) == 300

    def test_widget_digits_are_joined(self):
        html = '<div class="filter-pagination">1 234 items</div>'
        assert page_extractor.extract_product_count(html) == 1234

    def test_no_count(self):
        assert page_extractor.extract_product_count("<html><body></body></html>") is None


class TestNearJsonRepair:
    """Tests for the near-JSON repair pipeline."""

    def test_valid_json_untouched(self):
        assert repair_near_json('{"a": [1, 2]}') == {"a": [1, 2]}

    def test_repairs_javascript_literal(self):
        text = "{name: 'It\\'s', tags: ['a', 'b',], missing: undefined,}"
        assert repair_near_json(text) == {"name": "It's", "tags": ["a", "b"], "missing": None}

    def test_string_contents_not_rewritten(self):
        text = "{note: 'keep undefined, and {x: 1,}'}"
        assert repair_near_json(text) == {"note": "keep undefined, and {x: 1,}"}

    def test_unrepairable_returns_none(self):
        assert repair_near_json("{a: function() { return 1 }}") is None

    def test_balanced_literal_skips_braces_in_strings(self):
        text = 'x = {"a": "}", "b": [1, {"c": 2}]}; y = 3'
        start = text.index("{")
        assert balanced_literal(text, start) == '{"a": "}", "b": [1, {"c": 2}]}'

    def test_window_state_names(self):
        html = "<script>window.pageData = {total: 3}; window.other = {x: 1};</script>"
        assert extract_window_state(html) == [("pageData", {"total": 3})]


class TestProductDetails:
    """Tests for the legacy product object and detail extraction."""

    def test_malformed_object_parses_after_rewrite(self):
        details = extract_product_article_details(PRODUCT_DETAIL_HTML)
        black = details["0970819001"]
        # Only the field with the nested quote is replaced
        assert black["name"] == SENTINEL
        assert black["description"] == "Black"
        assert black["whitePriceValue"] == "29.99"
        assert black["images"][0]["image"] == SENTINEL
        assert black["images"][0]["thumbnail"] == "//image.hm.com/assets/black.jpg"
        assert details["articleCode"] == "0970819001"

    def test_rewrite_stages(self):
        text = "{\n  'a': 'x',\n  'b': isDesktop ? 'd' : 'm',\n};"
        assert rewrite_product_details(text) == '{\n  "a": "x",\n  "b": "replaced"\n}'

    def test_missing_object(self):
        assert extract_product_article_details("<html></html>") is None

    def test_duplicate_object(self):
        body = "var productArticleDetails = {};</script>var productArticleDetails = {};</script>"
        with pytest.raises(ParsingError):
            extract_product_article_details(body)

    def test_unterminated_object(self):
        with pytest.raises(ParsingError):
            extract_product_article_details("var productArticleDetails = {'a': 1}")

    def test_unparseable_object(self):
        with pytest.raises(ParsingError):
            extract_product_article_details("var productArticleDetails = {a b c};</script>")

    def test_extract_detail(self):
        detail = page_extractor.extract_detail(PRODUCT_DETAIL_HTML)
        assert detail.product_name == "Slim Jeans"
        assert (detail.division, detail.category, detail.sub_category) == ("Men", "Jeans", "Slim")
        by_article = {c.article_no: c for c in detail.combinations}
        assert set(by_article) == {"0970819001", "0970819002"}

        black = by_article["0970819001"]
        assert black.list_price == Decimal("29.99")
        assert black.sale_price == Decimal("19.99")
        assert black.sizes == ["S", "M"]
        assert black.image_url == "//image.hm.com/assets/black.jpg"

        blue = by_article["0970819002"]
        assert blue.sale_price is None
        assert blue.image_url == "https://image.hm.com/main/blue.jpg"
        assert blue.images == ["https://image.hm.com/main/blue.jpg"]

    def test_extract_detail_falls_back_to_hint(self):
        hint = ProductStub(
            article_code="1111111001",
            title="Oversized T-shirt",
            url="/en_gb/productpage.1111111001.html",
            list_price=Decimal("12.99"),
            colors=("White",),
        )
        detail = page_extractor.extract_detail("<html><body></body></html>", hint=hint)
        assert detail.product_name == "Oversized T-shirt"
        assert detail.combinations[0].article_no == "1111111001"
        assert detail.combinations[0].description == "White"

    def test_extract_detail_nothing_found(self):
        assert page_extractor.extract_detail("<html><body></body></html>") is None

    def test_short_breadcrumb_ignored(self):
        html = PRODUCT_DETAIL_HTML.replace("<li>Slim</li><li>Slim Jeans</li>", "")
        detail = page_extractor.extract_detail(html)
        assert (detail.division, detail.category, detail.sub_category) == (None, None, None)
