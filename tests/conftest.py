"""Shared fixtures and page samples."""

import json

import pytest

from hm_crawler.ingest.crawler_pool import HandlerContext, QueuedRequest
from hm_crawler.ingest.http_client import FetchResponse
from hm_crawler.markets import SUPPORTED_MARKETS
from hm_crawler.models import CrawlContext, CrawlTarget, ExtractionMode, PageLabel
from hm_crawler.storage.dataset import JsonlDataset
from hm_crawler.storage.dedupe import DedupLedger
from hm_crawler.storage.kv_store import FileKeyValueStore
from hm_crawler.storage.progress import ProgressLedger
from hm_crawler.storage.statistics import CrawlStatistics
from hm_crawler.worker.router import CrawlRouter

UK = SUPPORTED_MARKETS["UNITED KINGDOM"]
GERMANY = SUPPORTED_MARKETS["GERMANY"]


def _product_hit(code, title, regular, red=None, color="Black"):
    hit = {
        "articleCode": code,
        "title": title,
        "pdpUrl": f"/en_gb/productpage.{code}.html",
        "regularPrice": regular,
        "swatches": [{"colorName": color}],
        "imageProductSrc": f"//image.hm.com/assets/{code}.jpg",
        "sizes": [{"sizeCode": "S"}, {"sizeCode": "M"}],
        "category": "T-shirts",
    }
    if red is not None:
        hit["redPrice"] = red
    return hit


NEXT_DATA_LISTING = {
    "props": {
        "pageProps": {
            "plpProps": {
                "productListingProps": {
                    "hits": [
                        _product_hit("1111111001", "Oversized T-shirt", "£12.99", "£9.99", "White"),
                        _product_hit("2222222001", "Relaxed Fit Shirt", "£24.99"),
                    ],
                    "pagination": {"totalCount": 300},
                }
            }
        }
    }
}

# DOM cards with different products than the embedded state
DOM_CARDS = """
<ul class="products-listing">
  <li class="product-item">
    <article data-articlecode="9999999001">
      <img src="//image.hm.com/assets/9999999001.jpg">
      <h3 class="item-heading"><a href="/en_gb/productpage.9999999001.html">Card Hoodie</a></h3>
      <span class="price regular">£19.99</span>
    </article>
  </li>
</ul>
"""

LISTING_PAGE_HTML = f"""
<html><head>
<script id="__NEXT_DATA__" type="application/json">{json.dumps(NEXT_DATA_LISTING)}</script>
</head><body>{DOM_CARDS}</body></html>
"""

DOM_ONLY_LISTING_HTML = f"<html><body>{DOM_CARDS}</body></html>"

JSON_LD_LISTING_HTML = """
<html><head>
<script type="application/ld+json">
{"@context": "https://schema.org", "@type": "ItemList", "numberOfItems": 2,
 "itemListElement": [
   {"@type": "ListItem", "position": 1, "item": {"@type": "Product", "sku": "3333333001",
    "name": "Linen Trousers", "url": "https://www2.hm.com/en_gb/productpage.3333333001.html",
    "image": "https://image.hm.com/assets/3333333001.jpg",
    "offers": {"@type": "Offer", "price": "29.99", "priceCurrency": "GBP"}}},
   {"@type": "ListItem", "position": 2, "item": {"@type": "Product", "sku": "4444444001",
    "name": "Cotton Chinos", "url": "https://www2.hm.com/en_gb/productpage.4444444001.html",
    "offers": {"@type": "Offer", "price": "24.99", "priceCurrency": "GBP"}}}
 ]}
</script>
</head><body></body></html>
"""

WINDOW_STATE_LISTING_HTML = """
<html><body><script>
window.productList = {
  products: [
    {articleCode: '5555555001', title: 'Knitted Jumper', pdpUrl: '/en_gb/productpage.5555555001.html',
     price: '£34.99', sizes: undefined,},
  ],
  total: 1,
};
</script></body></html>
"""

LINKS_ONLY_LISTING_HTML = """
<html><body>
<section class="teasers">
  <a href="/en_gb/productpage.6666666001.html">Wool Coat</a>
  <a href="/en_gb/productpage.7777777001.html">Rain Jacket</a>
  <a href="/en_gb/productpage.6666666001.html">Wool Coat</a>
</section>
</body></html>
"""

CATEGORY_PAGE_HTML = """
<html><body>
<div class="filter-pagination">Showing 300 items</div>
</body></html>
"""

# Legacy product object: single quotes, a value with an unescaped double
# quote, a device ternary and trailing commas.
PRODUCT_DETAIL_HTML = """
<html><body>
<div class="breadcrumbs-placeholder"><ul>
  <li>Home</li><li>Men</li><li>Jeans</li><li>Slim</li><li>Slim Jeans</li>
</ul></div>
<div class="product-name-price"><h1>Slim Jeans</h1></div>
<div class="product-colors">
  <a data-articlecode="0970819002"><img src="//image.hm.com/miniature/blue.jpg"></a>
</div>
<script>
var productArticleDetails = {
  'alternate': 'Slim Jeans',
  'articleCode': '0970819001',
  '0970819001': {
    'description': 'Black',
    'name': 'Slim 32" Jeans',
    'whitePriceValue': '29.99',
    'redPriceValue': '19.99',
    'url': '/en_gb/productpage.0970819001.html',
    'images': [{
      'thumbnail': '//image.hm.com/assets/black.jpg',
      'image': isDesktop ? '//image.hm.com/desktop.jpg' : '//image.hm.com/mobile.jpg',
    }],
    'sizes': [{'sizeCode': '001', 'name': 'S'}, {'sizeCode': '002', 'name': 'M'}],
  },
  '0970819002': {
    'description': 'Blue',
    'whitePriceValue': '29.99',
    'redPriceValue': '',
    'url': '/en_gb/productpage.0970819002.html',
    'images': [],
    'sizes': [],
  },
};
</script>
</body></html>
"""

GERMANY_NAVIGATION = {
    "siteStructure": [
        {
            "trackingLabel": "ladies",
            "title": "Damen",
            "children": [
                {
                    "trackingLabel": "shop-by-product",
                    "title": "Produkte",
                    "children": [
                        {"trackingLabel": "view-all", "title": "Alle ansehen",
                         "aliasPath": "/de_de/damen/produkte/view-all.html", "children": []},
                        {"trackingLabel": "dresses", "title": "Kleider",
                         "aliasPath": "/de_de/damen/produkte/kleider.html",
                         "children": [
                             {"trackingLabel": "maxi", "title": "Maxikleider",
                              "aliasPath": "/de_de/damen/produkte/kleider/maxikleider.html",
                              "children": []},
                         ]},
                    ],
                },
                {"trackingLabel": "new-arrivals", "title": "Neuheiten",
                 "aliasPath": "/de_de/damen/neuheiten.html", "children": []},
            ],
        },
        {
            "trackingLabel": "men",
            "title": "Herren",
            "children": [
                {
                    "trackingLabel": "shop-by-product",
                    "title": "Produkte",
                    "children": [
                        {"trackingLabel": "jeans", "title": "Jeans",
                         "aliasPath": "/de_de/herren/produkte/jeans.html", "children": []},
                        {"trackingLabel": "last-chance", "title": "Last Chance",
                         "aliasPath": "/de_de/herren/produkte/last-chance.html", "children": []},
                    ],
                },
            ],
        },
        {
            "trackingLabel": "misc",
            "title": "Sonstiges",
            "children": [
                {
                    "trackingLabel": "shop-by-product",
                    "title": "Produkte",
                    "children": [
                        {"trackingLabel": "gifts", "title": "Geschenke",
                         "aliasPath": "/de_de/misc/geschenke.html", "children": []},
                    ],
                },
            ],
        },
    ]
}


class HandlerHarness:
    """Builds HandlerContexts and records what handlers enqueue and abort."""

    def __init__(self):
        self.enqueued: list[CrawlTarget] = []
        self.aborts: list[str] = []

    async def enqueue(self, targets):
        targets = list(targets)
        self.enqueued.extend(targets)
        return len(targets)

    def abort(self, reason: str) -> None:
        self.aborts.append(reason)

    def context(self, target: CrawlTarget, body: str, url: str | None = None) -> HandlerContext:
        response = FetchResponse(url=url or target.url, status_code=200, text=body, latency_ms=120.0)
        return HandlerContext(QueuedRequest(target), response, self.enqueue, self.abort)

    def labels(self) -> list[PageLabel]:
        return [target.label for target in self.enqueued]


@pytest.fixture
def harness():
    return HandlerHarness()


@pytest.fixture
def store(tmp_path):
    return FileKeyValueStore(tmp_path / "kv")


@pytest.fixture
def dataset(tmp_path):
    return JsonlDataset(tmp_path / "datasets" / "products.jsonl")


@pytest.fixture
def make_router(store, dataset):
    """Factory for a router wired to fresh ledgers, with an optional record cap."""

    def _make(cap=None, batch_size=50):
        statistics = CrawlStatistics(store, cap=cap)
        ledger = DedupLedger(store)
        progress = ProgressLedger(dataset, statistics, store, batch_size=batch_size, ledger=ledger)
        return CrawlRouter(ledger, progress, statistics)

    return _make


@pytest.fixture
def uk_context():
    return CrawlContext(market=UK, mode=ExtractionMode.DEEP, division="Men", category="Jeans")
