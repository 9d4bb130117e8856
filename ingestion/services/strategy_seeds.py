"""
Seed strategies loaded by `manage.py seed_strategies`.

Discovery configs hold a search query template ({city} and {chain} are
filled in by the discovery runner). Dish extraction configs hold the selectors
or embedded JSON path for a platform's menu page.
"""

from ingestion.models import StrategyKind

DISCOVERY_SEED_STRATEGIES = [
    # Switzerland
    {
        "platform": "just-eat",
        "country": "CH",
        "config": {"query_template": "site:just-eat.ch planted chicken {city}"},
        "success_rate": 70,
        "tags": ["city-specific", "product-specific"],
    },
    {
        "platform": "just-eat",
        "country": "CH",
        "config": {"query_template": 'site:just-eat.ch "planted.chicken" {city}'},
        "success_rate": 80,
        "tags": ["city-specific", "high-precision"],
    },
    {
        "platform": "just-eat",
        "country": "CH",
        "config": {"query_template": 'site:just-eat.ch "{chain}" alle standorte'},
        "success_rate": 75,
        "tags": ["chain-discovery"],
    },
    {
        "platform": "uber-eats",
        "country": "CH",
        "config": {"query_template": "site:ubereats.com/ch planted chicken {city}"},
        "success_rate": 70,
        "tags": ["city-specific", "product-specific"],
    },
    {
        "platform": "smood",
        "country": "CH",
        "config": {"query_template": "site:smood.ch planted {city}"},
        "success_rate": 65,
        "tags": ["city-specific", "broad-search"],
    },
    # Germany
    {
        "platform": "uber-eats",
        "country": "DE",
        "config": {"query_template": "site:ubereats.com/de planted chicken {city}"},
        "success_rate": 70,
        "tags": ["city-specific", "product-specific"],
    },
    {
        "platform": "lieferando",
        "country": "DE",
        "config": {"query_template": "site:lieferando.de planted chicken {city}"},
        "success_rate": 70,
        "tags": ["city-specific", "product-specific"],
    },
    {
        "platform": "lieferando",
        "country": "DE",
        "config": {"query_template": 'site:lieferando.de "planted.chicken" {city}'},
        "success_rate": 80,
        "tags": ["city-specific", "high-precision"],
    },
    # Austria
    {
        "platform": "wolt",
        "country": "AT",
        "config": {"query_template": "site:wolt.com/de/aut planted {city}"},
        "success_rate": 65,
        "tags": ["city-specific", "broad-search"],
    },
]

DISH_EXTRACTION_SEED_STRATEGIES = [
    {
        "kind": StrategyKind.DISH_EXTRACTION,
        "platform": "uber-eats",
        "config": {"json_menu_path": "__NEXT_DATA__"},
        "success_rate": 70,
        "tags": ["platform-default"],
    },
    {
        "kind": StrategyKind.DISH_EXTRACTION,
        "platform": "lieferando",
        "config": {
            "dish_container_selector": '[data-qa="menu-item"]',
            "name_selector": '[data-qa="item-name"]',
            "price_selector": '[data-qa="item-price"]',
        },
        "success_rate": 70,
        "tags": ["platform-default"],
    },
    {
        "kind": StrategyKind.DISH_EXTRACTION,
        "platform": "wolt",
        "config": {"json_menu_path": "application/ld+json"},
        "success_rate": 70,
        "tags": ["platform-default"],
    },
    {
        "kind": StrategyKind.DISH_EXTRACTION,
        "platform": "just-eat",
        "config": {
            "dish_container_selector": ".menu-item",
            "name_selector": ".menu-item__name",
            "price_selector": ".menu-item__price",
        },
        "success_rate": 70,
        "tags": ["platform-default"],
    },
    {
        "kind": StrategyKind.DISH_EXTRACTION,
        "platform": "smood",
        "config": {"dish_container_selector": ".menu-item"},
        "success_rate": 65,
        "tags": ["platform-default"],
    },
]

SEED_STRATEGIES = DISCOVERY_SEED_STRATEGIES + DISH_EXTRACTION_SEED_STRATEGIES
