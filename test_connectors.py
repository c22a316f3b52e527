"""
Connector layer tests.

Runs the HTTP client and platform connectors against a local aiohttp server:
1. 429 honours Retry-After; 5xx retries with backoff
2. Platform errors normalize to ConnectorError subclasses
3. Registry lookup by platform / ledger type
4. Shopify cursor pagination, WooCommerce page numbers and Contifico 409 handling
"""

import asyncio
from unittest.mock import patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer


async def _with_server(routes, body):
    """Start a loopback server with `routes`, run `body(base_url)`, stop the server."""
    app = web.Application()
    for method, path, handler in routes:
        app.router.add_route(method, path, handler)
    server = TestServer(app)
    await server.start_server()
    try:
        return await body(str(server.make_url("")))
    finally:
        await server.close()


class _SleepRecorder:
    """Stands in for asyncio.sleep: retry delays (1s and up) are recorded and
    skipped, shorter sleeps from aiohttp itself pass through."""

    def __init__(self):
        self.delays = []
        self._real_sleep = asyncio.sleep

    async def __call__(self, delay, *args, **kwargs):
        if delay >= 1:
            self.delays.append(delay)
            delay = 0
        await self._real_sleep(delay, *args, **kwargs)


class TestApiClientRetries:
    """Retry and rate-limit behaviour of ApiClient."""

    def test_429_honours_retry_after(self):
        from connectors.http_client import ApiClient

        calls = []

        async def handler(request):
            calls.append(1)
            if len(calls) == 1:
                return web.json_response({"message": "slow down"}, status=429, headers={"Retry-After": "7"})
            return web.json_response({"ok": True})

        async def body(base_url):
            async with ApiClient(base_url, name="test") as client:
                return await client.get("items")

        sleeper = _SleepRecorder()
        with patch("connectors.http_client.asyncio.sleep", new=sleeper):
            response = asyncio.run(_with_server([("GET", "/items", handler)], body))

        assert response.data == {"ok": True}
        assert len(calls) == 2
        assert sleeper.delays == [7.0]

    def test_5xx_retries_with_backoff(self):
        from connectors.http_client import ApiClient, RetryConfig

        calls = []

        async def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return web.json_response({"error": "unavailable"}, status=503)
            return web.json_response({"ok": True})

        async def body(base_url):
            async with ApiClient(base_url, retry_config=RetryConfig(base_delay=1.0, max_delay=8.0)) as client:
                return await client.get("items")

        sleeper = _SleepRecorder()
        with patch("connectors.http_client.asyncio.sleep", new=sleeper):
            response = asyncio.run(_with_server([("GET", "/items", handler)], body))

        assert response.status == 200
        assert sleeper.delays == [1.0, 2.0]

    def test_persistent_5xx_raises_after_max_retries(self):
        from connectors.http_client import ApiClient, ConnectorError

        calls = []

        async def handler(request):
            calls.append(1)
            return web.json_response({"message": "boom"}, status=500)

        async def body(base_url):
            async with ApiClient(base_url) as client:
                await client.get("items")

        with patch("connectors.http_client.asyncio.sleep", new=_SleepRecorder()):
            with pytest.raises(ConnectorError) as exc_info:
                asyncio.run(_with_server([("GET", "/items", handler)], body))

        assert exc_info.value.http_status == 500
        assert exc_info.value.message == "boom"
        assert len(calls) == 4

    def test_404_is_not_retried(self):
        from connectors.http_client import ApiClient, ConnectorNotFoundError

        calls = []

        async def handler(request):
            calls.append(1)
            return web.json_response({"mensaje": "Producto no existe"}, status=404)

        async def body(base_url):
            async with ApiClient(base_url) as client:
                await client.get("items")

        with pytest.raises(ConnectorNotFoundError) as exc_info:
            asyncio.run(_with_server([("GET", "/items", handler)], body))

        assert exc_info.value.code == "HTTP_404"
        assert exc_info.value.message == "Producto no existe"
        assert len(calls) == 1

    def test_auth_error(self):
        from connectors.http_client import ApiClient, ConnectorAuthError

        async def handler(request):
            return web.json_response({"errors": "Invalid API key"}, status=401)

        async def body(base_url):
            async with ApiClient(base_url) as client:
                await client.get("items")

        with pytest.raises(ConnectorAuthError) as exc_info:
            asyncio.run(_with_server([("GET", "/items", handler)], body))
        assert exc_info.value.to_dict()["status"] == 401

    def test_connection_refused_is_network_error(self):
        from connectors.http_client import ApiClient, ConnectorNetworkError, RetryConfig

        async def run():
            server = TestServer(web.Application())
            await server.start_server()
            base_url = str(server.make_url(""))
            await server.close()
            async with ApiClient(base_url, retry_config=RetryConfig(max_retries=1)) as client:
                await client.get("items")

        with patch("connectors.http_client.asyncio.sleep", new=_SleepRecorder()):
            with pytest.raises(ConnectorNetworkError) as exc_info:
                asyncio.run(run())
        assert exc_info.value.code == "NETWORK_ERROR"
        assert exc_info.value.http_status == 0

    def test_dns_failure_is_not_retried(self):
        from connectors.http_client import ApiClient, ConnectorNetworkError, RetryConfig

        async def run():
            # .invalid never resolves
            async with ApiClient("http://shop.invalid", retry_config=RetryConfig(max_retries=3)) as client:
                await client.get("items")

        sleeper = _SleepRecorder()
        with patch("connectors.http_client.asyncio.sleep", new=sleeper):
            with pytest.raises(ConnectorNetworkError) as exc_info:
                asyncio.run(run())
        assert exc_info.value.code == "DNS_ERROR"
        assert exc_info.value.http_status == 0
        assert sleeper.delays == []

    def test_request_requires_connect(self):
        from connectors.http_client import ApiClient, ConnectorError

        with pytest.raises(ConnectorError) as exc_info:
            asyncio.run(ApiClient("https://example.test").get("items"))
        assert exc_info.value.code == "NOT_CONNECTED"


class TestRateLimitHeaders:
    """Rate-limit budget parsing."""

    def test_shopify_call_limit(self):
        from connectors.http_client import parse_shopify_rate_limit

        info = parse_shopify_rate_limit({"X-Shopify-Shop-Api-Call-Limit": "38/40"})
        assert info.remaining == 2
        assert info.limit == 40
        assert info.ratio_remaining < 0.1

    def test_ledger_headers_fall_back_to_generic(self):
        from connectors.http_client import parse_ledger_rate_limit

        assert parse_ledger_rate_limit({"X-API-Calls-Remaining": "90", "X-API-Calls-Limit": "100"}).remaining == 90
        info = parse_ledger_rate_limit({"X-RateLimit-Remaining": "5", "X-RateLimit-Limit": "50"})
        assert (info.remaining, info.limit) == (5, 50)
        assert parse_ledger_rate_limit({}) is None


class TestRegistry:
    """Connector construction from stored records."""

    def test_storefront_for_store(self, seeded):
        from connectors import storefront_for
        from connectors.shopify import ShopifyConnector

        connector = storefront_for(seeded.store)
        assert isinstance(connector, ShopifyConnector)
        assert connector.shop_url == "https://acme.myshopify.com"

    def test_ledger_for_integration(self, seeded):
        from connectors import ledger_for
        from connectors.contifico import ContificoLedger

        assert isinstance(ledger_for(seeded.integration), ContificoLedger)

    def test_available_platforms(self):
        from connectors import list_available_connectors, list_available_ledgers

        assert {"shopify", "woocommerce"} <= set(list_available_connectors())
        assert "contifico" in list_available_ledgers()

    def test_unknown_platform_raises(self):
        from connectors import StoreConfig, create_connector

        with pytest.raises(ValueError, match="Unknown storefront platform"):
            create_connector(StoreConfig(platform="magento", store_url="https://m.test"))

    def test_shopify_requires_access_token(self):
        from connectors import StoreConfig, create_connector

        with pytest.raises(ValueError):
            create_connector(StoreConfig(platform="shopify", store_url="shop.myshopify.com"))


class TestShopifyConnector:
    """Shopify pagination and stock writes."""

    def test_next_page_info(self):
        from connectors.shopify import parse_next_page_info

        header = (
            '<https://s.myshopify.com/admin/api/2024-10/products.json?limit=250&page_info=prev1>; rel="previous", '
            '<https://s.myshopify.com/admin/api/2024-10/products.json?limit=250&page_info=next2>; rel="next"'
        )
        assert parse_next_page_info(header) == "next2"
        assert parse_next_page_info(None) is None

    def test_catalogue_scan_and_stock_update(self):
        from connectors import StoreConfig, create_connector

        posted = []

        async def products(request):
            if request.query.get("page_info") == "p2":
                return web.json_response({"products": [
                    {"id": 2, "title": "Gadget", "variants": [
                        {"id": 21, "sku": "GAD", "inventory_item_id": 210, "inventory_quantity": 5},
                    ]},
                ]})
            next_url = str(request.url.with_query({"limit": "250", "page_info": "p2"}))
            return web.json_response(
                {"products": [
                    {"id": 1, "title": "Widget", "variants": [
                        {"id": 11, "title": "Red", "sku": "WID-R", "inventory_item_id": 110, "inventory_quantity": 3},
                        {"id": 12, "title": "Blue", "sku": "", "inventory_quantity": 9},
                    ]},
                ]},
                headers={"Link": f'<{next_url}>; rel="next"'},
            )

        async def levels(request):
            return web.json_response({"inventory_levels": [
                {"inventory_item_id": int(request.query["inventory_item_ids"]), "location_id": 99, "available": 5},
            ]})

        async def set_level(request):
            posted.append(await request.json())
            return web.json_response({"inventory_level": {}})

        prefix = "/admin/api/2024-10"
        routes = [
            ("GET", f"{prefix}/products.json", products),
            ("GET", f"{prefix}/inventory_levels.json", levels),
            ("POST", f"{prefix}/inventory_levels/set.json", set_level),
        ]

        async def body(base_url):
            config = StoreConfig(platform="shopify", store_url=base_url, credentials={"access_token": "t"})
            async with create_connector(config) as shopify:
                found = await shopify.get_products_by_skus(["GAD", "MISSING"])
                await shopify.update_stock(found["GAD"], 8)
                return await shopify.get_products_with_sku(), found

        all_skus, found = asyncio.run(_with_server(routes, body))

        assert [p.sku for p in all_skus] == ["WID-R", "GAD"]
        assert all_skus[0].name == "Widget - Red"
        assert set(found) == {"GAD"}
        assert posted == [{"location_id": 99, "inventory_item_id": 210, "available": 8}]


class TestWooCommerceConnector:
    """WooCommerce page-number pagination, variations and stock writes."""

    PREFIX = "/wp-json/wc/v3"

    def _routes(self, writes):
        async def products(request):
            assert request.headers["Authorization"].startswith("Basic ")
            if "sku" in request.query:
                sku = request.query["sku"]
                catalogue = [{"id": 2, "name": "Mug", "type": "simple", "sku": "MUG", "stock_quantity": 4}]
                return web.json_response([p for p in catalogue if p["sku"] == sku])
            headers = {"X-WP-Total": "3", "X-WP-TotalPages": "2"}
            if request.query["page"] == "2":
                return web.json_response(
                    [{"id": 3, "name": "Poster", "type": "simple", "sku": "", "stock_quantity": None}],
                    headers=headers,
                )
            return web.json_response(
                [
                    {"id": 1, "name": "Shirt", "type": "variable", "sku": "SHIRT"},
                    {"id": 2, "name": "Mug", "type": "simple", "sku": "MUG", "stock_quantity": "4"},
                ],
                headers=headers,
            )

        async def variations(request):
            assert request.match_info["product_id"] == "1"
            return web.json_response([
                {"id": 11, "sku": "SHIRT-S", "stock_quantity": 2, "attributes": [{"option": "Small"}]},
                {"id": 12, "sku": " ", "stock_quantity": 9, "attributes": [{"option": "Large"}]},
            ])

        async def put_product(request):
            writes.append((request.path, await request.json()))
            return web.json_response({})

        return [
            ("GET", f"{self.PREFIX}/products", products),
            ("GET", f"{self.PREFIX}/products/{{product_id}}/variations", variations),
            ("PUT", f"{self.PREFIX}/products/{{product_id}}", put_product),
            ("PUT", f"{self.PREFIX}/products/{{product_id}}/variations/{{variant_id}}", put_product),
        ]

    def _config(self, base_url):
        from connectors import StoreConfig

        return StoreConfig(
            platform="woocommerce",
            store_url=base_url,
            credentials={"consumer_key": "ck_1", "consumer_secret": "cs_1"},
        )

    def test_catalogue_scan_follows_total_pages(self):
        from connectors import create_connector

        async def body(base_url):
            async with create_connector(self._config(base_url)) as woo:
                first = await woo.get_products(page=1)
                return first, await woo.get_products_with_sku()

        first, all_skus = asyncio.run(_with_server(self._routes([]), body))

        assert first.total == 3
        assert first.total_pages == 2
        assert first.has_more is True
        assert [(p.sku, p.product_id, p.variant_id) for p in all_skus] == [
            ("SHIRT-S", "1", "11"),
            ("MUG", "2", None),
        ]
        assert all_skus[0].name == "Shirt - Small"
        assert all_skus[1].stock_quantity == 4

    def test_lookup_by_sku_and_stock_writes(self):
        from connectors import create_connector
        from connectors.storefront_base import SkuProduct

        writes = []

        async def body(base_url):
            async with create_connector(self._config(base_url)) as woo:
                mug = await woo.get_product_by_sku("MUG")
                missing = await woo.get_product_by_sku("NOPE")
                await woo.update_stock(mug, 7)
                await woo.update_stock(
                    SkuProduct(sku="SHIRT-S", product_id="1", variant_id="11", name="Shirt - Small"), 0
                )
                return mug, missing

        mug, missing = asyncio.run(_with_server(self._routes(writes), body))

        assert mug.product_id == "2"
        assert mug.variant_id is None
        assert missing is None
        assert writes == [
            (f"{self.PREFIX}/products/2", {"manage_stock": True, "stock_quantity": 7}),
            (f"{self.PREFIX}/products/1/variations/11", {"manage_stock": True, "stock_quantity": 0}),
        ]

    def test_requires_consumer_credentials(self):
        from connectors import StoreConfig, create_connector

        with pytest.raises(ValueError):
            create_connector(StoreConfig(
                platform="woocommerce", store_url="shop.example", credentials={"consumer_key": "ck_1"},
            ))

    def test_bare_domain_gets_https(self):
        from connectors import StoreConfig, create_connector

        woo = create_connector(StoreConfig(
            platform="woocommerce",
            store_url="shop.example/",
            credentials={"consumer_key": "ck_1", "consumer_secret": "cs_1"},
        ))
        assert woo.site_url == "https://shop.example"


class TestContificoLedger:
    """Contifico product lookup, warehouse stock and movement posting."""

    PREFIX = "/sistema/api/v1"

    def _ledger(self, base_url):
        from connectors import LedgerConfig, create_ledger

        return create_ledger(LedgerConfig(
            ledger_type="contifico",
            credentials={"api_key": "secret"},
            base_url=base_url,
        ))

    def test_exact_code_preferred_and_warehouse_stock(self):
        async def products(request):
            assert request.headers["Authorization"] == "secret"
            return web.json_response([
                {"id": "P-2", "codigo": "ABC-1", "cantidad_stock": "1.0"},
                {"id": "P-1", "codigo": "ABC", "cantidad_stock": "12.0"},
            ])

        async def stock(request):
            return web.json_response([
                {"bodega_id": "WH-2", "cantidad": "3"},
                {"bodega_id": "WH-1", "cantidad": "7.00"},
            ])

        async def body(base_url):
            async with self._ledger(base_url) as ledger:
                product_id = await ledger.find_product_id_by_sku("ABC")
                return (
                    product_id,
                    await ledger.get_stock(product_id, "ABC", "WH-1"),
                    await ledger.get_stock(product_id, "ABC", "WH-9"),
                    await ledger.get_stock(product_id, "ABC"),
                )

        routes = [
            ("GET", f"{self.PREFIX}/producto/", products),
            ("GET", f"{self.PREFIX}/producto/{{product_id}}/stock/", stock),
        ]
        assert asyncio.run(_with_server(routes, body)) == ("P-1", 7, 0, 12)

    def test_closest_code_used_with_warning(self, caplog):
        """Without an exact codigo the first candidate is used and the guess is logged."""
        import logging

        async def products(request):
            assert request.query["codigo"] == "ABC"
            return web.json_response([
                {"id": "P-2", "codigo": "ABC-1", "cantidad_stock": "1.0"},
                {"id": "P-3", "codigo": "ABC-2", "cantidad_stock": "4.0"},
            ])

        async def body(base_url):
            async with self._ledger(base_url) as ledger:
                return await ledger.find_product_id_by_sku("ABC")

        caplog.set_level(logging.WARNING, logger="connectors.contifico")
        product_id = asyncio.run(_with_server([("GET", f"{self.PREFIX}/producto/", products)], body))

        assert product_id == "P-2"
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "ABC-1" in warnings[0].getMessage()
        assert warnings[0].extra_fields["candidates"] == 2

    def test_conflict_means_already_posted(self):
        from core.models import MovementDirection

        bodies = []

        async def movement(request):
            bodies.append(await request.json())
            return web.json_response({"mensaje": "Documento duplicado"}, status=409)

        async def body(base_url):
            async with self._ledger(base_url) as ledger:
                return await ledger.post_movement(
                    MovementDirection.DEBIT, "WH-1", "ABC", 2, "1001:ABC:debit", product_id="P-1"
                )

        result = asyncio.run(_with_server([("POST", f"{self.PREFIX}/movimiento/", movement)], body))

        assert result.already_existed is True
        assert bodies[0]["tipo"] == "egreso"
        assert bodies[0]["referencia"] == "1001:ABC:debit"
        assert bodies[0]["detalles"] == [{"producto_id": "P-1", "cantidad": 2, "descripcion": "ABC"}]

    def test_posted_movement_id(self):
        from core.models import MovementDirection

        async def movement(request):
            return web.json_response({"id": "MOV-77"}, status=201)

        async def body(base_url):
            async with self._ledger(base_url) as ledger:
                return await ledger.post_movement(
                    MovementDirection.CREDIT, "WH-1", "ABC", 1, "1001:ABC:credit", product_id="P-1"
                )

        result = asyncio.run(_with_server([("POST", f"{self.PREFIX}/movimiento/", movement)], body))
        assert result.movement_id == "MOV-77"
        assert result.already_existed is False

    def test_missing_api_key(self):
        from connectors import LedgerConfig, create_ledger

        with pytest.raises(ValueError):
            create_ledger(LedgerConfig(ledger_type="contifico"))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
