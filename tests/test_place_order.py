import asyncio
import json
from decimal import Decimal

import pytest
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import text

from conftest import FakeRedis, UntouchableGateway, count_rows
from services.cart.app import commands, queries
from services.cart.app.errors import InvalidInput, OrderPlacementFailed
from services.cart.app.models import CartLine


def _scenario_cart() -> list[CartLine]:
    return [
        CartLine(product_id=101, quantity=2, price=Decimal("10")),
        CartLine(product_id=102, quantity=1, price=Decimal("5")),
    ]


async def _fill_cart(gateway) -> None:
    await commands.add_to_cart(gateway, 1, 101, 2)
    await commands.add_to_cart(gateway, 1, 102, 1)


class TestPlaceOrder:
    async def test_scenario(self, gateway):
        await _fill_cart(gateway)

        result = await commands.place_order(gateway, 1, _scenario_cart())

        assert result["total_amount"] == Decimal("25")
        assert await count_rows(gateway, "orders", user_id=1) == 1
        assert await count_rows(gateway, "order_items", order_id=result["order_id"]) == 2
        assert await queries.get_cart(gateway, 1) == []

        orders = await queries.get_orders(gateway, 1, 1)
        assert len(orders) == 1
        assert orders[0]["order_id"] == result["order_id"]
        assert [item["product_id"] for item in orders[0]["items"]] == [101]

    async def test_item_totals_match_order_total(self, gateway):
        cart = [
            CartLine(product_id=101, quantity=3, price=Decimal("9.99")),
            CartLine(product_id=103, quantity=1, price=Decimal("7.50")),
            CartLine(product_id=102, quantity=4, price=Decimal("0.25")),
        ]

        result = await commands.place_order(gateway, 1, cart)

        rows = await gateway.query(
            text("SELECT quantity, price FROM order_items WHERE order_id = :id"),
            {"id": result["order_id"]},
        )
        assert len(rows) == len(cart)
        items_total = sum(Decimal(str(r.price)) * r.quantity for r in rows)
        assert items_total == result["total_amount"] == Decimal("38.47")

        order = await gateway.query(
            text("SELECT total_amount FROM orders WHERE order_id = :id"),
            {"id": result["order_id"]},
        )
        assert Decimal(str(order[0].total_amount)) == Decimal("38.47")

    async def test_only_that_users_cart_is_cleared(self, gateway):
        await _fill_cart(gateway)
        await commands.add_to_cart(gateway, 2, 101, 1)

        await commands.place_order(gateway, 1, _scenario_cart())

        assert await count_rows(gateway, "cart", user_id=1) == 0
        assert await count_rows(gateway, "cart", user_id=2) == 1

    async def test_price_snapshot_survives_catalog_change(self, gateway):
        result = await commands.place_order(gateway, 1, _scenario_cart())

        await gateway.execute(
            text("UPDATE products SET price = 99 WHERE product_id = 101")
        )

        (order,) = await queries.get_orders(gateway, 1, 1)
        (item,) = order["items"]
        assert item["price"] == 10.0
        assert item["product_price"] == 99.0
        assert order["total_amount"] == 25.0
        assert order["order_id"] == result["order_id"]

    async def test_empty_cart_rejected_before_storage(self):
        with pytest.raises(InvalidInput):
            await commands.place_order(UntouchableGateway(), 1, [])

    async def test_missing_user_rejected_before_storage(self):
        with pytest.raises(InvalidInput):
            await commands.place_order(UntouchableGateway(), None, _scenario_cart())


class TestPlaceOrderAtomicity:
    async def test_failure_while_clearing_cart_rolls_back(self, gateway, monkeypatch):
        await _fill_cart(gateway)

        async def broken_clear(tx, user_id):
            raise RuntimeError("disk full")

        monkeypatch.setattr(commands, "_clear_cart", broken_clear)

        with pytest.raises(OrderPlacementFailed) as excinfo:
            await commands.place_order(gateway, 1, _scenario_cart())

        assert "disk full" not in str(excinfo.value)
        assert await count_rows(gateway, "orders") == 0
        assert await count_rows(gateway, "order_items") == 0
        assert await count_rows(gateway, "cart", user_id=1) == 2

    async def test_storage_failure_inserting_items_rolls_back(self, gateway):
        await _fill_cart(gateway)
        await gateway.execute(text("DROP TABLE order_items"))

        with pytest.raises(OrderPlacementFailed):
            await commands.place_order(gateway, 1, _scenario_cart())

        assert await count_rows(gateway, "orders") == 0
        assert await count_rows(gateway, "cart", user_id=1) == 2

    async def test_storage_failure_clearing_cart_rolls_back(self, gateway):
        await gateway.execute(text("DROP TABLE cart"))

        with pytest.raises(OrderPlacementFailed):
            await commands.place_order(gateway, 1, _scenario_cart())

        assert await count_rows(gateway, "orders") == 0
        assert await count_rows(gateway, "order_items") == 0


class TestOrderPlacedEvent:
    async def test_publishes_after_commit(self, gateway, fake_redis):
        result = await commands.place_order(
            gateway, 1, _scenario_cart(), redis=fake_redis
        )

        ((channel, message),) = fake_redis.published
        assert channel == "order_events"
        event = json.loads(message)
        assert event["event_type"] == "OrderPlaced"
        assert event["data"]["order_id"] == result["order_id"]
        assert event["data"]["user_id"] == 1
        assert event["data"]["item_count"] == 2
        assert Decimal(event["data"]["total_amount"]) == Decimal("25")

    async def test_no_event_when_placement_fails(self, gateway, fake_redis, monkeypatch):
        async def broken_clear(tx, user_id):
            raise RuntimeError("boom")

        monkeypatch.setattr(commands, "_clear_cart", broken_clear)

        with pytest.raises(OrderPlacementFailed):
            await commands.place_order(gateway, 1, _scenario_cart(), redis=fake_redis)

        assert fake_redis.published == []

    async def test_publish_failure_keeps_order(self, gateway):
        redis = FakeRedis(error=RedisConnectionError("redis down"))

        result = await commands.place_order(gateway, 1, _scenario_cart(), redis=redis)

        assert await count_rows(gateway, "orders", order_id=result["order_id"]) == 1


class TestPlaceOrderCancellation:
    async def test_cancel_during_checkout_rolls_back(self, gateway, monkeypatch):
        await _fill_cart(gateway)
        items_written = asyncio.Event()

        async def slow_clear(tx, user_id):
            items_written.set()
            await asyncio.sleep(30)

        monkeypatch.setattr(commands, "_clear_cart", slow_clear)

        task = asyncio.create_task(commands.place_order(gateway, 1, _scenario_cart()))
        await items_written.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert await count_rows(gateway, "orders") == 0
        assert await count_rows(gateway, "order_items") == 0
        assert await count_rows(gateway, "cart", user_id=1) == 2


class TestMoneyPrecision:
    @pytest.mark.parametrize("price", ["0.125", "10.001", "12345678901.00"])
    def test_cart_line_rejects_prices_that_do_not_fit_the_column(self, price):
        with pytest.raises(ValidationError):
            CartLine(product_id=101, quantity=1, price=Decimal(price))

    async def test_stored_item_prices_add_up_to_stored_total(self, gateway):
        cart = [
            CartLine(product_id=101, quantity=3, price=Decimal("0.13")),
            CartLine(product_id=103, quantity=7, price=Decimal("1.01")),
        ]

        result = await commands.place_order(gateway, 1, cart)

        rows = await gateway.query(
            text("SELECT quantity, price FROM order_items WHERE order_id = :id"),
            {"id": result["order_id"]},
        )
        (order,) = await gateway.query(
            text("SELECT total_amount FROM orders WHERE order_id = :id"),
            {"id": result["order_id"]},
        )
        items_total = sum(Decimal(str(r.price)) * r.quantity for r in rows)
        assert items_total == Decimal(str(order.total_amount)) == Decimal("7.46")

    async def test_total_too_large_rejected_before_storage(self):
        cart = [CartLine(product_id=101, quantity=2, price=Decimal("9999999999.99"))]

        with pytest.raises(InvalidInput):
            await commands.place_order(UntouchableGateway(), 1, cart)
