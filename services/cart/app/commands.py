"""
Cart Service - コマンドハンドラ (CQRS の Write 側)

カートの追加・数量変更・削除と、カートから注文への変換(チェックアウト)を扱う。
入力の検証はストレージに触れる前に行う。

チェックアウトは 1 トランザクション:
  1. orders に 1 行 INSERT (RETURNING で order_id を得る)
  2. order_items にカートの行数ぶん INSERT (executemany でまとめて)
  3. そのユーザーのカートを DELETE
  4. コミット
途中で失敗したら全体をロールバックし、注文も明細もカートの変更も残さない。
"""

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from decimal import Decimal

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import DateTime, Numeric, bindparam, text

from .db import StorageGateway, Transaction
from .errors import InvalidInput, InvalidReference, OrderPlacementFailed
from .events import OrderPlaced
from .models import CartLine

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"

_MONEY = Numeric(12, 2)
# NUMERIC(12, 2) に収まる上限
_MAX_AMOUNT = Decimal("9999999999.99")

_SELECT_USER = text("SELECT user_id FROM users WHERE user_id = :user_id")
_SELECT_PRODUCT = text("SELECT product_id FROM products WHERE product_id = :product_id")

_UPSERT_CART_ITEM = text("""
    INSERT INTO cart (user_id, product_id, quantity)
    VALUES (:user_id, :product_id, :quantity)
    ON CONFLICT (user_id, product_id) DO UPDATE SET
        quantity = cart.quantity + excluded.quantity
""")

_UPDATE_QUANTITY = text("""
    UPDATE cart
    SET quantity = :quantity
    WHERE user_id = :user_id AND product_id = :product_id
""")

_DELETE_CART_ITEM = text("DELETE FROM cart WHERE cart_id = :cart_id")
_DELETE_USER_PRODUCT = text(
    "DELETE FROM cart WHERE user_id = :user_id AND product_id = :product_id"
)
_CLEAR_CART = text("DELETE FROM cart WHERE user_id = :user_id")

_INSERT_ORDER = text("""
    INSERT INTO orders (user_id, total_amount, created_at)
    VALUES (:user_id, :total_amount, :created_at)
    RETURNING order_id
""").bindparams(
    bindparam("total_amount", type_=_MONEY),
    bindparam("created_at", type_=DateTime(timezone=True)),
)

_INSERT_ORDER_ITEM = text("""
    INSERT INTO order_items (order_id, product_id, quantity, price)
    VALUES (:order_id, :product_id, :quantity, :price)
""").bindparams(bindparam("price", type_=_MONEY))


# ── 入力検証 ──────────────────────────────────────


def _require(**values) -> None:
    missing = [name for name, value in values.items() if value is None or value == ""]
    if missing:
        raise InvalidInput(f"Missing required fields: {', '.join(missing)}")


def _require_quantity(quantity) -> None:
    # bool は int のサブクラスなので明示的に弾く
    if quantity is None or isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidInput("Quantity must be an integer.")
    if quantity < 1:
        raise InvalidInput("Quantity must be at least 1.")


# ── カート操作 ────────────────────────────────────


async def add_to_cart(
    gateway: StorageGateway,
    user_id: int,
    product_id: int,
    quantity: int,
) -> None:
    """
    カートに商品を追加するコマンド

    1. ユーザーと商品の存在を確認
    2. (user, product) の行があれば数量を加算、なければ INSERT
    """
    _require(user_id=user_id, product_id=product_id)
    _require_quantity(quantity)

    async with gateway.transaction() as tx:
        if not await tx.query(_SELECT_USER, {"user_id": user_id}):
            raise InvalidReference("Invalid user ID")
        if not await tx.query(_SELECT_PRODUCT, {"product_id": product_id}):
            raise InvalidReference("Invalid product ID")

        await tx.execute(
            _UPSERT_CART_ITEM,
            {"user_id": user_id, "product_id": product_id, "quantity": quantity},
        )

    logger.debug(
        "Added product %s x%d to cart of user %s", product_id, quantity, user_id
    )


async def update_quantity(
    gateway: StorageGateway,
    user_id: int,
    product_id: int,
    quantity: int,
) -> dict:
    """数量を上書きする (加算ではない)。"""
    _require(user_id=user_id, product_id=product_id)
    _require_quantity(quantity)

    affected = await gateway.execute(
        _UPDATE_QUANTITY,
        {"quantity": quantity, "user_id": user_id, "product_id": product_id},
    )
    if affected == 0:
        return {"success": False, "reason": "Product not found in cart."}
    return {"success": True}


async def remove_cart_item(gateway: StorageGateway, cart_id: int) -> dict:
    _require(cart_id=cart_id)

    affected = await gateway.execute(_DELETE_CART_ITEM, {"cart_id": cart_id})
    if affected == 0:
        return {"success": False, "reason": "Cart item not found."}
    return {"success": True}


async def remove_by_user_and_product(
    gateway: StorageGateway,
    user_id: int,
    product_id: int,
) -> dict:
    _require(user_id=user_id, product_id=product_id)

    affected = await gateway.execute(
        _DELETE_USER_PRODUCT, {"user_id": user_id, "product_id": product_id}
    )
    if affected == 0:
        return {"success": False, "reason": "Product not found in cart."}
    return {"success": True}


# ── チェックアウト ────────────────────────────────


def compute_total(cart: Sequence[CartLine]) -> Decimal:
    return sum((line.price * line.quantity for line in cart), Decimal("0"))


async def place_order(
    gateway: StorageGateway,
    user_id: int,
    cart: Sequence[CartLine],
    redis: aioredis.Redis | None = None,
) -> dict:
    """
    注文確定コマンド

    合計金額は送られてきたカートの単価から計算する。
    DB への書き込みはすべて 1 トランザクション内で行い、
    どこかで失敗すれば OrderPlacementFailed だけを呼び出し側に返す。
    コミット後、redis が渡されていれば OrderPlaced イベントを発行する。
    """
    _require(user_id=user_id)
    if not cart:
        raise InvalidInput("Invalid order data.")

    total_amount = compute_total(cart)
    if total_amount > _MAX_AMOUNT:
        raise InvalidInput("Order total is too large.")
    now = datetime.now(timezone.utc)

    try:
        async with gateway.transaction() as tx:
            order_id = await _insert_order(tx, user_id, total_amount, now)
            await _insert_order_items(tx, order_id, cart)
            await _clear_cart(tx, user_id)
            await tx.commit()
    except Exception as exc:
        logger.exception("Failed to place order for user %s", user_id)
        raise OrderPlacementFailed() from exc

    logger.info(
        "Order %s placed for user %s (%d items, total=%s)",
        order_id, user_id, len(cart), total_amount,
    )

    if redis is not None:
        event = OrderPlaced(
            order_id=order_id,
            user_id=user_id,
            total_amount=total_amount,
            item_count=len(cart),
            timestamp=now,
        )
        await _publish_order_placed(redis, event)

    return {"order_id": order_id, "total_amount": total_amount}


async def _insert_order(
    tx: Transaction,
    user_id: int,
    total_amount: Decimal,
    created_at: datetime,
) -> int:
    rows = await tx.query(
        _INSERT_ORDER,
        {"user_id": user_id, "total_amount": total_amount, "created_at": created_at},
    )
    return rows[0].order_id


async def _insert_order_items(
    tx: Transaction,
    order_id: int,
    cart: Sequence[CartLine],
) -> None:
    await tx.execute(
        _INSERT_ORDER_ITEM,
        [
            {
                "order_id": order_id,
                "product_id": line.product_id,
                "quantity": line.quantity,
                "price": line.price,
            }
            for line in cart
        ],
    )


async def _clear_cart(tx: Transaction, user_id: int) -> None:
    await tx.execute(_CLEAR_CART, {"user_id": user_id})


async def _publish_order_placed(redis: aioredis.Redis, event: OrderPlaced) -> None:
    # 注文はコミット済みなので、発行に失敗しても注文自体は失敗にしない
    try:
        await redis.publish(ORDER_EVENTS_CHANNEL, json.dumps({
            "event_type": "OrderPlaced",
            "data": event.model_dump(mode="json"),
        }, default=str))
    except RedisError:
        logger.exception("Failed to publish OrderPlaced for order %s", event.order_id)
