"""
Cart Service - クエリハンドラ (CQRS の Read 側)

カートと注文履歴をコミューン単位で読み出す。

注文履歴のコミューン絞り込み:
  1. ユーザーの注文を新しい順に取得
  2. そのコミューンの商品に紐づく明細だけを取得
  3. 注文ごとにまとめ、明細が 0 件になった注文は結果から落とす
"""

from sqlalchemy import DateTime, bindparam, text

from .db import StorageGateway

_SELECT_CART = text("""
    SELECT c.cart_id, c.quantity,
           p.product_id, p.product_name, p.description,
           p.price, p.product_image, p.commune_id
    FROM cart c
    JOIN products p ON c.product_id = p.product_id
    WHERE c.user_id = :user_id
    ORDER BY c.cart_id
""")

_SELECT_CART_IN_COMMUNE = text("""
    SELECT c.cart_id, c.quantity,
           p.product_id, p.product_name, p.description,
           p.price, p.product_image, p.commune_id
    FROM cart c
    JOIN products p ON c.product_id = p.product_id
    WHERE c.user_id = :user_id AND p.commune_id = :commune_id
    ORDER BY c.cart_id
""")

_SELECT_ORDERS = text("""
    SELECT order_id, user_id, total_amount, created_at
    FROM orders
    WHERE user_id = :user_id
    ORDER BY created_at DESC, order_id DESC
""").columns(created_at=DateTime(timezone=True))

_SELECT_ORDER_ITEMS_IN_COMMUNE = text("""
    SELECT oi.order_item_id, oi.order_id, oi.product_id, oi.quantity, oi.price,
           p.product_name, p.description, p.product_image, p.commune_id,
           p.price AS product_price
    FROM order_items oi
    JOIN products p ON oi.product_id = p.product_id
    WHERE p.commune_id = :commune_id AND oi.order_id IN :order_ids
    ORDER BY oi.order_item_id
""").bindparams(bindparam("order_ids", expanding=True))


def _money(value) -> float | None:
    return float(value) if value is not None else None


async def get_cart(
    gateway: StorageGateway,
    user_id: int,
    commune_id: int | None = None,
) -> list[dict]:
    """カートの中身を商品情報付きで返す。commune_id 指定時はそのコミューンの商品だけ。"""
    if commune_id is None:
        rows = await gateway.query(_SELECT_CART, {"user_id": user_id})
    else:
        rows = await gateway.query(
            _SELECT_CART_IN_COMMUNE, {"user_id": user_id, "commune_id": commune_id}
        )
    return [
        {
            "cart_id": row.cart_id,
            "quantity": row.quantity,
            "product_id": row.product_id,
            "product_name": row.product_name,
            "description": row.description,
            "price": _money(row.price),
            "product_image": row.product_image,
            "commune_id": row.commune_id,
        }
        for row in rows
    ]


async def get_orders(
    gateway: StorageGateway,
    user_id: int,
    commune_id: int,
) -> list[dict]:
    """
    ユーザーの注文履歴をコミューンで絞り込んで返す。

    各注文にはそのコミューンの明細だけを含める。
    明細が残らなかった注文は含めない。並びは注文の新しい順のまま。
    """
    async with gateway.transaction() as tx:
        order_rows = await tx.query(_SELECT_ORDERS, {"user_id": user_id})
        if not order_rows:
            return []

        item_rows = await tx.query(
            _SELECT_ORDER_ITEMS_IN_COMMUNE,
            {
                "commune_id": commune_id,
                "order_ids": [row.order_id for row in order_rows],
            },
        )

    items_by_order: dict[int, list[dict]] = {}
    for row in item_rows:
        items_by_order.setdefault(row.order_id, []).append({
            "order_item_id": row.order_item_id,
            "product_id": row.product_id,
            "quantity": row.quantity,
            "price": _money(row.price),
            "product_name": row.product_name,
            "description": row.description,
            "product_image": row.product_image,
            "commune_id": row.commune_id,
            "product_price": _money(row.product_price),
        })

    return [
        {
            "order_id": row.order_id,
            "user_id": row.user_id,
            "total_amount": _money(row.total_amount),
            "created_at": row.created_at.isoformat() if row.created_at else None,
            "items": items_by_order[row.order_id],
        }
        for row in order_rows
        if row.order_id in items_by_order
    ]
