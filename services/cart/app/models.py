"""
Cart Service - コアへの入力モデル
"""

from decimal import Decimal

from pydantic import BaseModel, Field


class CartLine(BaseModel):
    """チェックアウト時に送られてくるカートの 1 行"""
    product_id: int
    quantity: int = Field(ge=1)
    # ユーザーがカート投入時に見た単価。カタログから再取得しない
    # 桁数は order_items.price (NUMERIC(12, 2)) に合わせる
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
