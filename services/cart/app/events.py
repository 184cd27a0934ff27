"""
Cart Service - イベント定義

注文確定がコミットされた後に order_events チャネルへ発行する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderPlaced(BaseModel):
    """注文が確定された"""
    order_id: int
    user_id: int
    total_amount: Decimal
    item_count: int
    timestamp: datetime
