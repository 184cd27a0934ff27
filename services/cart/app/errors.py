"""
Cart Service - エラー定義

呼び出し側に見せるのは安定したメッセージとエラーの種類だけ。
ストレージ由来の生のエラーテキストは外に出さない。
"""


class CartServiceError(Exception):
    """Cart Service の全エラーの基底クラス。"""

    default_message = "cart service error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(CartServiceError):
    """必須項目の欠落・不正な値 (呼び出し側のミス。リトライしない)"""

    default_message = "Invalid input data."


class InvalidReference(CartServiceError):
    """存在しないユーザー・商品を参照した"""

    default_message = "Invalid reference."


class NotFound(CartServiceError):
    """更新・削除の対象行が存在しない"""

    default_message = "Product not found in cart."


class OrderPlacementFailed(CartServiceError):
    """注文確定トランザクションの失敗 (ロールバック済み)"""

    default_message = "Failed to place order."


class StorageFault(CartServiceError):
    default_message = "Storage operation failed."
