"""
Order Service: エラー定義

ワークフローで発生する失敗はすべて OrderError に変換して呼び出し元へ返す。
kind で種類を区別し、HTTP ステータスへの変換はトランスポート層 (main.py) が行う。
"""

from enum import Enum


class ErrorKind(str, Enum):
    REMOTE_VALIDATION_FAILURE = "REMOTE_VALIDATION_FAILURE"
    UNKNOWN_PRODUCT = "UNKNOWN_PRODUCT"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    STORAGE_FAILURE = "STORAGE_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class OrderError(Exception):
    """構造化エラー: kind + message (+ リモート側のステータス)"""

    kind: ErrorKind

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    def add_context(self, operation: str) -> None:
        """メッセージの先頭に操作名を付ける。"""
        self.message = f"{operation}: {self.message}"
        self.args = (self.message,)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "message": self.message, "status": self.status}


class RemoteValidationFailure(OrderError):
    """カタログサービス呼び出しの失敗 (エラー応答・タイムアウト・到達不能)"""

    kind = ErrorKind.REMOTE_VALIDATION_FAILURE

    def __init__(
        self, message: str, status: int | None = None, timed_out: bool = False
    ) -> None:
        super().__init__(message, status)
        self.timed_out = timed_out


class UnknownProduct(OrderError):
    kind = ErrorKind.UNKNOWN_PRODUCT

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found in catalog")
        self.product_id = product_id


class OrderNotFound(OrderError):
    kind = ErrorKind.ORDER_NOT_FOUND

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order with id {order_id} not found")
        self.order_id = order_id


class StorageFailure(OrderError):
    """永続化層のエラー。元のメッセージは診断用にそのまま残す。"""

    kind = ErrorKind.STORAGE_FAILURE


class InternalFailure(OrderError):
    """上記のどれにも当てはまらない予期しないエラー"""

    kind = ErrorKind.INTERNAL_ERROR
