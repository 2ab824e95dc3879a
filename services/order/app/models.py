"""
Order Service: モデル定義

リクエスト / レスポンスの形と、カタログサービスから受け取る商品スナップショット。
金額はすべて Decimal で扱う (float の丸め誤差を避けるため)。
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, Field


class OrderStatus(str, Enum):
    """
    注文ステータス

    遷移の制約は設けていない (どの状態からどの状態へも変更できる)。
    作成直後は PENDING。
    """

    PENDING = "PENDING"
    PAID = "PAID"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


def _id_to_str(value):
    # 商品 ID は数値でも文字列でも受け付け、内部では文字列で比較する
    if isinstance(value, (int, str)) and not isinstance(value, bool):
        return str(value)
    return value


ProductId = Annotated[str, BeforeValidator(_id_to_str)]


# ── Request Models ───────────────────────────────


class RequestedItem(BaseModel):
    product_id: ProductId
    quantity: int = Field(gt=0)


class CreateOrderRequest(BaseModel):
    items: list[RequestedItem] = Field(min_length=1)


class ChangeStatusRequest(BaseModel):
    status: OrderStatus


class PaginationParams(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1)
    status: OrderStatus | None = None


# ── Catalog ──────────────────────────────────────


class ProductSnapshot(BaseModel):
    """カタログサービスが返す商品情報。永続化はしない。"""

    id: ProductId
    name: str
    # orders / order_items の NUMERIC(10, 2) に収まる値だけ受け付ける
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)


# ── Pricing ──────────────────────────────────────


class PricedLine(BaseModel):
    product_id: str
    quantity: int
    price: Decimal


class PricedOrder(BaseModel):
    lines: list[PricedLine]
    total_amount: Decimal
    total_items: int


# ── Response Models ──────────────────────────────


class OrderItemView(BaseModel):
    product_id: str
    quantity: int
    price: Decimal
    name: str | None = None


class OrderView(BaseModel):
    id: str
    total_amount: Decimal
    total_items: int
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    items: list[OrderItemView] = []


class PageMeta(BaseModel):
    total: int
    page: int
    last_page: int


class OrderPage(BaseModel):
    data: list[OrderView]
    meta: PageMeta
