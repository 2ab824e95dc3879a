"""
Order Service: 注文ワークフロー

注文に関する操作の順序を制御するオーケストレーター。

  作成:         カタログで検証 → 価格計算 → 注文 + 明細を 1 トランザクションで保存 → 商品名を付与
  1 件取得:     DB から取得 → カタログから商品名を再取得 → 商品名を付与
  一覧:         DB のみ (リモート呼び出しなし)
  ステータス変更: 1 件取得 → 同じなら何もしない → 違えば UPDATE

合計金額はカタログから取得した価格だけで計算する。
どのステップで失敗しても注文は保存されない。
失敗はすべて OrderError として呼び出し元へ返す (握りつぶさない)。
"""

import logging
import math
from contextlib import contextmanager

from .catalog import ProductCatalogClient
from .errors import InternalFailure, OrderError, OrderNotFound, UnknownProduct
from .models import OrderStatus, PaginationParams, ProductSnapshot, RequestedItem
from .pricing import price_items
from .store import OrderStore

logger = logging.getLogger(__name__)


@contextmanager
def _error_boundary(operation: str):
    """
    ワークフローの境界。失敗はすべて OrderError として外へ出す。

    OrderError には操作名を付け、それ以外の例外は InternalFailure で包む
    (元のメッセージは残す)。
    """
    try:
        yield
    except OrderError as e:
        logger.warning("%s failed (%s): %s", operation, e.kind.value, e.message)
        e.add_context(operation)
        raise
    except Exception as e:
        logger.exception("%s failed unexpectedly", operation)
        raise InternalFailure(f"{operation}: {e}") from e


def _with_names(order: dict, products: list[ProductSnapshot]) -> dict:
    """明細に商品名を付ける。商品名は保存しない。"""
    names = {product.id: product.name for product in products}
    items = []
    for item in order["items"]:
        if item["product_id"] not in names:
            raise UnknownProduct(item["product_id"])
        items.append({**item, "name": names[item["product_id"]]})
    return {**order, "items": items}


class OrderWorkflow:
    """注文操作のオーケストレーター。リクエスト間で状態を持たない。"""

    def __init__(self, store: OrderStore, catalog: ProductCatalogClient):
        self.store = store
        self.catalog = catalog

    async def create(self, items: list[RequestedItem]) -> dict:
        """
        注文を作成する。

        1. 重複を除いた商品 ID でカタログに問い合わせる (リモート呼び出しは 1 回)
        2. 返ってきたスナップショットで明細ごとに価格計算する
        3. 注文と明細を 1 トランザクションで保存する
        4. 商品名を付けて返す
        """
        with _error_boundary("Error creating order"):
            product_ids = list(dict.fromkeys(item.product_id for item in items))
            products = await self.catalog.validate_products(product_ids)
            priced = price_items(items, products)
            order = await self.store.create_order(priced)
            return _with_names(order, products)

    async def find_all(self, params: PaginationParams) -> dict:
        """注文一覧をページ単位で返す。明細と商品名は含めない。"""
        with _error_boundary("Error finding all orders"):
            total = await self.store.count_orders(params.status)
            data = await self.store.list_orders(
                offset=(params.page - 1) * params.limit,
                limit=params.limit,
                status=params.status,
            )

        return {
            "data": data,
            "meta": {
                "total": total,
                "page": params.page,
                "last_page": math.ceil(total / params.limit),
            },
        }

    async def find_one(self, order_id: str) -> dict:
        """
        注文を明細付きで取得する。

        商品名はカタログから取り直すため、カタログが落ちていると取得も失敗する。
        """
        with _error_boundary("Error finding one order"):
            return await self._find_one(order_id)

    async def _find_one(self, order_id: str) -> dict:
        order = await self.store.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)

        product_ids = list(dict.fromkeys(item["product_id"] for item in order["items"]))
        products = await self.catalog.validate_products(product_ids)
        return _with_names(order, products)

    async def change_status(self, order_id: str, status: OrderStatus) -> dict:
        """
        ステータスを変更する。

        現在と同じステータスなら書き込まずに現在の注文を返す (冪等)。
        遷移の制約はない。
        """
        with _error_boundary("Error changing order status"):
            order = await self._find_one(order_id)
            if order["status"] == status:
                return order

            updated = await self.store.update_status(order_id, status)
            if updated is None:
                # 取得後に削除された
                raise OrderNotFound(order_id)
            return updated
