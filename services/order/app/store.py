"""
Order Service: 注文ストア

orders / order_items テーブルへの読み書きをまとめる。
セッションファクトリは外から受け取り (接続の開始・終了は main.py の lifespan が担当)、
ストア自身はコネクションを保持しない。

- 注文作成は注文と明細を 1 トランザクションで書き込む (全部書けるか、何も書かないか)
- ステータス変更は 1 行の UPDATE
- すべての操作にタイムアウトを設ける。タイムアウトでキャンセルされた場合は
  セッションのクローズ時にロールバックされる
"""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime, Integer, Numeric, String, bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import StorageFailure
from .models import OrderStatus, PricedOrder

logger = logging.getLogger(__name__)

AMOUNT = Numeric(10, 2)
TIMESTAMP = DateTime(timezone=True)

ORDER_COLUMNS = {
    "id": String,
    "total_amount": AMOUNT,
    "total_items": Integer,
    "status": String,
    "created_at": TIMESTAMP,
    "updated_at": TIMESTAMP,
}
ITEM_COLUMNS = {
    "product_id": String,
    "price": AMOUNT,
    "quantity": Integer,
}

SELECT_ORDER = """
    SELECT id, total_amount, total_items, status, created_at, updated_at
    FROM orders
"""


def _order_row(row) -> dict:
    return {
        "id": row.id,
        "total_amount": row.total_amount,
        "total_items": row.total_items,
        "status": OrderStatus(row.status),
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


def _item_row(row) -> dict:
    return {
        "product_id": row.product_id,
        "price": row.price,
        "quantity": row.quantity,
    }


class OrderStore:
    """注文と明細の永続化"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        timeout: float = 10.0,
    ) -> None:
        self.session_factory = session_factory
        self.timeout = timeout

    async def _run(self, operation: str, coro):
        """タイムアウト付きで実行し、DB・接続のエラーを StorageFailure に変換する。"""
        try:
            return await asyncio.wait_for(coro, self.timeout)
        except asyncio.TimeoutError:
            logger.error("Storage operation %s timed out after %ss", operation, self.timeout)
            raise StorageFailure(
                f"{operation} timed out after {self.timeout}s"
            ) from None
        except (SQLAlchemyError, OSError) as e:
            logger.error("Storage operation %s failed: %s", operation, e)
            raise StorageFailure(str(e)) from e

    # ── Write ────────────────────────────────────

    async def create_order(self, priced: PricedOrder) -> dict:
        """注文と明細を 1 トランザクションで作成し、明細付きで返す。"""
        return await self._run("create_order", self._create_order(priced))

    async def _create_order(self, priced: PricedOrder) -> dict:
        order_id = str(uuid4())
        now = datetime.now(timezone.utc)
        items = [
            {
                "id": str(uuid4()),
                "order_id": order_id,
                "line_no": line_no,
                "product_id": line.product_id,
                "price": line.price,
                "quantity": line.quantity,
            }
            for line_no, line in enumerate(priced.lines)
        ]

        async with self.session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO orders
                        (id, total_amount, total_items, status, created_at, updated_at)
                    VALUES
                        (:id, :total_amount, :total_items, :status, :now, :now)
                """).bindparams(
                    bindparam("total_amount", type_=AMOUNT),
                    bindparam("now", type_=TIMESTAMP),
                ),
                {
                    "id": order_id,
                    "total_amount": priced.total_amount,
                    "total_items": priced.total_items,
                    "status": OrderStatus.PENDING.value,
                    "now": now,
                },
            )
            await session.execute(
                text("""
                    INSERT INTO order_items (id, order_id, line_no, product_id, price, quantity)
                    VALUES (:id, :order_id, :line_no, :product_id, :price, :quantity)
                """).bindparams(bindparam("price", type_=AMOUNT)),
                items,
            )
            await session.commit()

        logger.info("Created order %s with %d item(s)", order_id, len(items))
        return {
            "id": order_id,
            "total_amount": priced.total_amount,
            "total_items": priced.total_items,
            "status": OrderStatus.PENDING,
            "created_at": now,
            "updated_at": now,
            "items": [
                {"product_id": i["product_id"], "price": i["price"], "quantity": i["quantity"]}
                for i in items
            ],
        }

    async def update_status(self, order_id: str, status: OrderStatus) -> dict | None:
        """ステータスを更新し、更新後の注文 (明細なし) を返す。"""
        return await self._run("update_status", self._update_status(order_id, status))

    async def _update_status(self, order_id: str, status: OrderStatus) -> dict | None:
        async with self.session_factory() as session:
            await session.execute(
                text("""
                    UPDATE orders
                    SET status = :status, updated_at = :now
                    WHERE id = :id
                """).bindparams(bindparam("now", type_=TIMESTAMP)),
                {
                    "id": order_id,
                    "status": status.value,
                    "now": datetime.now(timezone.utc),
                },
            )
            await session.commit()
            order = await self._fetch_order(session, order_id)

        if order is not None:
            logger.info("Order %s moved to %s", order_id, status.value)
        return order

    # ── Read ─────────────────────────────────────

    async def get_order(self, order_id: str) -> dict | None:
        """注文を明細付きで取得する。見つからなければ None。"""
        return await self._run("get_order", self._get_order(order_id))

    async def _get_order(self, order_id: str) -> dict | None:
        async with self.session_factory() as session:
            order = await self._fetch_order(session, order_id)
            if order is None:
                return None
            result = await session.execute(
                text("""
                    SELECT product_id, price, quantity
                    FROM order_items
                    WHERE order_id = :order_id
                    ORDER BY line_no
                """).columns(**ITEM_COLUMNS),
                {"order_id": order_id},
            )
            order["items"] = [_item_row(row) for row in result.fetchall()]
            return order

    async def _fetch_order(self, session: AsyncSession, order_id: str) -> dict | None:
        result = await session.execute(
            text(SELECT_ORDER + " WHERE id = :id").columns(**ORDER_COLUMNS),
            {"id": order_id},
        )
        row = result.fetchone()
        return _order_row(row) if row else None

    async def count_orders(self, status: OrderStatus | None = None) -> int:
        return await self._run("count_orders", self._count_orders(status))

    async def _count_orders(self, status: OrderStatus | None) -> int:
        sql = "SELECT COUNT(*) FROM orders"
        params = {}
        if status is not None:
            sql += " WHERE status = :status"
            params["status"] = status.value
        async with self.session_factory() as session:
            result = await session.execute(text(sql), params)
            return result.scalar_one()

    async def list_orders(
        self,
        offset: int,
        limit: int,
        status: OrderStatus | None = None,
    ) -> list[dict]:
        """注文一覧 (明細なし) を作成日時順で返す。"""
        return await self._run("list_orders", self._list_orders(offset, limit, status))

    async def _list_orders(
        self, offset: int, limit: int, status: OrderStatus | None
    ) -> list[dict]:
        sql = SELECT_ORDER
        params: dict = {"limit": limit, "offset": offset}
        if status is not None:
            sql += " WHERE status = :status"
            params["status"] = status.value
        sql += " ORDER BY created_at ASC, id ASC LIMIT :limit OFFSET :offset"
        async with self.session_factory() as session:
            result = await session.execute(text(sql).columns(**ORDER_COLUMNS), params)
            return [_order_row(row) for row in result.fetchall()]
