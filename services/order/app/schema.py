"""
Order Service: テーブル定義

orders と order_items の 1 対多。注文を削除すると明細も削除される。
本番のスキーマはマイグレーションで管理する。ここでの create_schema は
ローカル実行とテスト用。
"""

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("total_amount", Numeric(10, 2), nullable=False),
    Column("total_items", Integer, nullable=False),
    Column("status", String(16), nullable=False, server_default="PENDING", index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "order_id",
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("line_no", Integer, nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("price", Numeric(10, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
