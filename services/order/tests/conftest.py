import asyncio
import json
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.models import ProductSnapshot
from app.schema import create_schema
from app.store import OrderStore
from app.workflow import OrderWorkflow


class FakeCatalog:
    """validate_products をメモリ上の商品で返すカタログ"""

    def __init__(self, products=()):
        self.products = {p.id: p for p in products}
        self.calls: list[list[str]] = []
        self.failure: Exception | None = None

    def set_price(self, product_id: str, price: str) -> None:
        product = self.products[product_id]
        self.products[product_id] = product.model_copy(update={"price": Decimal(price)})

    async def validate_products(self, product_ids):
        self.calls.append(list(product_ids))
        if self.failure is not None:
            raise self.failure
        return [self.products[i] for i in product_ids if i in self.products]


class CountingStore(OrderStore):
    """書き込み回数を数える OrderStore"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.writes = 0

    async def create_order(self, priced):
        self.writes += 1
        return await super().create_order(priced)

    async def update_status(self, order_id, status):
        self.writes += 1
        return await super().update_status(order_id, status)


class FakePubSub:
    def __init__(self, broker: "FakeRedis"):
        self.broker = broker
        self.channels: set[str] = set()
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    async def subscribe(self, *channels):
        self.channels.update(channels)
        self.broker.pubsubs.append(self)

    async def unsubscribe(self, *channels):
        self.channels.difference_update(channels)

    async def aclose(self):
        self.closed = True
        if self in self.broker.pubsubs:
            self.broker.pubsubs.remove(self)

    async def get_message(self, ignore_subscribe_messages=False, timeout=None):
        try:
            return await asyncio.wait_for(self.queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class FakeRedis:
    """
    redis.asyncio.Redis の Pub/Sub 部分だけを真似る。

    listen() で登録したハンドラがリクエストを受け取り、返した dict (または dict のリスト) を
    reply_to チャネルへ配信する。None を返すと返信しない。
    """

    def __init__(self):
        self.pubsubs: list[FakePubSub] = []
        self.handlers = {}
        self.published: list[tuple[str, dict]] = []

    def pubsub(self):
        return FakePubSub(self)

    def listen(self, channel, handler):
        self.handlers[channel] = handler

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        receivers = 0
        for sub in list(self.pubsubs):
            if channel in sub.channels:
                sub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
                receivers += 1

        handler = self.handlers.get(channel)
        if handler is not None:
            receivers += 1
            request = json.loads(message)
            replies = handler(request)
            if isinstance(replies, dict):
                replies = [replies]
            for reply in replies or []:
                await self.publish(request["reply_to"], json.dumps(reply))
        return receivers


def catalog_responder(products: list[dict]):
    """カタログサービスの validate_products を真似るハンドラを作る。"""
    by_id = {str(p["id"]): p for p in products}

    def handle(request):
        found = [by_id[str(i)] for i in request["data"] if str(i) in by_id]
        return {"id": request["id"], "response": found, "err": None}

    return handle


async def count_rows(engine, table: str) -> int:
    async with engine.connect() as conn:
        result = await conn.execute(text(f"SELECT COUNT(*) FROM {table}"))
        return result.scalar_one()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return CountingStore(async_sessionmaker(engine, expire_on_commit=False), timeout=5)


@pytest.fixture
def catalog():
    return FakeCatalog(
        [
            ProductSnapshot(id="A", name="Widget", price=Decimal("10")),
            ProductSnapshot(id="B", name="Gadget", price=Decimal("5")),
            ProductSnapshot(id="C", name="Gizmo", price=Decimal("19.99")),
        ]
    )


@pytest.fixture
def workflow(store, catalog):
    return OrderWorkflow(store, catalog)
