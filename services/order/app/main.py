"""
Order Service: FastAPI エントリーポイント

注文の作成・一覧・取得・ステータス変更を HTTP API として公開する。
商品の検証と価格は Product Catalog Service に Redis 経由で問い合わせる。

DB エンジンと Redis クライアントは lifespan で生成・破棄し、
OrderWorkflow にはコンストラクタで渡す (グローバルな接続は持たない)。
"""

import logging
from contextlib import asynccontextmanager
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from . import config
from .catalog import ProductCatalogClient
from .errors import ErrorKind, OrderError, RemoteValidationFailure
from .models import (
    ChangeStatusRequest,
    CreateOrderRequest,
    OrderPage,
    OrderView,
    PaginationParams,
)
from .schema import create_schema
from .store import OrderStore
from .workflow import OrderWorkflow

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = create_async_engine(config.DATABASE_URL, echo=False)
    if config.CREATE_SCHEMA:
        await create_schema(engine)
    redis_pool = aioredis.from_url(config.REDIS_URL, decode_responses=True)

    app.state.workflow = OrderWorkflow(
        OrderStore(
            async_sessionmaker(engine, expire_on_commit=False),
            timeout=config.STORAGE_TIMEOUT_SECONDS,
        ),
        ProductCatalogClient(
            redis_pool,
            channel=config.CATALOG_CHANNEL,
            timeout=config.CATALOG_TIMEOUT_SECONDS,
        ),
    )
    logger.info("Order Service started")
    try:
        yield
    finally:
        await redis_pool.aclose()
        await engine.dispose()
        logger.info("Order Service stopped")


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Error mapping ────────────────────────────────

STATUS_BY_KIND = {
    ErrorKind.ORDER_NOT_FOUND: 404,
    ErrorKind.UNKNOWN_PRODUCT: 400,
    ErrorKind.REMOTE_VALIDATION_FAILURE: 502,
    ErrorKind.STORAGE_FAILURE: 500,
    ErrorKind.INTERNAL_ERROR: 500,
}


def http_status_for(error: OrderError) -> int:
    """OrderError を HTTP ステータスに変換する。"""
    if isinstance(error, RemoteValidationFailure):
        # リモートのステータスはエラーを表す値 (4xx / 5xx) のときだけそのまま返す
        if isinstance(error.status, int) and 400 <= error.status <= 599:
            return error.status
        if error.timed_out:
            return 504
    return STATUS_BY_KIND[error.kind]


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    status = http_status_for(exc)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=status,
        content={"kind": exc.kind.value, "message": exc.message, "status": status},
    )


def get_workflow(request: Request) -> OrderWorkflow:
    return request.app.state.workflow


# ── Endpoints ────────────────────────────────────


@app.post("/orders", response_model=OrderView, status_code=201)
async def create_order(
    req: CreateOrderRequest, workflow: OrderWorkflow = Depends(get_workflow)
):
    """注文作成 (価格はカタログから取得)"""
    return await workflow.create(req.items)


@app.get("/orders", response_model=OrderPage)
async def list_orders(
    params: Annotated[PaginationParams, Query()],
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """注文一覧 (ページング、ステータスで絞り込み可)"""
    return await workflow.find_all(params)


@app.get("/orders/{order_id}", response_model=OrderView)
async def get_order(order_id: str, workflow: OrderWorkflow = Depends(get_workflow)):
    """指定注文を明細・商品名付きで取得"""
    return await workflow.find_one(order_id)


@app.patch("/orders/{order_id}/status", response_model=OrderView)
async def change_order_status(
    order_id: str,
    req: ChangeStatusRequest,
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """ステータス変更"""
    return await workflow.change_status(order_id, req.status)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
