"""
Order Service: Product Catalog クライアント

Product Catalog Service へ Redis Pub/Sub でリクエスト / リプライを行う。

  ┌───────────────┐  catalog.validate_products   ┌─────────────────┐
  │ Order Service │ ───────── Redis ───────────▶ │ Catalog Service │
  │               │ ◀──────── Redis ──────────── │                 │
  └───────────────┘  catalog.validate_products   └─────────────────┘
                       .reply.<request id>

1. 返信用チャネルを先に購読する (返信の取りこぼしを防ぐ)
2. リクエストを発行する。受信者が 0 ならカタログサービスは起動していない
3. 返信をタイムアウト付きで待つ

Pub/Sub は fire-and-forget なので、返信が来なければタイムアウトで失敗させる。
リトライはしない。
"""

import asyncio
import json
import logging
from uuid import uuid4

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from .errors import RemoteValidationFailure
from .models import ProductSnapshot

logger = logging.getLogger(__name__)

VALIDATE_PRODUCTS = "validate_products"


class ProductCatalogClient:
    """validate_products をリモート呼び出しするクライアント"""

    def __init__(
        self,
        redis: aioredis.Redis,
        channel: str = "catalog.validate_products",
        timeout: float = 5.0,
    ):
        self.redis = redis
        self.channel = channel
        self.timeout = timeout

    async def validate_products(self, product_ids: list[str]) -> list[ProductSnapshot]:
        """
        商品 ID を検証し、カタログ上の商品スナップショットを返す。

        カタログに無い ID は返ってこないことがある。足りない分の判定は呼び出し側で行う。
        """
        request_id = str(uuid4())
        reply_channel = f"{self.channel}.reply.{request_id}"

        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(reply_channel)
            receivers = await self.redis.publish(
                self.channel,
                json.dumps(
                    {
                        "pattern": VALIDATE_PRODUCTS,
                        "id": request_id,
                        "reply_to": reply_channel,
                        "data": list(product_ids),
                    }
                ),
            )
            if receivers == 0:
                raise RemoteValidationFailure(
                    f"No catalog service is listening on {self.channel}"
                )
            reply = await asyncio.wait_for(
                self._wait_for_reply(pubsub, request_id), self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(
                "Catalog did not answer %s within %ss", request_id, self.timeout
            )
            raise RemoteValidationFailure(
                f"Catalog service timed out after {self.timeout}s", timed_out=True
            ) from None
        except RedisError as e:
            logger.error("Catalog request %s failed: %s", request_id, e)
            raise RemoteValidationFailure(f"Catalog service unreachable: {e}") from e
        finally:
            try:
                await pubsub.unsubscribe(reply_channel)
            except RedisError:
                logger.warning("Could not unsubscribe from %s", reply_channel)
            finally:
                await self._close(pubsub)

        return self._parse_reply(reply)

    @staticmethod
    async def _close(pubsub) -> None:
        try:
            await pubsub.aclose()
        except RedisError:
            logger.warning("Could not close catalog reply subscription")

    async def _wait_for_reply(self, pubsub, request_id: str) -> dict:
        """自分のリクエスト ID に対応する返信が届くまで待つ。"""
        while True:
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if not message or message["type"] != "message":
                continue
            try:
                reply = json.loads(message["data"])
            except (TypeError, ValueError):
                raise RemoteValidationFailure("Malformed reply from catalog service")
            if isinstance(reply, dict) and reply.get("id") == request_id:
                return reply
            logger.warning("Ignoring unrelated reply on catalog channel")

    @staticmethod
    def _parse_reply(reply: dict) -> list[ProductSnapshot]:
        err = reply.get("err")
        if err:
            if isinstance(err, dict):
                message = err.get("message", "Catalog service returned an error")
                status = err.get("status")
            else:
                message, status = str(err), None
            raise RemoteValidationFailure(
                message, status=status if isinstance(status, int) else None
            )

        response = reply.get("response")
        if not isinstance(response, list):
            raise RemoteValidationFailure("Malformed reply from catalog service")
        try:
            return [ProductSnapshot.model_validate(p) for p in response]
        except ValidationError as e:
            raise RemoteValidationFailure(
                f"Malformed product in catalog reply: {e.error_count()} error(s)"
            ) from e
