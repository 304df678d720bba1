"""
Order Service — イベント定義と発行

注文の書き込みが成功した後、その事実(イベント)を Redis Pub/Sub で通知する。
イベントは過去形で命名し、不変(immutable)として扱う。

発行はベストエフォート: Redis が落ちていても注文処理自体は失敗させない。
"""

import json
import logging
from datetime import datetime
from decimal import Decimal

import redis.asyncio as aioredis
from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import RedisError

from .models import Order, utcnow

logger = logging.getLogger(__name__)


class OrderEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    order_id: int
    timestamp: datetime = Field(default_factory=utcnow)


class OrderCreated(OrderEvent):
    """注文が作成された（在庫引き当て済み）"""
    product_id: int
    quantity: int
    total_price: Decimal
    user_id: str

    @classmethod
    def from_order(cls, order: Order) -> "OrderCreated":
        return cls(
            order_id=order.id,
            product_id=order.product_id,
            quantity=order.quantity,
            total_price=order.total_price,
            user_id=order.user_id,
        )


class OrderUpdated(OrderCreated):
    """注文が置き換えられた"""


class OrderDeleted(OrderEvent):
    """注文が削除された（在庫は戻さない）"""


class OrderEventPublisher:
    def __init__(self, redis: aioredis.Redis, channel: str = "order_events") -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: OrderEvent) -> None:
        """イベントを Redis に発行する。失敗はログに残すだけ。"""
        event_type = type(event).__name__
        payload = json.dumps(
            {"event_type": event_type, "data": event.model_dump(mode="json")}
        )
        try:
            await self.redis.publish(self.channel, payload)
        except RedisError as e:
            logger.warning(
                "Failed to publish %s for order %s: %s", event_type, event.order_id, e
            )
