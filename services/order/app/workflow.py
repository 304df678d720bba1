"""
Order Service — 注文ワークフロー

注文のライフサイクルを扱う唯一のコンポーネント。
外部サービス呼び出しの順序もここだけが決める。

注文作成 Saga（補償トランザクション付き）:
  ┌───────────────────────────────────────────────────────────┐
  │  1. Product Service で商品の存在を確認                       │
  │     └─ 無い → ProductNotFound（在庫もストアも触らない）       │
  │  2. Stock Service で在庫を引き当て (quantity を負で調整)      │
  │     └─ 拒否/到達不能 → StockUnavailable（保存しない）         │
  │  3. 所有者を検証済みトークンの identity で上書き              │
  │  4. 注文を保存                                              │
  │     └─ 失敗 → 在庫を解放 (quantity を正で調整, 1回だけ)       │
  │              → 元の例外をそのまま呼び出し元へ                 │
  └───────────────────────────────────────────────────────────┘
各ステップは前のステップの成功に依存するため、必ず順番に実行する。

更新・削除は商品/在庫サービスを呼ばない（削除しても在庫は戻さない）。
"""

import asyncio
import logging
from typing import Awaitable, Callable

from .clients import ProductClient, StockClient
from .errors import ProductNotFound, RequestAbandoned, StockUnavailable
from .events import OrderCreated, OrderDeleted, OrderEventPublisher, OrderUpdated
from .models import Order, OrderCandidate, OrderReplacement, Principal
from .store import OrderStore

logger = logging.getLogger(__name__)

AbandonedCheck = Callable[[], Awaitable[bool]]


class OrderWorkflow:
    def __init__(
        self,
        store: OrderStore,
        products: ProductClient,
        stock: StockClient,
        events: OrderEventPublisher,
    ) -> None:
        self.store = store
        self.products = products
        self.stock = stock
        self.events = events

    # ── Query ────────────────────────────────────────

    async def list_orders(self) -> list[Order]:
        return await self.store.list_all()

    async def get_order(self, order_id: int) -> Order | None:
        return await self.store.find_by_id(order_id)

    # ── Command ──────────────────────────────────────

    async def create_order(
        self,
        candidate: OrderCandidate,
        principal: Principal,
        abandoned: AbandonedCheck | None = None,
    ) -> Order:
        """
        注文作成 Saga を実行する。

        abandoned は呼び出し元の切断を検知する関数。書き込みを始める前に
        だけ確認し、実行中の呼び出しは中断しない。
        """
        product_id = candidate.product_id
        quantity = candidate.quantity

        # ── Step 1: 商品の存在確認 ──────────────────
        product = await self.products.find_by_id(product_id)
        if product is None:
            logger.warning("Order rejected: product %s does not exist", product_id)
            raise ProductNotFound(product_id)

        await self._ensure_caller_present(abandoned)

        # ── Step 2: 在庫の引き当て ──────────────────
        reservation = await self.stock.adjust(
            product_id, -quantity, f"Reserved for new order by {principal.identity}"
        )
        if not reservation.accepted:
            logger.warning(
                "Order rejected: stock for product %s not reserved (%s)",
                product_id, reservation.outcome.value,
            )
            raise StockUnavailable.for_outcome(
                product_id, quantity, reservation.outcome, reservation.detail
            )

        # ── Step 3: 所有者はトークンからのみ決める ──────
        fields = OrderReplacement(
            **candidate.model_dump(exclude={"user_id"}),
            user_id=principal.identity,
        )

        # ── Step 4: 保存（失敗したら補償） ─────────────
        try:
            await self._ensure_caller_present(abandoned)
            order = await self.store.insert(fields)
        except (Exception, asyncio.CancelledError):
            logger.exception(
                "Saving order for product %s did not complete; releasing reservation",
                product_id,
            )
            # キャンセルされても解放の呼び出し自体は最後まで実行する
            await asyncio.shield(self._release_reservation(product_id, quantity))
            raise

        logger.info(
            "Order %s created for user %s (product %s x %s)",
            order.id, order.user_id, product_id, quantity,
        )
        await self.events.publish(OrderCreated.from_order(order))
        return order

    async def update_order(
        self, order_id: int, replacement: OrderReplacement
    ) -> Order | None:
        existing = await self.store.find_by_id(order_id)
        if existing is None:
            return None

        updated = await self.store.update(
            Order(id=existing.id, **replacement.model_dump())
        )
        if updated is None:
            # find_by_id と update の間に削除された
            return None

        logger.info("Order %s updated", order_id)
        await self.events.publish(OrderUpdated.from_order(updated))
        return updated

    async def delete_order(self, order_id: int) -> bool:
        existing = await self.store.find_by_id(order_id)
        if existing is None:
            return False

        deleted = await self.store.delete(order_id)
        if deleted:
            logger.info("Order %s deleted", order_id)
            await self.events.publish(OrderDeleted(order_id=order_id))
        return deleted

    # ── 補償トランザクション ──────────────────────────

    async def _release_reservation(self, product_id: int, quantity: int) -> None:
        """引き当てた在庫を戻す。ベストエフォートで1回だけ試す。"""
        try:
            result = await self.stock.adjust(
                product_id, quantity, "Rollback of reservation: order could not be saved"
            )
        except Exception:
            logger.exception(
                "Compensation for product %s (+%s) raised; reservation is orphaned",
                product_id, quantity,
            )
            return

        if result.accepted:
            logger.info("Released reservation of %s for product %s", quantity, product_id)
        else:
            logger.error(
                "Compensation for product %s (+%s) failed (%s): %s",
                product_id, quantity, result.outcome.value, result.detail,
            )

    @staticmethod
    async def _ensure_caller_present(abandoned: AbandonedCheck | None) -> None:
        if abandoned is not None and await abandoned():
            raise RequestAbandoned("Caller disconnected before the order was written")
