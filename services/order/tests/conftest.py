"""
テスト共通のフェイク実装とフィクスチャ

ワークフローの協調相手（ストア・商品/在庫クライアント・イベント発行）を
メモリ上のフェイクに差し替え、呼び出し履歴を記録する。
"""

from decimal import Decimal

import pytest

from app.errors import UpstreamUnavailable
from app.models import (
    AdjustmentOutcome,
    Order,
    OrderCandidate,
    OrderReplacement,
    Principal,
    ProductDescriptor,
    StockAdjustmentResult,
)
from app.workflow import OrderWorkflow


class FakeStore:
    def __init__(self) -> None:
        self.orders: dict[int, Order] = {}
        self.next_id = 1
        self.insert_error: BaseException | None = None
        self.insert_calls = 0
        self.list_calls = 0

    async def insert(self, fields: OrderReplacement) -> Order:
        self.insert_calls += 1
        if self.insert_error is not None:
            raise self.insert_error
        order = Order(id=self.next_id, **fields.model_dump())
        self.orders[order.id] = order
        self.next_id += 1
        return order

    async def find_by_id(self, order_id: int) -> Order | None:
        return self.orders.get(order_id)

    async def list_all(self) -> list[Order]:
        self.list_calls += 1
        return [self.orders[k] for k in sorted(self.orders)]

    async def update(self, order: Order) -> Order | None:
        if order.id not in self.orders:
            return None
        self.orders[order.id] = order
        return order

    async def delete(self, order_id: int) -> bool:
        return self.orders.pop(order_id, None) is not None


class FakeProducts:
    def __init__(self, known=(123,)) -> None:
        self.known = set(known)
        self.error: Exception | None = None
        self.lookups: list[int] = []

    async def find_by_id(self, product_id: int) -> ProductDescriptor | None:
        self.lookups.append(product_id)
        if self.error is not None:
            raise self.error
        if product_id not in self.known:
            return None
        return ProductDescriptor(id=product_id, name=f"Product {product_id}")

    async def list_all(self) -> list[ProductDescriptor]:
        return [ProductDescriptor(id=p) for p in sorted(self.known)]


class FakeStock:
    """adjust の結果を outcomes から順番に返す。尽きたら ACCEPTED。"""

    def __init__(self) -> None:
        self.outcomes: list[AdjustmentOutcome | Exception] = []
        self.calls: list[tuple[int, int, str]] = []

    async def adjust(self, product_id: int, delta: int, reason: str) -> StockAdjustmentResult:
        self.calls.append((product_id, delta, reason))
        outcome = self.outcomes.pop(0) if self.outcomes else AdjustmentOutcome.ACCEPTED
        if isinstance(outcome, Exception):
            raise outcome
        return StockAdjustmentResult(outcome=outcome, detail=f"stock said {outcome.value}")


class FakePublisher:
    def __init__(self) -> None:
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def products():
    return FakeProducts()


@pytest.fixture
def stock():
    return FakeStock()


@pytest.fixture
def publisher():
    return FakePublisher()


@pytest.fixture
def workflow(store, products, stock, publisher):
    return OrderWorkflow(store, products, stock, publisher)


@pytest.fixture
def caller():
    return Principal(identity="user-42", roles=frozenset({"User"}))


@pytest.fixture
def candidate():
    return OrderCandidate(
        product_id=123,
        quantity=10,
        total_price=Decimal("50.00"),
        user_id="someone-else",
    )


@pytest.fixture
def catalog_down():
    return UpstreamUnavailable("product-service", "connection refused")
