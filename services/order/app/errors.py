"""
Order Service — 例外定義

OrderServiceError
├── InputRejected          呼び出し元の入力が原因（4xx、リトライしない）
│   ├── ProductNotFound
│   └── StockRejected      在庫サービスが明示的に拒否（在庫不足）
├── InfrastructureFault    外部サービス・ストアの障害（5xx）
│   ├── UpstreamUnavailable
│   └── StockServiceUnavailable   在庫サービスに到達できない
├── RequestAbandoned       呼び出し元が切断済み
└── InvalidToken           認証失敗（401）

StockRejected と StockServiceUnavailable は共通の基底 StockUnavailable を持つ。
"""

from .models import AdjustmentOutcome


class OrderServiceError(Exception):
    pass


class InputRejected(OrderServiceError):
    pass


class InfrastructureFault(OrderServiceError):
    pass


class ProductNotFound(InputRejected):
    def __init__(self, product_id: int) -> None:
        super().__init__(f"Product {product_id} does not exist")
        self.product_id = product_id


class StockUnavailable(OrderServiceError):
    """在庫を引き当てられなかった。outcome で拒否と到達不能を区別する。"""

    def __init__(
        self,
        product_id: int,
        quantity: int,
        outcome: AdjustmentOutcome,
        detail: str = "",
    ) -> None:
        message = f"Could not reserve {quantity} of product {product_id}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.product_id = product_id
        self.quantity = quantity
        self.outcome = outcome
        self.detail = detail

    @property
    def retryable(self) -> bool:
        return self.outcome is AdjustmentOutcome.UNAVAILABLE

    @classmethod
    def for_outcome(
        cls,
        product_id: int,
        quantity: int,
        outcome: AdjustmentOutcome,
        detail: str = "",
    ) -> "StockUnavailable":
        if outcome is AdjustmentOutcome.UNAVAILABLE:
            return StockServiceUnavailable(product_id, quantity, outcome, detail)
        return StockRejected(product_id, quantity, outcome, detail)


class StockRejected(StockUnavailable, InputRejected):
    pass


class StockServiceUnavailable(StockUnavailable, InfrastructureFault):
    pass


class UpstreamUnavailable(InfrastructureFault):
    def __init__(self, service: str, detail: str) -> None:
        super().__init__(f"{service} unavailable: {detail}")
        self.service = service
        self.detail = detail


class RequestAbandoned(OrderServiceError):
    pass


class InvalidToken(OrderServiceError):
    pass
