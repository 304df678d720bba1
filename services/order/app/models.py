"""
Order Service — ドメインモデル

API の入出力と外部サービスの応答をすべて pydantic モデルで表す。
JSON のキーは camelCase (productId, totalPrice ...)、
Python 側の属性は snake_case。入力はどちらの形式も受け付ける。
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── 注文 ─────────────────────────────────────────


class OrderFields(CamelModel):
    """注文の可変部分。作成・置換の両方で共通。"""

    product_id: int
    quantity: int = Field(gt=0)
    total_price: Decimal = Field(ge=0, max_digits=18, decimal_places=2)
    order_date: datetime = Field(default_factory=utcnow)


class OrderCandidate(OrderFields):
    """POST /orders のリクエストボディ。

    user_id は受け取っても使わない。所有者は検証済みトークンから決まる。
    """

    user_id: str | None = None


class OrderReplacement(OrderFields):
    """PUT /orders/{id} のリクエストボディ（全項目の置き換え）"""

    user_id: str


class Order(OrderReplacement):
    """ストアに保存された注文"""

    id: int


# ── 外部サービスの応答 ──────────────────────────


class ProductDescriptor(CamelModel):
    """商品カタログの商品。id 以外の属性はそのまま保持するだけ。"""

    model_config = ConfigDict(extra="allow")

    id: int
    name: str = ""
    price: Decimal | None = None


class StockLevel(CamelModel):
    product_id: int
    product_name: str = ""
    quantity: int = 0
    available_quantity: int = 0
    reserved_quantity: int = 0


class AdjustmentOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"


class StockAdjustmentResult(BaseModel):
    """在庫調整の結果。

    REJECTED: 在庫サービスが明示的に拒否した（在庫不足など）
    UNAVAILABLE: 通信エラー・タイムアウト・想定外のステータス
    """

    outcome: AdjustmentOutcome
    detail: str = ""

    @property
    def accepted(self) -> bool:
        return self.outcome is AdjustmentOutcome.ACCEPTED


# ── 認証済み呼び出し元 ──────────────────────────


class Principal(BaseModel):
    """検証済みトークンから取り出した (identity, roles)"""

    model_config = ConfigDict(frozen=True)

    identity: str
    roles: frozenset[str] = frozenset()

    def has_role(self, role: str) -> bool:
        wanted = role.lower()
        return any(r.lower() == wanted for r in self.roles)
