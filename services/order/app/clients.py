"""
Order Service — 外部サービスクライアント

商品カタログ (Product Service) と在庫 (Stock Service) を httpx で呼び出す。

例外を握りつぶして None / False に変換することはしない:
  - 商品が存在しない (404)        → None
  - 通信エラー・想定外のステータス → UpstreamUnavailable
  - 在庫調整の結果は StockAdjustmentResult で「受理・拒否・到達不能」を返す

httpx.AsyncClient は呼び出し側が base_url と timeout を設定して渡す。
"""

import logging

import httpx

from .errors import UpstreamUnavailable
from .models import (
    AdjustmentOutcome,
    ProductDescriptor,
    StockAdjustmentResult,
    StockLevel,
)

logger = logging.getLogger(__name__)

# 在庫サービスが「明示的な拒否」として返すステータス
REJECTION_STATUSES = frozenset({400, 409, 422})


class ProductClient:
    """商品カタログ (GET /products, GET /products/{id})"""

    service_name = "product-service"

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def find_by_id(self, product_id: int) -> ProductDescriptor | None:
        try:
            resp = await self.http.get(f"/products/{product_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return ProductDescriptor.model_validate(resp.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error fetching product %s from %s: %s", product_id, self.service_name, e)
            raise UpstreamUnavailable(self.service_name, str(e)) from e

    async def list_all(self) -> list[ProductDescriptor]:
        try:
            resp = await self.http.get("/products")
            resp.raise_for_status()
            return [ProductDescriptor.model_validate(p) for p in resp.json()]
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error fetching products from %s: %s", self.service_name, e)
            raise UpstreamUnavailable(self.service_name, str(e)) from e


class StockClient:
    """在庫サービス (POST /stock/{id}/adjust, GET /stock/{id})

    quantity が負なら引き当て（在庫を減らす）、正なら解放（戻す）。
    """

    service_name = "stock-service"

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def adjust(
        self, product_id: int, delta: int, reason: str
    ) -> StockAdjustmentResult:
        try:
            resp = await self.http.post(
                f"/stock/{product_id}/adjust",
                json={"quantity": delta, "reason": reason},
            )
        except httpx.HTTPError as e:
            logger.error("Error adjusting stock for product %s: %s", product_id, e)
            return StockAdjustmentResult(
                outcome=AdjustmentOutcome.UNAVAILABLE, detail=str(e) or type(e).__name__
            )

        if resp.status_code in REJECTION_STATUSES:
            logger.warning(
                "Stock adjustment of %+d for product %s rejected: %s",
                delta, product_id, resp.text,
            )
            return StockAdjustmentResult(
                outcome=AdjustmentOutcome.REJECTED, detail=resp.text
            )
        if resp.is_success:
            logger.info("Adjusted stock for product %s by %+d", product_id, delta)
            return StockAdjustmentResult(outcome=AdjustmentOutcome.ACCEPTED)

        logger.error(
            "Unexpected status %s adjusting stock for product %s",
            resp.status_code, product_id,
        )
        return StockAdjustmentResult(
            outcome=AdjustmentOutcome.UNAVAILABLE,
            detail=f"{self.service_name} returned {resp.status_code}",
        )

    async def get_stock(self, product_id: int) -> StockLevel | None:
        try:
            resp = await self.http.get(f"/stock/{product_id}")
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
            return StockLevel.model_validate(resp.json())
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error fetching stock for product %s: %s", product_id, e)
            raise UpstreamUnavailable(self.service_name, str(e)) from e
