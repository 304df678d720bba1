"""
Order Service — FastAPI エントリーポイント

注文の CRUD を提供する。注文作成は OrderWorkflow の Saga
（商品確認 → 在庫引き当て → 保存 → 失敗時は在庫解放）に委譲する。

  ┌────────┐ Bearer JWT ┌───────────────┐     ┌─────────────────┐
  │ Client │──────────▶│ Order Service │────▶│ Product Service │
  └────────┘            │               │────▶│ Stock Service   │
                        │               │────▶│ PostgreSQL      │
                        │               │────▶│ Redis (events)  │
                        └───────────────┘     └─────────────────┘

/health 以外のエンドポイントはすべて認証が必要。
"""

import logging
from contextlib import AsyncExitStack, asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .clients import ProductClient, StockClient
from .config import Settings
from .deps import get_workflow, require
from .errors import (
    ProductNotFound,
    RequestAbandoned,
    StockUnavailable,
    UpstreamUnavailable,
)
from .events import OrderEventPublisher
from .models import Order, OrderCandidate, OrderReplacement, Principal
from .policy import DEFAULT_POLICY, AccessPolicy
from .security import TokenAuthenticator
from .store import OrderStore, create_schema
from .workflow import OrderWorkflow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


# ── Query Endpoints ──────────────────────────────


@router.get("", response_model=list[Order])
async def list_orders(
    principal: Principal = Depends(require("list_orders")),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """全注文を取得"""
    return await workflow.list_orders()


@router.get("/{order_id}", response_model=Order)
async def get_order(
    order_id: int,
    request: Request,
    principal: Principal = Depends(require("get_order")),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """指定注文を取得（管理者以外は自分の注文のみ）

    他人の注文は存在しない注文と同じく 404 を返す。
    """
    order = await workflow.get_order(order_id)
    if order is None or not request.app.state.policy.can_access(
        "get_order", principal, order
    ):
        raise HTTPException(404, "Order not found")
    return order


# ── Command Endpoints ────────────────────────────


@router.post("", response_model=Order, status_code=201)
async def create_order(
    candidate: OrderCandidate,
    request: Request,
    response: Response,
    principal: Principal = Depends(require("create_order")),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """注文作成（Saga）。所有者はトークンの identity で上書きされる。"""
    order = await workflow.create_order(
        candidate, principal, abandoned=request.is_disconnected
    )
    response.headers["Location"] = f"/orders/{order.id}"
    return order


@router.put("/{order_id}", response_model=Order)
async def update_order(
    order_id: int,
    replacement: OrderReplacement,
    principal: Principal = Depends(require("update_order")),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """注文の全項目を置き換える"""
    order = await workflow.update_order(order_id, replacement)
    if order is None:
        raise HTTPException(404, "Order not found")
    return order


@router.delete("/{order_id}", status_code=204)
async def delete_order(
    order_id: int,
    principal: Principal = Depends(require("delete_order")),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    """注文を削除する（在庫は戻さない）"""
    if not await workflow.delete_order(order_id):
        raise HTTPException(404, "Order not found")
    return Response(status_code=204)


# ── エラー → HTTP ステータス ─────────────────────


async def _product_not_found(request: Request, exc: ProductNotFound):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def _stock_unavailable(request: Request, exc: StockUnavailable):
    status_code = 503 if exc.retryable else 409
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def _upstream_unavailable(request: Request, exc: UpstreamUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


async def _request_abandoned(request: Request, exc: RequestAbandoned):
    logger.info("Request abandoned by caller: %s", exc)
    return JSONResponse(status_code=499, content={"detail": str(exc)})


async def _store_failure(request: Request, exc: SQLAlchemyError):
    logger.error("Order store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Order store failure"})


# ── アプリケーション ─────────────────────────────


def create_app(
    settings: Settings | None = None,
    *,
    policy: AccessPolicy = DEFAULT_POLICY,
    store: OrderStore | None = None,
    product_client: ProductClient | None = None,
    stock_client: StockClient | None = None,
    publisher: OrderEventPublisher | None = None,
) -> FastAPI:
    """
    アプリを組み立てる。

    store / クライアント / publisher を渡さなければ、起動時に Settings から
    DB エンジン・httpx クライアント・Redis 接続を作り、終了時に閉じる。
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not settings.jwt_secret_key:
            raise RuntimeError("JWT_SECRET_KEY is not configured")

        async with AsyncExitStack() as stack:
            order_store = store
            if order_store is None:
                engine = create_async_engine(settings.database_url, echo=False)
                stack.push_async_callback(engine.dispose)
                await create_schema(engine)
                order_store = OrderStore(
                    sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
                )

            products = product_client
            if products is None:
                products = ProductClient(
                    await stack.enter_async_context(
                        httpx.AsyncClient(
                            base_url=settings.product_service_url,
                            timeout=settings.http_timeout,
                        )
                    )
                )

            stock = stock_client
            if stock is None:
                stock = StockClient(
                    await stack.enter_async_context(
                        httpx.AsyncClient(
                            base_url=settings.stock_service_url,
                            timeout=settings.http_timeout,
                        )
                    )
                )

            events = publisher
            if events is None:
                redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
                stack.push_async_callback(redis_pool.aclose)
                events = OrderEventPublisher(redis_pool, settings.order_events_channel)

            app.state.workflow = OrderWorkflow(order_store, products, stock, events)
            logger.info("Order service started")
            yield

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.policy = policy
    app.state.authenticator = TokenAuthenticator(
        settings.jwt_secret_key or "",
        algorithm=settings.jwt_algorithm,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
    )

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_methods=["GET", "POST", "PUT", "DELETE"],
            allow_headers=["*"],
            allow_credentials=True,
        )

    app.add_exception_handler(ProductNotFound, _product_not_found)
    app.add_exception_handler(StockUnavailable, _stock_unavailable)
    app.add_exception_handler(UpstreamUnavailable, _upstream_unavailable)
    app.add_exception_handler(RequestAbandoned, _request_abandoned)
    app.add_exception_handler(SQLAlchemyError, _store_failure)

    app.include_router(router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-service"}

    return app


app = create_app()
