import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.errors import (
    InfrastructureFault,
    InputRejected,
    ProductNotFound,
    RequestAbandoned,
    StockUnavailable,
    UpstreamUnavailable,
)
from app.events import OrderCreated, OrderDeleted, OrderUpdated
from app.models import AdjustmentOutcome, OrderCandidate, OrderReplacement


def _abandon_after(checks: int):
    """checks 回目までは接続中、それ以降は切断済みを返す。"""
    calls = {"n": 0}

    async def abandoned() -> bool:
        calls["n"] += 1
        return calls["n"] > checks

    return abandoned


# ── 注文作成 Saga ────────────────────────────────


@pytest.mark.asyncio
async def test_create_order_persists_with_caller_identity(
    workflow, candidate, caller, store, stock, publisher
):
    order = await workflow.create_order(candidate, caller)

    assert order.id == 1
    assert order.product_id == 123
    assert order.quantity == 10
    assert order.total_price == Decimal("50.00")
    assert order.user_id == "user-42"
    assert store.orders[1] == order
    assert [(pid, delta) for pid, delta, _ in stock.calls] == [(123, -10)]
    assert isinstance(publisher.events[0], OrderCreated)
    assert publisher.events[0].order_id == 1


@pytest.mark.asyncio
async def test_create_order_ignores_body_owner_even_without_one(workflow, caller):
    candidate = OrderCandidate(product_id=123, quantity=1, total_price=Decimal("1.00"))

    order = await workflow.create_order(candidate, caller)

    assert order.user_id == caller.identity


@pytest.mark.asyncio
async def test_missing_product_never_touches_stock_or_store(
    workflow, caller, store, stock, publisher
):
    candidate = OrderCandidate(product_id=999, quantity=1, total_price=Decimal("0"))

    with pytest.raises(ProductNotFound) as exc_info:
        await workflow.create_order(candidate, caller)

    assert exc_info.value.product_id == 999
    assert stock.calls == []
    assert store.insert_calls == 0
    assert publisher.events == []


@pytest.mark.asyncio
async def test_catalog_outage_is_not_reported_as_missing_product(
    workflow, candidate, caller, products, stock, catalog_down
):
    products.error = catalog_down

    with pytest.raises(UpstreamUnavailable):
        await workflow.create_order(candidate, caller)

    assert stock.calls == []


@pytest.mark.asyncio
async def test_rejected_reservation_skips_insert(workflow, candidate, caller, store, stock):
    stock.outcomes = [AdjustmentOutcome.REJECTED]

    with pytest.raises(StockUnavailable) as exc_info:
        await workflow.create_order(candidate, caller)

    assert exc_info.value.outcome is AdjustmentOutcome.REJECTED
    assert not exc_info.value.retryable
    assert isinstance(exc_info.value, InputRejected)
    assert not isinstance(exc_info.value, InfrastructureFault)
    assert store.insert_calls == 0
    assert len(stock.calls) == 1


@pytest.mark.asyncio
async def test_unreachable_stock_service_is_retryable(
    workflow, candidate, caller, store, stock
):
    stock.outcomes = [AdjustmentOutcome.UNAVAILABLE]

    with pytest.raises(StockUnavailable) as exc_info:
        await workflow.create_order(candidate, caller)

    assert exc_info.value.retryable
    assert isinstance(exc_info.value, InfrastructureFault)
    assert not isinstance(exc_info.value, InputRejected)
    assert store.insert_calls == 0


@pytest.mark.asyncio
async def test_insert_failure_releases_reservation_once_and_reraises(
    workflow, candidate, caller, store, stock, publisher
):
    failure = RuntimeError("database is gone")
    store.insert_error = failure

    with pytest.raises(RuntimeError) as exc_info:
        await workflow.create_order(candidate, caller)

    assert exc_info.value is failure
    assert [(pid, delta) for pid, delta, _ in stock.calls] == [(123, -10), (123, 10)]
    assert "Rollback" in stock.calls[1][2]
    assert store.orders == {}
    assert publisher.events == []


@pytest.mark.asyncio
async def test_cancelled_insert_still_releases_reservation(
    workflow, candidate, caller, store, stock, publisher
):
    store.insert_error = asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await workflow.create_order(candidate, caller)

    assert [delta for _, delta, _ in stock.calls] == [-10, 10]
    assert publisher.events == []


@pytest.mark.asyncio
async def test_failed_compensation_does_not_mask_original_error(
    workflow, candidate, caller, store, stock
):
    failure = RuntimeError("database is gone")
    store.insert_error = failure
    stock.outcomes = [AdjustmentOutcome.ACCEPTED, AdjustmentOutcome.UNAVAILABLE]

    with pytest.raises(RuntimeError) as exc_info:
        await workflow.create_order(candidate, caller)

    assert exc_info.value is failure
    assert len(stock.calls) == 2


@pytest.mark.asyncio
async def test_compensation_that_raises_does_not_mask_original_error(
    workflow, candidate, caller, store, stock
):
    failure = RuntimeError("database is gone")
    store.insert_error = failure
    stock.outcomes = [AdjustmentOutcome.ACCEPTED, ConnectionError("stock down")]

    with pytest.raises(RuntimeError) as exc_info:
        await workflow.create_order(candidate, caller)

    assert exc_info.value is failure


@pytest.mark.asyncio
async def test_caller_gone_before_reservation_writes_nothing(
    workflow, candidate, caller, store, stock
):
    with pytest.raises(RequestAbandoned):
        await workflow.create_order(candidate, caller, abandoned=_abandon_after(0))

    assert stock.calls == []
    assert store.insert_calls == 0


@pytest.mark.asyncio
async def test_caller_gone_after_reservation_releases_stock(
    workflow, candidate, caller, store, stock
):
    with pytest.raises(RequestAbandoned):
        await workflow.create_order(candidate, caller, abandoned=_abandon_after(1))

    assert [delta for _, delta, _ in stock.calls] == [-10, 10]
    assert store.insert_calls == 0


# ── 参照・更新・削除 ────────────────────────────


@pytest.mark.asyncio
async def test_get_order_is_idempotent(workflow, candidate, caller):
    created = await workflow.create_order(candidate, caller)

    first = await workflow.get_order(created.id)
    second = await workflow.get_order(created.id)

    assert first == second == created


@pytest.mark.asyncio
async def test_list_orders_returns_everything(workflow, candidate, caller):
    await workflow.create_order(candidate, caller)
    await workflow.create_order(candidate, caller)

    orders = await workflow.list_orders()

    assert [o.id for o in orders] == [1, 2]


@pytest.mark.asyncio
async def test_update_replaces_all_fields_without_remote_calls(
    workflow, candidate, caller, stock, products, publisher
):
    created = await workflow.create_order(candidate, caller)
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    replacement = OrderReplacement(
        product_id=456,
        quantity=2,
        total_price=Decimal("9.99"),
        order_date=stamp,
        user_id="admin-1",
    )

    updated = await workflow.update_order(created.id, replacement)

    assert updated.id == created.id
    assert updated.product_id == 456
    assert updated.quantity == 2
    assert updated.total_price == Decimal("9.99")
    assert updated.order_date == stamp
    assert updated.user_id == "admin-1"
    assert len(stock.calls) == 1
    assert products.lookups == [123]
    assert isinstance(publisher.events[-1], OrderUpdated)


@pytest.mark.asyncio
async def test_update_missing_order_returns_none(workflow):
    replacement = OrderReplacement(
        product_id=1, quantity=1, total_price=Decimal("1"), user_id="u"
    )

    assert await workflow.update_order(77, replacement) is None


@pytest.mark.asyncio
async def test_delete_order_then_again(workflow, candidate, caller, stock, publisher):
    created = await workflow.create_order(candidate, caller)

    assert await workflow.delete_order(created.id) is True
    assert await workflow.get_order(created.id) is None
    assert await workflow.delete_order(created.id) is False

    # 削除しても在庫は戻さない
    assert [delta for _, delta, _ in stock.calls] == [-10]
    assert isinstance(publisher.events[-1], OrderDeleted)
