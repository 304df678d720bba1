"""
Order Service — 注文ストア

orders テーブルへの CRUD。SQLAlchemy (async) の Core 式で書き、
PostgreSQL (asyncpg) でも SQLite (aiosqlite) でも同じコードで動く。

各操作は独自のセッションで実行し、戻る前に commit する。
insert 直後の find_by_id で必ず同じ行が見える (read-your-writes)。
"""

from datetime import timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.orm import sessionmaker

from .models import Order, OrderReplacement

metadata = MetaData()

orders_table = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("product_id", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("total_price", Numeric(18, 2), nullable=False),
    Column("order_date", DateTime(timezone=True), nullable=False),
    Column("user_id", String(255), nullable=False),
)


async def create_schema(engine: AsyncEngine) -> None:
    """起動時に orders テーブルを作成する（既にあれば何もしない）。"""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _row_to_order(row) -> Order:
    order_date = row.order_date
    # SQLite はタイムゾーンを保存しない
    if order_date.tzinfo is None:
        order_date = order_date.replace(tzinfo=timezone.utc)
    return Order(
        id=row.id,
        product_id=row.product_id,
        quantity=row.quantity,
        total_price=row.total_price,
        order_date=order_date,
        user_id=row.user_id,
    )


def _values(fields: OrderReplacement) -> dict:
    return {
        "product_id": fields.product_id,
        "quantity": fields.quantity,
        "total_price": fields.total_price,
        "order_date": fields.order_date,
        "user_id": fields.user_id,
    }


class OrderStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self.session_factory = session_factory

    async def insert(self, fields: OrderReplacement) -> Order:
        """注文を保存し、採番された id を含む Order を返す。"""
        async with self.session_factory() as session:
            result = await session.execute(
                insert(orders_table).values(**_values(fields)).returning(orders_table)
            )
            row = result.one()
            await session.commit()
            return _row_to_order(row)

    async def find_by_id(self, order_id: int) -> Order | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(orders_table).where(orders_table.c.id == order_id)
            )
            row = result.first()
            return _row_to_order(row) if row else None

    async def list_all(self) -> list[Order]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(orders_table).order_by(orders_table.c.id)
            )
            return [_row_to_order(row) for row in result.fetchall()]

    async def update(self, order: Order) -> Order | None:
        """id 以外の全項目を置き換える。対象が無ければ None。"""
        async with self.session_factory() as session:
            result = await session.execute(
                update(orders_table)
                .where(orders_table.c.id == order.id)
                .values(**_values(order))
                .returning(orders_table)
            )
            row = result.first()
            await session.commit()
            return _row_to_order(row) if row else None

    async def delete(self, order_id: int) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                delete(orders_table)
                .where(orders_table.c.id == order_id)
                .returning(orders_table.c.id)
            )
            deleted = result.first() is not None
            await session.commit()
            return deleted
