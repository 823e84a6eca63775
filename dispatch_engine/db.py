"""
Async Postgres store (asyncpg).

Orders are the unit of mutual exclusion: every mutation is a single conditional
UPDATE whose WHERE clause restates the expected prior state, run in a
transaction together with its history row. Courier busyness is re-checked
inside the same statement, with the courier row locked so that two pickups
for the same courier serialize.
"""
import logging
import uuid

import asyncpg

from dispatch_engine.config import settings
from dispatch_engine.models import (
    Branch,
    Courier,
    LocationPing,
    LocationSample,
    Order,
    OrderItem,
    OrderStatus,
    Role,
    ShiftStatus,
    StatusChange,
    Vendor,
)
from dispatch_engine.store import Store

logger = logging.getLogger(__name__)

_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    global _pool
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            command_timeout=60,
        )
    return _pool


async def close_pool() -> None:
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS vendors (
        id UUID PRIMARY KEY,
        name VARCHAR(255),
        has_own_couriers BOOLEAN NOT NULL DEFAULT FALSE
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS branches (
        id UUID PRIMARY KEY,
        vendor_id UUID NOT NULL REFERENCES vendors(id),
        name VARCHAR(255)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS couriers (
        id UUID PRIMARY KEY,
        vendor_id UUID REFERENCES vendors(id),
        user_id UUID NOT NULL UNIQUE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        vehicle_type VARCHAR(50),
        shift_status VARCHAR(20) NOT NULL DEFAULT 'offline'
            CHECK (shift_status IN ('online', 'offline'))
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id UUID PRIMARY KEY,
        customer_id UUID NOT NULL,
        branch_id UUID NOT NULL REFERENCES branches(id),
        courier_id UUID REFERENCES couriers(id),
        type VARCHAR(20) NOT NULL CHECK (type IN ('delivery', 'pickup')),
        status VARCHAR(30) NOT NULL DEFAULT 'NEW' CHECK (status IN (
            'NEW', 'CONFIRMED', 'PREPARING', 'PICKED_UP', 'ON_ROUTE', 'DELIVERED',
            'REJECTED', 'CANCELED_BY_USER', 'CANCELED_BY_VENDOR')),
        items_total NUMERIC(12, 2) NOT NULL CHECK (items_total >= 0),
        delivery_fee NUMERIC(12, 2) NOT NULL DEFAULT 0 CHECK (delivery_fee >= 0),
        total NUMERIC(12, 2) NOT NULL CHECK (total = items_total + delivery_fee),
        payment_method VARCHAR(30) NOT NULL,
        address_text TEXT,
        address_lat DOUBLE PRECISION,
        address_lng DOUBLE PRECISION,
        status_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK (courier_id IS NULL OR (type = 'delivery'
            AND status IN ('PREPARING', 'PICKED_UP', 'ON_ROUTE', 'DELIVERED')))
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_courier_status ON orders(courier_id, status);",
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id UUID PRIMARY KEY,
        order_id UUID NOT NULL REFERENCES orders(id),
        product_id UUID NOT NULL,
        name_snapshot VARCHAR(255) NOT NULL,
        unit_price NUMERIC(12, 2) NOT NULL CHECK (unit_price >= 0),
        qty INT NOT NULL CHECK (qty > 0),
        line_total NUMERIC(12, 2) NOT NULL CHECK (line_total = unit_price * qty)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS order_status_history (
        id BIGSERIAL PRIMARY KEY,
        order_id UUID NOT NULL REFERENCES orders(id),
        from_status VARCHAR(30),
        to_status VARCHAR(30) NOT NULL,
        actor_user_id UUID,
        actor_role VARCHAR(20),
        reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_order_status_history_order_id ON order_status_history(order_id);",
    """
    CREATE TABLE IF NOT EXISTS courier_locations (
        id BIGSERIAL PRIMARY KEY,
        courier_id UUID NOT NULL REFERENCES couriers(id),
        order_id UUID REFERENCES orders(id),
        lat DOUBLE PRECISION NOT NULL CHECK (lat BETWEEN -90 AND 90),
        lng DOUBLE PRECISION NOT NULL CHECK (lng BETWEEN -180 AND 180),
        accuracy DOUBLE PRECISION,
        heading DOUBLE PRECISION,
        speed DOUBLE PRECISION,
        is_manual BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
    );
    """,
    "CREATE INDEX IF NOT EXISTS idx_courier_locations_courier_order ON courier_locations(courier_id, order_id, created_at DESC);",
]


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        for statement in SCHEMA:
            await conn.execute(statement)


ORDER_COLUMNS = """
    o.id, o.customer_id, o.branch_id, b.vendor_id, o.courier_id, o.type, o.status,
    o.items_total, o.delivery_fee, o.total, o.payment_method, o.address_text,
    o.address_lat, o.address_lng, o.status_reason, o.created_at, o.updated_at
"""

PING_COLUMNS = "id, courier_id, order_id, lat, lng, accuracy, heading, speed, is_manual, created_at"

ACTIVE = "('PICKED_UP', 'ON_ROUTE')"


def _order(row: asyncpg.Record | None) -> Order | None:
    return Order(**dict(row)) if row is not None else None


def _courier(row: asyncpg.Record | None) -> Courier | None:
    return Courier(**dict(row)) if row is not None else None


class PostgresStore(Store):
    atomic_courier_recheck = True

    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def close(self) -> None:
        await close_pool()

    async def get_vendor(self, vendor_id):
        row = await self.pool.fetchrow("SELECT id, has_own_couriers FROM vendors WHERE id = $1;", vendor_id)
        return Vendor(**dict(row)) if row else None

    async def get_branch(self, branch_id):
        row = await self.pool.fetchrow("SELECT id, vendor_id FROM branches WHERE id = $1;", branch_id)
        return Branch(**dict(row)) if row else None

    async def _insert_history(self, conn: asyncpg.Connection, change: StatusChange) -> None:
        await conn.execute(
            """
            INSERT INTO order_status_history (order_id, from_status, to_status, actor_user_id, actor_role, reason, created_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7);
            """,
            change.order_id,
            change.from_status.value if change.from_status else None,
            change.to_status.value,
            change.actor_user_id,
            change.actor_role.value if change.actor_role else None,
            change.reason,
            change.created_at,
        )

    async def create_order(self, order, items):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO orders (id, customer_id, branch_id, type, status, items_total, delivery_fee, total,
                                        payment_method, address_text, address_lat, address_lng, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $13);
                    """,
                    order.id,
                    order.customer_id,
                    order.branch_id,
                    order.type.value,
                    order.status.value,
                    order.items_total,
                    order.delivery_fee,
                    order.total,
                    order.payment_method.value,
                    order.address_text,
                    order.address_lat,
                    order.address_lng,
                    order.created_at,
                )
                await conn.executemany(
                    """
                    INSERT INTO order_items (id, order_id, product_id, name_snapshot, unit_price, qty, line_total)
                    VALUES ($1, $2, $3, $4, $5, $6, $7);
                    """,
                    [(i.id, i.order_id, i.product_id, i.name_snapshot, i.unit_price, i.qty, i.line_total) for i in items],
                )
                await self._insert_history(
                    conn,
                    StatusChange(order_id=order.id, from_status=None, to_status=order.status, actor_user_id=order.customer_id, actor_role=Role.CUSTOMER),
                )
        return order

    async def get_order(self, order_id):
        row = await self.pool.fetchrow(
            f"SELECT {ORDER_COLUMNS} FROM orders o JOIN branches b ON b.id = o.branch_id WHERE o.id = $1;",
            order_id,
        )
        return _order(row)

    async def get_order_items(self, order_id):
        rows = await self.pool.fetch(
            "SELECT id, order_id, product_id, name_snapshot, unit_price, qty, line_total FROM order_items WHERE order_id = $1 ORDER BY name_snapshot;",
            order_id,
        )
        return [OrderItem(**dict(r)) for r in rows]

    async def get_status_history(self, order_id):
        rows = await self.pool.fetch(
            """
            SELECT order_id, from_status, to_status, actor_user_id, actor_role, reason, created_at
            FROM order_status_history WHERE order_id = $1 ORDER BY id ASC;
            """,
            order_id,
        )
        return [StatusChange(**dict(r)) for r in rows]

    async def _lock_courier(self, conn: asyncpg.Connection, courier_id: uuid.UUID, mode: str = "UPDATE") -> None:
        await conn.execute(f"SELECT 1 FROM couriers WHERE id = $1 FOR {mode};", courier_id)

    async def transition(
        self,
        order_id,
        expected,
        change,
        *,
        reason=None,
        courier_guard=None,
        clear_courier=False,
        exclusive_courier=False,
    ):
        sets = ["status = $3", "updated_at = NOW()"]
        args: list = [order_id, expected.value, change.to_status.value]
        predicates = ["o.id = $1", "o.status = $2"]
        if reason is not None:
            args.append(reason)
            sets.append(f"status_reason = ${len(args)}")
        if clear_courier:
            sets.append("courier_id = NULL")
        if courier_guard is not None:
            args.append(courier_guard)
            predicates.append(f"o.courier_id = ${len(args)}")
        if exclusive_courier:
            predicates.append(
                f"""NOT EXISTS (
                    SELECT 1 FROM orders other
                    WHERE other.courier_id = o.courier_id AND other.id <> o.id AND other.status IN {ACTIVE}
                )"""
            )
        query = f"""
            UPDATE orders o SET {", ".join(sets)}
            FROM branches b
            WHERE b.id = o.branch_id AND {" AND ".join(predicates)}
            RETURNING {ORDER_COLUMNS};
        """
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if exclusive_courier:
                    courier_id = await conn.fetchval("SELECT courier_id FROM orders WHERE id = $1;", order_id)
                    if courier_id is not None:
                        await self._lock_courier(conn, courier_id)
                row = await conn.fetchrow(query, *args)
                if row is None:
                    return None
                await self._insert_history(conn, change)
        return _order(row)

    async def assign_courier(self, order_id, courier_id, change):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self._lock_courier(conn, courier_id, mode="SHARE")
                row = await conn.fetchrow(
                    f"""
                    UPDATE orders o SET courier_id = $2, status = 'PREPARING', updated_at = NOW()
                    FROM branches b
                    WHERE b.id = o.branch_id AND o.id = $1
                      AND o.courier_id IS NULL AND o.status IN ('CONFIRMED', 'PREPARING')
                      AND NOT EXISTS (
                          SELECT 1 FROM orders other
                          WHERE other.courier_id = $2 AND other.id <> o.id AND other.status IN {ACTIVE}
                      )
                    RETURNING {ORDER_COLUMNS};
                    """,
                    order_id,
                    courier_id,
                )
                if row is None:
                    return None
                await self._insert_history(conn, change)
        return _order(row)

    async def unassign_courier(self, order_id, change):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    UPDATE orders o SET courier_id = NULL, status = 'CONFIRMED', updated_at = NOW()
                    FROM branches b
                    WHERE b.id = o.branch_id AND o.id = $1 AND o.status = 'PREPARING'
                    RETURNING {ORDER_COLUMNS};
                    """,
                    order_id,
                )
                if row is None:
                    return None
                await self._insert_history(conn, change)
        return _order(row)

    async def get_courier(self, courier_id):
        row = await self.pool.fetchrow(
            "SELECT id, vendor_id, user_id, shift_status, vehicle_type, is_active FROM couriers WHERE id = $1;",
            courier_id,
        )
        return _courier(row)

    async def get_courier_by_user(self, user_id):
        row = await self.pool.fetchrow(
            "SELECT id, vendor_id, user_id, shift_status, vehicle_type, is_active FROM couriers WHERE user_id = $1;",
            user_id,
        )
        return _courier(row)

    async def set_shift_status(self, courier_id, status: ShiftStatus):
        row = await self.pool.fetchrow(
            """
            UPDATE couriers SET shift_status = $2 WHERE id = $1
            RETURNING id, vendor_id, user_id, shift_status, vehicle_type, is_active;
            """,
            courier_id,
            status.value,
        )
        return _courier(row)

    async def courier_has_active_delivery(self, courier_id, exclude_order_id=None):
        return bool(
            await self.pool.fetchval(
                f"""
                SELECT EXISTS (
                    SELECT 1 FROM orders
                    WHERE courier_id = $1 AND status IN {ACTIVE} AND ($2::uuid IS NULL OR id <> $2)
                );
                """,
                courier_id,
                exclude_order_id,
            )
        )

    async def list_available_couriers(self, vendor_id, include_independent, vehicle_type=None):
        rows = await self.pool.fetch(
            f"""
            SELECT c.id, c.vendor_id, c.user_id, c.shift_status, c.vehicle_type, c.is_active
            FROM couriers c
            WHERE c.shift_status = 'online' AND c.is_active
              AND (c.vendor_id = $1 OR ($2 AND c.vendor_id IS NULL))
              AND ($3::text IS NULL OR c.vehicle_type = $3)
              AND NOT EXISTS (
                  SELECT 1 FROM orders o WHERE o.courier_id = c.id AND o.status IN {ACTIVE}
              )
            ORDER BY c.id;
            """,
            vendor_id,
            include_independent,
            vehicle_type,
        )
        return [Courier(**dict(r)) for r in rows]

    async def insert_location_ping(self, courier_id, sample: LocationSample):
        row = await self.pool.fetchrow(
            f"""
            INSERT INTO courier_locations (courier_id, order_id, lat, lng, accuracy, heading, speed, is_manual)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING {PING_COLUMNS};
            """,
            courier_id,
            sample.order_id,
            sample.lat,
            sample.lng,
            sample.accuracy,
            sample.heading,
            sample.speed,
            sample.is_manual,
        )
        return LocationPing(**dict(row))

    async def latest_location(self, courier_id, order_id):
        row = await self.pool.fetchrow(
            f"""
            SELECT {PING_COLUMNS} FROM courier_locations
            WHERE courier_id = $1 AND ($2::uuid IS NULL OR order_id = $2)
            ORDER BY created_at DESC, id DESC LIMIT 1;
            """,
            courier_id,
            order_id,
        )
        return LocationPing(**dict(row)) if row else None

    async def list_location_pings(self, courier_id, order_id, limit=500):
        rows = await self.pool.fetch(
            f"""
            SELECT * FROM (
                SELECT {PING_COLUMNS} FROM courier_locations
                WHERE courier_id = $1 AND ($2::uuid IS NULL OR order_id = $2)
                ORDER BY created_at DESC, id DESC LIMIT $3
            ) recent ORDER BY created_at ASC, id ASC;
            """,
            courier_id,
            order_id,
            limit,
        )
        return [LocationPing(**dict(r)) for r in rows]


async def create_postgres_store() -> PostgresStore:
    pool = await get_pool()
    await init_schema(pool)
    logger.info("Postgres store ready (pool %d..%d)", settings.db_pool_min_size, settings.db_pool_max_size)
    return PostgresStore(pool)
