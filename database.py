import logging
from contextlib import contextmanager
from typing import List, Optional
from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

import config
from models import NewOrder, OrderRecord

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS orders (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        user_address TEXT NOT NULL,
        symbol TEXT NOT NULL,
        strategy TEXT NOT NULL,
        quantity DOUBLE PRECISION NOT NULL,
        order_type TEXT NOT NULL,
        action TEXT NOT NULL,
        price DOUBLE PRECISION NOT NULL,
        pnl DOUBLE PRECISION,
        oid TEXT,
        status TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT now(),
        updated_at TIMESTAMP DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS idx_orders_symbol_strategy_status ON orders (symbol, strategy, status);
"""


def init_db() -> ThreadedConnectionPool:
    """Создаёт пул соединений и таблицу orders. Вызывается один раз при старте приложения."""
    try:
        pool = ThreadedConnectionPool(
            config.DB_POOL_MIN,
            config.DB_POOL_MAX,
            host=config.DB_HOST,
            port=config.DB_PORT,
            database=config.DB_NAME,
            user=config.DB_USER,
            password=config.DB_PASSWORD,
            cursor_factory=RealDictCursor
        )
        logger.info("DataBase connected")

        conn = pool.getconn()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA)
            conn.commit()
        finally:
            pool.putconn(conn)
        return pool
    except Exception as e:
        logger.error(f"DataBase connection failed: {e}")
        raise


def close_db(pool: Optional[ThreadedConnectionPool]):
    if pool:
        pool.closeall()
        logger.info("DataBase pool closed")


def _to_record(row) -> OrderRecord:
    data = dict(row)
    data["id"] = str(data["id"])
    return OrderRecord(**data)


class OrderRepository:
    """
    CRUD по таблице orders.

    Без транзакций между вызовами и без блокировок: каждый метод коммитит
    свой запрос, побеждает последняя запись.
    """

    def __init__(self, pool: ThreadedConnectionPool):
        self.pool = pool

    @contextmanager
    def _cursor(self):
        conn = self.pool.getconn()
        try:
            with conn.cursor() as cursor:
                yield cursor
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    def find_open_order(self, symbol: str, strategy: str) -> Optional[OrderRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT * FROM orders
                WHERE symbol = %s AND strategy = %s AND status = 'open'
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (symbol, strategy)
            )
            row = cursor.fetchone()
        return _to_record(row) if row else None

    def find_open_strategies(self, symbol: str) -> List[str]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT DISTINCT strategy FROM orders WHERE symbol = %s AND status = 'open'",
                (symbol,)
            )
            rows = cursor.fetchall()
        return [row["strategy"] for row in rows]

    def insert_order(self, order: NewOrder) -> OrderRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO orders (user_address, symbol, strategy, quantity, order_type, action, price, oid, status)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (order.user_address, order.symbol, order.strategy, order.quantity, order.order_type,
                 order.action, order.price, order.oid, order.status)
            )
            row = cursor.fetchone()
        record = _to_record(row)
        logger.info(f"Ордер {record.id} ({record.order_type} {record.symbol}/{record.strategy}) сохранён")
        return record

    def update_order_oid(self, order_id: str, oid: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE orders SET oid = %s, updated_at = now() WHERE id = %s",
                (oid, order_id)
            )

    def update_stop_loss_price(self, symbol: str, strategy: str, price: float) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE orders SET price = %s, updated_at = now()
                WHERE symbol = %s AND strategy = %s AND status = 'open' AND order_type = 'stop_loss'
                """,
                (price, symbol, strategy)
            )

    def close_order(self, order_id: str, pnl: Optional[float]) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE orders SET status = 'closed', pnl = %s, updated_at = now() WHERE id = %s",
                (pnl, order_id)
            )

    def close_all_orders(self, symbol: str, strategy: str, pnl: Optional[float]) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE orders SET status = 'closed', pnl = %s, updated_at = now()
                WHERE symbol = %s AND strategy = %s AND status = 'open'
                """,
                (pnl, symbol, strategy)
            )
        logger.info(f"Все открытые ордера {symbol}/{strategy} закрыты, pnl={pnl}")
