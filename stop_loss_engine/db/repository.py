"""Database repository for Stop Loss Engine."""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor

from ..config import settings
from ..exceptions import PersistenceError
from ..models import StopLossRecord, StrategyConfig, StrategyKind

logger = logging.getLogger(__name__)


SCHEMA = """
    CREATE TABLE IF NOT EXISTS stop_losses (
        id SERIAL PRIMARY KEY,
        symbol VARCHAR(32) NOT NULL,
        price NUMERIC(24, 8) NOT NULL CHECK (price > 0),
        strategy VARCHAR(32) NOT NULL DEFAULT 'manual',
        timeframe VARCHAR(8),
        is_active BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        triggered_at TIMESTAMPTZ,
        triggered_price NUMERIC(24, 8)
    );
    CREATE UNIQUE INDEX IF NOT EXISTS stop_losses_one_active
        ON stop_losses (symbol) WHERE is_active;
    CREATE INDEX IF NOT EXISTS stop_losses_created_at ON stop_losses (created_at DESC);

    CREATE TABLE IF NOT EXISTS trading_strategies (
        id SERIAL PRIMARY KEY,
        symbol VARCHAR(32) NOT NULL,
        strategy VARCHAR(32) NOT NULL,
        timeframe VARCHAR(8) NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT true,
        last_update TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    );
    CREATE INDEX IF NOT EXISTS trading_strategies_symbol ON trading_strategies (symbol);
"""


def _row_to_stop_loss(row: Dict[str, Any]) -> StopLossRecord:
    return StopLossRecord(
        id=row["id"],
        symbol=row["symbol"],
        price=float(row["price"]),
        strategy=StrategyKind(row["strategy"]),
        timeframe=row["timeframe"],
        active=row["is_active"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        triggered_at=row["triggered_at"],
        triggered_price=float(row["triggered_price"]) if row["triggered_price"] is not None else None,
    )


def _row_to_strategy(row: Dict[str, Any]) -> StrategyConfig:
    return StrategyConfig(
        symbol=row["symbol"],
        strategy=StrategyKind(row["strategy"]),
        timeframe=row["timeframe"],
        last_update=row["last_update"],
    )


class Repository:
    """Database access for stop losses and strategy configurations.

    One connection shared by the tick, sweep and execution threads; every
    statement runs under ``_lock`` so transactions never interleave.
    """

    def __init__(self):
        self.conn = None
        self._lock = threading.RLock()

    def connect(self):
        """Establish database connection."""
        try:
            self.conn = psycopg2.connect(
                host=settings.db_host,
                port=settings.db_port,
                user=settings.db_user,
                password=settings.db_password,
                dbname=settings.db_name,
            )
            self.conn.autocommit = False
            logger.info("Connected to database")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise PersistenceError(f"Failed to connect to database: {e}") from e

    def close(self):
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    def ensure_connected(self):
        """Reconnect if the connection was closed or dropped."""
        with self._lock:
            if self.conn is None or self.conn.closed:
                logger.warning("Database connection lost, reconnecting")
                self.connect()

    def ensure_schema(self):
        """Create tables and indexes if they do not exist."""
        self._execute(SCHEMA, (), "create schema")
        logger.info("Database schema ready")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch(self, query: str, params: tuple, action: str) -> List[Dict[str, Any]]:
        with self._lock:
            self.ensure_connected()
            try:
                with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall()
                self.conn.commit()
                return rows
            except Exception as e:
                self._rollback()
                logger.error(f"Failed to {action}: {e}")
                raise PersistenceError(f"Failed to {action}: {e}") from e

    def _execute(self, query: str, params: tuple, action: str) -> List[Dict[str, Any]]:
        """Run a write statement, returning any RETURNING rows."""
        with self._lock:
            self.ensure_connected()
            try:
                with self.conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall() if cur.description else []
                self.conn.commit()
                return rows
            except Exception as e:
                self._rollback()
                logger.error(f"Failed to {action}: {e}")
                raise PersistenceError(f"Failed to {action}: {e}") from e

    def _rollback(self):
        if self.conn is not None and not self.conn.closed:
            try:
                self.conn.rollback()
            except psycopg2.Error as e:
                logger.warning(f"Rollback failed: {e}")

    # ------------------------------------------------------------------
    # Stop losses
    # ------------------------------------------------------------------

    def find_active_stop_loss(self, symbol: str) -> Optional[StopLossRecord]:
        rows = self._fetch(
            "SELECT * FROM stop_losses WHERE symbol = %s AND is_active LIMIT 1",
            (symbol,),
            f"get stop loss for {symbol}",
        )
        return _row_to_stop_loss(rows[0]) if rows else None

    def find_all_active_stop_losses(self) -> List[StopLossRecord]:
        rows = self._fetch(
            "SELECT * FROM stop_losses WHERE is_active ORDER BY created_at DESC",
            (),
            "get active stop losses",
        )
        return [_row_to_stop_loss(row) for row in rows]

    def create_stop_loss(
        self,
        symbol: str,
        price: float,
        strategy: StrategyKind = StrategyKind.MANUAL,
        timeframe: Optional[str] = None,
    ) -> StopLossRecord:
        """Insert a new active stop loss (a fresh generation for the symbol)."""
        query = """
            INSERT INTO stop_losses (symbol, price, strategy, timeframe, is_active)
            VALUES (%s, %s, %s, %s, true)
            RETURNING *
        """
        rows = self._execute(
            query,
            (symbol, price, strategy.value, timeframe),
            f"create stop loss for {symbol}",
        )
        return _row_to_stop_loss(rows[0])

    def update_stop_loss(
        self,
        symbol: str,
        price: float,
        strategy: StrategyKind = StrategyKind.MANUAL,
        timeframe: Optional[str] = None,
    ) -> Optional[StopLossRecord]:
        """Move the active stop loss. ``timeframe`` is left unchanged when None."""
        query = """
            UPDATE stop_losses
            SET
                price = %s,
                strategy = %s,
                timeframe = COALESCE(%s, timeframe),
                updated_at = NOW()
            WHERE symbol = %s AND is_active
            RETURNING *
        """
        rows = self._execute(
            query,
            (price, strategy.value, timeframe, symbol),
            f"update stop loss for {symbol}",
        )
        return _row_to_stop_loss(rows[0]) if rows else None

    def deactivate_stop_loss(self, symbol: str) -> Optional[StopLossRecord]:
        query = """
            UPDATE stop_losses
            SET is_active = false, updated_at = NOW()
            WHERE symbol = %s AND is_active
            RETURNING *
        """
        rows = self._execute(query, (symbol,), f"deactivate stop loss for {symbol}")
        return _row_to_stop_loss(rows[0]) if rows else None

    def trigger_stop_loss(
        self,
        symbol: str,
        triggered_price: float,
        triggered_at: Optional[datetime] = None,
    ) -> Optional[StopLossRecord]:
        """Close the active generation, recording when and where it fired."""
        query = """
            UPDATE stop_losses
            SET
                is_active = false,
                triggered_at = %s,
                triggered_price = %s,
                updated_at = NOW()
            WHERE symbol = %s AND is_active
            RETURNING *
        """
        rows = self._execute(
            query,
            (triggered_at or datetime.now(timezone.utc), triggered_price, symbol),
            f"trigger stop loss for {symbol}",
        )
        return _row_to_stop_loss(rows[0]) if rows else None

    def get_stop_loss_history(self, symbol: Optional[str] = None, limit: int = 100) -> List[StopLossRecord]:
        if symbol:
            rows = self._fetch(
                "SELECT * FROM stop_losses WHERE symbol = %s ORDER BY created_at DESC LIMIT %s",
                (symbol, limit),
                f"get stop loss history for {symbol}",
            )
        else:
            rows = self._fetch(
                "SELECT * FROM stop_losses ORDER BY created_at DESC LIMIT %s",
                (limit,),
                "get stop loss history",
            )
        return [_row_to_stop_loss(row) for row in rows]

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def find_all_active_strategies(self) -> List[StrategyConfig]:
        rows = self._fetch(
            "SELECT * FROM trading_strategies WHERE is_active ORDER BY created_at DESC",
            (),
            "get active strategies",
        )
        return [_row_to_strategy(row) for row in rows]

    def add_strategy(self, config: StrategyConfig):
        """Store ``config`` as the only active strategy for its symbol."""
        query = """
            DELETE FROM trading_strategies WHERE symbol = %s;
            INSERT INTO trading_strategies (symbol, strategy, timeframe, is_active, last_update)
            VALUES (%s, %s, %s, true, %s)
        """
        self._execute(
            query,
            (config.symbol, config.symbol, config.strategy.value, config.timeframe, config.last_update),
            f"add strategy for {config.symbol}",
        )
        logger.info(f"Saved strategy {config.strategy.value} {config.timeframe} for {config.symbol}")

    def remove_strategy(self, symbol: str):
        self._execute(
            "DELETE FROM trading_strategies WHERE symbol = %s",
            (symbol,),
            f"remove strategy for {symbol}",
        )

    def touch_strategy(self, symbol: str, last_update: datetime):
        query = """
            UPDATE trading_strategies
            SET last_update = %s, updated_at = NOW()
            WHERE symbol = %s AND is_active
        """
        self._execute(query, (last_update, symbol), f"update strategy timestamp for {symbol}")
