# market_pulse/storage/database.py
import json
import time
from typing import Any

import aiosqlite

from .models import (
    BreakthroughMark,
    HistoricalHigh,
    PriceSnapshot,
    PushConfigRecord,
    PushDispatchState,
)

_SNAPSHOT_COLUMNS = """id, symbol, price, volume_24h, price_change_1h, price_change_24h,
                       high_24h, granularity, captured_at"""


class Database:
    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        self.conn = await aiosqlite.connect(self.path)
        await self._create_tables()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _create_tables(self) -> None:
        assert self.conn is not None
        await self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS price_snapshots (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                price REAL NOT NULL,
                volume_24h REAL NOT NULL,
                price_change_1h REAL NOT NULL,
                price_change_24h REAL NOT NULL,
                high_24h REAL NOT NULL,
                granularity TEXT NOT NULL,
                captured_at INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );
            CREATE INDEX IF NOT EXISTS idx_snapshots_symbol_time
                ON price_snapshots(symbol, granularity, captured_at);
            CREATE INDEX IF NOT EXISTS idx_snapshots_time
                ON price_snapshots(granularity, captured_at);

            CREATE TABLE IF NOT EXISTS historical_highs (
                symbol TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                high_value REAL NOT NULL,
                high_timestamp INTEGER NOT NULL,
                last_updated INTEGER NOT NULL,
                PRIMARY KEY (symbol, timeframe)
            );

            CREATE TABLE IF NOT EXISTS user_push_configs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                kind TEXT NOT NULL,
                params TEXT NOT NULL,
                is_enabled INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_push_configs_user ON user_push_configs(user_id);
            CREATE INDEX IF NOT EXISTS idx_push_configs_kind
                ON user_push_configs(kind, is_enabled);

            CREATE TABLE IF NOT EXISTS push_dispatch_state (
                user_id TEXT NOT NULL,
                config_id INTEGER NOT NULL,
                last_sent_at INTEGER,
                last_top TEXT NOT NULL DEFAULT '{}',
                above TEXT NOT NULL DEFAULT '{}',
                PRIMARY KEY (user_id, config_id)
            );

            CREATE TABLE IF NOT EXISTS breakthrough_marks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                config_id INTEGER NOT NULL,
                symbol TEXT NOT NULL,
                timeframe TEXT NOT NULL,
                threshold REAL NOT NULL,
                notified_at INTEGER NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_marks_lookup
                ON breakthrough_marks(config_id, notified_at);
        """)
        await self.conn.commit()

    # ---- price snapshots ----

    async def insert_price_snapshots(self, snapshots: list[PriceSnapshot]) -> int:
        """单事务写入，失败时整体回滚"""
        assert self.conn is not None
        try:
            await self.conn.executemany(
                """INSERT INTO price_snapshots
                   (symbol, price, volume_24h, price_change_1h, price_change_24h,
                    high_24h, granularity, captured_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        s.symbol,
                        s.price,
                        s.volume_24h,
                        s.price_change_1h,
                        s.price_change_24h,
                        s.high_24h,
                        s.granularity,
                        s.captured_at,
                    )
                    for s in snapshots
                ],
            )
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise
        return len(snapshots)

    async def get_latest_snapshot(self, symbol: str, granularity: str) -> PriceSnapshot | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {_SNAPSHOT_COLUMNS} FROM price_snapshots
                WHERE symbol = ? AND granularity = ?
                ORDER BY captured_at DESC LIMIT 1""",
            (symbol, granularity),
        )
        row = await cursor.fetchone()
        return PriceSnapshot(*row) if row else None

    async def get_snapshot_at(
        self, symbol: str, granularity: str, at: int
    ) -> PriceSnapshot | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {_SNAPSHOT_COLUMNS} FROM price_snapshots
                WHERE symbol = ? AND granularity = ? AND captured_at <= ?
                ORDER BY captured_at DESC LIMIT 1""",
            (symbol, granularity, at),
        )
        row = await cursor.fetchone()
        return PriceSnapshot(*row) if row else None

    async def get_latest_snapshots(self, granularity: str) -> list[PriceSnapshot]:
        """每个币种的最新快照"""
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {_SNAPSHOT_COLUMNS} FROM price_snapshots p
                WHERE granularity = ? AND captured_at = (
                    SELECT MAX(captured_at) FROM price_snapshots
                    WHERE symbol = p.symbol AND granularity = p.granularity
                )
                ORDER BY symbol""",
            (granularity,),
        )
        rows = await cursor.fetchall()
        return [PriceSnapshot(*row) for row in rows]

    async def get_snapshots_between(
        self, granularity: str, start: int, end: int
    ) -> list[PriceSnapshot]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {_SNAPSHOT_COLUMNS} FROM price_snapshots
                WHERE granularity = ? AND captured_at >= ? AND captured_at <= ?
                ORDER BY symbol, captured_at ASC""",
            (granularity, start, end),
        )
        rows = await cursor.fetchall()
        return [PriceSnapshot(*row) for row in rows]

    async def get_snapshot_history(
        self, symbol: str, granularity: str, since: int
    ) -> list[PriceSnapshot]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            f"""SELECT {_SNAPSHOT_COLUMNS} FROM price_snapshots
                WHERE symbol = ? AND granularity = ? AND captured_at >= ?
                ORDER BY captured_at ASC""",
            (symbol, granularity, since),
        )
        rows = await cursor.fetchall()
        return [PriceSnapshot(*row) for row in rows]

    async def get_snapshot_symbols(self) -> list[str]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "SELECT DISTINCT symbol FROM price_snapshots ORDER BY symbol"
        )
        rows = await cursor.fetchall()
        return [row[0] for row in rows]

    async def delete_snapshots_before(self, symbol: str, cutoff: int) -> int:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "DELETE FROM price_snapshots WHERE symbol = ? AND captured_at < ?",
            (symbol, cutoff),
        )
        await self.conn.commit()
        return cursor.rowcount or 0

    # ---- historical highs ----

    async def upsert_historical_highs(self, highs: list[HistoricalHigh]) -> None:
        assert self.conn is not None
        if not highs:
            return
        await self.conn.executemany(
            """INSERT INTO historical_highs
               (symbol, timeframe, high_value, high_timestamp, last_updated)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(symbol, timeframe) DO UPDATE SET
                   high_value = excluded.high_value,
                   high_timestamp = excluded.high_timestamp,
                   last_updated = excluded.last_updated""",
            [
                (h.symbol, h.timeframe, h.high_value, h.high_timestamp, h.last_updated)
                for h in highs
            ],
        )
        await self.conn.commit()

    async def get_historical_highs(self, timeframe: str | None = None) -> list[HistoricalHigh]:
        assert self.conn is not None
        query = """SELECT symbol, timeframe, high_value, high_timestamp, last_updated
                   FROM historical_highs"""
        params: tuple[Any, ...] = ()
        if timeframe is not None:
            query += " WHERE timeframe = ?"
            params = (timeframe,)
        cursor = await self.conn.execute(query, params)
        rows = await cursor.fetchall()
        return [HistoricalHigh(*row) for row in rows]

    # ---- user push configs ----

    @staticmethod
    def _row_to_push_config(row: Any) -> PushConfigRecord:
        return PushConfigRecord(
            id=row[0],
            user_id=row[1],
            kind=row[2],
            params=json.loads(row[3]),
            is_enabled=bool(row[4]),
            created_at=row[5],
            updated_at=row[6],
        )

    async def insert_push_config(self, record: PushConfigRecord) -> int:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """INSERT INTO user_push_configs
               (user_id, kind, params, is_enabled, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                record.user_id,
                record.kind,
                json.dumps(record.params),
                int(record.is_enabled),
                record.created_at,
                record.updated_at,
            ),
        )
        await self.conn.commit()
        return cursor.lastrowid or 0

    async def get_push_config(self, config_id: int) -> PushConfigRecord | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT id, user_id, kind, params, is_enabled, created_at, updated_at
               FROM user_push_configs WHERE id = ?""",
            (config_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_push_config(row) if row else None

    async def get_push_configs_by_user(self, user_id: str) -> list[PushConfigRecord]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT id, user_id, kind, params, is_enabled, created_at, updated_at
               FROM user_push_configs WHERE user_id = ? ORDER BY id""",
            (user_id,),
        )
        rows = await cursor.fetchall()
        return [self._row_to_push_config(row) for row in rows]

    async def get_push_configs(
        self, kind: str, enabled_only: bool = True
    ) -> list[PushConfigRecord]:
        assert self.conn is not None
        query = """SELECT id, user_id, kind, params, is_enabled, created_at, updated_at
                   FROM user_push_configs WHERE kind = ?"""
        if enabled_only:
            query += " AND is_enabled = 1"
        query += " ORDER BY id"
        cursor = await self.conn.execute(query, (kind,))
        rows = await cursor.fetchall()
        return [self._row_to_push_config(row) for row in rows]

    async def update_push_config(self, record: PushConfigRecord) -> None:
        assert self.conn is not None
        await self.conn.execute(
            """UPDATE user_push_configs
               SET params = ?, is_enabled = ?, updated_at = ?
               WHERE id = ?""",
            (json.dumps(record.params), int(record.is_enabled), record.updated_at, record.id),
        )
        await self.conn.commit()

    async def delete_push_config(self, config_id: int) -> bool:
        assert self.conn is not None
        cursor = await self.conn.execute(
            "DELETE FROM user_push_configs WHERE id = ?", (config_id,)
        )
        await self.conn.execute(
            "DELETE FROM push_dispatch_state WHERE config_id = ?", (config_id,)
        )
        await self.conn.execute("DELETE FROM breakthrough_marks WHERE config_id = ?", (config_id,))
        await self.conn.commit()
        return (cursor.rowcount or 0) > 0

    async def count_enabled_push_configs(self) -> dict[str, int]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT kind, COUNT(*) FROM user_push_configs
               WHERE is_enabled = 1 GROUP BY kind"""
        )
        rows = await cursor.fetchall()
        return {row[0]: row[1] for row in rows}

    # ---- dispatch state ----

    async def get_dispatch_state(self, user_id: str, config_id: int) -> PushDispatchState | None:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT user_id, config_id, last_sent_at, last_top, above
               FROM push_dispatch_state WHERE user_id = ? AND config_id = ?""",
            (user_id, config_id),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return PushDispatchState(
            user_id=row[0],
            config_id=row[1],
            last_sent_at=row[2],
            last_top=json.loads(row[3]),
            above=json.loads(row[4]),
        )

    async def upsert_dispatch_state(self, state: PushDispatchState) -> None:
        assert self.conn is not None
        await self.conn.execute(
            """INSERT INTO push_dispatch_state (user_id, config_id, last_sent_at, last_top, above)
               VALUES (?, ?, ?, ?, ?)
               ON CONFLICT(user_id, config_id) DO UPDATE SET
                   last_sent_at = excluded.last_sent_at,
                   last_top = excluded.last_top,
                   above = excluded.above""",
            (
                state.user_id,
                state.config_id,
                state.last_sent_at,
                json.dumps(state.last_top),
                json.dumps(state.above),
            ),
        )
        await self.conn.commit()

    async def insert_breakthrough_marks(self, marks: list[BreakthroughMark]) -> None:
        assert self.conn is not None
        await self.conn.executemany(
            """INSERT INTO breakthrough_marks
               (config_id, symbol, timeframe, threshold, notified_at)
               VALUES (?, ?, ?, ?, ?)""",
            [(m.config_id, m.symbol, m.timeframe, m.threshold, m.notified_at) for m in marks],
        )
        await self.conn.commit()

    async def get_breakthrough_marks(self, config_id: int, since: int) -> list[BreakthroughMark]:
        assert self.conn is not None
        cursor = await self.conn.execute(
            """SELECT config_id, symbol, timeframe, threshold, notified_at
               FROM breakthrough_marks WHERE config_id = ? AND notified_at > ?""",
            (config_id, since),
        )
        rows = await cursor.fetchall()
        return [BreakthroughMark(*row) for row in rows]

    async def cleanup_breakthrough_marks(self, before: int | None = None) -> int:
        """清理冷却期外的突破记录"""
        assert self.conn is not None
        if before is None:
            before = int(time.time() * 1000) - 7 * 24 * 3600 * 1000
        cursor = await self.conn.execute(
            "DELETE FROM breakthrough_marks WHERE notified_at <= ?", (before,)
        )
        await self.conn.commit()
        return cursor.rowcount or 0
