"""SQLite persistence: the engine's SignalSink plus cache/cycle-history state."""

import json
import logging
from pathlib import Path
from typing import Any, Optional

import aiosqlite

from ..core.engine import EngineContext
from ..core.signals import CycleRecord, Signal, SignalBuckets

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "data/signals.db"
DEFAULT_HISTORY_CAP = 168

CREATE_TABLES_SQL = """
-- One row per completed cycle (ring buffer, trimmed to a cap)
CREATE TABLE IF NOT EXISTS cycle_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle INTEGER NOT NULL,
    timestamp REAL NOT NULL,
    executable INTEGER DEFAULT 0,
    outlook INTEGER DEFAULT 0,
    rejected INTEGER DEFAULT 0,
    no_signal INTEGER DEFAULT 0,
    record TEXT NOT NULL
);

-- Every emitted signal, whatever its bucket
CREATE TABLE IF NOT EXISTS signals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    cycle INTEGER NOT NULL,
    timestamp REAL NOT NULL,
    market_id TEXT NOT NULL,
    bucket TEXT NOT NULL,
    direction TEXT NOT NULL,
    tier TEXT NOT NULL,
    probability REAL NOT NULL,
    market_price REAL NOT NULL,
    net_edge REAL NOT NULL,
    exposure REAL NOT NULL,
    cluster TEXT,
    reason TEXT,
    data TEXT NOT NULL
);

-- Serialized key -> record maps (price cache, analysis cache, category stats)
CREATE TABLE IF NOT EXISTS cache_snapshots (
    name TEXT PRIMARY KEY,
    updated_at REAL NOT NULL,
    data TEXT NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_signals_cycle ON signals(cycle);
CREATE INDEX IF NOT EXISTS idx_signals_market ON signals(market_id);
CREATE INDEX IF NOT EXISTS idx_cycle_history_timestamp ON cycle_history(timestamp);
"""


class Database:
    def __init__(self, db_path: str = DEFAULT_DB_PATH, history_cap: int = DEFAULT_HISTORY_CAP):
        self.db_path = db_path
        self.history_cap = history_cap

    async def init_schema(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.executescript(CREATE_TABLES_SQL)
            await db.commit()

    async def reset(self) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("DROP TABLE IF EXISTS cycle_history")
            await db.execute("DROP TABLE IF EXISTS signals")
            await db.execute("DROP TABLE IF EXISTS cache_snapshots")
            await db.commit()
        await self.init_schema()

    # ── SignalSink ───────────────────────────────────────────────────

    async def emit(self, record: CycleRecord, buckets: SignalBuckets) -> None:
        """Persist one cycle's record and signals in a single transaction."""
        rows = [
            (
                record.cycle,
                s.timestamp,
                s.market_id,
                s.bucket.value if s.bucket else "",
                s.direction.value,
                s.tier.value,
                s.probability,
                s.market_price,
                s.net_edge,
                s.exposure,
                s.cluster,
                s.reason,
                s.model_dump_json(),
            )
            for s in buckets.all()
        ]
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO cycle_history (cycle, timestamp, executable, outlook, rejected, no_signal, record) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.cycle,
                    record.timestamp,
                    record.executable,
                    record.outlook,
                    record.rejected,
                    int(record.no_signal),
                    record.model_dump_json(),
                ),
            )
            await db.executemany(
                "INSERT INTO signals (cycle, timestamp, market_id, bucket, direction, tier, probability, "
                "market_price, net_edge, exposure, cluster, reason, data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                rows,
            )
            await db.execute(
                "DELETE FROM cycle_history WHERE id NOT IN "
                "(SELECT id FROM cycle_history ORDER BY id DESC LIMIT ?)",
                (self.history_cap,),
            )
            await db.commit()
        logger.debug("Persisted cycle #%d with %d signals", record.cycle, len(rows))

    # ── Reads ────────────────────────────────────────────────────────

    async def get_cycle_history(self, limit: Optional[int] = None) -> list[CycleRecord]:
        """Cycle records, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT record FROM cycle_history ORDER BY id DESC LIMIT ?",
                (limit if limit is not None else -1,),
            )
            rows = await cursor.fetchall()
        return [CycleRecord.model_validate_json(row[0]) for row in rows]

    async def get_signals(self, cycle: Optional[int] = None, bucket: Optional[str] = None) -> list[Signal]:
        query = "SELECT data FROM signals"
        clauses: list[str] = []
        params: list[Any] = []
        if cycle is not None:
            clauses.append("cycle = ?")
            params.append(cycle)
        if bucket is not None:
            clauses.append("bucket = ?")
            params.append(bucket)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
        return [Signal.model_validate_json(row[0]) for row in rows]

    # ── Cache snapshots ──────────────────────────────────────────────

    async def save_snapshot(self, name: str, data: dict, updated_at: float) -> None:
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO cache_snapshots (name, updated_at, data) VALUES (?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET updated_at = excluded.updated_at, data = excluded.data",
                (name, updated_at, json.dumps(data)),
            )
            await db.commit()

    async def load_snapshot(self, name: str) -> dict:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT data FROM cache_snapshots WHERE name = ?", (name,))
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else {}

    async def save_engine_state(self, context: EngineContext, updated_at: float) -> None:
        await self.save_snapshot("price_cache", context.price_cache.snapshot(), updated_at)
        await self.save_snapshot("analysis_cache", context.analysis_cache.snapshot(), updated_at)
        await self.save_snapshot("category_stats", context.priors.snapshot(), updated_at)

    async def restore_engine_state(self, context: EngineContext) -> None:
        """Reload caches, category stats and cycle history saved by a previous run."""
        context.price_cache.load(await self.load_snapshot("price_cache"))
        context.analysis_cache.load(await self.load_snapshot("analysis_cache"))
        context.priors.load(await self.load_snapshot("category_stats"))
        history = await self.get_cycle_history(context.settings.cycle_history_cap)
        context.cycle_history.clear()
        context.cycle_history.extend(history)
        if history:
            context.cycle_count = history[0].cycle
        logger.info(
            "Restored engine state: %d analyses, %d cycles",
            len(context.analysis_cache), len(history),
        )
