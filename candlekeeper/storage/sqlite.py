"""
SQLite storage backend.

Uses aiosqlite for async operations with WAL journaling. Prices and volumes
are stored as decimal strings; the accumulate merge runs inside one
``INSERT ... ON CONFLICT DO UPDATE`` statement using registered decimal
helper functions, so the read-modify-write is atomic in the database.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import aiosqlite

from ..core.constants import BackfillStatus, CandleOrigin, Resolution, TickSource
from ..core.exceptions import StorageError
from ..core.types import BackfillItem, Candle, IntegrityRecord, Tick, ensure_utc
from .base import Storage

logger = logging.getLogger(__name__)


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS candles (
        instrument TEXT NOT NULL,
        resolution TEXT NOT NULL,
        period_start INTEGER NOT NULL,
        open TEXT NOT NULL,
        high TEXT NOT NULL,
        low TEXT NOT NULL,
        close TEXT NOT NULL,
        volume TEXT NOT NULL,
        spread TEXT,
        origin TEXT NOT NULL,
        is_complete INTEGER NOT NULL,
        source_count INTEGER NOT NULL,
        PRIMARY KEY (instrument, resolution, period_start)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ticks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        instrument TEXT NOT NULL,
        price TEXT NOT NULL,
        volume TEXT NOT NULL,
        ts_us INTEGER NOT NULL,
        source TEXT NOT NULL,
        is_valid INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ticks_instrument_ts ON ticks(instrument, ts_us)",
    """
    CREATE TABLE IF NOT EXISTS backfill_queue (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        instrument TEXT NOT NULL,
        resolution TEXT NOT NULL,
        gap_start INTEGER NOT NULL,
        gap_end INTEGER NOT NULL,
        priority INTEGER NOT NULL DEFAULT 5,
        status TEXT NOT NULL DEFAULT 'pending',
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        created_at INTEGER NOT NULL,
        last_attempt_at INTEGER,
        UNIQUE (instrument, resolution, gap_start, gap_end)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_queue_status ON backfill_queue(status, priority)",
    """
    CREATE TABLE IF NOT EXISTS integrity (
        instrument TEXT NOT NULL,
        resolution TEXT NOT NULL,
        day TEXT NOT NULL,
        expected INTEGER NOT NULL,
        actual INTEGER NOT NULL,
        missing INTEGER NOT NULL,
        incomplete INTEGER NOT NULL,
        checked_at INTEGER NOT NULL,
        PRIMARY KEY (instrument, resolution, day)
    )
    """,
]

_CANDLE_COLUMNS = (
    "instrument, resolution, period_start, open, high, low, close, volume, "
    "spread, origin, is_complete, source_count"
)

_INSERT_CANDLE = f"INSERT INTO candles ({_CANDLE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)"

_OVERWRITE_SET = """
    open = excluded.open,
    high = excluded.high,
    low = excluded.low,
    close = excluded.close,
    volume = excluded.volume,
    spread = excluded.spread,
    origin = excluded.origin,
    is_complete = excluded.is_complete,
    source_count = excluded.source_count
"""


def _epoch_s(ts: datetime) -> int:
    return int(ensure_utc(ts).timestamp())


def _epoch_us(ts: datetime) -> int:
    ts = ensure_utc(ts)
    delta = ts - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds


def _from_epoch_s(value: int) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _from_epoch_us(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    seconds, micros = divmod(int(value), 1_000_000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=micros)


def _dec_max(a: str, b: str) -> str:
    return a if Decimal(a) >= Decimal(b) else b


def _dec_min(a: str, b: str) -> str:
    return a if Decimal(a) <= Decimal(b) else b


def _dec_add(a: str, b: str) -> str:
    return str(Decimal(a) + Decimal(b))


class SQLiteStorage(Storage):
    """
    Async SQLite implementation of every repository.
    """

    def __init__(self, db_path: str):
        """
        Initialize storage.

        Args:
            db_path: Path to SQLite database file (":memory:" for a private database)
        """
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Open the connection, register helpers and create tables."""
        self._connection = await aiosqlite.connect(str(self.db_path))
        self._connection.row_factory = aiosqlite.Row
        await self._connection.create_function("dec_max", 2, _dec_max, deterministic=True)
        await self._connection.create_function("dec_min", 2, _dec_min, deterministic=True)
        await self._connection.create_function("dec_add", 2, _dec_add, deterministic=True)
        if self.db_path != ":memory:":
            await self._connection.execute("PRAGMA journal_mode=WAL")
            await self._connection.execute("PRAGMA synchronous=NORMAL")
        for statement in _SCHEMA:
            await self._connection.execute(statement)
        await self._connection.commit()
        logger.info("Database connected: %s", self.db_path)

    async def close(self) -> None:
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("Database connection closed")

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Storage not connected", path=self.db_path)
        return self._connection

    async def _fetch_all(self, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        cursor = await self.connection.execute(sql, params)
        rows = await cursor.fetchall()
        await cursor.close()
        return rows

    async def _fetch_one(self, sql: str, params: tuple = ()) -> Optional[aiosqlite.Row]:
        cursor = await self.connection.execute(sql, params)
        row = await cursor.fetchone()
        await cursor.close()
        return row

    async def _write(self, sql: str, params: tuple = ()) -> int:
        """Execute one statement and commit; returns the affected row count."""
        try:
            cursor = await self.connection.execute(sql, params)
            count = cursor.rowcount
            await cursor.close()
            await self.connection.commit()
            return count
        except aiosqlite.Error as e:
            await self.connection.rollback()
            raise StorageError("Database write failed", error=str(e)) from e

    # ── Candles ──────────────────────────────────────────

    async def get_candle(self, instrument, resolution, period_start) -> Optional[Candle]:
        row = await self._fetch_one(
            f"SELECT {_CANDLE_COLUMNS} FROM candles "
            "WHERE instrument = ? AND resolution = ? AND period_start = ?",
            (instrument, Resolution(resolution).value, _epoch_s(period_start))
        )
        return _row_to_candle(row) if row else None

    async def get_candles(self, instrument, resolution, start, end) -> List[Candle]:
        rows = await self._fetch_all(
            f"SELECT {_CANDLE_COLUMNS} FROM candles "
            "WHERE instrument = ? AND resolution = ? AND period_start >= ? AND period_start < ? "
            "ORDER BY period_start ASC",
            (instrument, Resolution(resolution).value, _epoch_s(start), _epoch_s(end))
        )
        return [_row_to_candle(r) for r in rows]

    async def get_latest_candle(self, instrument, resolution) -> Optional[Candle]:
        row = await self._fetch_one(
            f"SELECT {_CANDLE_COLUMNS} FROM candles "
            "WHERE instrument = ? AND resolution = ? ORDER BY period_start DESC LIMIT 1",
            (instrument, Resolution(resolution).value)
        )
        return _row_to_candle(row) if row else None

    async def accumulate_candle(self, candle: Candle) -> Candle:
        await self._write(
            _INSERT_CANDLE + """
            ON CONFLICT(instrument, resolution, period_start) DO UPDATE SET
                high = dec_max(candles.high, excluded.high),
                low = dec_min(candles.low, excluded.low),
                close = excluded.close,
                volume = dec_add(candles.volume, excluded.volume),
                source_count = candles.source_count + excluded.source_count,
                is_complete = excluded.is_complete
            WHERE candles.origin != 'backfill'
            """,
            _candle_params(candle)
        )
        stored = await self.get_candle(candle.instrument, candle.resolution, candle.period_start)
        if stored is None:
            raise StorageError("Accumulated candle not found", instrument=candle.instrument)
        return stored

    async def upsert_candle(self, candle: Candle, preserve_origin: Optional[CandleOrigin] = None) -> bool:
        if preserve_origin is None:
            count = await self._write(
                _INSERT_CANDLE + " ON CONFLICT(instrument, resolution, period_start) DO UPDATE SET " + _OVERWRITE_SET,
                _candle_params(candle)
            )
        else:
            count = await self._write(
                _INSERT_CANDLE + " ON CONFLICT(instrument, resolution, period_start) DO UPDATE SET "
                + _OVERWRITE_SET + " WHERE candles.origin != ?",
                _candle_params(candle) + (CandleOrigin(preserve_origin).value,)
            )
        return count > 0

    async def upsert_candles(self, candles: Sequence[Candle]) -> int:
        if not candles:
            return 0
        try:
            await self.connection.executemany(
                _INSERT_CANDLE + " ON CONFLICT(instrument, resolution, period_start) DO UPDATE SET " + _OVERWRITE_SET,
                [_candle_params(c) for c in candles]
            )
            await self.connection.commit()
        except aiosqlite.Error as e:
            await self.connection.rollback()
            raise StorageError("Candle batch write failed", count=len(candles), error=str(e)) from e
        return len(candles)

    async def get_recent_closes(self, resolution, since) -> Dict[str, List[Tuple[datetime, float]]]:
        rows = await self._fetch_all(
            "SELECT instrument, period_start, close FROM candles "
            "WHERE resolution = ? AND period_start >= ? ORDER BY instrument, period_start",
            (Resolution(resolution).value, _epoch_s(since))
        )
        closes: Dict[str, List[Tuple[datetime, float]]] = {}
        for row in rows:
            closes.setdefault(row["instrument"], []).append(
                (_from_epoch_s(row["period_start"]), float(row["close"]))
            )
        return closes

    # ── Ticks ────────────────────────────────────────────

    async def insert_ticks(self, ticks: Sequence[Tick]) -> int:
        if not ticks:
            return 0
        try:
            await self.connection.executemany(
                "INSERT INTO ticks (instrument, price, volume, ts_us, source, is_valid) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [_tick_params(t) for t in ticks]
            )
            await self.connection.commit()
        except aiosqlite.Error as e:
            await self.connection.rollback()
            raise StorageError("Tick batch write failed", count=len(ticks), error=str(e)) from e
        return len(ticks)

    async def insert_tick(self, tick: Tick) -> None:
        await self._write(
            "INSERT INTO ticks (instrument, price, volume, ts_us, source, is_valid) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            _tick_params(tick)
        )

    async def get_ticks(self, instrument, start, end) -> List[Tick]:
        rows = await self._fetch_all(
            "SELECT instrument, price, volume, ts_us, source, is_valid FROM ticks "
            "WHERE instrument = ? AND ts_us >= ? AND ts_us < ? ORDER BY ts_us ASC, id ASC",
            (instrument, _epoch_us(start), _epoch_us(end))
        )
        return [
            Tick(
                instrument=r["instrument"],
                price=Decimal(r["price"]),
                volume=Decimal(r["volume"]),
                timestamp=_from_epoch_us(r["ts_us"]),
                source=TickSource(r["source"]),
                is_valid=bool(r["is_valid"]),
            )
            for r in rows
        ]

    async def delete_ticks_before(self, cutoff) -> int:
        return await self._write("DELETE FROM ticks WHERE ts_us < ?", (_epoch_us(cutoff),))

    # ── Backfill queue ───────────────────────────────────

    async def enqueue(self, item: BackfillItem) -> BackfillItem:
        await self._write(
            """
            INSERT INTO backfill_queue
                (instrument, resolution, gap_start, gap_end, priority, status, attempts, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(instrument, resolution, gap_start, gap_end)
            DO UPDATE SET
                priority = MAX(backfill_queue.priority, excluded.priority),
                status = CASE WHEN backfill_queue.status = 'completed'
                    THEN 'pending' ELSE backfill_queue.status END,
                attempts = CASE WHEN backfill_queue.status = 'completed'
                    THEN 0 ELSE backfill_queue.attempts END
            """,
            (
                item.instrument, item.resolution.value,
                _epoch_s(item.gap_start), _epoch_s(item.gap_end),
                item.priority, item.status.value, item.attempts, _epoch_us(item.created_at),
            )
        )
        row = await self._fetch_one(
            "SELECT * FROM backfill_queue "
            "WHERE instrument = ? AND resolution = ? AND gap_start = ? AND gap_end = ?",
            (item.instrument, item.resolution.value, _epoch_s(item.gap_start), _epoch_s(item.gap_end))
        )
        return _row_to_item(row)

    async def claim_pending(self, limit: int, now: datetime) -> List[BackfillItem]:
        try:
            cursor = await self.connection.execute(
                """
                UPDATE backfill_queue SET status = 'processing', last_attempt_at = ?
                WHERE id IN (
                    SELECT id FROM backfill_queue WHERE status = 'pending'
                    ORDER BY priority DESC, created_at ASC, id ASC LIMIT ?
                )
                RETURNING *
                """,
                (_epoch_us(now), limit)
            )
            rows = await cursor.fetchall()
            await cursor.close()
            await self.connection.commit()
        except aiosqlite.Error as e:
            await self.connection.rollback()
            raise StorageError("Queue claim failed", error=str(e)) from e

        items = [_row_to_item(r) for r in rows]
        items.sort(key=lambda i: (-i.priority, i.created_at, i.id))
        return items

    async def mark_completed(self, item_id: int) -> None:
        await self._write(
            "UPDATE backfill_queue SET status = 'completed', last_error = NULL WHERE id = ?",
            (item_id,)
        )

    async def mark_failed(self, item_id: int, error: str, max_attempts: int) -> BackfillStatus:
        await self._write(
            """
            UPDATE backfill_queue SET
                attempts = attempts + 1,
                last_error = ?,
                status = CASE WHEN attempts + 1 >= ? THEN 'failed' ELSE 'pending' END
            WHERE id = ?
            """,
            (error, max_attempts, item_id)
        )
        row = await self._fetch_one("SELECT status FROM backfill_queue WHERE id = ?", (item_id,))
        if row is None:
            raise StorageError("Unknown backfill item", item_id=item_id)
        return BackfillStatus(row["status"])

    async def get_item(self, item_id: int) -> Optional[BackfillItem]:
        row = await self._fetch_one("SELECT * FROM backfill_queue WHERE id = ?", (item_id,))
        return _row_to_item(row) if row else None

    async def list_items(self, status: Optional[BackfillStatus] = None) -> List[BackfillItem]:
        if status is None:
            rows = await self._fetch_all(
                "SELECT * FROM backfill_queue ORDER BY priority DESC, created_at ASC, id ASC"
            )
        else:
            rows = await self._fetch_all(
                "SELECT * FROM backfill_queue WHERE status = ? "
                "ORDER BY priority DESC, created_at ASC, id ASC",
                (BackfillStatus(status).value,)
            )
        return [_row_to_item(r) for r in rows]

    async def count_by_status(self) -> Dict[BackfillStatus, int]:
        counts = {status: 0 for status in BackfillStatus}
        rows = await self._fetch_all("SELECT status, COUNT(*) AS n FROM backfill_queue GROUP BY status")
        for row in rows:
            counts[BackfillStatus(row["status"])] = row["n"]
        return counts

    async def release_item(self, item_id: int) -> None:
        await self._write(
            "UPDATE backfill_queue SET status = 'pending' WHERE id = ? AND status = 'processing'",
            (item_id,)
        )

    async def release_processing(self) -> int:
        return await self._write(
            "UPDATE backfill_queue SET status = 'pending' WHERE status = 'processing'"
        )

    async def delete_completed_before(self, cutoff) -> int:
        return await self._write(
            "DELETE FROM backfill_queue WHERE status = 'completed' AND created_at < ?",
            (_epoch_us(cutoff),)
        )

    # ── Integrity ────────────────────────────────────────

    async def upsert_integrity(self, records: Sequence[IntegrityRecord]) -> int:
        if not records:
            return 0
        try:
            await self.connection.executemany(
                """
                INSERT INTO integrity
                    (instrument, resolution, day, expected, actual, missing, incomplete, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(instrument, resolution, day) DO UPDATE SET
                    expected = excluded.expected,
                    actual = excluded.actual,
                    missing = excluded.missing,
                    incomplete = excluded.incomplete,
                    checked_at = excluded.checked_at
                """,
                [
                    (r.instrument, r.resolution.value, r.day, r.expected, r.actual,
                     r.missing, r.incomplete, _epoch_us(r.checked_at))
                    for r in records
                ]
            )
            await self.connection.commit()
        except aiosqlite.Error as e:
            await self.connection.rollback()
            raise StorageError("Integrity write failed", error=str(e)) from e
        return len(records)

    async def get_integrity(self, instrument=None, resolution=None) -> List[IntegrityRecord]:
        clauses, params = [], []
        if instrument is not None:
            clauses.append("instrument = ?")
            params.append(instrument)
        if resolution is not None:
            clauses.append("resolution = ?")
            params.append(Resolution(resolution).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch_all(
            f"SELECT * FROM integrity {where} ORDER BY instrument, resolution, day",
            tuple(params)
        )
        return [
            IntegrityRecord(
                instrument=r["instrument"],
                resolution=Resolution(r["resolution"]),
                day=r["day"],
                expected=r["expected"],
                actual=r["actual"],
                missing=r["missing"],
                incomplete=r["incomplete"],
                checked_at=_from_epoch_us(r["checked_at"]),
            )
            for r in rows
        ]


def _candle_params(candle: Candle) -> tuple:
    return (
        candle.instrument,
        candle.resolution.value,
        _epoch_s(candle.period_start),
        str(candle.open),
        str(candle.high),
        str(candle.low),
        str(candle.close),
        str(candle.volume),
        str(candle.spread) if candle.spread is not None else None,
        candle.origin.value,
        int(candle.is_complete),
        candle.source_count,
    )


def _row_to_candle(row) -> Candle:
    return Candle(
        instrument=row["instrument"],
        resolution=Resolution(row["resolution"]),
        period_start=_from_epoch_s(row["period_start"]),
        open=Decimal(row["open"]),
        high=Decimal(row["high"]),
        low=Decimal(row["low"]),
        close=Decimal(row["close"]),
        volume=Decimal(row["volume"]),
        spread=Decimal(row["spread"]) if row["spread"] is not None else None,
        origin=CandleOrigin(row["origin"]),
        is_complete=bool(row["is_complete"]),
        source_count=row["source_count"],
    )


def _tick_params(tick: Tick) -> tuple:
    return (
        tick.instrument,
        str(tick.price),
        str(tick.volume),
        _epoch_us(tick.timestamp),
        tick.source.value,
        int(tick.is_valid),
    )


def _row_to_item(row) -> BackfillItem:
    return BackfillItem(
        id=row["id"],
        instrument=row["instrument"],
        resolution=Resolution(row["resolution"]),
        gap_start=_from_epoch_s(row["gap_start"]),
        gap_end=_from_epoch_s(row["gap_end"]),
        priority=row["priority"],
        status=BackfillStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        created_at=_from_epoch_us(row["created_at"]),
        last_attempt_at=_from_epoch_us(row["last_attempt_at"]),
    )
