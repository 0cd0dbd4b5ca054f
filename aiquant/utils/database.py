"""
SQLite persistence for the trader and the API.

One persistent write connection (WAL) is shared by the process; reads use
short-lived read-only connections so the API never blocks the trading cycle.
The event stream is write-batched; everything else commits immediately.
"""

import json
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Callable, ParamSpec, TypeVar

import pandas as pd

from aiquant.domain.models import Trade, TrainingExample

logger = logging.getLogger(__name__)

# Keep the database in the project root regardless of where the process is started from.
DB_PATH = os.environ.get("AIQUANT_DB_PATH") or str(Path(__file__).resolve().parents[2] / "aiquant.db")

P = ParamSpec("P")
T = TypeVar("T")

_write_conn_lock = threading.RLock()
_write_conn: sqlite3.Connection | None = None
_pending_writes = 0
_last_commit_time = 0.0
_BATCH_COMMIT_INTERVAL = 2.0  # Commit at most every 2 seconds
_BATCH_COMMIT_THRESHOLD = 50  # Or after 50 pending writes


def set_db_path(path: str | Path) -> None:
    """Point the module at another database file (closes the current write connection)."""
    global DB_PATH
    close_write_conn()
    DB_PATH = str(path)


def _get_write_conn() -> sqlite3.Connection:
    global _write_conn
    if _write_conn is None:
        with _write_conn_lock:
            if _write_conn is None:
                _write_conn = sqlite3.connect(DB_PATH, timeout=30, check_same_thread=False, isolation_level="DEFERRED")
                _write_conn.execute("PRAGMA journal_mode=WAL")
                _write_conn.execute("PRAGMA synchronous=NORMAL")
                _write_conn.execute("PRAGMA busy_timeout=10000")
                logger.info("Opened persistent write connection to %s", DB_PATH)
    return _write_conn


def _maybe_commit() -> None:
    """Commit if we've accumulated enough writes or enough time has passed."""
    global _pending_writes, _last_commit_time
    now = time.time()
    should_commit = (
        _pending_writes >= _BATCH_COMMIT_THRESHOLD or
        (now - _last_commit_time) >= _BATCH_COMMIT_INTERVAL
    )
    if should_commit and _write_conn is not None:
        try:
            _write_conn.commit()
            _pending_writes = 0
            _last_commit_time = now
        except sqlite3.Error as e:
            logger.warning(f"Batch commit failed: {e}")


def force_commit() -> None:
    """Force an immediate commit (call at the end of a cycle)."""
    global _pending_writes, _last_commit_time
    with _write_conn_lock:
        if _write_conn is not None:
            try:
                _write_conn.commit()
                _pending_writes = 0
                _last_commit_time = time.time()
            except sqlite3.Error as e:
                logger.warning(f"Force commit failed: {e}")


def close_write_conn() -> None:
    """Close the persistent write connection (call on shutdown)."""
    global _write_conn
    with _write_conn_lock:
        if _write_conn is not None:
            try:
                _write_conn.commit()
            finally:
                _write_conn.close()
                _write_conn = None
            logger.info("Closed persistent write connection")


def safe_db_read(default_factory: Callable[[], T]) -> Callable[[Callable[P, T]], Callable[P, T]]:
    """
    Decorator for read functions: return `default_factory()` instead of raising
    when the database is locked or unavailable, so the API never crashes on reads.
    """
    def decorator(func: Callable[P, T]) -> Callable[P, T]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            try:
                return func(*args, **kwargs)
            except sqlite3.OperationalError as e:
                logger.warning(f"Database read failed ({func.__name__}): {e}")
                return default_factory()
            except sqlite3.DatabaseError as e:
                logger.error(f"Database error ({func.__name__}): {e}")
                return default_factory()
        return wrapper
    return decorator


def _connect_fresh() -> sqlite3.Connection:
    return sqlite3.connect(DB_PATH, timeout=30)


def _connect_ro() -> sqlite3.Connection:
    conn = sqlite3.connect(DB_PATH, timeout=2, isolation_level=None)
    conn.execute("PRAGMA query_only = 1")
    return conn


def init_db() -> None:
    """Create the schema (idempotent)."""
    conn = _connect_fresh()
    try:
        cursor = conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS event_stream (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                level TEXT,
                symbol TEXT,
                step TEXT,
                message TEXT
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS trades (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                trade_time TEXT,
                symbol TEXT,
                action TEXT,
                quantity INTEGER,
                price REAL,
                profit REAL,
                confidence REAL,
                reason TEXT
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS performance (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                equity REAL,
                cash REAL,
                unrealized_pnl REAL,
                realized_pnl REAL
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS training_examples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
                example_time TEXT,
                symbol TEXT,
                features_json TEXT NOT NULL,
                signals_json TEXT,
                label INTEGER NOT NULL,
                profit REAL,
                scheme TEXT
            )
            """
        )
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduler_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                last_run_utc REAL
            )
            """
        )
        cursor.execute("INSERT OR IGNORE INTO scheduler_state (id, last_run_utc) VALUES (1, NULL)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_symbol ON trades(symbol)")
        conn.commit()
    finally:
        conn.close()


def log_event(level: str, message: str, symbol: str | None = None, step: str | None = None) -> None:
    global _pending_writes
    with _write_conn_lock:
        conn = _get_write_conn()
        conn.execute(
            "INSERT INTO event_stream (level, symbol, step, message) VALUES (?, ?, ?, ?)",
            (level, symbol, step, message),
        )
        _pending_writes += 1
        _maybe_commit()


@safe_db_read(default_factory=pd.DataFrame)
def get_events(limit: int = 200) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query(
            "SELECT * FROM event_stream ORDER BY timestamp DESC, id DESC LIMIT ?",
            conn,
            params=(int(limit),),
        )
    finally:
        conn.close()


def record_trade(trade: Trade) -> None:
    with _write_conn_lock:
        conn = _get_write_conn()
        conn.execute(
            """
            INSERT INTO trades (trade_time, symbol, action, quantity, price, profit, confidence, reason)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade.time.isoformat(),
                trade.symbol,
                trade.action,
                int(trade.amount),
                float(trade.price),
                trade.profit,
                trade.confidence,
                trade.reason,
            ),
        )
        conn.commit()


@safe_db_read(default_factory=pd.DataFrame)
def get_trades(limit: int | None = None) -> pd.DataFrame:
    conn = _connect_ro()
    try:
        if limit is None:
            return pd.read_sql_query("SELECT * FROM trades ORDER BY id DESC", conn)
        return pd.read_sql_query("SELECT * FROM trades ORDER BY id DESC LIMIT ?", conn, params=(int(limit),))
    finally:
        conn.close()


def update_performance(equity: float, cash: float, unrealized_pnl: float, realized_pnl: float) -> None:
    with _write_conn_lock:
        conn = _get_write_conn()
        conn.execute(
            "INSERT INTO performance (equity, cash, unrealized_pnl, realized_pnl) VALUES (?, ?, ?, ?)",
            (float(equity), float(cash), float(unrealized_pnl), float(realized_pnl)),
        )
        conn.commit()


@safe_db_read(default_factory=pd.DataFrame)
def get_performance_history() -> pd.DataFrame:
    conn = _connect_ro()
    try:
        return pd.read_sql_query("SELECT * FROM performance ORDER BY id ASC", conn)
    finally:
        conn.close()


@safe_db_read(default_factory=lambda: None)
def get_performance_summary() -> dict | None:
    """First vs latest equity snapshot, for "P&L over time" without loading the full history."""
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute("SELECT timestamp, equity FROM performance ORDER BY id ASC LIMIT 1")
        first = cur.fetchone()
        cur.execute("SELECT timestamp, equity FROM performance ORDER BY id DESC LIMIT 1")
        last = cur.fetchone()

        if not first or not last:
            return None

        baseline_ts, baseline_equity = first[0], first[1]
        latest_ts, latest_equity = last[0], last[1]
        if baseline_equity is None or latest_equity is None:
            return None

        baseline_equity_f = float(baseline_equity)
        latest_equity_f = float(latest_equity)
        return {
            "baseline_timestamp": str(baseline_ts),
            "baseline_equity": baseline_equity_f,
            "latest_timestamp": str(latest_ts),
            "latest_equity": latest_equity_f,
            "delta_equity": latest_equity_f - baseline_equity_f,
            "delta_pct": ((latest_equity_f - baseline_equity_f) / baseline_equity_f) if baseline_equity_f else None,
        }
    finally:
        conn.close()


def insert_training_example(example: TrainingExample) -> int:
    with _write_conn_lock:
        conn = _get_write_conn()
        cursor = conn.execute(
            """
            INSERT INTO training_examples (example_time, symbol, features_json, signals_json, label, profit, scheme)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                example.time.isoformat(),
                example.symbol,
                json.dumps([float(v) for v in example.features]),
                json.dumps(dict(example.signals)) if example.signals is not None else None,
                int(example.label),
                example.profit,
                example.scheme,
            ),
        )
        conn.commit()
        return int(cursor.lastrowid)


def get_training_examples() -> pd.DataFrame:
    """All persisted examples, oldest first. Raises on DB errors (callers decide how to degrade)."""
    conn = _connect_ro()
    try:
        return pd.read_sql_query("SELECT * FROM training_examples ORDER BY id ASC", conn)
    finally:
        conn.close()


def get_scheduler_state() -> dict:
    conn = _connect_ro()
    try:
        cur = conn.cursor()
        cur.execute("SELECT last_run_utc FROM scheduler_state WHERE id = 1")
        row = cur.fetchone()
        if not row:
            return {"last_run_utc": None}
        return {"last_run_utc": float(row[0]) if row[0] is not None else None}
    finally:
        conn.close()


def set_scheduler_state(last_run_utc: float) -> None:
    with _write_conn_lock:
        conn = _get_write_conn()
        conn.execute(
            """
            INSERT INTO scheduler_state (id, last_run_utc) VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET last_run_utc = excluded.last_run_utc
            """,
            (float(last_run_utc),),
        )
        conn.commit()


class SqliteExampleStore:
    """`ExampleStore` backed by the training_examples table."""

    def save(self, example: TrainingExample) -> None:
        insert_training_example(example)

    def load(self) -> list[TrainingExample]:
        df = get_training_examples()
        out: list[TrainingExample] = []
        for row in df.to_dict(orient="records"):
            signals_raw = row.get("signals_json")
            ts = row.get("example_time")
            out.append(
                TrainingExample(
                    features=tuple(float(v) for v in json.loads(row["features_json"])),
                    label=int(row["label"]),
                    signals=json.loads(signals_raw) if isinstance(signals_raw, str) and signals_raw else None,
                    scheme=row.get("scheme") if isinstance(row.get("scheme"), str) else None,
                    symbol=row.get("symbol") if isinstance(row.get("symbol"), str) else None,
                    profit=float(row["profit"]) if row.get("profit") is not None and not pd.isna(row["profit"]) else None,
                    time=datetime.fromisoformat(ts) if isinstance(ts, str) and ts else datetime.now().astimezone(),
                )
            )
        return out
