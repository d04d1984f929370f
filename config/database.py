"""
SCRATCHWORKS - Database Abstraction Layer

Dual-mode: SQLite for local dev and tests, PostgreSQL for production.
Auto-detects based on the DATABASE_URL environment variable.

Usage:
    from config.database import get_db, get_standalone_db, init_db

    # In Flask request context: auto-managed lifecycle
    db = get_db()

    # Outside request context: standalone connection, caller closes
    db = get_standalone_db()
    with db.transaction():
        db.execute("UPDATE balances SET amount = amount - ? WHERE holder_id = ?", [5, "u1"])
    db.close()
"""

import logging
import sqlite3
from contextlib import contextmanager

from config.settings import DatabaseConfig

logger = logging.getLogger("scratchworks.db")

# ── Detect database mode ──
DATABASE_URL = DatabaseConfig.DATABASE_URL
USE_POSTGRES = DATABASE_URL.startswith("postgres")

if USE_POSTGRES:
    try:
        import psycopg
        from psycopg.rows import dict_row
        from psycopg_pool import ConnectionPool
        HAS_PSYCOPG = True
    except ImportError:
        logger.warning("DATABASE_URL is set but psycopg3 not installed, falling back to SQLite")
        HAS_PSYCOPG = False
        USE_POSTGRES = False
else:
    HAS_PSYCOPG = False

# ── SQLite path ──
SQLITE_PATH = DatabaseConfig.DB_PATH

# ── Connection pool (PostgreSQL only) ──
_pg_pool = None


def _get_pg_pool():
    """Lazy-init PostgreSQL connection pool."""
    global _pg_pool
    if _pg_pool is None and USE_POSTGRES and HAS_PSYCOPG:
        conninfo = DATABASE_URL
        # psycopg wants postgresql://
        if conninfo.startswith("postgres://"):
            conninfo = conninfo.replace("postgres://", "postgresql://", 1)
        _pg_pool = ConnectionPool(
            conninfo=conninfo,
            min_size=DatabaseConfig.PG_POOL_MIN,
            max_size=DatabaseConfig.PG_POOL_MAX,
            max_idle=300,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        logger.info(f"PostgreSQL pool initialized (min={DatabaseConfig.PG_POOL_MIN}, "
                    f"max={DatabaseConfig.PG_POOL_MAX})")
    return _pg_pool


def _sqlite_dict_factory(cursor, row):
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def _open_sqlite(path=None):
    """Open a raw SQLite connection.

    isolation_level=None: transactions are opened explicitly by
    DatabaseConnection.transaction() with BEGIN IMMEDIATE.
    """
    conn = sqlite3.connect(path or SQLITE_PATH, timeout=10, isolation_level=None,
                           check_same_thread=False)
    conn.row_factory = _sqlite_dict_factory
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ═══════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════

class DatabaseConnection:
    """Unified wrapper around SQLite or PostgreSQL connections.

    - Accepts ? or %s placeholders and converts to the active backend
    - Returns dict rows
    - .transaction() wraps a block in one atomic unit (rollback on any error)
    """

    def __init__(self, conn, is_pg=False, pool=None):
        self._conn = conn
        self._is_pg = is_pg
        self._pool = pool
        self._cursor = None
        self._in_tx = False

    @property
    def is_pg(self) -> bool:
        return self._is_pg

    def _adapt_sql(self, sql):
        """Convert between placeholder styles."""
        if self._is_pg:
            return sql.replace("?", "%s")
        return sql.replace("%s", "?")

    def execute(self, sql, params=None):
        """Execute a query. Returns self for chaining."""
        self._cursor = self._conn.execute(self._adapt_sql(sql), params or [])
        return self

    def executescript(self, sql):
        """Execute multiple statements. For PG, splits on semicolons."""
        if self._is_pg:
            for stmt in sql.split(";"):
                stmt = stmt.strip()
                if stmt:
                    self._conn.execute(stmt)
        else:
            self._conn.executescript(sql)
        return self

    def fetchone(self):
        """Fetch one row as dict, or None."""
        if self._cursor is None:
            return None
        row = self._cursor.fetchone()
        return dict(row) if row is not None else None

    def fetchall(self):
        """Fetch all rows as list[dict]."""
        if self._cursor is None:
            return []
        return [dict(r) for r in self._cursor.fetchall()]

    @property
    def rowcount(self) -> int:
        """Rows touched by the last UPDATE/INSERT/DELETE."""
        if self._cursor is None:
            return 0
        return self._cursor.rowcount

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    @contextmanager
    def transaction(self):
        """One atomic unit. Commits on success, rolls back and re-raises on error.

        SQLite takes the write lock up front (BEGIN IMMEDIATE) so concurrent
        purchases/claims serialise instead of failing on lock upgrade.
        """
        if self._in_tx:
            raise RuntimeError("Nested transactions are not supported")
        if not self._is_pg:
            self._conn.execute("BEGIN IMMEDIATE")
        self._in_tx = True
        try:
            yield self
        except BaseException:
            self._in_tx = False
            self._conn.rollback()
            raise
        self._in_tx = False
        self._conn.commit()

    def close(self):
        if self._is_pg and self._pool is not None:
            # Return connection to pool
            self._pool.putconn(self._conn)
        else:
            self._conn.close()


def get_db():
    """Get a database connection.

    In Flask request context: caches on g, auto-closed on teardown.
    Outside request context: returns standalone connection, caller must close.
    """
    from flask import current_app, g, has_app_context

    if has_app_context():
        if "_database" not in g:
            g._database = _make_connection(current_app.config.get("DB_PATH"))
        return g._database
    return _make_connection()


def get_standalone_db(path=None):
    """Always returns a new standalone connection. Caller MUST close it.

    `path` overrides the SQLite file (ignored in PostgreSQL mode).
    """
    return _make_connection(path)


def _make_connection(path=None):
    """Create a new DatabaseConnection."""
    if USE_POSTGRES and HAS_PSYCOPG:
        pool = _get_pg_pool()
        conn = pool.getconn()
        return DatabaseConnection(conn, is_pg=True, pool=pool)
    return DatabaseConnection(_open_sqlite(path), is_pg=False)


def close_db_on_teardown(exc):
    """Flask teardown handler: close the per-request connection."""
    from flask import g
    db = g.pop("_database", None)
    if db is not None:
        db.close()


# ═══════════════════════════════════════════════════════════════
# Schema
# ═══════════════════════════════════════════════════════════════

# SQL that works for BOTH SQLite and PostgreSQL.
# Timestamps are ISO-8601 UTC TEXT; booleans are INTEGER 0/1; probabilities
# are DOUBLE PRECISION (PostgreSQL REAL is float4).
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS themes (
    id TEXT PRIMARY KEY,
    name TEXT UNIQUE NOT NULL,
    display_name TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS card_types (
    id TEXT PRIMARY KEY,
    theme_id TEXT NOT NULL REFERENCES themes(id),
    name TEXT UNIQUE NOT NULL,
    display_name TEXT NOT NULL,
    total_scratch_areas INTEGER NOT NULL DEFAULT 9,
    min_symbols_to_match INTEGER NOT NULL DEFAULT 3,
    cost_gc INTEGER NOT NULL DEFAULT 0,
    cost_sc INTEGER NOT NULL DEFAULT 0,
    currency_type TEXT NOT NULL DEFAULT 'GC',
    max_prize_gc INTEGER NOT NULL DEFAULT 0,
    max_prize_sc INTEGER NOT NULL DEFAULT 0,
    overall_odds DOUBLE PRECISION NOT NULL DEFAULT 0.25,
    rtp_percentage DOUBLE PRECISION NOT NULL DEFAULT 85.0,
    daily_purchase_limit INTEGER NOT NULL DEFAULT 50,
    max_instances_per_user INTEGER NOT NULL DEFAULT 100,
    purchase_requires_kyc INTEGER NOT NULL DEFAULT 0,
    min_age_requirement INTEGER NOT NULL DEFAULT 18,
    symbols_json TEXT NOT NULL DEFAULT '[]',
    launch_date TEXT,
    end_date TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    sort_order INTEGER NOT NULL DEFAULT 0,
    total_sold INTEGER NOT NULL DEFAULT 0,
    total_winnings_gc INTEGER NOT NULL DEFAULT 0,
    total_winnings_sc INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS prize_tiers (
    id TEXT PRIMARY KEY,
    card_type_id TEXT NOT NULL REFERENCES card_types(id),
    prize_tier TEXT NOT NULL,
    prize_name TEXT NOT NULL,
    prize_gc INTEGER NOT NULL DEFAULT 0,
    prize_sc INTEGER NOT NULL DEFAULT 0,
    bonus_items_json TEXT,
    win_probability DOUBLE PRECISION NOT NULL,
    max_wins_per_day INTEGER,
    max_total_wins INTEGER,
    current_wins_today INTEGER NOT NULL DEFAULT 0,
    wins_today_date TEXT NOT NULL DEFAULT '',
    total_wins INTEGER NOT NULL DEFAULT 0,
    winning_symbol TEXT NOT NULL,
    match_count INTEGER NOT NULL,
    is_jackpot INTEGER NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    sort_order INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS card_instances (
    instance_id TEXT PRIMARY KEY,
    card_type_id TEXT NOT NULL REFERENCES card_types(id),
    holder_id TEXT NOT NULL,
    purchase_cost_gc INTEGER NOT NULL DEFAULT 0,
    purchase_cost_sc INTEGER NOT NULL DEFAULT 0,
    purchase_currency TEXT NOT NULL,
    purchased_at TEXT NOT NULL,
    outcome_json TEXT NOT NULL,
    symbols_json TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'unscratched',
    scratch_progress_json TEXT NOT NULL,
    reveal_log_json TEXT NOT NULL DEFAULT '[]',
    first_scratch_at TEXT,
    completed_at TEXT,
    total_scratch_time INTEGER,
    is_winner INTEGER NOT NULL DEFAULT 0,
    prize_id TEXT,
    winnings_gc INTEGER NOT NULL DEFAULT 0,
    winnings_sc INTEGER NOT NULL DEFAULT 0,
    bonus_items_json TEXT,
    prize_claimed INTEGER NOT NULL DEFAULT 0,
    prize_claimed_at TEXT,
    settlement_ref TEXT,
    game_seed TEXT NOT NULL,
    verification_hash TEXT NOT NULL,
    client_info_json TEXT,
    expires_at TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS settlements (
    id TEXT PRIMARY KEY,
    instance_id TEXT UNIQUE NOT NULL REFERENCES card_instances(instance_id),
    holder_id TEXT NOT NULL,
    prize_id TEXT,
    amount_gc INTEGER NOT NULL DEFAULT 0,
    amount_sc INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS balances (
    holder_id TEXT NOT NULL,
    currency TEXT NOT NULL,
    amount INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (holder_id, currency)
);

CREATE TABLE IF NOT EXISTS ledger_entries (
    id TEXT PRIMARY KEY,
    holder_id TEXT NOT NULL,
    currency TEXT NOT NULL,
    amount INTEGER NOT NULL,
    kind TEXT NOT NULL,
    reference TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_types_theme ON card_types(theme_id);
CREATE INDEX IF NOT EXISTS idx_tiers_type ON prize_tiers(card_type_id);
CREATE INDEX IF NOT EXISTS idx_instances_holder ON card_instances(holder_id, status);
CREATE INDEX IF NOT EXISTS idx_instances_type ON card_instances(card_type_id, holder_id, purchased_at);
CREATE INDEX IF NOT EXISTS idx_instances_expiry ON card_instances(status, expires_at);
CREATE INDEX IF NOT EXISTS idx_ledger_holder ON ledger_entries(holder_id)
"""


def init_db(path=None):
    """Initialize the database schema."""
    db = _make_connection(path)
    try:
        db.executescript(SCHEMA_SQL)
        db.commit()
        mode = "PostgreSQL" if (USE_POSTGRES and HAS_PSYCOPG) else f"SQLite ({path or SQLITE_PATH})"
        logger.info(f"Database initialized ({mode})")
    finally:
        db.close()
