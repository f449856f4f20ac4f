"""
Simple PostgreSQL database functions for the billing service
Direct database connections with raw SQL queries for transparency and performance
"""

import os
import asyncio
import logging
import threading
import time
from typing import Optional, Dict, List, Any, Callable

import psycopg2
import psycopg2.pool
from psycopg2.extras import RealDictCursor

from performance_monitor import OperationTimer

logger = logging.getLogger(__name__)

_connection_pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
_pool_lock = threading.Lock()

# Reads are retried on connection-level errors; writes never are
READ_RETRY_ATTEMPTS = 3

def get_connection_pool(database_url: Optional[str] = None) -> psycopg2.pool.ThreadedConnectionPool:
    """Get or create the shared connection pool"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is None:
            dsn = database_url or os.getenv('DATABASE_URL')
            if not dsn:
                raise ValueError("DATABASE_URL environment variable not found")

            _connection_pool = psycopg2.pool.ThreadedConnectionPool(
                minconn=int(os.getenv('DB_POOL_MIN', '2')),
                maxconn=int(os.getenv('DB_POOL_MAX', '20')),
                dsn=dsn,
                cursor_factory=RealDictCursor,
                connect_timeout=5,
                keepalives_idle=600,
                keepalives_interval=30,
                keepalives_count=3,
                sslmode=os.getenv('DB_SSLMODE', 'prefer')
            )
            logger.info("✅ Database connection pool created")
    return _connection_pool

def close_connection_pool():
    """Close every pooled connection"""
    global _connection_pool
    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.closeall()
            _connection_pool = None
            logger.info("🔄 Database connection pool closed")

def get_connection():
    conn = get_connection_pool().getconn()
    conn.autocommit = True
    return conn

def return_connection(conn, is_broken: bool = False):
    get_connection_pool().putconn(conn, close=is_broken)

async def execute_query(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute a SELECT query and return rows as dicts"""

    def _execute() -> List[Dict]:
        for attempt in range(READ_RETRY_ATTEMPTS):
            conn = get_connection()
            broken = False
            try:
                with conn.cursor() as cursor:
                    cursor.execute(query, params)
                    if cursor.description is None:
                        return []
                    return [dict(row) for row in cursor.fetchall()]
            except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                broken = True
                if attempt < READ_RETRY_ATTEMPTS - 1:
                    logger.warning(f"🔄 Database connection retry {attempt + 1}/{READ_RETRY_ATTEMPTS}: {e}")
                    time.sleep(0.5 + attempt * 0.5)
                    continue
                logger.error(f"❌ Database query failed after {READ_RETRY_ATTEMPTS} attempts: {e}")
                raise
            finally:
                return_connection(conn, is_broken=broken)
        return []

    with OperationTimer("db_query"):
        return await asyncio.to_thread(_execute)

async def execute_update(query: str, params: Optional[tuple] = None) -> int:
    """Execute an UPDATE/INSERT/DELETE query and return affected rows (no retries to prevent duplicates)"""

    def _execute() -> int:
        conn = get_connection()
        broken = False
        try:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return cursor.rowcount
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"❌ Database update connection failed: {e}")
            raise
        finally:
            return_connection(conn, is_broken=broken)

    with OperationTimer("db_update"):
        return await asyncio.to_thread(_execute)

async def execute_returning(query: str, params: Optional[tuple] = None) -> List[Dict]:
    """Execute an INSERT/UPDATE ... RETURNING once and return the rows (no retries, like execute_update)"""

    def _execute() -> List[Dict]:
        conn = get_connection()
        broken = False
        try:
            with conn.cursor() as cursor:
                cursor.execute(query, params)
                return [dict(row) for row in cursor.fetchall()]
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            broken = True
            logger.error(f"❌ Database write connection failed: {e}")
            raise
        finally:
            return_connection(conn, is_broken=broken)

    with OperationTimer("db_update"):
        return await asyncio.to_thread(_execute)

async def run_in_transaction(func: Callable, *args, **kwargs):
    """Run func(conn, ...) inside a single transaction"""

    def _execute_in_transaction():
        conn = get_connection()
        conn.autocommit = False
        try:
            result = func(conn, *args, **kwargs)
            conn.commit()
            return result
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.autocommit = True
            return_connection(conn)

    return await asyncio.to_thread(_execute_in_transaction)

async def ping_database() -> bool:
    """Lightweight health check"""
    try:
        rows = await execute_query("SELECT 1 AS ok")
        return bool(rows) and rows[0].get('ok') == 1
    except psycopg2.Error as e:
        logger.warning(f"⚠️ Database health check failed: {e}")
        return False

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS currency_rates (
        id SERIAL PRIMARY KEY,
        from_currency VARCHAR(3) NOT NULL,
        to_currency VARCHAR(3) NOT NULL,
        rate NUMERIC(18,8) NOT NULL CHECK (rate > 0),
        margin NUMERIC(6,4) NOT NULL DEFAULT 0 CHECK (margin >= 0 AND margin < 1),
        source VARCHAR(50) NOT NULL DEFAULT 'manual',
        fetched_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (from_currency, to_currency)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS domain_tld_pricing (
        id SERIAL PRIMARY KEY,
        tld VARCHAR(63) UNIQUE NOT NULL,
        category VARCHAR(10) NOT NULL,
        reg_1y NUMERIC(10,2) NOT NULL,
        reg_2y NUMERIC(10,2),
        reg_5y NUMERIC(10,2),
        reg_10y NUMERIC(10,2),
        renew_1y NUMERIC(10,2),
        transfer_1y NUMERIC(10,2),
        currency VARCHAR(3) NOT NULL DEFAULT 'GBP',
        source VARCHAR(50) NOT NULL DEFAULT 'manual',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS hosting_plans (
        ref VARCHAR(64) PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        stripe_price_id VARCHAR(255) NOT NULL,
        monthly_price NUMERIC(10,2) NOT NULL,
        annual_price NUMERIC(10,2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'GBP',
        whm_package VARCHAR(255),
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_customers (
        customer_id VARCHAR(64) PRIMARY KEY,
        email VARCHAR(320) NOT NULL,
        provider_customer_id VARCHAR(255) UNIQUE NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(64) PRIMARY KEY,
        customer_id VARCHAR(64) NOT NULL,
        items JSONB NOT NULL,
        total_amount NUMERIC(10,2) NOT NULL,
        currency VARCHAR(3) NOT NULL,
        status VARCHAR(32) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'paid', 'provisioning_requested', 'cancelled')),
        stripe_session_id VARCHAR(255) UNIQUE,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_domain_orders (
        id VARCHAR(64) PRIMARY KEY,
        user_id VARCHAR(64) NOT NULL,
        domain_name VARCHAR(253) NOT NULL,
        years INTEGER NOT NULL CHECK (years >= 1),
        domain_price NUMERIC(10,2) NOT NULL,
        hosting_price NUMERIC(10,2) NOT NULL DEFAULT 0,
        total_estimate NUMERIC(10,2) NOT NULL,
        currency VARCHAR(3) NOT NULL,
        hosting_package_ref VARCHAR(64),
        status VARCHAR(32) NOT NULL DEFAULT 'PENDING_REVIEW'
            CHECK (status IN ('PENDING_REVIEW', 'APPROVED', 'REJECTED', 'PAID')),
        admin_notes TEXT,
        reviewed_by VARCHAR(64),
        reviewed_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invoices (
        id VARCHAR(64) PRIMARY KEY,
        customer_id VARCHAR(64) NOT NULL,
        invoice_number VARCHAR(64) UNIQUE NOT NULL,
        amount NUMERIC(10,2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'GBP',
        status VARCHAR(16) NOT NULL DEFAULT 'pending'
            CHECK (status IN ('pending', 'paid', 'failed', 'refunded')),
        stripe_session_id VARCHAR(255),
        order_id VARCHAR(64),
        payment_method VARCHAR(32),
        notes TEXT,
        paid_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS provisioning_requests (
        id SERIAL PRIMARY KEY,
        order_id VARCHAR(64) NOT NULL,
        ref_id VARCHAR(255) NOT NULL,
        kind VARCHAR(16) NOT NULL CHECK (kind IN ('domain', 'hosting')),
        action VARCHAR(16) NOT NULL,
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        status VARCHAR(16) NOT NULL DEFAULT 'queued'
            CHECK (status IN ('queued', 'dispatched', 'failed')),
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (order_id, ref_id, kind)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_ledger (
        id SERIAL PRIMARY KEY,
        subject_id VARCHAR(64) NOT NULL,
        kind VARCHAR(64) NOT NULL,
        customer_id VARCHAR(64),
        title VARCHAR(255) NOT NULL,
        message TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE (subject_id, kind)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_log (
        id SERIAL PRIMARY KEY,
        subject_id VARCHAR(64) NOT NULL,
        action VARCHAR(64) NOT NULL,
        actor_id VARCHAR(64),
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS admin_alerts (
        id SERIAL PRIMARY KEY,
        severity VARCHAR(16) NOT NULL,
        category VARCHAR(32) NOT NULL,
        component VARCHAR(100) NOT NULL,
        message TEXT NOT NULL,
        details JSONB,
        fingerprint VARCHAR(64) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_customer ON orders (customer_id)",
    "CREATE INDEX IF NOT EXISTS idx_pending_domain_orders_status ON pending_domain_orders (status)",
    "CREATE INDEX IF NOT EXISTS idx_admin_alerts_fingerprint ON admin_alerts (fingerprint, created_at)",
]

async def init_database():
    """Initialize database tables if they don't exist"""

    def _init(conn):
        with conn.cursor() as cursor:
            for statement in SCHEMA_STATEMENTS:
                cursor.execute(statement)

    await run_in_transaction(_init)
    logger.info(f"✅ Database schema verified ({len(SCHEMA_STATEMENTS)} statements)")
