"""
backend/schema.py

Table definitions shared by the SQLite bootstrap (init_db) and the
Postgres migration (backend/migrate.py).

Column lists are written once; the primary key / JSON / timestamp types are
rendered per dialect by render_table_ddl().
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Dict, List

logger = logging.getLogger(__name__)


# ============================================================================
# Table catalogue
# ============================================================================

# Tables that carry tenant_id and are filtered per tenant (and get RLS in Postgres).
# users is deliberately absent: login resolves a user before any tenant is known.
TENANT_TABLES: List[str] = [
    "venues",
    "spaces",
    "customers",
    "contracts",
    "bookings",
    "proposals",
    "payments",
    "leads",
    "lead_activities",
    "settings",
    "communications",
    "audit_logs",
]

# {pk} / {json} / {ts} / {bool} / {money} are replaced per dialect.
TABLES: Dict[str, str] = {
    "tenants": """
        id {pk},
        name TEXT NOT NULL,
        slug TEXT UNIQUE,
        package TEXT NOT NULL DEFAULT 'starter',
        status TEXT NOT NULL DEFAULT 'trialing',
        contact_email TEXT,
        stripe_customer_id TEXT,
        created_at {ts},
        updated_at {ts}
    """,
    "users": """
        id {pk},
        email TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        role TEXT NOT NULL DEFAULT 'staff',
        tenant_id INTEGER REFERENCES tenants(id),
        is_active {bool} DEFAULT 1,
        last_login_at {ts},
        created_at {ts}
    """,
    "auth_sessions": """
        id TEXT PRIMARY KEY,
        user_id INTEGER NOT NULL REFERENCES users(id),
        tenant_id INTEGER,
        refresh_token_hash TEXT NOT NULL,
        created_at {ts},
        expires_at {ts},
        revoked_at {ts}
    """,
    "venues": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        name TEXT NOT NULL,
        description TEXT,
        address TEXT,
        city TEXT,
        capacity INTEGER,
        is_active {bool} DEFAULT 1,
        created_at {ts},
        updated_at {ts}
    """,
    "spaces": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        venue_id INTEGER NOT NULL REFERENCES venues(id),
        name TEXT NOT NULL,
        description TEXT,
        capacity INTEGER,
        hourly_rate {money},
        setup_styles {json},
        is_active {bool} DEFAULT 1,
        created_at {ts},
        updated_at {ts}
    """,
    "customers": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        name TEXT NOT NULL,
        email TEXT,
        phone TEXT,
        company TEXT,
        event_type TEXT,
        status TEXT DEFAULT 'active',
        source TEXT,
        notes TEXT,
        created_at {ts},
        updated_at {ts}
    """,
    "contracts": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        customer_id INTEGER REFERENCES customers(id),
        contract_name TEXT NOT NULL,
        status TEXT DEFAULT 'draft',
        total_amount {money} DEFAULT 0,
        notes TEXT,
        created_at {ts},
        updated_at {ts}
    """,
    "bookings": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        event_name TEXT NOT NULL,
        event_type TEXT NOT NULL,
        customer_id INTEGER REFERENCES customers(id),
        venue_id INTEGER REFERENCES venues(id),
        space_id INTEGER REFERENCES spaces(id),
        event_date TEXT NOT NULL,
        end_date TEXT,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        guest_count INTEGER NOT NULL,
        status TEXT NOT NULL DEFAULT 'inquiry',
        total_amount {money},
        deposit_amount {money},
        deposit_paid {bool} DEFAULT 0,
        contract_id INTEGER REFERENCES contracts(id),
        proposal_id INTEGER,
        notes TEXT,
        cancellation_reason TEXT,
        cancellation_note TEXT,
        cancelled_at {ts},
        cancelled_by INTEGER,
        completed_at {ts},
        created_by INTEGER,
        created_at {ts},
        updated_at {ts}
    """,
    "proposals": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        customer_id INTEGER REFERENCES customers(id),
        booking_id INTEGER,
        contract_id INTEGER,
        title TEXT NOT NULL,
        content TEXT,
        event_details {json},
        total_amount {money},
        deposit_percent {money} DEFAULT 30,
        status TEXT NOT NULL DEFAULT 'draft',
        public_token TEXT UNIQUE,
        valid_until TEXT,
        signature TEXT,
        sent_at {ts},
        viewed_at {ts},
        accepted_at {ts},
        declined_at {ts},
        created_at {ts},
        updated_at {ts}
    """,
    "payments": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        booking_id INTEGER NOT NULL REFERENCES bookings(id),
        amount {money} NOT NULL,
        payment_type TEXT NOT NULL DEFAULT 'deposit',
        method TEXT NOT NULL DEFAULT 'card',
        status TEXT NOT NULL DEFAULT 'completed',
        stripe_payment_intent_id TEXT UNIQUE,
        refunded_payment_id INTEGER,
        notes TEXT,
        processed_at {ts},
        created_at {ts}
    """,
    "leads": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        first_name TEXT NOT NULL,
        last_name TEXT,
        email TEXT,
        phone TEXT,
        event_type TEXT,
        guest_count INTEGER,
        budget {money},
        preferred_date TEXT,
        source TEXT,
        status TEXT NOT NULL DEFAULT 'NEW',
        notes TEXT,
        customer_id INTEGER REFERENCES customers(id),
        created_at {ts},
        updated_at {ts}
    """,
    "lead_activities": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        lead_id INTEGER NOT NULL REFERENCES leads(id),
        type TEXT NOT NULL,
        body TEXT,
        meta {json},
        created_by INTEGER,
        created_at {ts}
    """,
    "settings": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        key TEXT NOT NULL,
        value {json},
        updated_at {ts},
        UNIQUE(tenant_id, key)
    """,
    "communications": """
        id {pk},
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        customer_id INTEGER,
        booking_id INTEGER,
        proposal_id INTEGER,
        channel TEXT NOT NULL DEFAULT 'email',
        recipient TEXT,
        subject TEXT,
        body TEXT,
        status TEXT NOT NULL,
        error TEXT,
        created_at {ts}
    """,
    "audit_logs": """
        id {pk},
        tenant_id INTEGER REFERENCES tenants(id),
        user_id INTEGER,
        action TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id INTEGER,
        details {json},
        created_at {ts}
    """,
    "admin_audit": """
        id {pk},
        admin_user_id INTEGER NOT NULL REFERENCES users(id),
        tenant_id INTEGER NOT NULL REFERENCES tenants(id),
        reason TEXT NOT NULL,
        ip TEXT,
        user_agent TEXT,
        token_expires_at {ts},
        created_at {ts}
    """,
}

INDEXES: List[str] = [
    "CREATE INDEX IF NOT EXISTS idx_users_tenant ON users(tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_venues_tenant ON venues(tenant_id)",
    "CREATE INDEX IF NOT EXISTS idx_spaces_venue ON spaces(tenant_id, venue_id)",
    "CREATE INDEX IF NOT EXISTS idx_customers_tenant_email ON customers(tenant_id, email)",
    "CREATE INDEX IF NOT EXISTS idx_bookings_space_date ON bookings(tenant_id, space_id, event_date)",
    "CREATE INDEX IF NOT EXISTS idx_bookings_tenant_status ON bookings(tenant_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_payments_booking ON payments(tenant_id, booking_id)",
    "CREATE INDEX IF NOT EXISTS idx_leads_tenant_status ON leads(tenant_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_lead_activities_lead ON lead_activities(tenant_id, lead_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_logs_tenant ON audit_logs(tenant_id, created_at)",
]

_DIALECT_TYPES = {
    "sqlite": {
        "pk": "INTEGER PRIMARY KEY AUTOINCREMENT",
        "json": "TEXT",
        "ts": "TEXT",
        "bool": "INTEGER",
        "money": "REAL",
    },
    "postgres": {
        "pk": "SERIAL PRIMARY KEY",
        "json": "TEXT",
        "ts": "TEXT",
        "bool": "INTEGER",
        "money": "DOUBLE PRECISION",
    },
}


def render_table_ddl(table: str, dialect: str = "sqlite") -> str:
    """Render CREATE TABLE IF NOT EXISTS for one table in the given dialect."""
    columns = TABLES[table].format(**_DIALECT_TYPES[dialect])
    return f"CREATE TABLE IF NOT EXISTS {table} ({columns.rstrip()}\n)"


# ============================================================================
# SQLite migration helpers
# ============================================================================

def get_table_columns(conn: sqlite3.Connection, table_name: str) -> set[str]:
    """Return set of column names for a table using PRAGMA table_info."""
    try:
        cur = conn.cursor()
        cur.execute(f"PRAGMA table_info({table_name})")
        return {row[1] for row in cur.fetchall()}
    except sqlite3.Error:
        return set()


def ensure_column(conn: sqlite3.Connection, table_name: str, column_name: str, ddl_fragment: str) -> bool:
    """Add column to table if missing. Returns True if migration applied."""
    if column_name in get_table_columns(conn, table_name):
        return False

    try:
        conn.execute(f"ALTER TABLE {table_name} ADD COLUMN {column_name} {ddl_fragment}")
        conn.commit()
        logger.info("[MIGRATION] Added column %s.%s (%s)", table_name, column_name, ddl_fragment)
        return True
    except sqlite3.OperationalError as e:
        if "duplicate column" not in str(e).lower():
            logger.warning("[MIGRATION] Could not add %s.%s: %s", table_name, column_name, e)
        return False


def init_db(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes (idempotent)."""
    cur = conn.cursor()
    for table in TABLES:
        cur.execute(render_table_ddl(table, "sqlite"))

    # Columns added after the first release
    ensure_column(conn, "bookings", "cancellation_note", "TEXT")
    ensure_column(conn, "tenants", "contact_email", "TEXT")

    for stmt in INDEXES:
        cur.execute(stmt)
    conn.commit()
    logger.info("[MIGRATION] SQLite schema ready (%d tables)", len(TABLES))
