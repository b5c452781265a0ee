# backend/migrate.py
# Database migrations for PostgreSQL (tables + Row-Level Security) and SQLite
# Run: python -m backend.migrate

import logging
from typing import List

try:
    from backend.db import IS_POSTGRES, get_db_connection, commit
    from backend.schema import INDEXES, TABLES, TENANT_TABLES, init_db, render_table_ddl
    from backend.db import ROLE_SETTING, SYSTEM_ROLE, TENANT_SETTING
except ModuleNotFoundError:
    from db import IS_POSTGRES, get_db_connection, commit
    from schema import INDEXES, TABLES, TENANT_TABLES, init_db, render_table_ddl
    from db import ROLE_SETTING, SYSTEM_ROLE, TENANT_SETTING

logger = logging.getLogger(__name__)

POLICY_NAME = "tenant_isolation"


def rls_policy_statements(table: str) -> List[str]:
    """
    SQL that enables Row-Level Security on one tenant table.

    Rows are visible/writable when tenant_id matches the session tenant, or
    when the session role is super_admin or the system role used by login,
    public proposal links and webhooks. FORCE applies the policy to the
    table owner too, so the API's own database role cannot bypass it.
    """
    predicate = (
        f"tenant_id = NULLIF(current_setting('{TENANT_SETTING}', true), '')::int "
        f"OR current_setting('{ROLE_SETTING}', true) IN ('super_admin', '{SYSTEM_ROLE}')"
    )
    return [
        f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY",
        f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY",
        f"DROP POLICY IF EXISTS {POLICY_NAME} ON {table}",
        f"CREATE POLICY {POLICY_NAME} ON {table} USING ({predicate}) WITH CHECK ({predicate})",
    ]


def postgres_statements() -> List[str]:
    """All Postgres migration statements in execution order."""
    statements = [render_table_ddl(table, "postgres") for table in TABLES]
    statements.extend(INDEXES)
    for table in TENANT_TABLES:
        statements.extend(rls_policy_statements(table))
    return statements


def run_migrations() -> None:
    """
    Run all database migrations (idempotent).
    Safe to run multiple times.
    """
    logger.info("[MIGRATE] Starting database migrations...")

    with get_db_connection() as conn:
        if IS_POSTGRES:
            _run_postgres_migrations(conn)
        else:
            init_db(conn)
        commit(conn)

    logger.info("[MIGRATE] All migrations complete")


def _run_postgres_migrations(conn) -> None:
    from sqlalchemy import text

    statements = postgres_statements()
    logger.info("[MIGRATE] Running %d PostgreSQL statements", len(statements))
    for stmt in statements:
        conn.execute(text(stmt))
    logger.info("[MIGRATE] RLS enabled on %d tenant tables", len(TENANT_TABLES))


if __name__ == "__main__":
    run_migrations()
