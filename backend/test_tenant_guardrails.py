"""
Tenant guardrails and the Postgres Row-Level Security migration.

Covers the pieces under the route handlers: TenantContext filters, the
row/queries scope checks (warn in DEV, 500 elsewhere), and the SQL that
installs RLS policies. Postgres itself is not needed; the RLS pieces are
checked as generated SQL and with a mocked connection.

Run: pytest backend/test_tenant_guardrails.py -v
"""

import sqlite3
from unittest.mock import MagicMock, patch

import pytest
from fastapi import HTTPException
from sqlalchemy.exc import IntegrityError

from backend import db, migrate
from backend.schema import TABLES, TENANT_TABLES, render_table_ddl
from backend.tenant import (
    TenantContext,
    assert_row_scoped,
    assert_rows_scoped,
    execute_scoped,
    fetch_owned,
    is_tenant_query,
    require_tenant_id,
)


@pytest.fixture
def memory_db():
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("CREATE TABLE bookings (id INTEGER PRIMARY KEY, tenant_id INTEGER, event_name TEXT)")
    conn.executemany("INSERT INTO bookings (id, tenant_id, event_name) VALUES (?, ?, ?)",
                     [(1, 10, "Ours"), (2, 20, "Theirs")])
    yield conn
    conn.close()


class TestTenantContext:
    def test_filter_for_tenant(self):
        scope = TenantContext(tenant_id=10, user_id=1, role="staff")
        assert scope.filter("b.tenant_id") == ("b.tenant_id = ?", (10,))
        assert scope.write_tenant_id() == 10
        assert not scope.bypass

    def test_super_admin_without_tenant_bypasses_reads_only(self):
        scope = TenantContext(tenant_id=None, user_id=1, role="super_admin")
        assert scope.bypass
        assert scope.filter() == ("1 = 1", ())
        with pytest.raises(HTTPException) as exc:
            scope.write_tenant_id()
        assert exc.value.status_code == 400

    def test_super_admin_with_assumed_tenant_is_filtered(self):
        scope = TenantContext(tenant_id=7, user_id=1, role="super_admin")
        assert not scope.bypass
        assert scope.filter() == ("tenant_id = ?", (7,))

    @pytest.mark.parametrize("tenant_id", [None, 0, -1])
    def test_tenant_user_needs_tenant(self, tenant_id):
        with pytest.raises(ValueError):
            TenantContext(tenant_id=tenant_id, user_id=1, role="staff")


class TestScopeChecks:
    def test_matching_rows_pass(self):
        scope = TenantContext(tenant_id=10, role="staff")
        assert_rows_scoped([{"tenant_id": 10}, {"id": 3}], scope)
        assert_row_scoped(None, scope)

    def test_mismatch_warns_in_dev(self):
        scope = TenantContext(tenant_id=10, role="staff")
        with patch("backend.tenant.IS_DEV", True):
            assert_rows_scoped([{"tenant_id": 20}], scope, label="test")

    def test_mismatch_fails_outside_dev(self):
        scope = TenantContext(tenant_id=10, role="staff")
        with patch("backend.tenant.IS_DEV", False):
            with pytest.raises(HTTPException) as exc:
                assert_row_scoped({"tenant_id": 20}, scope, label="test")
        assert exc.value.status_code == 500

    def test_bypass_scope_is_not_checked(self):
        scope = TenantContext(tenant_id=None, role="super_admin")
        with patch("backend.tenant.IS_DEV", False):
            assert_rows_scoped([{"tenant_id": 20}, {"tenant_id": 30}], scope)

    def test_require_tenant_id(self):
        assert require_tenant_id(5) == 5
        with patch("backend.tenant.IS_DEV", False):
            with pytest.raises(HTTPException):
                require_tenant_id(None)


class TestQueries:
    def test_is_tenant_query(self):
        assert is_tenant_query("SELECT * FROM bookings WHERE id = ?")
        assert is_tenant_query("delete from customers where id = ?")
        assert not is_tenant_query("SELECT * FROM users WHERE id = ?")
        assert not is_tenant_query("INSERT INTO bookings (id) VALUES (?)")

    def test_execute_scoped_runs_filtered_query(self, memory_db):
        scope = TenantContext(tenant_id=10, role="staff")
        rows = execute_scoped(memory_db, "SELECT * FROM bookings WHERE tenant_id = ?", (10,), scope).fetchall()
        assert [r["event_name"] for r in rows] == ["Ours"]

    def test_execute_scoped_refuses_unfiltered_query_outside_dev(self, memory_db):
        scope = TenantContext(tenant_id=10, role="staff")
        with patch("backend.tenant.IS_DEV", False):
            with pytest.raises(HTTPException) as exc:
                execute_scoped(memory_db, "SELECT * FROM bookings", (), scope, label="test")
        assert exc.value.status_code == 500

    def test_execute_scoped_bypass(self, memory_db):
        scope = TenantContext(tenant_id=None, role="super_admin")
        with patch("backend.tenant.IS_DEV", False):
            assert len(execute_scoped(memory_db, "SELECT * FROM bookings", (), scope).fetchall()) == 2

    def test_fetch_owned(self, memory_db):
        scope = TenantContext(tenant_id=10, role="staff")
        assert fetch_owned(memory_db, "bookings", 1, scope)["event_name"] == "Ours"
        with pytest.raises(HTTPException) as exc:
            fetch_owned(memory_db, "bookings", 2, scope, not_found="Booking not found")
        assert exc.value.status_code == 404
        assert exc.value.detail == "Booking not found"

    def test_fetch_owned_rejects_non_tenant_table(self, memory_db):
        with pytest.raises(ValueError):
            fetch_owned(memory_db, "users", 1, TenantContext(tenant_id=10, role="staff"))


class TestRowLevelSecurity:
    def test_policy_statements(self):
        statements = migrate.rls_policy_statements("bookings")
        assert statements[0] == "ALTER TABLE bookings ENABLE ROW LEVEL SECURITY"
        assert statements[1] == "ALTER TABLE bookings FORCE ROW LEVEL SECURITY"
        policy = statements[-1]
        assert policy.startswith("CREATE POLICY tenant_isolation ON bookings")
        assert "current_setting('app.current_tenant_id', true)" in policy
        assert "current_setting('app.current_role', true) IN ('super_admin', 'system')" in policy
        assert "WITH CHECK" in policy

    def test_every_tenant_table_gets_a_policy(self):
        joined = "\n".join(migrate.postgres_statements())
        for table in TENANT_TABLES:
            assert f"CREATE POLICY tenant_isolation ON {table} USING" in joined
        assert "ALTER TABLE users ENABLE ROW LEVEL SECURITY" not in joined

    def test_postgres_ddl_uses_postgres_types(self):
        ddl = render_table_ddl("payments", "postgres")
        assert "SERIAL PRIMARY KEY" in ddl
        assert "DOUBLE PRECISION" in ddl
        assert "AUTOINCREMENT" not in ddl
        assert set(TENANT_TABLES) <= set(TABLES)

    def test_set_tenant_session(self):
        conn = MagicMock()
        db.set_tenant_session(conn, 42, "staff")
        values = [call.args[1] for call in conn.execute.call_args_list]
        assert values == [
            {"key": "app.current_tenant_id", "value": "42"},
            {"key": "app.current_role", "value": "staff"},
        ]

    def test_super_admin_session_has_empty_tenant(self):
        conn = MagicMock()
        db.set_tenant_session(conn, None, "super_admin")
        assert conn.execute.call_args_list[0].args[1]["value"] == ""

    def test_named_params(self):
        query, params = db.to_named_params("SELECT * FROM t WHERE a = ? AND b = ?", (1, "x"))
        assert query == "SELECT * FROM t WHERE a = :p1 AND b = :p2"
        assert params == {"p1": 1, "p2": "x"}


def _session_values(raw):
    return [
        call.args[1]["value"]
        for call in raw.execute.call_args_list
        if "set_config" in str(call.args[0])
    ]


class TestPgConnection:
    def test_session_applied_once_per_transaction(self):
        raw = MagicMock()
        conn = db.PgConnection(raw, 7, "staff")
        conn.execute("SELECT * FROM bookings WHERE tenant_id = ?", (7,))
        conn.execute("SELECT * FROM customers WHERE tenant_id = ?", (7,))
        assert _session_values(raw) == ["7", "staff"]

        conn.commit()
        conn.execute("SELECT * FROM bookings WHERE tenant_id = ?", (7,))
        assert _session_values(raw) == ["7", "staff", "7", "staff"]

    def test_tenantless_session_is_empty(self):
        raw = MagicMock()
        db.PgConnection(raw, None, "").execute("SELECT * FROM bookings")
        assert _session_values(raw) == ["", ""]

    def test_placeholders_become_named(self):
        raw = MagicMock()
        db.PgConnection(raw, 7, "staff").execute("SELECT * FROM leads WHERE tenant_id = ? AND id = ?", (7, 3))
        last = raw.execute.call_args_list[-1]
        assert str(last.args[0]) == "SELECT * FROM leads WHERE tenant_id = :p1 AND id = :p2"
        assert last.args[1] == {"p1": 7, "p2": 3}

    def test_insert_returns_new_id(self):
        raw = MagicMock()
        raw.execute.return_value.fetchone.return_value = (55,)
        cur = db.PgConnection(raw, 7, "staff").execute(
            "INSERT INTO customers (tenant_id, email) VALUES (?, ?)", (7, "a@example.com"))
        assert str(raw.execute.call_args_list[-1].args[0]).endswith("RETURNING id")
        assert cur.lastrowid == 55

    def test_begin_immediate_takes_tenant_lock(self):
        raw = MagicMock()
        db.PgConnection(raw, 7, "staff").execute("BEGIN IMMEDIATE")
        last = raw.execute.call_args_list[-1]
        assert "pg_advisory_xact_lock" in str(last.args[0])
        assert last.args[1] == {"key": 7}

    def test_integrity_error_surfaces_as_sqlite_error(self):
        raw = MagicMock()
        conn = db.PgConnection(raw, 7, "staff")
        conn.execute("SELECT 1")
        raw.execute.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("INSERT INTO settings (tenant_id, key) VALUES (?, ?)", (7, "k"))

    def test_rows_read_by_name_and_position(self):
        raw = MagicMock()
        row = MagicMock()
        row._mapping = {"id": 1, "tenant_id": 7}
        row.__getitem__.side_effect = lambda i: [1, 7][i]
        row.__len__.return_value = 2
        raw.execute.return_value.returns_rows = True
        raw.execute.return_value.fetchone.return_value = row
        fetched = db.PgConnection(raw, 7, "staff").execute("SELECT id, tenant_id FROM venues").fetchone()
        assert fetched["tenant_id"] == 7
        assert fetched[0] == 1
        assert dict(fetched) == {"id": 1, "tenant_id": 7}


class TestRequestConnections:
    def test_scope_connect_binds_tenant_and_role(self):
        with patch("backend.tenant.get_db") as get_db:
            TenantContext(tenant_id=12, role="staff").connect()
        get_db.assert_called_once_with(12, "staff")

    def test_system_db_uses_system_role(self):
        with patch("backend.db.get_db") as get_db:
            db.system_db()
        get_db.assert_called_once_with(None, db.SYSTEM_ROLE)

    def test_route_opens_connection_for_caller_tenant(self, client, make_tenant):
        tenant = make_tenant(role="staff")
        with patch("backend.tenant.get_db", wraps=db.get_db) as get_db:
            resp = client.get("/api/bookings", headers=tenant["headers"])
        assert resp.status_code == 200
        get_db.assert_called_with(tenant["tenant_id"], "staff")
