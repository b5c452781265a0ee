"""
backend/audit.py

Append-only audit trail for tenant data changes (audit_logs) and for
super admin tenant assumption (admin_audit).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def record_audit(
    conn: sqlite3.Connection,
    *,
    tenant_id: Optional[int],
    user_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int] = None,
    details: Optional[Dict[str, Any]] = None,
) -> int:
    """
    Insert an audit_logs row. Does not commit: the caller's transaction
    covers both the change and its audit entry.
    """
    cur = conn.execute(
        """
        INSERT INTO audit_logs (tenant_id, user_id, action, entity_type, entity_id, details, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            tenant_id,
            user_id,
            action,
            entity_type,
            entity_id,
            json.dumps(details or {}, default=str),
            datetime.utcnow().isoformat() + "Z",
        ),
    )
    logger.info("[AUDIT] %s %s id=%s tenant_id=%s user_id=%s", action, entity_type, entity_id, tenant_id, user_id)
    return cur.lastrowid


def record_admin_assumption(
    conn: sqlite3.Connection,
    *,
    admin_user_id: int,
    tenant_id: int,
    reason: str,
    ip: Optional[str],
    user_agent: Optional[str],
    token_expires_at: str,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO admin_audit (admin_user_id, tenant_id, reason, ip, user_agent, token_expires_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (admin_user_id, tenant_id, reason, ip, user_agent, token_expires_at, datetime.utcnow().isoformat() + "Z"),
    )
    logger.warning("[AUDIT] Super admin user_id=%s assumed tenant_id=%s", admin_user_id, tenant_id)
    return cur.lastrowid
