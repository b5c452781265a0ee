"""
backend/routes_payments.py

Payments against bookings: manual recording, Stripe PaymentIntents,
refunds, and the Stripe webhook.

Every completed payment recomputes the booking's deposit flag and may move
the booking forward (deposit met -> confirmed_deposit_paid, total met ->
confirmed_fully_paid). Refund rows carry a negative amount.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

try:
    from backend.auth_context import AuthContext, require_auth_context
    from backend.audit import record_audit
    from backend.authz import Capability
    from backend.booking_service import apply_payment_progress, paid_total
    from backend.db import now_iso, system_db
    from backend.dependencies import require_capability
    from backend.schemas_crm import (
        PaymentCreateRequest,
        PaymentIntentRequest,
        PaymentListResponse,
        PaymentResponse,
        RefundRequest,
    )
    from backend import stripe_service
    from backend.tenant import assert_rows_scoped, fetch_owned, get_tenant_context
except ModuleNotFoundError:
    from auth_context import AuthContext, require_auth_context
    from audit import record_audit
    from authz import Capability
    from booking_service import apply_payment_progress, paid_total
    from db import now_iso, system_db
    from dependencies import require_capability
    from schemas_crm import (
        PaymentCreateRequest,
        PaymentIntentRequest,
        PaymentListResponse,
        PaymentResponse,
        RefundRequest,
    )
    import stripe_service
    from tenant import assert_rows_scoped, fetch_owned, get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/payments",
    tags=["payments"],
)

webhook_router = APIRouter(
    prefix="/api/stripe",
    tags=["stripe"],
)

READ = Depends(require_capability(Capability.PAYMENTS_READ))
MANAGE = Depends(require_capability(Capability.PAYMENTS_MANAGE))
ONLINE = Depends(require_capability(Capability.PAYMENTS_ONLINE))


def _insert_payment(
    conn: sqlite3.Connection,
    tenant_id: int,
    booking_id: int,
    amount: float,
    payment_type: str,
    method: str,
    notes: Optional[str] = None,
    stripe_payment_intent_id: Optional[str] = None,
    refunded_payment_id: Optional[int] = None,
) -> int:
    if payment_type == "refund":
        amount = -abs(amount)
    now = now_iso()
    cur = conn.execute(
        """
        INSERT INTO payments (tenant_id, booking_id, amount, payment_type, method, status,
                              stripe_payment_intent_id, refunded_payment_id, notes, processed_at, created_at)
        VALUES (?, ?, ?, ?, ?, 'completed', ?, ?, ?, ?, ?)
        """,
        (tenant_id, booking_id, round(amount, 2), payment_type, method,
         stripe_payment_intent_id, refunded_payment_id, notes, now, now),
    )
    return cur.lastrowid


def _payment(conn: sqlite3.Connection, payment_id: int, tenant_id: int) -> PaymentResponse:
    row = conn.execute("SELECT * FROM payments WHERE id = ? AND tenant_id = ?", (payment_id, tenant_id)).fetchone()
    return PaymentResponse(**dict(row))


@router.get("", response_model=PaymentListResponse, dependencies=[READ])
def list_payments(
    booking_id: Optional[int] = Query(None),
    ctx: AuthContext = Depends(require_auth_context),
) -> PaymentListResponse:
    scope = get_tenant_context(ctx)
    clause, params = scope.filter("tenant_id")
    sql = f"SELECT * FROM payments WHERE {clause}"
    args = list(params)
    if booking_id is not None:
        sql += " AND booking_id = ?"
        args.append(booking_id)
    sql += " ORDER BY created_at DESC, id DESC"

    conn = scope.connect()
    try:
        rows = conn.execute(sql, args).fetchall()
        assert_rows_scoped(rows, scope, label="payments:list")
        return PaymentListResponse(items=[PaymentResponse(**dict(r)) for r in rows], total=len(rows))
    except sqlite3.Error as e:
        logger.error("[PAYMENTS] DB error on list: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("", response_model=PaymentResponse, status_code=201, dependencies=[MANAGE])
def record_payment(
    request: PaymentCreateRequest,
    ctx: AuthContext = Depends(require_auth_context),
) -> PaymentResponse:
    """
    Record an offline payment (cash, check, transfer, card terminal).

    Raises:
        HTTPException(400): Booking is cancelled
        HTTPException(404): Booking not in this tenant
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    payment_type = request.payment_type.value

    conn = scope.connect()
    try:
        booking = fetch_owned(conn, "bookings", request.booking_id, scope, not_found="Booking not found")
        if booking["status"] == "cancelled" and payment_type != "refund":
            raise HTTPException(status_code=400, detail="Cannot take payment for a cancelled booking")

        payment_id = _insert_payment(conn, tenant_id, request.booking_id, request.amount,
                                     payment_type, request.method, request.notes)
        progress = apply_payment_progress(conn, tenant_id, request.booking_id)
        record_audit(conn, tenant_id=tenant_id, user_id=ctx.user_id, action="payment.record",
                     entity_type="payment", entity_id=payment_id,
                     details={"booking_id": request.booking_id, "amount": request.amount,
                              "payment_type": payment_type, "booking_status": progress["status"]})
        conn.commit()
        logger.info("[PAYMENTS] Recorded payment_id=%s booking_id=%s amount=%.2f",
                    payment_id, request.booking_id, request.amount)
        return _payment(conn, payment_id, tenant_id)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PAYMENTS] DB error on record: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


@router.post("/intent", dependencies=[ONLINE])
def create_payment_intent(
    request: PaymentIntentRequest,
    ctx: AuthContext = Depends(require_auth_context),
):
    """
    Create a Stripe PaymentIntent for a booking's deposit or balance.
    The payment row is written by the webhook once Stripe confirms it.

    Raises:
        HTTPException(400): Nothing left to pay
        HTTPException(502): Stripe rejected the request
        HTTPException(503): Stripe not configured
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()
    if not stripe_service.is_configured():
        raise HTTPException(status_code=503, detail="Online payments are not configured")

    conn = scope.connect()
    try:
        booking = fetch_owned(conn, "bookings", request.booking_id, scope, not_found="Booking not found")
        if booking["status"] == "cancelled":
            raise HTTPException(status_code=400, detail="Cannot take payment for a cancelled booking")
        customer = None
        if booking["customer_id"]:
            customer = conn.execute(
                "SELECT email FROM customers WHERE id = ? AND tenant_id = ?",
                (booking["customer_id"], tenant_id),
            ).fetchone()

        paid = paid_total(conn, tenant_id, request.booking_id)
        total = float(booking["total_amount"] or 0)
        if request.amount is not None:
            amount = request.amount
        elif request.payment_type.value == "deposit" and booking["deposit_amount"]:
            amount = float(booking["deposit_amount"]) - paid
        else:
            amount = total - paid
        amount = round(amount, 2)
        if amount <= 0:
            raise HTTPException(status_code=400, detail="Nothing left to pay on this booking")
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PAYMENTS] DB error on intent: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()

    try:
        return stripe_service.create_payment_intent(
            amount,
            tenant_id=tenant_id,
            booking_id=request.booking_id,
            payment_type=request.payment_type.value,
            customer_email=customer["email"] if customer else None,
        )
    except stripe_service.StripeNotConfigured:
        raise HTTPException(status_code=503, detail="Online payments are not configured")
    except stripe_service.StripeServiceError as e:
        raise HTTPException(status_code=502, detail=f"Payment provider error: {e}")


@router.post("/{payment_id}/refund", response_model=PaymentResponse, status_code=201, dependencies=[MANAGE])
def refund_payment(
    request: RefundRequest,
    payment_id: int = Path(..., description="Payment ID"),
    ctx: AuthContext = Depends(require_auth_context),
) -> PaymentResponse:
    """
    Refund all or part of a payment. Stripe payments are refunded through
    Stripe first; others only get the refund row.

    Raises:
        HTTPException(400): Not refundable, or amount over what remains
        HTTPException(502/503): Stripe failure / not configured
    """
    scope = get_tenant_context(ctx)
    tenant_id = scope.write_tenant_id()

    conn = scope.connect()
    try:
        original = fetch_owned(conn, "payments", payment_id, scope, not_found="Payment not found")
        if original["payment_type"] == "refund" or original["status"] != "completed":
            raise HTTPException(status_code=400, detail="This payment cannot be refunded")

        already = conn.execute(
            "SELECT COALESCE(SUM(ABS(amount)), 0) AS n FROM payments WHERE tenant_id = ? AND refunded_payment_id = ?",
            (tenant_id, payment_id),
        ).fetchone()["n"]
        remaining = round(float(original["amount"]) - float(already), 2)
        amount = round(request.amount if request.amount is not None else remaining, 2)
        if amount <= 0 or amount > remaining:
            raise HTTPException(status_code=400, detail=f"Refund amount must be between 0 and {remaining:.2f}")

        intent_id = original["stripe_payment_intent_id"]
        method = original["method"]
        if intent_id:
            try:
                stripe_service.refund_payment_intent(intent_id, amount)
            except stripe_service.StripeNotConfigured:
                raise HTTPException(status_code=503, detail="Online payments are not configured")
            except stripe_service.StripeServiceError as e:
                raise HTTPException(status_code=502, detail=f"Payment provider error: {e}")

        refund_id = _insert_payment(conn, tenant_id, original["booking_id"], amount, "refund", method,
                                    notes=request.reason, refunded_payment_id=payment_id)
        apply_payment_progress(conn, tenant_id, original["booking_id"])
        record_audit(conn, tenant_id=tenant_id, user_id=ctx.user_id, action="payment.refund",
                     entity_type="payment", entity_id=refund_id,
                     details={"refunded_payment_id": payment_id, "amount": amount, "stripe": bool(intent_id)})
        conn.commit()
        logger.info("[PAYMENTS] Refunded %.2f of payment_id=%s", amount, payment_id)
        return _payment(conn, refund_id, tenant_id)
    except HTTPException:
        raise
    except sqlite3.Error as e:
        logger.error("[PAYMENTS] DB error on refund: %s", e)
        raise HTTPException(status_code=500, detail="Database error")
    finally:
        conn.close()


# ============================================================================
# Stripe webhook (no auth; the signature is the credential)
# ============================================================================

def record_intent_succeeded(conn: sqlite3.Connection, intent) -> Optional[int]:
    """
    Write the payment for a succeeded PaymentIntent. Returns the payment id,
    or None if it was already recorded or its booking is gone.
    """
    intent_id = intent["id"]
    existing = conn.execute(
        "SELECT id FROM payments WHERE stripe_payment_intent_id = ?", (intent_id,)
    ).fetchone()
    if existing:
        logger.info("[STRIPE] PaymentIntent %s already recorded as payment_id=%s", intent_id, existing["id"])
        return None

    metadata = intent.get("metadata") or {}
    try:
        tenant_id = int(metadata["tenant_id"])
        booking_id = int(metadata["booking_id"])
    except (KeyError, TypeError, ValueError):
        logger.warning("[STRIPE] PaymentIntent %s has no booking metadata", intent_id)
        return None

    booking = conn.execute(
        "SELECT id FROM bookings WHERE id = ? AND tenant_id = ?", (booking_id, tenant_id)
    ).fetchone()
    if not booking:
        logger.warning("[STRIPE] PaymentIntent %s for missing booking_id=%s tenant_id=%s",
                       intent_id, booking_id, tenant_id)
        return None

    amount = stripe_service.from_cents(intent.get("amount_received") or intent.get("amount") or 0)
    payment_type = metadata.get("payment_type") or "deposit"
    payment_id = _insert_payment(conn, tenant_id, booking_id, amount, payment_type, "stripe",
                                 stripe_payment_intent_id=intent_id)
    progress = apply_payment_progress(conn, tenant_id, booking_id)
    record_audit(conn, tenant_id=tenant_id, user_id=None, action="payment.stripe",
                 entity_type="payment", entity_id=payment_id,
                 details={"booking_id": booking_id, "amount": amount, "intent": intent_id,
                          "booking_status": progress["status"]})
    conn.commit()
    logger.info("[STRIPE] Recorded payment_id=%s for booking_id=%s (%.2f)", payment_id, booking_id, amount)
    return payment_id


async def raw_body(request: Request) -> bytes:
    """Unparsed request body; the Stripe signature covers the exact bytes."""
    return await request.body()


@webhook_router.post("/webhook")
def stripe_webhook(payload: bytes = Depends(raw_body), stripe_signature: Optional[str] = Header(None)):
    """
    Runs in the threadpool like the other handlers; only the body read is async.

    Raises:
        HTTPException(400): Signature or payload invalid
        HTTPException(503): Webhook secret not configured
    """
    try:
        event = stripe_service.construct_webhook_event(payload, stripe_signature)
    except stripe_service.StripeNotConfigured:
        raise HTTPException(status_code=503, detail="Stripe webhook not configured")
    except stripe_service.WebhookVerificationError as e:
        logger.warning("[STRIPE] Webhook rejected: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    event_type = event["type"]
    logger.info("[STRIPE] Webhook event %s (%s)", event["id"], event_type)

    if event_type == "payment_intent.succeeded":
        conn = system_db()
        try:
            record_intent_succeeded(conn, event["data"]["object"])
        except sqlite3.IntegrityError:
            # Concurrent delivery of the same event
            logger.info("[STRIPE] Duplicate delivery for event %s", event["id"])
        except sqlite3.Error as e:
            logger.error("[STRIPE] DB error handling %s: %s", event["id"], e)
            raise HTTPException(status_code=500, detail="Database error")
        finally:
            conn.close()
    elif event_type == "payment_intent.payment_failed":
        intent = event["data"]["object"]
        logger.warning("[STRIPE] PaymentIntent %s failed for booking_id=%s",
                       intent["id"], (intent.get("metadata") or {}).get("booking_id"))

    return {"received": True}
