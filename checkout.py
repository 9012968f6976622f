"""Checkout sessions, orders and payment reconciliation.

Every state change is a conditional UPDATE whose ``rowcount`` decides who
won. Only the winner touches stock, so webhooks, return redirects, status
polls and the cleanup jobs can race freely without double-releasing or
double-selling inventory.

Functions take an open connection and own its transaction: they commit on
success and roll back before raising.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import benefit
import config
import sms
from benefitpay import (
    WalletClient,
    load_wallet_credentials,
    new_reference_number,
    result_from_status,
    signed_sdk_params,
)
from db import dumps_json, loads_json, to_decimal, utcnow
from eazypay import EazyPayClient, result_from_query
from gateway import CANCELLED, FAILED, PAID, PENDING, PaymentResult
from inventory import (
    StockReservationError,
    convert_reserved_to_sold,
    merge_items,
    release_stock_batch,
    reserve_stock_batch,
)

logger = logging.getLogger(__name__)

SESSION_PAYMENT_METHODS = {"benefitpay_wallet", "card", "cod"}
ORDER_PAYMENT_METHODS = {"cod", "benefit"}
ORDER_STATUSES = {"pending", "processing", "shipped", "delivered", "cancelled"}
CLOSED_SESSION_STATUSES = ("expired", "failed", "cancelled")
WALLET_STATES = {
    "INITIATED",
    "WALLET_POPUP_OPENED",
    "SDK_CALLBACK_SUCCESS",
    "SDK_CALLBACK_ERROR",
    "USER_CLOSED",
    "PENDING_STATUS_CHECK",
    "PAID",
    "FAILED",
    "EXPIRED",
    "UNKNOWN_NEEDS_MANUAL_REVIEW",
}
MANUAL_REVIEW_STATE = "UNKNOWN_NEEDS_MANUAL_REVIEW"
# Gateway reference columns a PaymentResult may carry onto an order.
ORDER_GATEWAY_COLUMNS = {
    "global_transactions_id",
    "user_token",
    "reference_number",
    "benefit_track_id",
    "benefit_payment_id",
    "benefit_trans_id",
    "benefit_ref",
    "benefit_auth_resp_code",
}


class CheckoutError(Exception):
    status = 400

    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class InvalidCheckout(CheckoutError):
    status = 400


class SessionNotFound(CheckoutError):
    status = 404

    def __init__(self, message="Checkout session not found"):
        super().__init__(message)


class OrderNotFound(CheckoutError):
    status = 404

    def __init__(self, message="Order not found"):
        super().__init__(message)


class SessionClosed(CheckoutError):
    status = 409


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------

def _select_session(cur, session_id, user_id=None):
    if user_id is None:
        cur.execute("SELECT * FROM checkout_sessions WHERE id = %s", (session_id,))
    else:
        cur.execute(
            "SELECT * FROM checkout_sessions WHERE id = %s AND user_id = %s",
            (session_id, user_id),
        )
    return cur.fetchone()


def _select_order_items(cur, order_id) -> list:
    cur.execute(
        """
        SELECT product_id, name, price, quantity, image
        FROM order_items
        WHERE order_id = %s
        ORDER BY name
        """,
        (order_id,),
    )
    return list(cur.fetchall())


def _stock_lines(rows) -> list:
    return [
        {"productId": row.get("productId") or row.get("product_id"), "quantity": int(row["quantity"])}
        for row in rows
    ]


def _order_columns(fields) -> dict:
    return {key: value for key, value in (fields or {}).items() if key in ORDER_GATEWAY_COLUMNS}


def _parse_paid_on(value, default: datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        return default
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return default
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed.replace(microsecond=0)


def _require_shipping_address(shipping_address):
    if not shipping_address:
        raise InvalidCheckout("Shipping address is required")
    if isinstance(shipping_address, str):
        return shipping_address.strip()
    if not isinstance(shipping_address, dict):
        raise InvalidCheckout("Shipping address must be an object")
    return shipping_address


def _price_items(cur, items):
    """Snapshot name, price and image from the catalogue; client prices are ignored."""
    priced = []
    total = Decimal("0")
    for item in items:
        cur.execute(
            "SELECT id, name, price, image FROM products WHERE id = %s",
            (item["productId"],),
        )
        product = cur.fetchone()
        if product is None:
            raise InvalidCheckout(f"Product not found: {item['productId']}")
        price = to_decimal(product["price"])
        total += price * item["quantity"]
        priced.append(
            {
                "productId": item["productId"],
                "quantity": item["quantity"],
                "name": product["name"],
                "price": float(price),
                "image": product.get("image") or item.get("image") or "",
            }
        )
    return priced, total


def _insert_order(cur, values: dict, items: list) -> str:
    order_id = str(uuid.uuid4())
    values = dict(values, id=order_id)
    columns = ", ".join(values)
    placeholders = ", ".join(["%s"] * len(values))
    cur.execute(
        f"INSERT INTO orders ({columns}) VALUES ({placeholders})",
        tuple(values.values()),
    )
    for item in items:
        cur.execute(
            """
            INSERT INTO order_items (id, order_id, product_id, name, price, quantity, image)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                str(uuid.uuid4()),
                order_id,
                item["productId"],
                item.get("name") or "",
                to_decimal(item.get("price")),
                int(item["quantity"]),
                item.get("image") or None,
            ),
        )
    return order_id


def _order_from_session(cur, session: dict, payment, now: datetime) -> str:
    paid = payment is not None and payment.outcome == PAID
    values = {
        "user_id": session["user_id"],
        "checkout_session_id": session["id"],
        "total": to_decimal(session["total"]),
        "status": "pending",
        "payment_status": "paid" if paid else "unpaid",
        "payment_method": session["payment_method"],
        "shipping_address": session["shipping_address"],
        "inventory_status": "sold",
        "inventory_reserved_at": session.get("inventory_reserved_at") or now,
        "paid_on": _parse_paid_on(payment.paid_on, now) if paid else None,
        "global_transactions_id": session.get("global_transactions_id"),
        "user_token": session.get("user_token"),
        "reference_number": session.get("reference_number"),
        "payment_raw_response": dumps_json(payment.raw) if payment is not None and payment.raw else None,
        "created_at": now,
        "updated_at": now,
    }
    if payment is not None:
        values.update(_order_columns(payment.fields))
    order_id = _insert_order(cur, values, loads_json(session["items"], []))
    cur.execute(
        "UPDATE checkout_sessions SET order_id = %s, updated_at = %s WHERE id = %s",
        (order_id, now, session["id"]),
    )
    return order_id


def _notify_order_created(conn, order_id) -> None:
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT o.total, o.shipping_address, u.phone
                FROM orders o LEFT JOIN users u ON u.id = o.user_id
                WHERE o.id = %s
                """,
                (order_id,),
            )
            row = cur.fetchone()
        conn.commit()
    except Exception:
        logger.exception("[Checkout] Could not load contact details for order %s", order_id)
        return
    if not row:
        return
    address = loads_json(row.get("shipping_address"), {})
    phone = (address.get("phone") if isinstance(address, dict) else None) or row.get("phone")
    sms.send_order_confirmation_sms(phone, order_id, row["total"], config.CURRENCY)


# ---------------------------------------------------------------------------
# Checkout sessions
# ---------------------------------------------------------------------------

def create_session(conn, user_id, items, shipping_address, total, payment_method, now=None) -> dict:
    now = now or utcnow()
    if payment_method not in SESSION_PAYMENT_METHODS:
        raise InvalidCheckout(
            f"Invalid payment method. Must be one of: {', '.join(sorted(SESSION_PAYMENT_METHODS))}"
        )
    shipping_address = _require_shipping_address(shipping_address)
    try:
        client_total = to_decimal(total)
    except ValueError as exc:
        raise InvalidCheckout("Invalid total amount") from exc
    if client_total <= 0:
        raise InvalidCheckout("Invalid total amount")
    try:
        merged = merge_items(items)
    except ValueError as exc:
        raise InvalidCheckout(str(exc)) from exc

    session_id = str(uuid.uuid4())
    expires_at = now + timedelta(minutes=config.CHECKOUT_SESSION_MINUTES)
    try:
        with conn.cursor() as cur:
            priced, server_total = _price_items(cur, merged)
            if abs(client_total - server_total) > Decimal(str(config.TOTAL_TOLERANCE)):
                raise InvalidCheckout(
                    f"Cart total mismatch: expected {server_total:.3f}, got {client_total:.3f}"
                )
            reserve_stock_batch(cur, priced)
            cur.execute(
                """
                INSERT INTO checkout_sessions
                    (id, user_id, items, shipping_address, total, payment_method, status,
                     wallet_state, inventory_reserved_at, expires_at, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, 'initiated', %s, %s, %s, %s, %s)
                """,
                (
                    session_id,
                    user_id,
                    dumps_json(priced),
                    dumps_json(shipping_address),
                    server_total,
                    payment_method,
                    "INITIATED" if payment_method == "benefitpay_wallet" else None,
                    now,
                    expires_at,
                    now,
                    now,
                ),
            )
            session = _select_session(cur, session_id)
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info(
        "[Checkout] Created session %s for user %s (%s, %s items)",
        session_id, user_id, payment_method, len(priced),
    )
    if payment_method != "cod":
        return {"session": session, "order": None}

    order = convert_session_to_order(conn, session, None, now)
    return {"session": get_session(conn, session_id, user_id), "order": order}


def get_session(conn, session_id, user_id) -> dict:
    with conn.cursor() as cur:
        session = _select_session(cur, session_id, user_id)
    conn.commit()
    if session is None:
        raise SessionNotFound()
    return session


def convert_session_to_order(conn, session, payment=None, now=None) -> dict:
    """Turn an initiated session into its single order.

    ``payment`` is the gateway result that confirmed the money; ``None``
    means cash on delivery and the order is created unpaid.
    """
    now = now or utcnow()
    session_id = session["id"]
    raw = dumps_json(payment.raw) if payment is not None and payment.raw else None
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE checkout_sessions
                SET status = 'paid',
                    wallet_state = CASE WHEN wallet_state IS NULL THEN NULL ELSE 'PAID' END,
                    payment_raw_response = COALESCE(%s, payment_raw_response),
                    updated_at = %s
                WHERE id = %s AND status = 'initiated'
                """,
                (raw, now, session_id),
            )
            claimed = cur.rowcount == 1
            if claimed:
                order_id = _order_from_session(cur, _select_session(cur, session_id), payment, now)
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    if claimed:
        logger.info("[Checkout] Session %s converted to order %s", session_id, order_id)
        _notify_order_created(conn, order_id)
        return get_order(conn, order_id)

    current = _reload_session(conn, session_id)
    if current["status"] == "paid" and current.get("order_id"):
        logger.info("[Checkout] Session %s already converted to %s", session_id, current["order_id"])
        return get_order(conn, current["order_id"])
    if current["status"] in CLOSED_SESSION_STATUSES and payment is not None and payment.outcome == PAID:
        return recover_late_payment(conn, current, payment, now)
    raise SessionClosed(f"Checkout session is {current['status']}")


def _reload_session(conn, session_id) -> dict:
    with conn.cursor() as cur:
        current = _select_session(cur, session_id)
    conn.commit()
    if current is None:
        raise SessionNotFound()
    return current


def recover_late_payment(conn, session, payment, now=None) -> dict:
    """A confirmed payment for a session the cleanup job already closed."""
    now = now or utcnow()
    session_id = session["id"]
    items = _stock_lines(loads_json(session["items"], []))
    raw = dumps_json(payment.raw) if payment.raw else None
    logger.warning(
        "[Checkout] Late payment for %s session %s, re-reserving stock",
        session["status"], session_id,
    )
    try:
        with conn.cursor() as cur:
            reserve_stock_batch(cur, items)
            cur.execute(
                """
                UPDATE checkout_sessions
                SET status = 'paid',
                    inventory_reserved_at = %s,
                    payment_raw_response = COALESCE(%s, payment_raw_response),
                    updated_at = %s
                WHERE id = %s
                  AND status IN ('expired', 'failed', 'cancelled')
                  AND order_id IS NULL
                """,
                (now, raw, now, session_id),
            )
            claimed = cur.rowcount == 1
            if claimed:
                order_id = _order_from_session(cur, _select_session(cur, session_id), payment, now)
        if claimed:
            conn.commit()
        else:
            conn.rollback()
    except StockReservationError as exc:
        conn.rollback()
        _flag_for_review(conn, session_id, raw, now)
        logger.error(
            "[Checkout] Paid session %s cannot be fulfilled, flagged for review: %s",
            session_id, exc,
        )
        raise SessionClosed(
            "Payment received after the session expired and the stock is no longer "
            "available. The payment has been flagged for manual review."
        ) from exc
    except Exception:
        conn.rollback()
        raise

    if not claimed:
        current = _reload_session(conn, session_id)
        if current["status"] == "paid" and current.get("order_id"):
            return get_order(conn, current["order_id"])
        raise SessionClosed(f"Checkout session is {current['status']}")

    logger.info("[Checkout] Late payment for session %s recovered as order %s", session_id, order_id)
    _notify_order_created(conn, order_id)
    return get_order(conn, order_id)


def _flag_for_review(conn, session_id, raw, now) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE checkout_sessions
            SET wallet_state = %s,
                payment_raw_response = COALESCE(%s, payment_raw_response),
                updated_at = %s
            WHERE id = %s
            """,
            (MANUAL_REVIEW_STATE, raw, now, session_id),
        )
    conn.commit()


def _close_session(conn, session_id, status, now, raw=None) -> bool:
    """Move an initiated session to a terminal status and give its stock back.

    The release is claimed together with the status change; a caller that
    loses the race releases nothing.
    """
    try:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE checkout_sessions
                SET status = %s,
                    inventory_released_at = %s,
                    payment_raw_response = COALESCE(%s, payment_raw_response),
                    updated_at = %s
                WHERE id = %s AND status = 'initiated' AND inventory_released_at IS NULL
                """,
                (status, now, dumps_json(raw) if raw else None, now, session_id),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return False
            session = _select_session(cur, session_id)
            errors = []
            if session.get("inventory_reserved_at"):
                errors = release_stock_batch(cur, _stock_lines(loads_json(session["items"], [])))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    if errors:
        logger.error("[Checkout] Session %s released with errors: %s", session_id, errors)
    logger.info("[Checkout] Session %s marked %s and stock released", session_id, status)
    return True


def fail_session(conn, session_id, status=FAILED, now=None, raw=None) -> bool:
    if status not in (FAILED, CANCELLED):
        raise ValueError(f"Cannot fail a session with status {status!r}")
    return _close_session(conn, session_id, status, now or utcnow(), raw)


def apply_gateway_result(conn, session, result: PaymentResult, now=None) -> dict:
    now = now or utcnow()
    if result.outcome == PAID:
        order = convert_session_to_order(conn, session, result, now)
        return {
            "success": True,
            "pending": False,
            "orderId": order["id"],
            "message": result.message or "Payment confirmed",
        }
    if result.outcome == PENDING:
        return {
            "success": False,
            "pending": True,
            "orderId": None,
            "message": result.message or "Payment is still being processed",
        }

    if not fail_session(conn, session["id"], result.outcome, now, raw=result.raw):
        current = _reload_session(conn, session["id"])
        if current["status"] == "paid" and current.get("order_id"):
            # Another path confirmed the payment first.
            return {
                "success": True,
                "pending": False,
                "orderId": current["order_id"],
                "message": "Payment already processed",
            }
    return {
        "success": False,
        "pending": False,
        "orderId": None,
        "message": result.message or "Payment failed",
    }


def complete_session(conn, session_id, user_id, global_transactions_id=None, client=None, now=None) -> dict:
    """Return-URL flow for EazyPay: ask the gateway, then reconcile."""
    session = get_session(conn, session_id, user_id)
    if session["status"] == "paid" and session.get("order_id"):
        return {
            "success": True,
            "pending": False,
            "orderId": session["order_id"],
            "message": "Payment already processed",
        }

    gid = global_transactions_id or session.get("global_transactions_id")
    if not gid:
        raise InvalidCheckout("globalTransactionsId is required")

    client = client or EazyPayClient()
    result = result_from_query(client.query_transaction(gid))
    logger.info("[Checkout] EazyPay reports %s for session %s", result.outcome, session_id)

    if not session.get("global_transactions_id"):
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE checkout_sessions SET global_transactions_id = %s
                WHERE id = %s AND global_transactions_id IS NULL
                """,
                (gid, session_id),
            )
        conn.commit()
        session["global_transactions_id"] = gid
    return apply_gateway_result(conn, session, result, now)


def attach_invoice(conn, session_id, global_transactions_id, user_token=None, now=None) -> None:
    now = now or utcnow()
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE checkout_sessions
            SET global_transactions_id = %s, user_token = %s, updated_at = %s
            WHERE id = %s
            """,
            (global_transactions_id, user_token, now, session_id),
        )
    conn.commit()


def find_session_by_transaction(conn, global_transactions_id, user_id=None):
    with conn.cursor() as cur:
        if user_id is None:
            cur.execute(
                "SELECT * FROM checkout_sessions WHERE global_transactions_id = %s",
                (global_transactions_id,),
            )
        else:
            cur.execute(
                "SELECT * FROM checkout_sessions WHERE global_transactions_id = %s AND user_id = %s",
                (global_transactions_id, user_id),
            )
        row = cur.fetchone()
    conn.commit()
    return row


def update_wallet_state(conn, session_id, user_id, state, previous_state=None, now=None) -> dict:
    now = now or utcnow()
    if state not in WALLET_STATES:
        raise InvalidCheckout(f"Invalid wallet state. Must be one of: {', '.join(sorted(WALLET_STATES))}")
    session = get_session(conn, session_id, user_id)
    if previous_state and session.get("wallet_state") != previous_state:
        logger.warning(
            "[Checkout] Wallet state mismatch for %s: expected %s, found %s",
            session_id, previous_state, session.get("wallet_state"),
        )
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE checkout_sessions SET wallet_state = %s, updated_at = %s WHERE id = %s",
            (state, now, session_id),
        )
        session = _select_session(cur, session_id)
    conn.commit()
    logger.info("[Checkout] Wallet state for %s is now %s", session_id, state)
    return session


def start_wallet_payment(
    conn,
    session_id,
    user_id,
    show_result=True,
    hide_mobile_qr=False,
    qr_timeout=300,
    credentials=None,
    now=None,
) -> dict:
    """Sign the InApp SDK parameters and remember the reference for the status check."""
    now = now or utcnow()
    session = get_session(conn, session_id, user_id)
    if session["payment_method"] != "benefitpay_wallet":
        raise InvalidCheckout("Checkout session is not a BenefitPay wallet payment")
    if session["status"] != "initiated":
        raise SessionClosed(f"Cannot initialize payment for session with status: {session['status']}")

    credentials = credentials or load_wallet_credentials()
    reference_number = new_reference_number(session_id)
    signed = signed_sdk_params(
        credentials, reference_number, session["total"], show_result, hide_mobile_qr, qr_timeout
    )
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE checkout_sessions SET reference_number = %s, updated_at = %s
            WHERE id = %s AND status = 'initiated'
            """,
            (reference_number, now, session_id),
        )
        stored = cur.rowcount == 1
    conn.commit()
    if not stored:
        raise SessionClosed("Checkout session is no longer open")
    logger.info("[Checkout] Wallet payment %s started for session %s", reference_number, session_id)
    return {"signedParams": signed, "referenceNumber": reference_number}


def check_wallet_status(conn, session_id, user_id, reference_number, client=None, now=None) -> dict:
    now = now or utcnow()
    if not reference_number:
        raise InvalidCheckout("Reference number and session ID are required")
    session = get_session(conn, session_id, user_id)
    if not session.get("reference_number"):
        raise InvalidCheckout("Wallet payment has not been started for this session")
    if session["reference_number"] != reference_number:
        logger.warning("[Checkout] Reference %s does not belong to session %s", reference_number, session_id)
        raise InvalidCheckout("Reference number does not match this checkout session")
    if session["status"] == "paid" and session.get("order_id"):
        return {
            "success": True,
            "status": "paid",
            "orderId": session["order_id"],
            "message": "Payment already processed",
        }
    if session["status"] in (FAILED, CANCELLED):
        return {"success": False, "status": "failed", "message": "Payment previously failed"}

    client = client or WalletClient()
    result = result_from_status(client.check_status(reference_number))
    logger.info("[Checkout] BenefitPay reports %s for session %s", result.outcome, session_id)

    outcome = apply_gateway_result(conn, session, result, now)
    if outcome["success"]:
        outcome["status"] = "paid"
    elif outcome["pending"]:
        outcome["status"] = "pending"
    else:
        outcome["status"] = "failed"
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE checkout_sessions SET wallet_state = 'FAILED' WHERE id = %s AND wallet_state IS NOT NULL",
                (session_id,),
            )
        conn.commit()
    return outcome


def expire_sessions(conn, now=None, limit=200) -> dict:
    now = now or utcnow()
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id FROM checkout_sessions
            WHERE status = 'initiated' AND expires_at < %s AND inventory_released_at IS NULL
            ORDER BY expires_at
            LIMIT %s
            """,
            (now, int(limit)),
        )
        rows = cur.fetchall()
    conn.commit()

    processed = 0
    errors = []
    for row in rows:
        try:
            if _close_session(conn, row["id"], "expired", now):
                processed += 1
        except Exception as exc:
            logger.exception("[Cleanup] Failed to expire session %s", row["id"])
            errors.append({"sessionId": row["id"], "error": str(exc)})
    if rows:
        logger.info("[Cleanup] Expired %s of %s checkout sessions", processed, len(rows))
    return {"processed": processed, "total": len(rows), "errors": errors}


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

def get_order(conn, order_id, user_id=None) -> dict:
    with conn.cursor() as cur:
        if user_id is None:
            cur.execute("SELECT * FROM orders WHERE id = %s", (order_id,))
        else:
            cur.execute("SELECT * FROM orders WHERE id = %s AND user_id = %s", (order_id, user_id))
        order = cur.fetchone()
        if order is not None:
            order["items"] = _select_order_items(cur, order_id)
    conn.commit()
    if order is None:
        raise OrderNotFound()
    return order


def place_order(conn, user_id, items, shipping_address, payment_method, now=None) -> dict:
    """Order-first flow: the order exists before any money moves."""
    now = now or utcnow()
    if payment_method not in ORDER_PAYMENT_METHODS:
        raise InvalidCheckout(
            f"Invalid payment method. Must be one of: {', '.join(sorted(ORDER_PAYMENT_METHODS))}"
        )
    shipping_address = _require_shipping_address(shipping_address)
    try:
        merged = merge_items(items)
    except ValueError as exc:
        raise InvalidCheckout(str(exc)) from exc

    cod = payment_method == "cod"
    try:
        with conn.cursor() as cur:
            priced, total = _price_items(cur, merged)
            reserve_stock_batch(cur, priced)
            order_id = _insert_order(
                cur,
                {
                    "user_id": user_id,
                    "total": total,
                    "status": "pending",
                    "payment_status": "unpaid",
                    "payment_method": payment_method,
                    "shipping_address": dumps_json(shipping_address),
                    "inventory_status": "sold" if cod else "reserved",
                    "inventory_reserved_at": now,
                    "reservation_expires_at": (
                        None if cod else now + timedelta(minutes=config.ORDER_RESERVATION_MINUTES)
                    ),
                    "created_at": now,
                    "updated_at": now,
                },
                priced,
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise

    logger.info("[Orders] Created %s order %s for user %s", payment_method, order_id, user_id)
    if cod:
        _notify_order_created(conn, order_id)
    return get_order(conn, order_id)


def mark_order_paid(conn, order_id, fields=None, now=None, raw=None) -> bool:
    """Record a confirmed payment on an order. False if it was already paid."""
    now = now or utcnow()
    extra = _order_columns(fields)
    assignments = ["payment_status = 'paid'", "paid_on = %s", "updated_at = %s"]
    params = [now, now]
    if raw:
        assignments.append("payment_raw_response = %s")
        params.append(dumps_json(raw))
    for column, value in extra.items():
        assignments.append(f"{column} = %s")
        params.append(value)

    try:
        with conn.cursor() as cur:
            cur.execute(
                f"UPDATE orders SET {', '.join(assignments)} WHERE id = %s AND payment_status = 'unpaid'",
                tuple(params) + (order_id,),
            )
            if cur.rowcount != 1:
                cur.execute("SELECT id FROM orders WHERE id = %s", (order_id,))
                exists = cur.fetchone() is not None
                conn.rollback()
                if not exists:
                    raise OrderNotFound()
                logger.info("[Orders] Order %s already paid", order_id)
                return False

            if not convert_reserved_to_sold(cur, order_id, now):
                cur.execute("SELECT inventory_status FROM orders WHERE id = %s", (order_id,))
                if cur.fetchone()["inventory_status"] == "released":
                    _reinstate_order(cur, order_id, now)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.info("[Orders] Order %s marked paid", order_id)
    return True


def _reinstate_order(cur, order_id, now) -> None:
    """The reservation expired before the money arrived; try to take the stock again."""
    lines = _stock_lines(_select_order_items(cur, order_id))
    try:
        reserve_stock_batch(cur, lines)
    except StockReservationError as exc:
        cur.execute(
            "UPDATE orders SET needs_review = 1, updated_at = %s WHERE id = %s",
            (now, order_id),
        )
        logger.error("[Orders] Paid order %s cannot be restocked, needs review: %s", order_id, exc)
        return
    cur.execute(
        """
        UPDATE orders
        SET status = 'pending', inventory_status = 'sold', reservation_expires_at = NULL, updated_at = %s
        WHERE id = %s
        """,
        (now, order_id),
    )
    logger.warning("[Orders] Paid order %s reinstated after its reservation expired", order_id)


def _release_order(conn, order_id, now, cancel: bool) -> bool:
    status_clause = "status = 'cancelled', " if cancel else ""
    try:
        with conn.cursor() as cur:
            cur.execute(
                f"""
                UPDATE orders
                SET {status_clause}inventory_status = 'released',
                    inventory_released_at = %s,
                    updated_at = %s
                WHERE id = %s
                  AND payment_status = 'unpaid'
                  AND inventory_status IN ('reserved', 'sold')
                  AND inventory_released_at IS NULL
                """,
                (now, now, order_id),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return False
            errors = release_stock_batch(cur, _stock_lines(_select_order_items(cur, order_id)))
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    if errors:
        logger.error("[Orders] Order %s released with errors: %s", order_id, errors)
    return True


def expire_reservations(conn, now=None, limit=200) -> dict:
    now = now or utcnow()
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id FROM orders
            WHERE payment_status = 'unpaid'
              AND inventory_status = 'reserved'
              AND reservation_expires_at < %s
              AND inventory_released_at IS NULL
            ORDER BY reservation_expires_at
            LIMIT %s
            """,
            (now, int(limit)),
        )
        rows = cur.fetchall()
    conn.commit()

    processed = 0
    errors = []
    for row in rows:
        try:
            if _release_order(conn, row["id"], now, cancel=True):
                processed += 1
        except Exception as exc:
            logger.exception("[Cleanup] Failed to release reservation for order %s", row["id"])
            errors.append({"orderId": row["id"], "error": str(exc)})
    if rows:
        logger.info("[Cleanup] Released %s of %s expired reservations", processed, len(rows))
    return {"processed": processed, "total": len(rows), "errors": errors}


def mark_cod_paid(conn, order_id, now=None) -> dict:
    now = now or utcnow()
    order = get_order(conn, order_id)
    if order["payment_method"] != "cod":
        raise InvalidCheckout("Only cash on delivery orders can be marked as paid")
    if order["payment_status"] == "paid":
        raise InvalidCheckout("Order is already paid")
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE orders SET payment_status = 'paid', paid_on = %s, updated_at = %s
            WHERE id = %s AND payment_status = 'unpaid'
            """,
            (now, now, order_id),
        )
        updated = cur.rowcount == 1
    conn.commit()
    if not updated:
        raise InvalidCheckout("Order is already paid")
    logger.info("[Admin] COD order %s marked paid", order_id)
    return get_order(conn, order_id)


def _restore_released_order(conn, order_id, status, now) -> None:
    """Take the stock again for an order whose reservation was already released."""
    try:
        with conn.cursor() as cur:
            reserve_stock_batch(cur, _stock_lines(_select_order_items(cur, order_id)))
            cur.execute(
                """
                UPDATE orders
                SET status = %s, inventory_status = 'sold', inventory_released_at = NULL,
                    reservation_expires_at = NULL, updated_at = %s
                WHERE id = %s AND inventory_status = 'released'
                """,
                (status, now, order_id),
            )
            if cur.rowcount != 1:
                raise SessionClosed("Order changed while its status was being updated")
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    logger.warning("[Admin] Order %s restored from released stock as %s", order_id, status)


def update_order_status(conn, order_id, status, now=None) -> dict:
    now = now or utcnow()
    if status not in ORDER_STATUSES:
        raise InvalidCheckout(f"Invalid status. Must be one of: {', '.join(sorted(ORDER_STATUSES))}")
    order = get_order(conn, order_id)
    if order["inventory_status"] == "released" and status != "cancelled":
        # Raises StockReservationError when the goods have been sold since.
        _restore_released_order(conn, order_id, status, now)
    else:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE orders SET status = %s, updated_at = %s WHERE id = %s",
                (status, now, order_id),
            )
        conn.commit()
    if status == "cancelled" and order["payment_status"] == "unpaid":
        if _release_order(conn, order_id, now, cancel=False):
            logger.info("[Admin] Cancelled order %s, stock returned", order_id)
    logger.info("[Admin] Order %s status %s -> %s", order_id, order["status"], status)
    return get_order(conn, order_id)


def list_user_orders(conn, user_id) -> list:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT * FROM orders WHERE user_id = %s ORDER BY created_at DESC",
            (user_id,),
        )
        orders = list(cur.fetchall())
        for order in orders:
            order["items"] = _select_order_items(cur, order["id"])
    conn.commit()
    return orders


def find_order_by_transaction(conn, global_transactions_id):
    with conn.cursor() as cur:
        cur.execute(
            "SELECT * FROM orders WHERE global_transactions_id = %s LIMIT 1",
            (global_transactions_id,),
        )
        row = cur.fetchone()
    conn.commit()
    return row


# ---------------------------------------------------------------------------
# Gateway flows
# ---------------------------------------------------------------------------

def handle_eazypay_webhook(conn, payload: dict, now=None) -> str:
    """Apply a signature-checked EazyPay notification; returns the acknowledgement text."""
    gid = str(payload["globalTransactionsId"])
    is_paid = payload.get("isPaid") is True
    session = find_session_by_transaction(conn, gid)
    if session is not None:
        if session["status"] == "paid" and session.get("order_id"):
            return "Order already processed"
        if not is_paid:
            # Not a final answer; the expiry job returns the stock if nothing follows.
            logger.info("[EazyPay Webhook] Unpaid notification for session %s", session["id"])
            return "Webhook processed successfully"
        result = PaymentResult(
            PAID,
            raw=payload,
            message="Payment confirmed",
            fields={"global_transactions_id": gid},
        )
        try:
            apply_gateway_result(conn, session, result, now)
        except SessionClosed:
            if _reload_session(conn, session["id"]).get("wallet_state") != MANUAL_REVIEW_STATE:
                raise
            return "Payment flagged for manual review"
        return "Webhook processed successfully"

    order = find_order_by_transaction(conn, gid)
    if order is None:
        logger.warning("[EazyPay Webhook] No session or order for %s", gid)
        return "Order not found"
    if order["payment_status"] == "paid":
        return "Order already processed"
    if is_paid:
        mark_order_paid(conn, order["id"], now=now, raw=payload)
    return "Webhook processed successfully"


def query_eazypay(conn, user_id, session_id=None, global_transactions_id=None, client=None, now=None) -> dict:
    if session_id:
        return complete_session(conn, session_id, user_id, global_transactions_id, client, now)
    if not global_transactions_id:
        raise InvalidCheckout("sessionId or globalTransactionsId is required")

    session = find_session_by_transaction(conn, global_transactions_id, user_id)
    if session is not None:
        return complete_session(conn, session["id"], user_id, global_transactions_id, client, now)

    order = find_order_by_transaction(conn, global_transactions_id)
    if order is None or order["user_id"] != user_id:
        raise OrderNotFound()
    client = client or EazyPayClient()
    result = result_from_query(client.query_transaction(global_transactions_id))
    if result.outcome == PAID:
        mark_order_paid(conn, order["id"], result.fields, now, raw=result.raw)
    return {
        "success": result.outcome == PAID,
        "pending": result.outcome == PENDING,
        "orderId": order["id"],
        "message": result.message,
    }


def start_benefit_payment(conn, order_id, user_id, response_url, error_url, client=None, token_id=None) -> dict:
    order = get_order(conn, order_id, user_id)
    if order["payment_status"] == "paid":
        raise InvalidCheckout("Order is already paid")
    if order["inventory_status"] == "released" or order["status"] == "cancelled":
        raise SessionClosed("Order reservation has expired, please place the order again")

    token = None
    if token_id is not None:
        if not config.BENEFIT_FASTER_CHECKOUT_ENABLED:
            raise CheckoutError("Faster Checkout feature is not enabled", status=403)
        token = benefit.get_token_for_user(conn, token_id, user_id)
        if token is None:
            raise CheckoutError("Saved card not found", status=404)

    client = client or benefit.BenefitClient()
    track_id = str(order["id"])
    payment = client.init_payment(track_id, order["total"], response_url, error_url, token=token)
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE orders SET benefit_track_id = %s, benefit_payment_id = %s, updated_at = %s
            WHERE id = %s
            """,
            (track_id, payment.get("paymentId"), utcnow(), order_id),
        )
    conn.commit()
    logger.info("[BENEFIT] Payment page created for order %s%s", order_id, " with saved card" if token else "")
    return {"paymentUrl": payment["paymentUrl"], "paymentId": payment.get("paymentId"), "trackId": track_id}


def _trans_id_owner(conn, trans_id, order_id):
    with conn.cursor() as cur:
        cur.execute(
            "SELECT id FROM orders WHERE benefit_trans_id = %s AND id <> %s LIMIT 1",
            (str(trans_id), order_id),
        )
        row = cur.fetchone()
    conn.commit()
    return row["id"] if row else None


def settle_benefit_payment(conn, order_id, data: dict, user_id=None, now=None) -> dict:
    """Apply a decrypted BENEFIT response to its order.

    The response must name this order as its trackId, and its transId may not
    already be recorded on a different order.
    """
    order = get_order(conn, order_id, user_id)
    if order["payment_status"] == "paid":
        return {"success": True, "alreadyPaid": True, "message": "Order already processed"}
    result = benefit.result_from_response(data)
    if result.outcome != PAID:
        logger.info("[BENEFIT] Transaction for order %s not successful: %s", order_id, result.message)
        return {"success": False, "message": f"Payment failed: {result.message}"}
    if data.get("amt") and not benefit.amounts_match(data["amt"], order["total"]):
        logger.error(
            "[BENEFIT] Amount mismatch for order %s: gateway %s, order %s",
            order_id, data["amt"], order["total"],
        )
        return {"success": False, "message": "Payment amount mismatch"}
    if str(data.get("trackId") or "") != str(order["id"]):
        logger.error("[BENEFIT] trackId %r does not match order %s", data.get("trackId"), order_id)
        return {"success": False, "message": "Order reference mismatch"}
    if data.get("transId"):
        owner = _trans_id_owner(conn, data["transId"], order["id"])
        if owner is not None:
            logger.error(
                "[BENEFIT] transId %s already recorded on order %s, refusing it for %s",
                data["transId"], owner, order_id,
            )
            return {"success": False, "message": "Transaction already used for another order"}

    marked = mark_order_paid(conn, order_id, result.fields, now, raw=data)
    if marked and config.BENEFIT_FASTER_CHECKOUT_ENABLED:
        token = benefit.extract_token(data)
        if token:
            try:
                benefit.store_payment_token(
                    conn, order["user_id"], token, data.get("paymentId"), order_id, data, now or utcnow()
                )
            except Exception:
                conn.rollback()
                logger.exception("[BENEFIT] Token storage failed for order %s", order_id)
    if marked:
        _notify_order_created(conn, order_id)
    return {
        "success": True,
        "alreadyPaid": not marked,
        "message": "Payment processed successfully",
        "transactionDetails": {
            "transId": data.get("transId"),
            "ref": data.get("ref"),
            "authRespCode": data.get("authRespCode"),
        },
    }


def mark_benefit_failed(conn, order_id, user_id) -> dict:
    order = get_order(conn, order_id, user_id)
    if order["payment_status"] == "paid":
        return {"success": True, "message": "Order already paid"}
    # The order stays unpaid and reserved so the customer can retry until it expires.
    logger.info("[BENEFIT] Payment attempt failed for order %s", order_id)
    return {"success": True, "message": "Order marked as failed"}
