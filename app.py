import hmac
import logging
import os
import secrets
import time
import uuid
from functools import wraps
from logging.handlers import RotatingFileHandler
from urllib.parse import urlencode

from authlib.integrations.flask_client import OAuth
from flask import Flask, jsonify, redirect, request, session, url_for
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix

import benefit
import checkout
import config
from checkout import CheckoutError, OrderNotFound
from db import camelize, get_db_connection, utcnow
from eazypay import EazyPayClient, verify_webhook_signature
from gateway import GatewayError
from inventory import StockReservationError

app = Flask(__name__)


app.secret_key = os.getenv("FLASK_SECRET_KEY")
if not app.secret_key:
    raise RuntimeError("FLASK_SECRET_KEY is required.")

app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

os.makedirs(config.LOG_DIR, exist_ok=True)
log_path = os.path.join(config.LOG_DIR, "app.log")
handler = RotatingFileHandler(log_path, maxBytes=2_000_000, backupCount=3)
handler.setLevel(config.LOG_LEVEL)
handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
# Service modules log through their own loggers; the root logger collects them all.
logging.getLogger().addHandler(handler)
logging.getLogger().setLevel(config.LOG_LEVEL)
app.logger.setLevel(config.LOG_LEVEL)

_rate_store = {}

app.config["SESSION_COOKIE_HTTPONLY"] = True
app.config["SESSION_COOKIE_SAMESITE"] = "Lax"
app.config["SESSION_COOKIE_SECURE"] = os.getenv("FLASK_SESSION_SECURE", "0") == "1"

oauth = OAuth(app)
oauth.register(
    name="google",
    client_id=os.getenv("GOOGLE_CLIENT_ID"),
    client_secret=os.getenv("GOOGLE_CLIENT_SECRET"),
    server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
    client_kwargs={"scope": "openid email profile"},
)

# Gateways and the scheduler authenticate by signature, payload or secret.
CSRF_EXEMPT_PATHS = {
    "/api/payments/eazypay/webhook",
    "/api/payments/benefit/notify",
    "/api/payments/benefit/callback",
    "/api/payments/benefit/callback-error",
}
CSRF_EXEMPT_PREFIXES = ("/api/cron/",)


def generate_csrf_token():
    token = session.get("_csrf_token")
    if not token:
        token = secrets.token_urlsafe(32)
        session["_csrf_token"] = token
    return token


def _client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def _error_response(message, status, error=None, **extra):
    return jsonify(ok=False, error=error or message, message=message, status=status, **extra), status


def rate_limit(key: str):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
                return view(*args, **kwargs)
            limit, window = config.RATE_LIMITS.get(key, (10, 60))
            now = time.time()
            bucket_key = f"{key}:{_client_ip()}"
            bucket = _rate_store.get(bucket_key, [])
            bucket = [t for t in bucket if now - t < window]
            if len(bucket) >= limit:
                _rate_store[bucket_key] = bucket
                app.logger.warning("Rate limit %s hit by %s", key, _client_ip())
                return _error_response("Too many requests. Please slow down.", 429, "Too Many Requests")
            bucket.append(now)
            _rate_store[bucket_key] = bucket
            return view(*args, **kwargs)
        return wrapped
    return decorator


def _cron_authorized() -> bool:
    if not config.CRON_SECRET:
        return False
    token = request.headers.get("X-Task-Secret") or request.args.get("token", "")
    auth_header = request.headers.get("Authorization", "")
    if not token and auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
    return bool(token and hmac.compare_digest(str(token), str(config.CRON_SECRET)))


@app.before_request
def csrf_protect():
    if request.method not in ("POST", "PUT", "PATCH", "DELETE"):
        return None
    if request.path in CSRF_EXEMPT_PATHS or request.path.startswith(CSRF_EXEMPT_PREFIXES):
        return None
    token = request.headers.get("X-CSRF-Token") or request.headers.get("X-CSRFToken")
    session_token = session.get("_csrf_token", "")
    if not token or not session_token or not hmac.compare_digest(str(token), str(session_token)):
        app.logger.warning("CSRF blocked: %s %s from %s", request.method, request.path, _client_ip())
        return _error_response("Invalid CSRF token.", 400, "Bad Request")
    return None


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get("user_id"):
            return _error_response("Authentication required", 401, "Unauthorized")
        return view(*args, **kwargs)
    return wrapped


def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if not session.get("user_id"):
            return _error_response("Authentication required", 401, "Unauthorized")
        if not session.get("is_admin"):
            return _error_response("Admin access required", 403, "Forbidden")
        return view(*args, **kwargs)
    return wrapped


@app.errorhandler(CheckoutError)
def handle_checkout_error(exc):
    app.logger.info("Checkout error %s on %s: %s", exc.status, request.path, exc.message)
    return _error_response(exc.message, exc.status, type(exc).__name__)


@app.errorhandler(StockReservationError)
def handle_stock_error(exc):
    app.logger.info("Stock reservation failed on %s: %s", request.path, exc)
    return _error_response(str(exc), 409, "StockReservationError", errors=exc.errors)


@app.errorhandler(GatewayError)
def handle_gateway_error(exc):
    app.logger.error("Gateway error %s on %s: %s", exc.status, request.path, exc.message)
    return _error_response(exc.message, exc.status, "GatewayError")


@app.errorhandler(Exception)
def handle_exception(exc):
    if isinstance(exc, HTTPException):
        app.logger.warning("HTTP error %s: %s", exc.code, exc)
        return _error_response(
            exc.description or "We couldn't complete your request.", exc.code, exc.name
        )
    app.logger.exception("Unhandled error: %s", exc)
    return _error_response(
        "Service temporarily unavailable. Please try again later.", 500, "Internal Server Error"
    )


def _json_body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise checkout.InvalidCheckout("Request body must be a JSON object")
    return body


def _order_json(order):
    if not order:
        return None
    data = camelize({k: v for k, v in order.items() if k != "items"})
    data["items"] = [camelize(item) for item in order.get("items", [])]
    return data


def _client_redirect(path: str, **params) -> str:
    query = urlencode({k: v for k, v in params.items() if v})
    return f"{config.CLIENT_URL}{path}" + (f"?{query}" if query else "")


# ---------------------------------------------------------------------------
# Checkout sessions
# ---------------------------------------------------------------------------

@app.route("/api/checkout-sessions", methods=["POST"])
@login_required
@rate_limit("checkout_session")
def create_checkout_session():
    body = _json_body()
    conn = get_db_connection()
    try:
        result = checkout.create_session(
            conn,
            session["user_id"],
            body.get("items"),
            body.get("shippingAddress"),
            body.get("total"),
            body.get("paymentMethod"),
        )
    finally:
        conn.close()
    checkout_session = camelize(result["session"])
    return jsonify(
        ok=True,
        sessionId=checkout_session["id"],
        session=checkout_session,
        order=_order_json(result["order"]),
    ), 201


@app.route("/api/checkout-sessions/update-wallet-state", methods=["POST"])
@login_required
def update_wallet_state():
    body = _json_body()
    if not body.get("sessionId") or not body.get("state"):
        raise checkout.InvalidCheckout("sessionId and state are required")
    conn = get_db_connection()
    try:
        updated = checkout.update_wallet_state(
            conn,
            body["sessionId"],
            session["user_id"],
            body["state"],
            body.get("previousState"),
        )
    finally:
        conn.close()
    return jsonify(ok=True, session=camelize(updated))


@app.route("/api/checkout-sessions/<session_id>", methods=["GET"])
@login_required
def get_checkout_session(session_id):
    conn = get_db_connection()
    try:
        checkout_session = checkout.get_session(conn, session_id, session["user_id"])
    finally:
        conn.close()
    return jsonify(ok=True, session=camelize(checkout_session))


@app.route("/api/checkout-sessions/<session_id>/complete", methods=["POST"])
@login_required
@rate_limit("payment_status")
def complete_checkout_session(session_id):
    body = _json_body()
    conn = get_db_connection()
    try:
        result = checkout.complete_session(
            conn, session_id, session["user_id"], body.get("globalTransactionsId")
        )
    finally:
        conn.close()
    return jsonify(ok=True, **result)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

@app.route("/api/orders", methods=["POST"])
@login_required
@rate_limit("place_order")
def place_order():
    body = _json_body()
    conn = get_db_connection()
    try:
        order = checkout.place_order(
            conn,
            session["user_id"],
            body.get("items"),
            body.get("shippingAddress"),
            body.get("paymentMethod") or "cod",
        )
    finally:
        conn.close()
    return jsonify(ok=True, order=_order_json(order)), 201


@app.route("/api/orders/my", methods=["GET"])
@login_required
def my_orders():
    conn = get_db_connection()
    try:
        orders = checkout.list_user_orders(conn, session["user_id"])
    finally:
        conn.close()
    return jsonify(ok=True, orders=[_order_json(order) for order in orders])


# ---------------------------------------------------------------------------
# EazyPay
# ---------------------------------------------------------------------------

@app.route("/api/payments/eazypay/create-invoice", methods=["POST"])
@login_required
@rate_limit("payment_status")
def eazypay_create_invoice():
    body = _json_body()
    session_id = body.get("sessionId")
    if not session_id:
        raise checkout.InvalidCheckout("sessionId is required")
    conn = get_db_connection()
    try:
        checkout_session = checkout.get_session(conn, session_id, session["user_id"])
        if checkout_session["status"] != "initiated":
            raise checkout.SessionClosed(f"Checkout session is {checkout_session['status']}")
        webhook_url = None
        if config.EAZYPAY_WEBHOOKS_ENABLED:
            webhook_url = url_for("eazypay_webhook", _external=True)
        invoice = EazyPayClient().create_invoice(
            invoice_id=f"SESSION_{session_id}",
            amount=checkout_session["total"],
            return_url=_client_redirect("/pay/complete", sessionId=session_id),
            webhook_url=webhook_url,
        )
        checkout.attach_invoice(
            conn, session_id, invoice.get("globalTransactionsId"), invoice.get("userToken")
        )
    finally:
        conn.close()
    app.logger.info("EazyPay invoice created for session %s", session_id)
    return jsonify(
        ok=True,
        paymentUrl=invoice["paymentUrl"],
        globalTransactionsId=invoice.get("globalTransactionsId"),
        sessionId=session_id,
    )


@app.route("/api/payments/eazypay/query", methods=["POST"])
@login_required
@rate_limit("payment_status")
def eazypay_query():
    body = _json_body()
    conn = get_db_connection()
    try:
        result = checkout.query_eazypay(
            conn,
            session["user_id"],
            session_id=body.get("sessionId"),
            global_transactions_id=body.get("globalTransactionsId"),
        )
    finally:
        conn.close()
    return jsonify(ok=True, **result)


@app.route("/api/payments/eazypay/webhook", methods=["POST"])
def eazypay_webhook():
    payload = request.get_json(silent=True) or {}
    if not (
        payload.get("timestamp")
        and payload.get("nonce")
        and payload.get("globalTransactionsId")
        and isinstance(payload.get("isPaid"), bool)
    ):
        return jsonify(message="Missing required webhook parameters"), 400
    if not config.EAZYPAY_CHECKOUT_SECRET_KEY:
        app.logger.error("EazyPay webhook received but EAZYPAY_CHECKOUT_SECRET_KEY is not set")
        return jsonify(message="Webhook configuration error"), 500
    signature = request.headers.get("Secret-Hash") or request.headers.get("X-Signature")
    if not signature:
        return jsonify(message="Missing signature"), 401
    if not verify_webhook_signature(payload, signature, config.EAZYPAY_CHECKOUT_SECRET_KEY):
        app.logger.warning("EazyPay webhook with invalid signature for %s", payload.get("globalTransactionsId"))
        return jsonify(message="Invalid signature"), 401

    conn = get_db_connection()
    try:
        message = checkout.handle_eazypay_webhook(conn, payload)
    except Exception:
        # Acknowledge anyway; the return flow and the expiry job reconcile later.
        app.logger.exception("EazyPay webhook processing failed for %s", payload.get("globalTransactionsId"))
        message = "Processing failed but acknowledged"
    finally:
        conn.close()
    return jsonify(message=message), 200


# ---------------------------------------------------------------------------
# BENEFIT hosted page
# ---------------------------------------------------------------------------

@app.route("/api/payments/benefit/init", methods=["POST"])
@login_required
@rate_limit("payment_status")
def benefit_init():
    body = _json_body()
    order_id = body.get("orderId")
    if not order_id:
        raise checkout.InvalidCheckout("orderId is required")
    conn = get_db_connection()
    try:
        payment = checkout.start_benefit_payment(
            conn,
            order_id,
            session["user_id"],
            response_url=url_for("benefit_callback", orderId=order_id, _external=True),
            error_url=url_for("benefit_callback_error", orderId=order_id, _external=True),
        )
    finally:
        conn.close()
    return jsonify(ok=True, **payment)


@app.route("/api/payments/benefit/tokens", methods=["GET"])
@login_required
def benefit_tokens():
    if not config.BENEFIT_FASTER_CHECKOUT_ENABLED:
        return jsonify(ok=True, tokens=[])
    conn = get_db_connection()
    try:
        rows = benefit.list_payment_tokens(conn, session["user_id"])
    finally:
        conn.close()
    tokens = []
    for row in rows:
        data = camelize(row)
        data["isDefault"] = bool(data.get("isDefault"))
        tokens.append(data)
    return jsonify(ok=True, tokens=tokens)


@app.route("/api/payments/benefit/init-with-token", methods=["POST"])
@login_required
@rate_limit("payment_status")
def benefit_init_with_token():
    if not config.BENEFIT_FASTER_CHECKOUT_ENABLED:
        return _error_response("Faster Checkout feature is not enabled", 403)
    body = _json_body()
    order_id = body.get("orderId")
    token_id = body.get("tokenId")
    if not order_id or token_id in (None, ""):
        raise checkout.InvalidCheckout("orderId and tokenId are required")
    conn = get_db_connection()
    try:
        payment = checkout.start_benefit_payment(
            conn,
            order_id,
            session["user_id"],
            response_url=url_for("benefit_callback", orderId=order_id, _external=True),
            error_url=url_for("benefit_callback_error", orderId=order_id, _external=True),
            token_id=token_id,
        )
    finally:
        conn.close()
    return jsonify(ok=True, **payment)


@app.route("/api/payments/benefit/process-response", methods=["POST"])
@login_required
def benefit_process_response():
    body = _json_body()
    order_id = body.get("orderId")
    trandata = body.get("trandata")
    if not order_id:
        raise checkout.InvalidCheckout("orderId is required")
    if not trandata:
        raise checkout.InvalidCheckout("trandata is required")
    try:
        data = benefit.decode_response(trandata)
    except benefit.TrandataError as exc:
        app.logger.error("BENEFIT response for %s could not be decoded: %s", order_id, exc)
        raise checkout.InvalidCheckout("Failed to decrypt payment data") from exc
    conn = get_db_connection()
    try:
        result = checkout.settle_benefit_payment(conn, order_id, data, user_id=session["user_id"])
    finally:
        conn.close()
    return jsonify(ok=True, **result)


@app.route("/api/payments/benefit/mark-failed", methods=["POST"])
@login_required
def benefit_mark_failed():
    body = _json_body()
    if not body.get("orderId"):
        raise checkout.InvalidCheckout("orderId is required")
    conn = get_db_connection()
    try:
        result = checkout.mark_benefit_failed(conn, body["orderId"], session["user_id"])
    finally:
        conn.close()
    return jsonify(ok=True, **result)


@app.route("/api/payments/benefit/notify", methods=["POST"])
def benefit_notify():
    body = request.get_json(silent=True) or {}
    trandata = body.get("trandata") or request.form.get("trandata")
    if not trandata:
        app.logger.error("BENEFIT notify without trandata")
        return jsonify(status="error", message="Missing trandata"), 200
    try:
        data = benefit.decode_response(trandata)
    except (benefit.TrandataError, GatewayError) as exc:
        app.logger.error("BENEFIT notify could not be decoded: %s", exc)
        return jsonify(status="error", message="Decryption failed"), 200
    track_id = data.get("trackId")
    if not track_id:
        return jsonify(status="error", message="Missing trackId"), 200

    conn = get_db_connection()
    try:
        result = checkout.settle_benefit_payment(conn, str(track_id), data)
    except OrderNotFound:
        app.logger.error("BENEFIT notify for unknown order %s", track_id)
        return jsonify(status="success", message="Order not found"), 200
    except Exception:
        app.logger.exception("BENEFIT notify processing failed for %s", track_id)
        return jsonify(status="error", message="Processing failed"), 200
    finally:
        conn.close()
    if result.get("alreadyPaid"):
        message = "Already processed"
    elif result["success"]:
        message = "Payment processed"
    else:
        message = result["message"]
    return jsonify(status="success", message=message), 200


def _benefit_redirect(url: str):
    # BENEFIT follows a plain-text REDIRECT= instruction, not an HTTP redirect.
    return f"REDIRECT={url}", 200, {"Content-Type": "text/plain", "Cache-Control": "no-cache"}


def _handle_benefit_callback():
    order_id = request.args.get("orderId")
    if not order_id:
        return _benefit_redirect(_client_redirect("/pay/benefit/error", error="missing_order"))

    trandata = request.form.get("trandata")
    error_text = request.form.get("ErrorText")
    error_code = request.form.get("Error")
    if error_text or error_code:
        app.logger.warning("BENEFIT reported an error for order %s: %s %s", order_id, error_code, error_text)
        return _benefit_redirect(
            _client_redirect(
                "/pay/benefit/error", orderId=order_id, ErrorText=error_text, Error=error_code
            )
        )
    if not trandata:
        return _benefit_redirect(_client_redirect("/pay/benefit/response", orderId=order_id))

    try:
        data = benefit.decode_response(trandata)
    except (benefit.TrandataError, GatewayError) as exc:
        app.logger.error("BENEFIT callback for %s could not be decoded: %s", order_id, exc)
        return _benefit_redirect(_client_redirect("/pay/benefit/error", orderId=order_id, error="decrypt"))

    conn = get_db_connection()
    try:
        result = checkout.settle_benefit_payment(conn, order_id, data)
    except OrderNotFound:
        return _benefit_redirect(_client_redirect("/pay/benefit/error", orderId=order_id, error="not_found"))
    except Exception:
        # The response page re-submits trandata through process-response.
        app.logger.exception("BENEFIT callback processing failed for %s", order_id)
        result = None
    finally:
        conn.close()

    if result is not None and not result["success"]:
        return _benefit_redirect(
            _client_redirect("/pay/benefit/error", orderId=order_id, error=result["message"])
        )
    return _benefit_redirect(
        _client_redirect("/pay/benefit/response", orderId=order_id, trandata=trandata)
    )


@app.route("/api/payments/benefit/callback", methods=["POST"])
def benefit_callback():
    return _handle_benefit_callback()


@app.route("/api/payments/benefit/callback-error", methods=["POST"])
def benefit_callback_error():
    return _handle_benefit_callback()


# ---------------------------------------------------------------------------
# BenefitPay wallet
# ---------------------------------------------------------------------------

@app.route("/api/payments/benefitpay/init", methods=["POST"])
@login_required
@rate_limit("payment_status")
def benefitpay_init():
    body = _json_body()
    if not body.get("sessionId"):
        raise checkout.InvalidCheckout("sessionId is required")
    try:
        qr_timeout = int(body.get("qr_timeout", 300))
    except (TypeError, ValueError):
        raise checkout.InvalidCheckout("qr_timeout must be a number of seconds")
    conn = get_db_connection()
    try:
        result = checkout.start_wallet_payment(
            conn,
            body["sessionId"],
            session["user_id"],
            show_result=bool(body.get("showResult", True)),
            hide_mobile_qr=bool(body.get("hideMobileQR", False)),
            qr_timeout=qr_timeout,
        )
    finally:
        conn.close()
    return jsonify(ok=True, success=True, **result)


@app.route("/api/payments/benefitpay/check-status", methods=["POST"])
@login_required
@rate_limit("payment_status")
def benefitpay_check_status():
    body = _json_body()
    if not body.get("referenceNumber") or not body.get("sessionId"):
        raise checkout.InvalidCheckout("Reference number and session ID are required")
    conn = get_db_connection()
    try:
        result = checkout.check_wallet_status(
            conn, body["sessionId"], session["user_id"], body["referenceNumber"]
        )
    finally:
        conn.close()
    return jsonify(ok=True, **result)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.route("/api/admin/orders/<order_id>/mark-cod-paid", methods=["PATCH"])
@admin_required
def admin_mark_cod_paid(order_id):
    conn = get_db_connection()
    try:
        order = checkout.mark_cod_paid(conn, order_id)
    finally:
        conn.close()
    app.logger.info("Admin %s marked COD order %s paid", session.get("user_email"), order_id)
    return jsonify(ok=True, message="Order marked as paid", order=_order_json(order))


@app.route("/api/admin/orders/<order_id>/status", methods=["PATCH"])
@admin_required
def admin_update_order_status(order_id):
    body = _json_body()
    status = str(body.get("status") or "").strip().lower()
    conn = get_db_connection()
    try:
        order = checkout.update_order_status(conn, order_id, status)
    finally:
        conn.close()
    return jsonify(ok=True, order=_order_json(order))


# ---------------------------------------------------------------------------
# Scheduled cleanup
# ---------------------------------------------------------------------------

@app.route("/api/cron/expire-checkout-sessions", methods=["GET", "POST"])
def cron_expire_checkout_sessions():
    if not _cron_authorized():
        return _error_response("Unauthorized", 401)
    conn = get_db_connection()
    try:
        result = checkout.expire_sessions(conn)
    finally:
        conn.close()
    return jsonify(ok=True, **result)


@app.route("/api/cron/expire-reservations", methods=["GET", "POST"])
def cron_expire_reservations():
    if not _cron_authorized():
        return _error_response("Unauthorized", 401)
    conn = get_db_connection()
    try:
        result = checkout.expire_reservations(conn)
    finally:
        conn.close()
    return jsonify(ok=True, **result)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

def is_admin_identity(email, role) -> bool:
    return (email or "").strip().lower() in config.ADMIN_USERS or role == "admin"


def _upsert_google_user(conn, email: str, name: str) -> dict:
    with conn.cursor() as cur:
        cur.execute("SELECT id, email, name, role FROM users WHERE email = %s LIMIT 1", (email,))
        row = cur.fetchone()
        if row is None:
            user_id = str(uuid.uuid4())
            cur.execute(
                "INSERT INTO users (id, email, name, role, created_at) VALUES (%s, %s, %s, 'user', %s)",
                (user_id, email, name, utcnow()),
            )
            row = {"id": user_id, "email": email, "name": name, "role": "user"}
        elif name and not row.get("name"):
            cur.execute("UPDATE users SET name = %s WHERE id = %s", (name, row["id"]))
    conn.commit()
    return row


@app.route("/login/google")
def login_google():
    redirect_uri = url_for("auth_google_callback", _external=True)
    return oauth.google.authorize_redirect(redirect_uri)


@app.route("/auth/google/callback")
def auth_google_callback():
    try:
        token = oauth.google.authorize_access_token()
    except Exception:
        app.logger.exception("Google sign-in failed")
        return redirect(_client_redirect("/login", error="google"))

    userinfo = token.get("userinfo") or oauth.google.userinfo()
    email = (userinfo.get("email") or "").strip().lower() if userinfo else ""
    if not email:
        return redirect(_client_redirect("/login", error="profile"))
    display_name = (userinfo.get("name") or "").strip() or email.split("@", 1)[0]

    conn = get_db_connection()
    try:
        user = _upsert_google_user(conn, email, display_name)
    finally:
        conn.close()

    session.clear()
    session["user_id"] = user["id"]
    session["user_email"] = email
    session["user_name"] = user.get("name") or display_name
    session["is_admin"] = is_admin_identity(email, user.get("role"))
    generate_csrf_token()
    app.logger.info("User %s signed in with Google", email)
    return redirect(config.CLIENT_URL or "/")


@app.route("/logout")
def logout():
    session.clear()
    return redirect(config.CLIENT_URL or "/")


@app.route("/api/auth/me", methods=["GET"])
def auth_me():
    csrf_token = generate_csrf_token()
    if not session.get("user_id"):
        return jsonify(ok=True, user=None, csrfToken=csrf_token)
    return jsonify(
        ok=True,
        user={
            "id": session["user_id"],
            "email": session.get("user_email"),
            "name": session.get("user_name"),
            "isAdmin": bool(session.get("is_admin")),
        },
        csrfToken=csrf_token,
    )


@app.route("/api/health", methods=["GET"])
def health():
    try:
        conn = get_db_connection()
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
        finally:
            conn.close()
    except Exception as exc:
        app.logger.warning("Health check failed: %s", exc)
        return jsonify(ok=False, db="unavailable"), 503
    return jsonify(ok=True, db="ok")


if __name__ == "__main__":
    app.run(debug=os.getenv("FLASK_DEBUG", "0") == "1")
