"""EazyPay checkout adapter: invoice creation, status query, webhook check."""

import hashlib
import hmac
import logging
import time

import config
from db import format_amount
from gateway import (
    CANCELLED,
    FAILED,
    PAID,
    PENDING,
    GatewayError,
    PaymentResult,
    post_json,
)

logger = logging.getLogger(__name__)

SIGNATURE_FORMULAS = (
    "documented",
    "all_fields",
    "body_order",
    "alphabetical",
    "documented_with_invoice",
    "timestamp_only",
)


def generate_timestamp() -> str:
    return str(int(time.time() * 1000))


def _hmac_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def compute_create_invoice_hash(
    timestamp: str,
    app_id: str,
    invoice_id: str,
    currency: str,
    amount: str,
    payment_method: str,
    return_url: str,
    secret: str,
    formula: str = "timestamp_only",
) -> str:
    # Field order is part of the signature; no separators between fields.
    if formula in ("all_fields", "body_order"):
        parts = [timestamp, app_id, invoice_id, currency, amount, payment_method, return_url]
    elif formula == "alphabetical":
        parts = [timestamp, amount, app_id, currency, invoice_id, payment_method, return_url]
    elif formula == "documented_with_invoice":
        parts = [timestamp, invoice_id, currency, amount, app_id, payment_method, return_url]
    elif formula == "timestamp_only":
        parts = [timestamp]
    else:
        parts = [timestamp, currency, amount, app_id]
    return _hmac_hex(secret, "".join(parts))


def compute_query_hash(timestamp: str, app_id: str, secret: str) -> str:
    return _hmac_hex(secret, timestamp + app_id)


def webhook_message(payload: dict) -> str:
    is_paid = "true" if payload.get("isPaid") is True else "false"
    return (
        str(payload.get("timestamp", ""))
        + str(payload.get("nonce", ""))
        + str(payload.get("globalTransactionsId", ""))
        + is_paid
    )


def verify_webhook_signature(payload: dict, signature: str, secret: str) -> bool:
    if not signature or not secret:
        return False
    expected = _hmac_hex(secret, webhook_message(payload))
    return hmac.compare_digest(expected, signature.strip().lower())


def result_from_query(data: dict) -> PaymentResult:
    status = str(data.get("status") or "").upper()
    if data.get("isPaid") is True or status in {"SUCCESS", "PAID"}:
        outcome = PAID
    elif status == "PENDING" or not status:
        # No explicit status and not paid: treat as in flight, never as a failure.
        outcome = PENDING
    elif status in {"CANCELED", "CANCELLED"}:
        outcome = CANCELLED
    else:
        outcome = FAILED
    fields = {}
    if data.get("globalTransactionsId"):
        fields["global_transactions_id"] = str(data["globalTransactionsId"])
    messages = {
        PAID: "Payment confirmed",
        PENDING: "Payment is still being processed",
        CANCELLED: "Payment was cancelled",
        FAILED: "Payment failed",
    }
    return PaymentResult(
        outcome=outcome,
        raw=data,
        message=messages[outcome],
        paid_on=data.get("paidOn"),
        fields=fields,
    )


class EazyPayClient:
    def __init__(self, app_id=None, secret_key=None, base_url=None, formula=None):
        self.app_id = (app_id if app_id is not None else config.EAZYPAY_CHECKOUT_APP_ID).strip()
        self.secret_key = (
            secret_key if secret_key is not None else config.EAZYPAY_CHECKOUT_SECRET_KEY
        ).strip()
        self.base_url = (base_url or config.EAZYPAY_CHECKOUT_BASE_URL).rstrip("/")
        self.formula = formula or config.EAZYPAY_SIGNATURE_FORMULA
        if self.formula not in SIGNATURE_FORMULAS:
            logger.warning("[EazyPay] Unknown signature formula %r, using 'documented'", self.formula)
            self.formula = "documented"

    def _require_credentials(self):
        if not self.app_id or not self.secret_key:
            raise GatewayError("EazyPay Checkout credentials not configured", status=500)

    def create_invoice(
        self,
        invoice_id: str,
        amount,
        return_url: str,
        currency: str = None,
        payment_method: str = None,
        webhook_url: str = None,
    ) -> dict:
        self._require_credentials()
        currency = currency or config.CURRENCY
        payment_method = payment_method or config.EAZYPAY_PAYMENT_METHODS
        amount_str = format_amount(amount)
        timestamp = generate_timestamp()
        secret_hash = compute_create_invoice_hash(
            timestamp,
            self.app_id,
            invoice_id,
            currency,
            amount_str,
            payment_method,
            return_url,
            self.secret_key,
            self.formula,
        )
        body = {
            "appId": self.app_id,
            "invoiceId": invoice_id,
            "currency": currency,
            "amount": amount_str,
            "paymentMethod": payment_method,
            "returnUrl": return_url,
        }
        if webhook_url:
            body["webhookUrl"] = webhook_url

        data = post_json(
            f"{self.base_url}/createInvoice",
            body,
            headers={"Timestamp": timestamp, "Secret-Hash": secret_hash},
            label="EazyPay",
        )
        return self._invoice_from_response(data)

    @staticmethod
    def _invoice_from_response(data) -> dict:
        if not isinstance(data, dict):
            raise GatewayError("EazyPay response missing paymentUrl")
        result = data.get("result")
        if isinstance(result, dict) and result.get("isSuccess") is False:
            message = result.get("description") or result.get("title") or "EazyPay API error"
            code = result.get("code") or "UNKNOWN"
            logger.error("[EazyPay] API error %s: %s", code, message)
            raise GatewayError(f"EazyPay error ({code}): {message}")
        for candidate in (data, data.get("data"), result):
            if isinstance(candidate, dict) and candidate.get("paymentUrl"):
                return candidate
        logger.error("[EazyPay] Unexpected createInvoice response: %s", data)
        raise GatewayError("EazyPay response missing paymentUrl")

    def query_transaction(self, global_transactions_id: str) -> dict:
        self._require_credentials()
        timestamp = generate_timestamp()
        data = post_json(
            f"{self.base_url}/query",
            {"appId": self.app_id, "globalTransactionsId": global_transactions_id},
            headers={
                "Timestamp": timestamp,
                "Secret-Hash": compute_query_hash(timestamp, self.app_id, self.secret_key),
            },
            label="EazyPay",
        )
        if not isinstance(data, dict):
            raise GatewayError("Invalid response from EazyPay")
        return data
