"""BenefitPay wallet signing and status check.

Wallet credentials are kept apart from the BENEFIT hosted-page ones and are
read at call time so a deploy can add them without a code change.
"""

import base64
import hashlib
import hmac
import logging
import os
import time
from dataclasses import dataclass
from typing import Optional

import config
from db import format_amount
from gateway import FAILED, PAID, PENDING, GatewayError, PaymentResult, post_json

logger = logging.getLogger(__name__)

EXCLUDED_SIGNATURE_FIELDS = {"lang", "hashedString", "secure_hash"}
SDK_REQUIRED_FIELDS = (
    "merchantId",
    "appId",
    "transactionAmount",
    "transactionCurrency",
    "referenceNumber",
)
STATUS_REQUIRED_FIELDS = ("merchant_id", "reference_id")
WALLET_CURRENCY = "BHD"


def signature_string(params: dict) -> str:
    pairs = [
        (str(key).strip(), str(value).strip())
        for key, value in params.items()
        if key not in EXCLUDED_SIGNATURE_FIELDS
    ]
    pairs.sort()
    return ",".join(f'{key}="{value}"' for key, value in pairs)


def generate_signature(params: dict, secret: str) -> str:
    digest = hmac.new(
        secret.encode("utf-8"), signature_string(params).encode("utf-8"), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def _require(params: dict, fields, what: str) -> None:
    missing = [name for name in fields if not params.get(name)]
    if missing:
        raise ValueError(f"Missing required {what} parameters: {', '.join(missing)}")


def secure_hash_for_sdk(params: dict, secret: str) -> str:
    _require(params, SDK_REQUIRED_FIELDS, "SDK")
    return generate_signature(params, secret)


def signature_for_status(params: dict, secret: str) -> str:
    _require(params, STATUS_REQUIRED_FIELDS, "status check")
    return generate_signature(params, secret)


@dataclass
class WalletCredentials:
    merchant_id: str
    app_id: str
    secret_key: str
    check_status_url: str
    client_id: Optional[str] = None


def load_wallet_credentials() -> WalletCredentials:
    merchant_id = os.getenv("BENEFITPAY_WALLET_MERCHANT_ID", "").strip()
    app_id = os.getenv("BENEFITPAY_WALLET_APP_ID", "").strip()
    secret_key = os.getenv("BENEFITPAY_WALLET_SECRET_KEY", "").strip()
    client_id = os.getenv("BENEFITPAY_WALLET_CLIENT_ID", "").strip() or None
    check_status_url = (
        os.getenv("BENEFITPAY_WALLET_CHECK_STATUS_URL", "").strip()
        or config.BENEFITPAY_WALLET_CHECK_STATUS_URL
    )

    missing = []
    if not merchant_id:
        missing.append("BENEFITPAY_WALLET_MERCHANT_ID")
    if not app_id:
        missing.append("BENEFITPAY_WALLET_APP_ID")
    if not secret_key:
        missing.append("BENEFITPAY_WALLET_SECRET_KEY")
    if missing:
        logger.error("[BenefitPay Wallet] Missing credentials: %s", ", ".join(missing))
        raise GatewayError(
            f"BenefitPay Wallet credentials are missing: {', '.join(missing)}", status=500
        )
    return WalletCredentials(merchant_id, app_id, secret_key, check_status_url, client_id)


def new_reference_number(session_id: str) -> str:
    # HB_<first 20 hex chars of the session id>_<epoch millis>, unique per attempt.
    return f"HB_{str(session_id).replace('-', '')[:20]}_{int(time.time() * 1000)}"


def signed_sdk_params(
    credentials: WalletCredentials,
    reference_number: str,
    amount,
    show_result=True,
    hide_mobile_qr=False,
    qr_timeout=300,
) -> dict:
    """Parameters for the InApp SDK, signed server-side. Every value is a string."""
    params = {
        "merchantId": str(credentials.merchant_id),
        "appId": str(credentials.app_id),
        "transactionAmount": format_amount(amount),
        "transactionCurrency": WALLET_CURRENCY,
        "referenceNumber": reference_number,
        "showResult": "1" if show_result else "0",
        "hideMobileQR": "1" if hide_mobile_qr else "0",
        "qr_timeout": str(int(qr_timeout)),
    }
    params["secure_hash"] = secure_hash_for_sdk(params, credentials.secret_key)
    return params


def result_from_status(data: dict) -> PaymentResult:
    if data.get("status") == "success":
        # rrn and receipt_number stay in the raw response stored on the order.
        return PaymentResult(PAID, raw=data, message="Payment successful")
    if data.get("status") == "failed" or data.get("error_code"):
        reason = data.get("error_description") or data.get("error_code") or "Payment failed"
        return PaymentResult(FAILED, raw=data, message=str(reason))
    return PaymentResult(PENDING, raw=data, message="Transaction not found or still processing")


class WalletClient:
    def __init__(self, credentials: WalletCredentials = None):
        self.credentials = credentials or load_wallet_credentials()

    def check_status(self, reference_number: str) -> dict:
        creds = self.credentials
        params = {"merchant_id": creds.merchant_id, "reference_id": reference_number}
        headers = {
            "X-FOO-Signature": signature_for_status(params, creds.secret_key),
            "X-FOO-Signature-Type": "KEYVAL",
        }
        if creds.client_id:
            headers["X-CLIENT-ID"] = creds.client_id
        logger.info("[BenefitPay Wallet] Checking status for reference %s", reference_number)
        data = post_json(creds.check_status_url, params, headers=headers, label="BenefitPay")
        if not isinstance(data, dict):
            raise GatewayError("Invalid response from BenefitPay")
        return data
