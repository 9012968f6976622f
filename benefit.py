"""BENEFIT payment gateway (hosted page) adapter.

The trandata wire format is fixed by BENEFIT: a JSON array holding one
object, URL-encoded, AES-256-CBC encrypted with a fixed IV and sent as
uppercase hex.
"""

import base64
import binascii
import hashlib
import json
import logging
import re
import uuid
from decimal import Decimal
from urllib.parse import quote, unquote, urlparse

from Crypto.Cipher import AES
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad

import config
from db import format_amount, to_decimal
from gateway import FAILED, PAID, GatewayError, PaymentResult, post_json

logger = logging.getLogger(__name__)

BENEFIT_IV = b"PGKEYENCDECIVSPC"
CURRENCY_CODE_BHD = "048"
ACTION_PURCHASE = "1"
MAX_URL_LENGTH = 254
SUCCESS_RESULTS = {"CAPTURED", "SUCCESS", "APPROVED"}
TOKEN_FIELDS = ("token", "paymentToken", "cardToken", "savedToken", "tokenId")
# JavaScript encodeURIComponent leaves these unescaped; BENEFIT decodes the same way.
_URI_COMPONENT_SAFE = "-_.!~*'()"


class TrandataError(ValueError):
    pass


def _cipher(resource_key: str):
    if not resource_key or len(resource_key) != 32:
        length = len(resource_key or "")
        raise TrandataError(f"Resource key must be exactly 32 characters, got {length}")
    return AES.new(resource_key.encode("utf-8"), AES.MODE_CBC, BENEFIT_IV)


def encrypt_trandata(plain: str, resource_key: str) -> str:
    encoded = quote(plain, safe=_URI_COMPONENT_SAFE).encode("utf-8")
    cipher = _cipher(resource_key)
    return cipher.encrypt(pad(encoded, AES.block_size)).hex().upper()


def decrypt_trandata(encrypted_hex: str, resource_key: str) -> str:
    cipher = _cipher(resource_key)
    try:
        data = binascii.unhexlify((encrypted_hex or "").strip())
        decrypted = unpad(cipher.decrypt(data), AES.block_size)
        return unquote(decrypted.decode("utf-8"))
    except (binascii.Error, ValueError) as exc:
        raise TrandataError(f"Failed to decrypt trandata: {exc}") from exc


def _is_valid_url(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.hostname)


def validate_trandata_params(
    amt, track_id, response_url, error_url, tranportal_id, tranportal_password
) -> None:
    try:
        amount = to_decimal(amt)
    except ValueError:
        amount = Decimal("0")
    if amount <= 0:
        raise TrandataError("Amount must be greater than 0")
    if not str(track_id or "").strip():
        raise TrandataError("trackId is required")
    if not response_url or not _is_valid_url(response_url):
        raise TrandataError("Valid responseURL is required")
    if not error_url or not _is_valid_url(error_url):
        raise TrandataError("Valid errorURL is required")
    if not str(tranportal_id or "").strip():
        raise TrandataError("Tranportal ID is required")
    if not str(tranportal_password or "").strip():
        raise TrandataError("Tranportal password is required")
    if len(response_url) > MAX_URL_LENGTH:
        raise TrandataError(f"responseURL too long ({len(response_url)} chars, max {MAX_URL_LENGTH})")
    if len(error_url) > MAX_URL_LENGTH:
        raise TrandataError(f"errorURL too long ({len(error_url)} chars, max {MAX_URL_LENGTH})")
    if not str(track_id).isdigit():
        logger.warning("[BENEFIT] trackId %s is not numeric; numeric ids are recommended", track_id)


def build_plain_trandata(
    amt,
    track_id,
    response_url,
    error_url,
    tranportal_id,
    tranportal_password,
    udf=None,
    token=None,
) -> str:
    udf = list(udf or [])
    udf += [""] * (5 - len(udf))
    # udf1 stays empty as BENEFIT recommends.
    payload = {
        "id": tranportal_id,
        "password": tranportal_password,
        "action": ACTION_PURCHASE,
        "amt": format_amount(amt),
        "currencycode": CURRENCY_CODE_BHD,
        "trackId": str(track_id),
        "udf1": udf[0] or "",
        "udf2": udf[1] or "",
        "udf3": udf[2] or "",
        "udf4": udf[3] or "",
        "udf5": udf[4] or "",
        "responseURL": response_url,
        "errorURL": error_url,
    }
    if token:
        # Faster checkout: BENEFIT charges the saved card.
        payload["token"] = token
    return json.dumps([payload], separators=(",", ":"))


def parse_response_trandata(text: str) -> dict:
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise TrandataError(f"Failed to parse response trandata: {exc}") from exc
    if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
        return parsed[0]
    if isinstance(parsed, dict):
        return parsed
    raise TrandataError("Invalid trandata format: expected array or object")


def is_transaction_successful(data: dict) -> bool:
    if str(data.get("result") or "").upper() in SUCCESS_RESULTS:
        return True
    return data.get("authRespCode") == "00"


def error_message(data: dict) -> str:
    if data.get("result"):
        return f"Transaction {data['result']}"
    code = data.get("authRespCode")
    if code and code != "00":
        return f"Authorization failed (Code: {code})"
    return "Transaction failed"


def amounts_match(response_amount, order_total) -> bool:
    try:
        diff = abs(to_decimal(response_amount) - to_decimal(order_total))
    except ValueError:
        return False
    return diff <= Decimal("0.01")


def extract_token(data: dict):
    for name in TOKEN_FIELDS:
        if data.get(name):
            return data[name]
    return None


def order_fields(data: dict) -> dict:
    """Gateway reference columns stored on the order once it is paid."""
    mapping = {
        "transId": "benefit_trans_id",
        "ref": "benefit_ref",
        "authRespCode": "benefit_auth_resp_code",
        "paymentId": "benefit_payment_id",
    }
    return {column: str(data[key]) for key, column in mapping.items() if data.get(key)}


def result_from_response(data: dict) -> PaymentResult:
    if is_transaction_successful(data):
        return PaymentResult(PAID, raw=data, message="Payment processed", fields=order_fields(data))
    return PaymentResult(FAILED, raw=data, message=error_message(data))


def decode_response(trandata: str, resource_key: str = None) -> dict:
    key = resource_key if resource_key is not None else config.BENEFIT_RESOURCE_KEY
    if not key:
        raise GatewayError("BENEFIT gateway not configured", status=500)
    return parse_response_trandata(decrypt_trandata(trandata, key))


_PAYMENT_ID_RE = re.compile(r"[?&]PaymentID=([^&]+)")


class BenefitClient:
    def __init__(
        self,
        tranportal_id=None,
        tranportal_password=None,
        resource_key=None,
        endpoint=None,
    ):
        self.tranportal_id = tranportal_id if tranportal_id is not None else config.BENEFIT_TRANPORTAL_ID
        self.tranportal_password = (
            tranportal_password if tranportal_password is not None else config.BENEFIT_TRANPORTAL_PASSWORD
        )
        self.resource_key = resource_key if resource_key is not None else config.BENEFIT_RESOURCE_KEY
        self.endpoint = endpoint if endpoint is not None else config.BENEFIT_ENDPOINT

    def init_payment(self, track_id, amount, response_url: str, error_url: str, token=None) -> dict:
        if not all([self.tranportal_id, self.tranportal_password, self.resource_key, self.endpoint]):
            logger.error("[BENEFIT Init] Missing gateway configuration")
            raise GatewayError("BENEFIT gateway not configured", status=500)

        try:
            validate_trandata_params(
                amount, track_id, response_url, error_url,
                self.tranportal_id, self.tranportal_password,
            )
        except TrandataError as exc:
            raise GatewayError(f"Invalid parameters: {exc}", status=400) from exc

        plain = build_plain_trandata(
            amount, track_id, response_url, error_url,
            self.tranportal_id, self.tranportal_password,
            token=token,
        )
        encrypted = encrypt_trandata(plain, self.resource_key)
        data = post_json(
            self.endpoint,
            [{"id": self.tranportal_id, "trandata": encrypted}],
            label="BENEFIT",
        )
        if isinstance(data, list) and data:
            data = data[0]
        if not isinstance(data, dict):
            raise GatewayError("Invalid response from BENEFIT gateway")

        if str(data.get("status")) == "1" and data.get("result"):
            payment_url = data["result"]
            match = _PAYMENT_ID_RE.search(payment_url)
            return {"paymentUrl": payment_url, "paymentId": match.group(1) if match else None}
        if str(data.get("status")) == "2":
            message = data.get("errorText") or data.get("error") or "BENEFIT gateway error"
            logger.error("[BENEFIT Init] Gateway error: %s", message)
            raise GatewayError(message, status=400)
        logger.error("[BENEFIT Init] Unexpected response: %s", data)
        raise GatewayError("Unexpected response from BENEFIT gateway")




# ---------------------------------------------------------------------------
# Faster checkout tokens
# ---------------------------------------------------------------------------

def _token_key() -> bytes:
    secret = config.BENEFIT_TOKEN_ENCRYPTION_KEY or config.BENEFIT_RESOURCE_KEY
    if not secret:
        raise GatewayError("Token encryption key not configured", status=500)
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_token(token: str) -> str:
    """AES-256-GCM, stored as base64(nonce + tag + ciphertext)."""
    nonce = get_random_bytes(12)
    cipher = AES.new(_token_key(), AES.MODE_GCM, nonce=nonce)
    ciphertext, tag = cipher.encrypt_and_digest(token.encode("utf-8"))
    return base64.b64encode(nonce + tag + ciphertext).decode("ascii")


def decrypt_token(stored: str) -> str:
    try:
        raw = base64.b64decode(stored)
        cipher = AES.new(_token_key(), AES.MODE_GCM, nonce=raw[:12])
        return cipher.decrypt_and_verify(raw[28:], raw[12:28]).decode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise TrandataError(f"Token decryption failed: {exc}") from exc


def _token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _card_details(data: dict):
    card_number = str(data.get("cardNumber") or data.get("card") or data.get("pan") or "")
    last4 = card_number[-4:] if len(card_number) >= 4 and card_number[-4:].isdigit() else None
    last4 = last4 or data.get("last4") or data.get("lastFour")
    card_type = data.get("cardType") or data.get("cardBrand") or data.get("brand")
    alias = f"{card_type or 'Card'} ****{last4}" if last4 else None
    return alias, last4, card_type


def store_payment_token(conn, user_id, token, payment_id, order_id, data, now) -> bool:
    """Remember a faster-checkout card token; a known token only refreshes last_used_at."""
    token_hash = _token_hash(token)
    alias, last4, card_type = _card_details(data)
    with conn.cursor() as cur:
        cur.execute(
            "UPDATE payment_tokens SET last_used_at = %s WHERE token_hash = %s AND user_id = %s",
            (now, token_hash, user_id),
        )
        if cur.rowcount:
            conn.commit()
            return False
        cur.execute(
            "SELECT COUNT(*) AS n FROM payment_tokens WHERE user_id = %s AND status = 'active'",
            (user_id,),
        )
        is_default = cur.fetchone()["n"] == 0
        cur.execute(
            """
            INSERT INTO payment_tokens
                (id, user_id, token, token_hash, payment_id, order_id, card_alias,
                 card_last4, card_type, is_default, status, created_at, last_used_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 'active', %s, %s)
            """,
            (
                str(uuid.uuid4()), user_id, encrypt_token(token), token_hash, payment_id,
                order_id, alias, last4, card_type, 1 if is_default else 0, now, now,
            ),
        )
    conn.commit()
    logger.info("[BENEFIT] Saved card token for user %s", user_id)
    return True


def list_payment_tokens(conn, user_id) -> list:
    """Saved cards for display; the encrypted token never leaves the database."""
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT id, card_alias, card_last4, card_type, is_default, created_at, last_used_at
            FROM payment_tokens
            WHERE user_id = %s AND status = 'active'
            ORDER BY is_default DESC, created_at DESC
            """,
            (user_id,),
        )
        rows = list(cur.fetchall())
    conn.commit()
    return rows


def get_token_for_user(conn, token_id, user_id):
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT token FROM payment_tokens
            WHERE id = %s AND user_id = %s AND status = 'active'
            """,
            (token_id, user_id),
        )
        row = cur.fetchone()
    conn.commit()
    if row is None:
        return None
    return decrypt_token(row["token"])
