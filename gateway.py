import json
import logging
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Optional

import config

logger = logging.getLogger(__name__)

PAID = "paid"
PENDING = "pending"
FAILED = "failed"
CANCELLED = "cancelled"
OUTCOMES = {PAID, PENDING, FAILED, CANCELLED}


class GatewayError(Exception):
    def __init__(self, message: str, status: int = 502):
        super().__init__(message)
        self.message = message
        self.status = status


@dataclass
class PaymentResult:
    """What a gateway told us about one payment, reduced to an outcome."""

    outcome: str
    raw: dict = field(default_factory=dict)
    message: str = ""
    paid_on: Optional[str] = None
    fields: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.outcome not in OUTCOMES:
            raise ValueError(f"Unknown payment outcome: {self.outcome}")


def post_json(url: str, payload, headers: Optional[dict] = None, timeout: Optional[float] = None, label: str = "Gateway"):
    body = json.dumps(payload).encode("utf-8")
    req_headers = {"Content-Type": "application/json; charset=utf-8"}
    req_headers.update(headers or {})
    req = urllib.request.Request(url, data=body, headers=req_headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=timeout or config.GATEWAY_TIMEOUT) as resp:
            raw = resp.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", "replace")
        logger.error("[%s] HTTP %s from %s: %s", label, exc.code, url, detail[:500])
        raise GatewayError(f"{label} API error: {exc.code} - {detail[:200]}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise GatewayError(f"{label} API request timeout", status=504) from exc
    except urllib.error.URLError as exc:
        if isinstance(exc.reason, (socket.timeout, TimeoutError)):
            raise GatewayError(f"{label} API request timeout", status=504) from exc
        raise GatewayError(f"{label} unreachable: {exc.reason}") from exc
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise GatewayError(f"Invalid response from {label}") from exc
