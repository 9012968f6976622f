import json
import os
import re
import time
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from urllib.parse import urlparse, parse_qs

import pymysql
import pymysql.cursors
from pymysql.constants import CLIENT

import config


def _parse_db_url(db_url: str) -> dict:
    parsed = urlparse(db_url)
    if parsed.scheme not in {"mysql", "mariadb"}:
        raise ValueError("Unsupported database URL scheme")
    database = parsed.path.lstrip("/")
    query = parse_qs(parsed.query)
    return {
        "host": parsed.hostname,
        "user": parsed.username,
        "password": parsed.password,
        "database": database,
        "port": parsed.port or 3306,
        "query": query,
    }


_db_connect_block_until = 0.0


def _db_connect_block_remaining_seconds() -> float:
    if config.DB_FAILURE_BACKOFF_SECONDS <= 0:
        return 0.0
    return max(0.0, _db_connect_block_until - time.monotonic())


def _mark_db_connect_failure() -> None:
    global _db_connect_block_until
    if config.DB_FAILURE_BACKOFF_SECONDS <= 0:
        return
    _db_connect_block_until = time.monotonic() + config.DB_FAILURE_BACKOFF_SECONDS


def _clear_db_connect_failure() -> None:
    global _db_connect_block_until
    _db_connect_block_until = 0.0


def get_db_connection():
    """Open a PyMySQL connection that yields dict rows with autocommit off.

    Callers own the transaction: every checkout operation commits or rolls
    back explicitly so that conditional updates and their follow-up writes
    land together.
    """
    blocked_for = _db_connect_block_remaining_seconds()
    if blocked_for > 0:
        wait_seconds = int(blocked_for) + 1
        raise RuntimeError(
            f"Database temporarily unavailable. Retry in about {wait_seconds}s."
        )

    db_url = os.getenv("DATABASE_URL") or os.getenv("MYSQL_URL") or os.getenv("DB_URL")
    if db_url:
        try:
            cfg = _parse_db_url(db_url)
        except Exception as exc:
            raise RuntimeError(f"Invalid DATABASE_URL/MYSQL_URL: {exc}") from exc
        host = cfg["host"]
        user = cfg["user"]
        password = cfg["password"]
        database = cfg["database"]
        port = int(cfg["port"])
        query = cfg["query"]
    else:
        host = os.getenv("DB_HOST")
        user = os.getenv("DB_USER")
        password = os.getenv("DB_PASSWORD")
        database = os.getenv("DB_NAME")
        port = int(os.getenv("DB_PORT", "3306"))
        query = {}

    if not host:
        raise RuntimeError("Database host is not set (DB_HOST or DATABASE_URL).")

    ssl_disabled = os.getenv("DB_SSL_DISABLED", "0") == "1"
    sslmode = (query.get("sslmode") or [""])[0].lower()
    ssl_query = (query.get("ssl") or [""])[0].lower()
    if sslmode == "disable" or ssl_query in {"0", "false", "no"}:
        ssl_disabled = True

    connect_kwargs = dict(
        host=host,
        user=user,
        password=password,
        database=database,
        port=port,
        charset="utf8mb4",
        cursorclass=pymysql.cursors.DictCursor,
        autocommit=False,
        # rowcount reports matched rows, which the conditional updates rely on.
        client_flag=CLIENT.FOUND_ROWS,
        connect_timeout=max(1, int(config.DB_CONNECT_TIMEOUT)),
        read_timeout=max(1, int(config.DB_READ_TIMEOUT)),
        write_timeout=max(1, int(config.DB_WRITE_TIMEOUT)),
    )
    if not ssl_disabled:
        connect_kwargs["ssl"] = {"ssl": {}}

    try:
        conn = pymysql.connect(**connect_kwargs)
        _clear_db_connect_failure()
        return conn
    except pymysql.err.OperationalError:
        _mark_db_connect_failure()
        raise
    except OSError as exc:
        _mark_db_connect_failure()
        raise RuntimeError(
            f"Database connection failed to {host}:{port} ({exc})."
        ) from exc


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(36) NOT NULL PRIMARY KEY,
        email VARCHAR(255) NOT NULL UNIQUE,
        name VARCHAR(255) NULL,
        phone VARCHAR(32) NULL,
        role VARCHAR(16) NOT NULL DEFAULT 'user',
        created_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id VARCHAR(36) NOT NULL PRIMARY KEY,
        name VARCHAR(255) NOT NULL,
        slug VARCHAR(255) NULL,
        price DECIMAL(12,3) NOT NULL,
        image VARCHAR(512) NULL,
        stock_quantity INT NOT NULL DEFAULT 0,
        in_stock TINYINT NOT NULL DEFAULT 1,
        CHECK (stock_quantity >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS checkout_sessions (
        id VARCHAR(36) NOT NULL PRIMARY KEY,
        user_id VARCHAR(36) NOT NULL,
        items TEXT NOT NULL,
        shipping_address TEXT NOT NULL,
        total DECIMAL(12,3) NOT NULL,
        payment_method VARCHAR(32) NOT NULL,
        status VARCHAR(16) NOT NULL DEFAULT 'initiated',
        wallet_state VARCHAR(40) NULL,
        global_transactions_id VARCHAR(128) NULL,
        user_token VARCHAR(255) NULL,
        reference_number VARCHAR(128) NULL,
        order_id VARCHAR(36) NULL,
        payment_raw_response TEXT NULL,
        inventory_reserved_at DATETIME NULL,
        inventory_released_at DATETIME NULL,
        expires_at DATETIME NOT NULL,
        created_at DATETIME NOT NULL,
        updated_at DATETIME NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) NOT NULL PRIMARY KEY,
        user_id VARCHAR(36) NOT NULL,
        checkout_session_id VARCHAR(36) NULL UNIQUE,
        total DECIMAL(12,3) NOT NULL,
        status VARCHAR(16) NOT NULL DEFAULT 'pending',
        payment_status VARCHAR(16) NOT NULL DEFAULT 'unpaid',
        payment_method VARCHAR(32) NOT NULL,
        shipping_address TEXT NOT NULL,
        inventory_status VARCHAR(16) NOT NULL DEFAULT 'reserved',
        inventory_reserved_at DATETIME NULL,
        inventory_released_at DATETIME NULL,
        reservation_expires_at DATETIME NULL,
        paid_on DATETIME NULL,
        global_transactions_id VARCHAR(128) NULL,
        user_token VARCHAR(255) NULL,
        benefit_track_id VARCHAR(64) NULL,
        benefit_payment_id VARCHAR(128) NULL,
        benefit_trans_id VARCHAR(128) NULL UNIQUE,
        benefit_ref VARCHAR(128) NULL,
        benefit_auth_resp_code VARCHAR(16) NULL,
        reference_number VARCHAR(128) NULL,
        payment_raw_response TEXT NULL,
        needs_review TINYINT NOT NULL DEFAULT 0,
        created_at DATETIME NOT NULL,
        updated_at DATETIME NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        id VARCHAR(36) NOT NULL PRIMARY KEY,
        order_id VARCHAR(36) NOT NULL,
        product_id VARCHAR(36) NOT NULL,
        name VARCHAR(255) NOT NULL,
        price DECIMAL(12,3) NOT NULL,
        quantity INT NOT NULL,
        image VARCHAR(512) NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_tokens (
        id VARCHAR(36) NOT NULL PRIMARY KEY,
        user_id VARCHAR(36) NOT NULL,
        token TEXT NOT NULL,
        token_hash VARCHAR(64) NOT NULL,
        payment_id VARCHAR(128) NULL,
        order_id VARCHAR(36) NULL,
        card_alias VARCHAR(64) NULL,
        card_last4 VARCHAR(4) NULL,
        card_type VARCHAR(32) NULL,
        is_default TINYINT NOT NULL DEFAULT 0,
        status VARCHAR(16) NOT NULL DEFAULT 'active',
        created_at DATETIME NOT NULL,
        last_used_at DATETIME NULL,
        UNIQUE (user_id, token_hash)
    )
    """,
]


def ensure_schema(conn) -> None:
    with conn.cursor() as cur:
        for statement in SCHEMA:
            cur.execute(statement)
    conn.commit()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0)


def to_decimal(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Invalid amount: {value!r}") from exc


def format_amount(value) -> str:
    """BHD amounts travel to every gateway as 3-decimal strings, e.g. "80.000"."""
    return str(to_decimal(value).quantize(Decimal("0.001"), rounding=ROUND_HALF_UP))


def dumps_json(value) -> str:
    return json.dumps(value, default=_json_default, separators=(",", ":"))


def loads_json(value, default=None):
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _json_default(value):
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


_CAMEL_RE = re.compile(r"_([a-z0-9])")
JSON_COLUMNS = {"items", "shipping_address", "payment_raw_response"}


def _camel(key: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), key)


def camelize(row: dict) -> dict:
    if not row:
        return {}
    out = {}
    for key, value in row.items():
        if key in JSON_COLUMNS:
            value = loads_json(value, value)
        elif isinstance(value, Decimal):
            value = float(value)
        elif isinstance(value, datetime):
            value = value.isoformat() + "Z"
        out[_camel(key)] = value
    return out
