import os
import sqlite3
import tempfile
from datetime import datetime
from decimal import Decimal

import pytest

os.environ.setdefault("FLASK_SECRET_KEY", "test-secret-key")
os.environ["CRON_SECRET"] = "cron-secret"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="checkout-logs-")

from db import ensure_schema  # noqa: E402

# Mirror what PyMySQL does for the types the service passes as parameters.
sqlite3.register_adapter(Decimal, str)
sqlite3.register_adapter(datetime, lambda value: value.isoformat(" "))
sqlite3.register_converter("DATETIME", lambda raw: datetime.fromisoformat(raw.decode()))

CSRF_TOKEN = "csrf-test-token"


def _dict_row(cursor, row):
    return {column[0]: row[index] for index, column in enumerate(cursor.description)}


class SQLiteCursor:
    """PyMySQL-style cursor over sqlite3: ``%s`` placeholders and context manager."""

    def __init__(self, cursor):
        self._cursor = cursor

    def execute(self, sql, params=()):
        self._cursor.execute(sql.replace("%s", "?"), tuple(params))
        return self._cursor.rowcount

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()

    @property
    def rowcount(self):
        return self._cursor.rowcount

    def close(self):
        self._cursor.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()
        return False


class SQLiteConnection:
    def __init__(self, raw):
        self.raw = raw

    def cursor(self):
        return SQLiteCursor(self.raw.cursor())

    def commit(self):
        self.raw.commit()

    def rollback(self):
        self.raw.rollback()

    def close(self):
        # Shared by every request in a test; the fixture closes it.
        pass


@pytest.fixture
def db():
    raw = sqlite3.connect(":memory:", detect_types=sqlite3.PARSE_DECLTYPES)
    raw.row_factory = _dict_row
    conn = SQLiteConnection(raw)
    ensure_schema(conn)
    yield conn
    raw.close()


@pytest.fixture
def add_product(db):
    def _add(product_id, price, stock, name=None):
        with db.cursor() as cur:
            cur.execute(
                """
                INSERT INTO products (id, name, price, stock_quantity, in_stock)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (product_id, name or f"Product {product_id}", Decimal(str(price)), stock, 1 if stock else 0),
            )
        db.commit()
        return product_id
    return _add


@pytest.fixture
def add_user(db):
    def _add(user_id, email=None, phone=None, role="user"):
        with db.cursor() as cur:
            cur.execute(
                "INSERT INTO users (id, email, phone, role) VALUES (%s, %s, %s, %s)",
                (user_id, email or f"{user_id}@example.com", phone, role),
            )
        db.commit()
        return user_id
    return _add


@pytest.fixture
def stock_of(db):
    def _stock(product_id):
        with db.cursor() as cur:
            cur.execute("SELECT stock_quantity FROM products WHERE id = %s", (product_id,))
            row = cur.fetchone()
        return row["stock_quantity"] if row else None
    return _stock


@pytest.fixture
def fetch_one(db):
    def _fetch(sql, params=()):
        with db.cursor() as cur:
            cur.execute(sql, params)
            return cur.fetchone()
    return _fetch


@pytest.fixture
def client(db, monkeypatch):
    import app as app_module

    monkeypatch.setattr(app_module, "get_db_connection", lambda: db)
    app_module._rate_store.clear()
    return app_module.app.test_client()


@pytest.fixture
def sign_in(client):
    def _sign_in(user_id="user-1", is_admin=False):
        with client.session_transaction() as sess:
            sess["user_id"] = user_id
            sess["user_email"] = f"{user_id}@example.com"
            sess["is_admin"] = is_admin
            sess["_csrf_token"] = CSRF_TOKEN
        return {"X-CSRF-Token": CSRF_TOKEN}
    return _sign_in
