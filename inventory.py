"""Atomic stock operations.

Every write is a single conditional UPDATE so concurrent checkouts can never
drive ``stock_quantity`` below zero. The functions take a cursor and never
commit; the caller decides the transaction boundary.
"""

import logging

logger = logging.getLogger(__name__)


class StockError(Exception):
    def __init__(self, product_id, message):
        super().__init__(message)
        self.product_id = product_id
        self.message = message


class ProductNotFound(StockError):
    def __init__(self, product_id):
        super().__init__(product_id, f"Product not found: {product_id}")


class InsufficientStock(StockError):
    def __init__(self, product_id, requested: int, available: int, name: str = ""):
        label = name or product_id
        super().__init__(
            product_id,
            f"Insufficient stock for {label} (requested {requested}, available {available})",
        )
        self.requested = requested
        self.available = available


class StockReservationError(Exception):
    def __init__(self, errors):
        self.errors = errors
        joined = ", ".join(err["error"] for err in errors) or "Failed to reserve stock"
        super().__init__(f"Stock reservation failed: {joined}")


def _parse_quantity(value, product_id) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Invalid quantity for {product_id}")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"Invalid quantity for {product_id}")
        value = int(value)
    try:
        quantity = int(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError(f"Invalid quantity for {product_id}") from None
    if quantity <= 0:
        raise ValueError(f"Invalid quantity for {product_id}")
    return quantity


def merge_items(items) -> list:
    """Normalise cart lines and fold duplicate product ids into one line."""
    if not isinstance(items, list) or not items:
        raise ValueError("Items are required")
    merged = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ValueError("Each item must be an object")
        product_id = str(raw.get("productId") or raw.get("product_id") or "").strip()
        if not product_id:
            raise ValueError("Each item needs a productId")
        quantity = _parse_quantity(raw.get("quantity"), product_id)
        if product_id in merged:
            merged[product_id]["quantity"] += quantity
            continue
        merged[product_id] = {
            "productId": product_id,
            "quantity": quantity,
            "name": raw.get("name") or "",
            "price": raw.get("price"),
            "image": raw.get("image") or "",
        }
    return list(merged.values())


def _refresh_in_stock(cur, product_id) -> None:
    cur.execute(
        """
        UPDATE products
        SET in_stock = CASE WHEN stock_quantity > 0 THEN 1 ELSE 0 END
        WHERE id = %s
        """,
        (product_id,),
    )


def _fetch_level(cur, product_id):
    cur.execute(
        "SELECT name, stock_quantity FROM products WHERE id = %s",
        (product_id,),
    )
    return cur.fetchone()


def reserve_stock(cur, product_id, quantity: int) -> int:
    cur.execute(
        """
        UPDATE products
        SET stock_quantity = stock_quantity - %s
        WHERE id = %s AND stock_quantity >= %s
        """,
        (quantity, product_id, quantity),
    )
    reserved = cur.rowcount == 1
    row = _fetch_level(cur, product_id)
    if row is None:
        raise ProductNotFound(product_id)
    if not reserved:
        raise InsufficientStock(
            product_id, quantity, int(row["stock_quantity"] or 0), row.get("name") or ""
        )
    _refresh_in_stock(cur, product_id)
    return int(row["stock_quantity"])


def release_stock(cur, product_id, quantity: int):
    cur.execute(
        "UPDATE products SET stock_quantity = stock_quantity + %s WHERE id = %s",
        (quantity, product_id),
    )
    if cur.rowcount == 0:
        # Product deleted since the reservation; nothing to give back.
        logger.warning("[Inventory] Release skipped, product %s no longer exists", product_id)
        return None
    _refresh_in_stock(cur, product_id)
    row = _fetch_level(cur, product_id)
    return int(row["stock_quantity"]) if row else None


def reserve_stock_batch(cur, items) -> None:
    """Reserve every line or none of them.

    On failure the lines reserved so far are released again before
    ``StockReservationError`` is raised, so the batch is all-or-nothing even
    if the caller commits.
    """
    reserved = []
    errors = []
    for item in items:
        product_id = item["productId"]
        try:
            reserve_stock(cur, product_id, item["quantity"])
        except StockError as exc:
            errors.append({"productId": product_id, "error": exc.message})
            continue
        reserved.append(item)

    if errors:
        for item in reserved:
            release_stock(cur, item["productId"], item["quantity"])
        raise StockReservationError(errors)


def release_stock_batch(cur, items) -> list:
    errors = []
    for item in items:
        product_id = item.get("productId") or item.get("product_id")
        try:
            release_stock(cur, product_id, int(item["quantity"]))
        except Exception as exc:
            logger.exception("[Inventory] Failed to release %s", product_id)
            errors.append({"productId": product_id, "error": str(exc) or "Failed to release stock"})
    return errors


def convert_reserved_to_sold(cur, order_id, now) -> bool:
    cur.execute(
        """
        UPDATE orders
        SET inventory_status = 'sold',
            reservation_expires_at = NULL,
            updated_at = %s
        WHERE id = %s AND inventory_status = 'reserved'
        """,
        (now, order_id),
    )
    return cur.rowcount == 1
