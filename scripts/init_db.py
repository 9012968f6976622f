"""Create the schema and optionally seed products.

Run from the project root so the service modules import:

    python -m scripts.init_db --seed-product p1 Kettle 10.500 5

or from anywhere after ``pip install -e .``.
"""

import argparse

from db import ensure_schema, get_db_connection


def main():
    parser = argparse.ArgumentParser(description="Create the checkout tables if they are missing.")
    parser.add_argument(
        "--seed-product",
        nargs=4,
        metavar=("ID", "NAME", "PRICE", "STOCK"),
        action="append",
        default=[],
        help="insert or top up a product (repeatable)",
    )
    args = parser.parse_args()

    conn = get_db_connection()
    try:
        ensure_schema(conn)
        with conn.cursor() as cur:
            for product_id, name, price, stock in args.seed_product:
                cur.execute("SELECT id FROM products WHERE id = %s", (product_id,))
                if cur.fetchone():
                    cur.execute(
                        """
                        UPDATE products
                        SET name = %s, price = %s, stock_quantity = %s,
                            in_stock = CASE WHEN %s > 0 THEN 1 ELSE 0 END
                        WHERE id = %s
                        """,
                        (name, price, int(stock), int(stock), product_id),
                    )
                else:
                    cur.execute(
                        """
                        INSERT INTO products (id, name, price, stock_quantity, in_stock)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (product_id, name, price, int(stock), 1 if int(stock) > 0 else 0),
                    )
        conn.commit()
    finally:
        conn.close()

    print(f"Schema ready. Seeded {len(args.seed_product)} product(s).")


if __name__ == "__main__":
    main()
