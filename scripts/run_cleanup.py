"""Expire stale checkout sessions and order reservations.

Run from the project root (``python -m scripts.run_cleanup all``), or from
anywhere once the project is installed with ``pip install -e .``. Meant for
cron when the HTTP cleanup endpoints are not used.
"""

import argparse
import json
import logging

import checkout
from db import get_db_connection


def main():
    parser = argparse.ArgumentParser(
        description="Expire stale checkout sessions and order reservations, returning their stock."
    )
    parser.add_argument(
        "job",
        nargs="?",
        choices=("sessions", "reservations", "all"),
        default="all",
    )
    parser.add_argument("--limit", type=int, default=200, help="max rows per job")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    results = {}
    conn = get_db_connection()
    try:
        if args.job in ("sessions", "all"):
            results["sessions"] = checkout.expire_sessions(conn, limit=args.limit)
        if args.job in ("reservations", "all"):
            results["reservations"] = checkout.expire_reservations(conn, limit=args.limit)
    finally:
        conn.close()

    print(json.dumps(results, indent=2))
    failed = any(result["errors"] for result in results.values())
    raise SystemExit(1 if failed else 0)


if __name__ == "__main__":
    main()
