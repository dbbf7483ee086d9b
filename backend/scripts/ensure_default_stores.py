#!/usr/bin/env python3
import argparse
import os
import sys

import psycopg
from psycopg.rows import dict_row

DEFAULT_STORE_NAME = "Main Store"


def orgs_without_stores(cur) -> list[dict]:
    cur.execute(
        """
        SELECT o.id, o.name
        FROM organizations o
        WHERE NOT EXISTS (SELECT 1 FROM stores s WHERE s.org_id = o.id)
        ORDER BY o.created_at
        """
    )
    return cur.fetchall()


def ensure_default_stores(cur, store_name: str = DEFAULT_STORE_NAME, dry_run: bool = False) -> list[dict]:
    """Give every organization without a store a default one. Returns the orgs that were fixed."""
    missing = orgs_without_stores(cur)
    if dry_run:
        return missing
    for org in missing:
        cur.execute(
            """
            INSERT INTO stores (id, org_id, name)
            VALUES (gen_random_uuid(), %s, %s)
            """,
            (org["id"], store_name),
        )
    return missing


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a default store for organizations that have none.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/pantrypal",
        help="Postgres connection string (defaults to $DATABASE_URL_ADMIN / $DATABASE_URL).",
    )
    parser.add_argument("--name", default=DEFAULT_STORE_NAME)
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    name = (args.name or "").strip()
    if not name:
        print("store name is required", file=sys.stderr)
        return 2

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                fixed = ensure_default_stores(cur, name, dry_run=args.dry_run)

    for org in fixed:
        print(f"{'would fix' if args.dry_run else 'fixed'}: {org['id']} {org['name']}")
    print(f"OK ({len(fixed)} organization(s))")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
