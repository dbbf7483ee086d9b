#!/usr/bin/env python3
"""
List organizations holding more stores or role assignments than their current
plan allows. Limits only gate creation, so these organizations keep working;
this is a report for follow-up, it changes nothing.
"""
import argparse
import json
import os

import psycopg
from psycopg.rows import dict_row

from backend.app.errors import UnknownPlan
from backend.app.plan_policy import DEFAULT_PLAN_LIMITS, PlanPolicyEngine


def _usage(cur) -> list[dict]:
    cur.execute(
        """
        SELECT o.id, o.name, o.plan_name,
               (SELECT COUNT(*) FROM stores s WHERE s.org_id = o.id) AS store_count
        FROM organizations o
        ORDER BY o.created_at
        """
    )
    orgs = cur.fetchall()
    cur.execute(
        """
        SELECT ur.org_id, r.name AS role, COUNT(*) AS n
        FROM user_roles ur
        JOIN roles r ON r.id = ur.role_id
        GROUP BY ur.org_id, r.name
        """
    )
    roles: dict[str, dict[str, int]] = {}
    for r in cur.fetchall():
        roles.setdefault(str(r["org_id"]), {})[r["role"]] = int(r["n"])
    for o in orgs:
        o["roles"] = roles.get(str(o["id"]), {})
    return orgs


def find_overages(cur, policy: PlanPolicyEngine) -> list[dict]:
    out = []
    for org in _usage(cur):
        try:
            limits = policy.limits_for(org["plan_name"])
        except UnknownPlan:
            out.append({"org_id": str(org["id"]), "name": org["name"], "plan": org["plan_name"], "issue": "unknown_plan"})
            continue
        over = []
        if limits.stores is not None and int(org["store_count"]) > limits.stores:
            over.append({"boundary": "stores", "limit": limits.stores, "actual": int(org["store_count"])})
        for role, n in sorted(org["roles"].items()):
            limit = limits.role_limit(role)
            if limit is not None and n > limit:
                over.append({"boundary": f"role:{role}", "limit": limit, "actual": n})
        if over:
            out.append({"org_id": str(org["id"]), "name": org["name"], "plan": org["plan_name"], "over": over})
    return out


def main() -> int:
    parser = argparse.ArgumentParser(description="Report organizations above their current plan limits.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL") or "postgresql://localhost/pantrypal",
        help="Postgres connection string (defaults to $DATABASE_URL_ADMIN / $DATABASE_URL).",
    )
    args = parser.parse_args()

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.cursor() as cur:
            rows = find_overages(cur, PlanPolicyEngine(DEFAULT_PLAN_LIMITS))

    for r in rows:
        print(json.dumps(r, default=str))
    print(f"OK ({len(rows)} organization(s) over limit)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
