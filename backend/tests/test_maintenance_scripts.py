from backend.app.plan_policy import DEFAULT_PLAN_LIMITS, PlanPolicyEngine
from backend.scripts import ensure_default_stores, report_plan_overages


class _FakeCursor:
    def __init__(self, orgs=None, role_counts=None, missing=None):
        self.orgs = list(orgs or [])
        self.role_counts = list(role_counts or [])
        self.missing = list(missing or [])
        self.inserted = []
        self.rows = []

    def execute(self, sql, params=None):
        text = " ".join(str(sql or "").lower().split())
        if "where not exists (select 1 from stores" in text:
            self.rows = self.missing
            return
        if text.startswith("insert into stores"):
            self.inserted.append(tuple(params))
            return
        if "as store_count from organizations" in text:
            self.rows = [dict(o) for o in self.orgs]
            return
        if "from user_roles ur join roles r" in text:
            self.rows = self.role_counts
            return
        raise AssertionError(f"unexpected SQL in test cursor: {text}")

    def fetchall(self):
        return list(self.rows)


def test_ensure_default_stores_creates_main_store_per_missing_org():
    cur = _FakeCursor(missing=[{"id": "o-1", "name": "A"}, {"id": "o-2", "name": "B"}])
    fixed = ensure_default_stores.ensure_default_stores(cur)
    assert [o["id"] for o in fixed] == ["o-1", "o-2"]
    assert cur.inserted == [("o-1", "Main Store"), ("o-2", "Main Store")]


def test_ensure_default_stores_dry_run_writes_nothing():
    cur = _FakeCursor(missing=[{"id": "o-1", "name": "A"}])
    assert len(ensure_default_stores.ensure_default_stores(cur, dry_run=True)) == 1
    assert cur.inserted == []


def test_report_lists_grandfathered_orgs_only():
    cur = _FakeCursor(
        orgs=[
            {"id": "o-1", "name": "Downgraded", "plan_name": "starter-monthly", "store_count": 3},
            {"id": "o-2", "name": "Fine", "plan_name": "starter-monthly", "store_count": 1},
            {"id": "o-3", "name": "Big", "plan_name": "premium-monthly", "store_count": 12},
            {"id": "o-4", "name": "Legacy", "plan_name": "gold", "store_count": 1},
        ],
        role_counts=[
            {"org_id": "o-1", "role": "store_manager", "n": 5},
            {"org_id": "o-2", "role": "store_manager", "n": 3},
            {"org_id": "o-3", "role": "store_manager", "n": 9},
        ],
    )
    rows = report_plan_overages.find_overages(cur, PlanPolicyEngine(DEFAULT_PLAN_LIMITS))
    assert [r["org_id"] for r in rows] == ["o-1", "o-4"]
    assert rows[0]["over"] == [
        {"boundary": "stores", "limit": 1, "actual": 3},
        {"boundary": "role:store_manager", "limit": 3, "actual": 5},
    ]
    assert rows[1]["issue"] == "unknown_plan"
