import pytest

from backend.app.errors import PlanLimitExceeded, UnknownPlan
from backend.app.plan_policy import (
    DEFAULT_PLAN_LIMITS,
    PlanLimits,
    PlanPolicyEngine,
    PlanTier,
    count_role_assignments,
    plan_tier,
)


@pytest.fixture
def policy():
    return PlanPolicyEngine(DEFAULT_PLAN_LIMITS)


def test_plan_tier_accepts_billing_period_suffix():
    assert plan_tier("starter-monthly") is PlanTier.STARTER
    assert plan_tier(" Premium-Yearly ") is PlanTier.PREMIUM
    assert plan_tier("premium") is PlanTier.PREMIUM


@pytest.mark.parametrize("name", ["gold", "starter-weekly", "", None])
def test_plan_tier_rejects_unknown_plans(name):
    with pytest.raises(UnknownPlan):
        plan_tier(name)


def test_starter_allows_exactly_one_store(policy):
    policy.check_store_limit("org-1", "starter-monthly", 1)
    with pytest.raises(PlanLimitExceeded) as exc_info:
        policy.check_store_limit("org-1", "starter-monthly", 2)
    body = exc_info.value.to_dict()
    assert body["error"] == "PlanLimitExceeded"
    assert (body["boundary"], body["limit"], body["proposed"]) == ("stores", 1, 2)
    assert exc_info.value.status_code == 400


def test_starter_store_manager_boundary_is_exact(policy):
    policy.check_role_limit("org-1", "starter-monthly", "store_manager", 3)
    with pytest.raises(PlanLimitExceeded) as exc_info:
        policy.check_role_limit("org-1", "starter-monthly", "store_manager", 4)
    assert exc_info.value.to_dict()["boundary"] == "role:store_manager"


def test_roles_without_a_limit_are_unbounded(policy):
    policy.check_role_limit("org-1", "starter-monthly", "cashier", 50)


def test_premium_is_unbounded(policy):
    policy.check_store_limit("org-1", "premium-monthly", 25)
    policy.check_role_limit("org-1", "premium-monthly", "store_manager", 40)


def test_limits_table_is_injected():
    policy = PlanPolicyEngine({PlanTier.STARTER: PlanLimits(stores=2, roles={"cashier": 1})})
    policy.check_store_limit(None, "starter", 2)
    with pytest.raises(PlanLimitExceeded):
        policy.check_role_limit(None, "starter", "cashier", 2)
    # Tier exists but is not configured in this table.
    with pytest.raises(UnknownPlan):
        policy.limits_for("premium-monthly")


def test_role_counter_reads_current_usage(db, conn):
    org = db.add_org()
    manager = db.role_id("store_manager")
    for i in range(3):
        db.assign_role(db.add_user(email=f"m{i}@example.com"), org, "store_manager")
    with conn.cursor() as cur:
        assert count_role_assignments(cur, org, manager) == 3
