from datetime import datetime, timedelta, timezone

import pytest

from backend.app import invites
from backend.app.errors import (
    InvalidInvite,
    InviteNotFound,
    InviteNotPending,
    PlanLimitExceeded,
    RoleNotFound,
)
from backend.app.plan_policy import DEFAULT_PLAN_LIMITS, PlanPolicyEngine


@pytest.fixture
def policy():
    return PlanPolicyEngine(DEFAULT_PLAN_LIMITS)


def _invite(conn, org, policy, n, role="store_manager"):
    return invites.create_invite(conn, org, f"staff{n}@example.com", role, policy, actor="u-1")


def test_starter_fourth_store_manager_invite_is_rejected(db, conn, policy):
    org = db.add_org(plan_name="starter-monthly")
    for n in range(3):
        _invite(conn, org, policy, n)
    with pytest.raises(PlanLimitExceeded) as exc_info:
        _invite(conn, org, policy, 3)
    assert exc_info.value.message  # non-empty
    assert exc_info.value.to_dict()["boundary"] == "role:store_manager"
    assert exc_info.value.to_dict()["proposed"] == 4
    assert len(db.rows("org_invites")) == 3


def test_existing_assignments_and_pending_invites_share_the_quota(db, conn, policy):
    org = db.add_org(plan_name="starter")
    for n in range(2):
        db.assign_role(db.add_user(email=f"m{n}@example.com"), org, "store_manager")
    _invite(conn, org, policy, 0)
    with pytest.raises(PlanLimitExceeded):
        _invite(conn, org, policy, 1)


def test_withdrawn_invite_frees_its_slot(db, conn, policy):
    org = db.add_org(plan_name="starter")
    created = [_invite(conn, org, policy, n) for n in range(3)]
    invites.withdraw_invite(conn, org, created[0]["id"])
    _invite(conn, org, policy, 3)
    with pytest.raises(InviteNotPending):
        invites.withdraw_invite(conn, org, created[0]["id"])
    with pytest.raises(InviteNotFound):
        invites.withdraw_invite(conn, org, "00000000-0000-0000-0000-000000000000")


def test_unknown_role(db, conn, policy):
    org = db.add_org()
    with pytest.raises(RoleNotFound):
        _invite(conn, org, policy, 0, role="owner")


def test_token_is_stored_hashed(db, conn, policy):
    org = db.add_org()
    inv = _invite(conn, org, policy, 0)
    row = db.one("org_invites", id=inv["id"])
    assert inv["token"] not in row["token_hash"]
    assert row["token_hash"].startswith("sha256:")


def test_list_pending_invites(db, conn, policy):
    org = db.add_org(plan_name="premium-monthly")
    first = _invite(conn, org, policy, 0)
    second = _invite(conn, org, policy, 1, role="cashier")
    invites.withdraw_invite(conn, org, first["id"])
    pending = invites.list_pending_invites(conn, org)
    assert [(p["id"], p["role"]) for p in pending] == [(second["id"], "cashier")]


def test_accept_invite_creates_user_and_assignment(db, conn, policy):
    org = db.add_org()
    inv = _invite(conn, org, policy, 0)
    out = invites.accept_invite(conn, inv["token"], "long-password", policy, full_name="Kim")
    assert out["org_id"] == org
    assert out["role"] == "store_manager"
    assert out["user"]["email"] == "staff0@example.com"
    assert db.one("org_invites", id=inv["id"])["status"] == "accepted"
    [assignment] = db.rows("user_roles")
    assert assignment["role_id"] == db.role_id("store_manager")
    with pytest.raises(InviteNotPending):
        invites.accept_invite(conn, inv["token"], "long-password", policy)


def test_accept_rejects_unknown_and_expired_tokens(db, conn, policy):
    org = db.add_org()
    with pytest.raises(InvalidInvite):
        invites.accept_invite(conn, "nope", "long-password", policy)
    inv = _invite(conn, org, policy, 0)
    db.one("org_invites", id=inv["id"])["expires_at"] = datetime.now(timezone.utc) - timedelta(minutes=1)
    with pytest.raises(InvalidInvite):
        invites.accept_invite(conn, inv["token"], "long-password", policy)
    assert db.rows("users") == []


def test_accept_rechecks_the_quota_after_a_downgrade(db, conn, policy):
    org = db.add_org(plan_name="premium-monthly")
    inv = _invite(conn, org, policy, 0)
    for n in range(3):
        db.assign_role(db.add_user(email=f"m{n}@example.com"), org, "store_manager")
    db.one("organizations", id=org)["plan_name"] = "starter-monthly"
    with pytest.raises(PlanLimitExceeded):
        invites.accept_invite(conn, inv["token"], "long-password", policy)
    assert db.one("org_invites", id=inv["id"])["status"] == "pending"
    # Grandfathered assignments stay.
    assert len(db.rows("user_roles")) == 3
