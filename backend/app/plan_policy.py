"""
Subscription-plan quotas.

The plan → limits table is handed to `PlanPolicyEngine` when it is built
(`DEFAULT_PLAN_LIMITS` in production, anything else in tests). Checks are
pure: they compare a proposed count with the table and raise
`PlanLimitExceeded` naming the boundary that was crossed. Limits apply at the
moment of creation only; entities created under a larger plan are not revoked
when an organization moves to a smaller one.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from .errors import PlanLimitExceeded, UnknownPlan


class PlanTier(str, Enum):
    STARTER = "starter"
    PREMIUM = "premium"


@dataclass(frozen=True)
class PlanLimits:
    # None means unbounded.
    stores: Optional[int]
    roles: Mapping[str, Optional[int]] = field(default_factory=dict)

    def role_limit(self, role: str) -> Optional[int]:
        return self.roles.get(role)


DEFAULT_PLAN_LIMITS: Mapping[PlanTier, PlanLimits] = {
    PlanTier.STARTER: PlanLimits(stores=1, roles={"admin": 1, "store_manager": 3}),
    PlanTier.PREMIUM: PlanLimits(stores=None, roles={}),
}

BILLING_PERIODS = {"monthly", "yearly"}


def plan_tier(plan_name: Optional[str]) -> PlanTier:
    """`starter-monthly` -> STARTER; a bare tier name is accepted too."""
    raw = (plan_name or "").strip().lower()
    tier, _, period = raw.partition("-")
    if period and period not in BILLING_PERIODS:
        raise UnknownPlan(f"unknown plan: {plan_name!r}", plan=plan_name)
    try:
        return PlanTier(tier)
    except ValueError:
        raise UnknownPlan(f"unknown plan: {plan_name!r}", plan=plan_name) from None


class PlanPolicyEngine:
    def __init__(self, limits: Mapping[PlanTier, PlanLimits]):
        self._limits = dict(limits)

    def limits_for(self, plan_name: str) -> PlanLimits:
        tier = plan_tier(plan_name)
        limits = self._limits.get(tier)
        if limits is None:
            raise UnknownPlan(f"no limits configured for plan: {plan_name!r}", plan=plan_name)
        return limits

    def check_store_limit(self, org_id: Optional[str], plan_name: str, proposed_count: int) -> None:
        limit = self.limits_for(plan_name).stores
        if limit is not None and proposed_count > limit:
            raise PlanLimitExceeded(
                f"plan {plan_name} allows at most {limit} store(s)",
                boundary="stores",
                org_id=str(org_id) if org_id else None,
                plan=plan_name,
                limit=limit,
                proposed=proposed_count,
            )

    def check_role_limit(self, org_id: Optional[str], plan_name: str, role: str, proposed_count: int) -> None:
        limit = self.limits_for(plan_name).role_limit(role)
        if limit is not None and proposed_count > limit:
            raise PlanLimitExceeded(
                f"plan {plan_name} allows at most {limit} {role} user(s)",
                boundary=f"role:{role}",
                org_id=str(org_id) if org_id else None,
                plan=plan_name,
                limit=limit,
                proposed=proposed_count,
            )


def count_role_assignments(cur, org_id: str, role_id: str) -> int:
    cur.execute(
        "SELECT COUNT(*) AS n FROM user_roles WHERE org_id = %s AND role_id = %s",
        (org_id, role_id),
    )
    return int(cur.fetchone()["n"])


def count_pending_invites(cur, org_id: str, role_id: str) -> int:
    cur.execute(
        """
        SELECT COUNT(*) AS n
        FROM org_invites
        WHERE org_id = %s AND role_id = %s AND status = 'pending' AND expires_at > now()
        """,
        (org_id, role_id),
    )
    return int(cur.fetchone()["n"])


def lock_org_plan(cur, org_id: str) -> Optional[dict]:
    # Row lock on the organization orders concurrent quota-consuming writes.
    cur.execute(
        """
        SELECT id, plan_name
        FROM organizations
        WHERE id = %s
        FOR UPDATE
        """,
        (org_id,),
    )
    return cur.fetchone()


def find_role(cur, role_name: str) -> Optional[dict]:
    cur.execute("SELECT id, name FROM roles WHERE name = %s", (role_name,))
    return cur.fetchone()
