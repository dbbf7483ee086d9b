"""
Staff invitations.

Inviting someone consumes role quota up front: a pending invite counts
against the plan together with existing assignments, so an organization on
the starter plan cannot hand out a fourth store-manager invite. Acceptance
re-checks the quota under the organization row lock because invites can
outlive a plan change.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from psycopg.errors import UniqueViolation  # type: ignore

from .db import set_txn_timeouts
from .errors import (
    InvalidInvite,
    InviteNotFound,
    InviteNotPending,
    OrganizationNotFound,
    RoleNotFound,
    UserAlreadyExists,
)
from .logs import json_log
from .plan_policy import (
    PlanPolicyEngine,
    count_pending_invites,
    count_role_assignments,
    find_role,
    lock_org_plan,
)
from .security import hash_password, hash_session_token, new_opaque_token

INVITE_COLUMNS = "id, org_id, email, role_id, store_id, full_name, phone, status, expires_at, created_at"


def _locked_plan(cur, org_id: str) -> str:
    org = lock_org_plan(cur, org_id)
    if not org:
        raise OrganizationNotFound(org_id=str(org_id))
    return org["plan_name"]


def create_invite(
    conn,
    org_id: str,
    email: str,
    role: str,
    policy: PlanPolicyEngine,
    actor: Optional[str] = None,
    store_id: Optional[str] = None,
    full_name: Optional[str] = None,
    phone: Optional[str] = None,
    ttl_hours: int = 72,
) -> dict:
    token = new_opaque_token()
    expires_at = datetime.now(timezone.utc) + timedelta(hours=ttl_hours)
    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            plan = _locked_plan(cur, org_id)
            r = find_role(cur, role)
            if not r:
                raise RoleNotFound(role=role)
            assigned = count_role_assignments(cur, org_id, r["id"])
            pending = count_pending_invites(cur, org_id, r["id"])
            policy.check_role_limit(org_id, plan, role, assigned + pending + 1)

            cur.execute(
                f"""
                INSERT INTO org_invites
                  (id, org_id, email, role_id, store_id, full_name, phone, token_hash, expires_at, created_by)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {INVITE_COLUMNS}
                """,
                (org_id, email, r["id"], store_id, full_name, phone, hash_session_token(token), expires_at, actor),
            )
            invite = cur.fetchone()
    json_log("info", "invite.created", org_id=org_id, invite_id=invite["id"], role=role)
    out = dict(invite)
    out["role"] = role
    out["token"] = token
    return out


def list_pending_invites(conn, org_id: str) -> list[dict]:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT i.id, i.email, i.full_name, i.phone, i.store_id, i.expires_at, i.created_at, r.name AS role
            FROM org_invites i
            JOIN roles r ON r.id = i.role_id
            WHERE i.org_id = %s AND i.status = 'pending' AND i.expires_at > now()
            ORDER BY i.created_at DESC
            """,
            (org_id,),
        )
        return cur.fetchall()


def withdraw_invite(conn, org_id: str, invite_id: str) -> dict:
    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            cur.execute(
                """
                UPDATE org_invites
                SET status = 'withdrawn'
                WHERE org_id = %s AND id = %s AND status = 'pending'
                RETURNING id
                """,
                (org_id, invite_id),
            )
            if cur.fetchone():
                return {"id": invite_id, "status": "withdrawn"}
            cur.execute("SELECT status FROM org_invites WHERE org_id = %s AND id = %s", (org_id, invite_id))
            row = cur.fetchone()
            if not row:
                raise InviteNotFound(invite_id=str(invite_id))
            raise InviteNotPending(invite_id=str(invite_id), status=row["status"])


def accept_invite(
    conn,
    token: str,
    password: str,
    policy: PlanPolicyEngine,
    username: Optional[str] = None,
    full_name: Optional[str] = None,
    phone: Optional[str] = None,
) -> dict:
    hashed = hash_password(password)
    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            cur.execute(
                f"""
                SELECT {INVITE_COLUMNS}
                FROM org_invites
                WHERE token_hash = %s
                FOR UPDATE
                """,
                (hash_session_token(token or ""),),
            )
            invite = cur.fetchone()
            if not invite:
                raise InvalidInvite()
            if invite["status"] != "pending":
                raise InviteNotPending(invite_id=str(invite["id"]), status=invite["status"])
            if invite["expires_at"] <= datetime.now(timezone.utc):
                raise InvalidInvite("invite has expired")

            org_id = str(invite["org_id"])
            plan = _locked_plan(cur, org_id)
            cur.execute("SELECT id, name FROM roles WHERE id = %s", (invite["role_id"],))
            role = cur.fetchone()
            if not role:
                raise RoleNotFound(role_id=str(invite["role_id"]))
            assigned = count_role_assignments(cur, org_id, role["id"])
            policy.check_role_limit(org_id, plan, role["name"], assigned + 1)

            try:
                cur.execute(
                    """
                    INSERT INTO users (id, username, email, hashed_password, full_name, phone, is_active)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, true)
                    RETURNING id, username, email, full_name
                    """,
                    (username, invite["email"], hashed, full_name or invite["full_name"], phone or invite["phone"]),
                )
            except UniqueViolation:
                raise UserAlreadyExists(email=invite["email"]) from None
            user = cur.fetchone()

            cur.execute(
                """
                INSERT INTO user_roles (id, user_id, org_id, role_id, store_id)
                VALUES (gen_random_uuid(), %s, %s, %s, %s)
                """,
                (user["id"], org_id, role["id"], invite["store_id"]),
            )
            cur.execute(
                """
                UPDATE org_invites
                SET status = 'accepted', accepted_user_id = %s
                WHERE id = %s
                """,
                (user["id"], invite["id"]),
            )
    json_log("info", "invite.accepted", org_id=org_id, invite_id=invite["id"], role=role["name"])
    return {"org_id": org_id, "role": role["name"], "user": dict(user)}
