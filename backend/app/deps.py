from fastapi import Header, HTTPException, Depends, Cookie
from .config import settings
from .db import get_conn, set_org_context
from .notifications import NotificationQueue, OutboxNotificationQueue
from .onboarding import OnboardingTokenBroker
from .plan_policy import DEFAULT_PLAN_LIMITS, PlanPolicyEngine
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "pantrypal_session"

_plan_policy = PlanPolicyEngine(DEFAULT_PLAN_LIMITS)
_notification_queue = OutboxNotificationQueue()


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1]
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, s.expires_at, s.is_active, s.active_org_id
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token = %s AND u.is_active = true
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "active_org_id": row["active_org_id"],
            }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"]}


def get_org_id(
    x_org_id: Optional[str] = Header(None, alias="X-Org-Id"),
    session=Depends(get_session),
) -> str:
    if x_org_id:
        return x_org_id
    if session.get("active_org_id"):
        return str(session["active_org_id"])
    raise HTTPException(status_code=400, detail="missing org id")


def require_org_access(org_id: str = Depends(get_org_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT 1 FROM user_roles
                WHERE user_id = %s AND org_id = %s
                """,
                (user["user_id"], org_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=403, detail="no organization access")
    return True


def require_permission(code: str):
    def _dep(org_id: str = Depends(get_org_id), user=Depends(get_current_user)):
        with get_conn() as conn:
            set_org_context(conn, org_id)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT 1
                    FROM user_roles ur
                    JOIN role_permissions rp ON rp.role_id = ur.role_id
                    JOIN permissions p ON p.id = rp.permission_id
                    WHERE ur.user_id = %s AND ur.org_id = %s AND p.code = %s
                    LIMIT 1
                    """,
                    (user["user_id"], org_id, code),
                )
                if not cur.fetchone():
                    raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep


def get_plan_policy() -> PlanPolicyEngine:
    return _plan_policy


def get_notification_queue() -> NotificationQueue:
    return _notification_queue


def get_token_broker() -> OnboardingTokenBroker:
    return OnboardingTokenBroker(settings.onboarding_token_secret, settings.onboarding_token_ttl_minutes)
