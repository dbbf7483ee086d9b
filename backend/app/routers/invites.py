from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from typing import Optional
from ..config import settings
from ..db import get_admin_conn, get_conn, set_org_context
from ..deps import get_org_id, get_current_user, get_notification_queue, get_plan_policy, require_permission
from ..notifications import NotificationQueue
from ..plan_policy import PlanPolicyEngine
from ..validation import InviteRole
from .. import invites

router = APIRouter(prefix="/org/invites", tags=["invites"])
public_router = APIRouter(prefix="/invites", tags=["invites"])


class InviteIn(BaseModel):
    email: EmailStr
    role: InviteRole = "store_manager"
    store_id: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None


class AcceptInviteIn(BaseModel):
    token: str = Field(min_length=1)
    password: str = Field(min_length=8, max_length=128)
    username: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None


@router.post("", status_code=201, dependencies=[Depends(require_permission("users:manage"))])
def create_invite(
    data: InviteIn,
    org_id: str = Depends(get_org_id),
    user=Depends(get_current_user),
    policy: PlanPolicyEngine = Depends(get_plan_policy),
    queue: NotificationQueue = Depends(get_notification_queue),
):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        invite = invites.create_invite(
            conn,
            org_id,
            data.email,
            data.role,
            policy,
            actor=user["user_id"],
            store_id=data.store_id,
            full_name=data.full_name,
            phone=data.phone,
            ttl_hours=settings.invite_ttl_hours,
        )
    token = invite.pop("token")
    # The token only ever leaves through the invite email.
    queued = queue.enqueue(
        "invite.created",
        {"to": data.email, "role": data.role, "token": token, "expires_at": invite["expires_at"]},
        org_id=org_id,
    )
    return {"ok": True, "invite": invite, "queued": queued}


@router.get("/pending", dependencies=[Depends(require_permission("users:manage"))])
def list_pending(org_id: str = Depends(get_org_id)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        return {"ok": True, "invites": invites.list_pending_invites(conn, org_id)}


@router.delete("/{invite_id}", dependencies=[Depends(require_permission("users:manage"))])
def withdraw(invite_id: str, org_id: str = Depends(get_org_id)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        out = invites.withdraw_invite(conn, org_id, invite_id)
    return {"ok": True, **out}


@public_router.post("/accept", status_code=201)
def accept(data: AcceptInviteIn, policy: PlanPolicyEngine = Depends(get_plan_policy)):
    # The invitee has no session yet; the token resolves the organization.
    with get_admin_conn() as conn:
        out = invites.accept_invite(
            conn,
            data.token,
            data.password,
            policy,
            username=data.username,
            full_name=data.full_name,
            phone=data.phone,
        )
    return {"ok": True, **out}
