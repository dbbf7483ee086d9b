from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional
from ..db import get_admin_conn
from ..deps import get_plan_policy, get_token_broker
from ..onboarding import OnboardingTokenBroker
from ..plan_policy import PlanPolicyEngine

router = APIRouter(prefix="/auth", tags=["auth"])


class OrganizationIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    owner_name: Optional[str] = None
    owner_email: Optional[EmailStr] = None
    owner_phone: Optional[str] = None
    gst_number: Optional[str] = None
    business_address: Optional[str] = None


class StoreIn(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    address: Optional[str] = None


class AdminIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    username: Optional[str] = None
    full_name: Optional[str] = None
    phone: Optional[str] = None


class RegisterOrganizationIn(BaseModel):
    organization: OrganizationIn
    stores: List[StoreIn] = []
    admin: AdminIn
    onboarding_token: Optional[str] = None


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


@router.post("/register-organization", status_code=201)
def register_organization(
    data: RegisterOrganizationIn,
    authorization: Optional[str] = Header(None),
    broker: OnboardingTokenBroker = Depends(get_token_broker),
    policy: PlanPolicyEngine = Depends(get_plan_policy),
):
    token = data.onboarding_token or _bearer(authorization)
    registration = {
        "organization": data.organization.model_dump(),
        "stores": [s.model_dump() for s in data.stores],
        "admin": data.admin.model_dump(),
    }
    # The organization does not exist yet, so there is no tenant context to set.
    with get_admin_conn() as conn:
        out = broker.exchange(conn, token, registration, policy)
    return {"ok": True, **out}
