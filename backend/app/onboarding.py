"""
Paid-subscription onboarding.

A checkout callback from the payment provider is signed with the shared key
over `"<subscription_or_order_id>|<payment_id>"`. Once the signature checks
out, a short-lived JWT is minted for the subscription. Nothing is stored at
mint time; the token is consumed exactly once by `exchange`, which claims the
subscription id in `onboarding_redemptions` before creating anything else.
A replayed token loses that race and is rejected without side effects.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from psycopg.errors import UniqueViolation  # type: ignore

from .db import set_org_context, set_txn_timeouts
from .errors import (
    InvalidOnboardingToken,
    InvalidSignature,
    NotConfigured,
    RoleNotFound,
    StoreRequired,
    SubscriptionAlreadyUsed,
    UserAlreadyExists,
)
from .logs import json_log
from .plan_policy import PlanPolicyEngine, find_role, plan_tier
from .security import hash_password, signature_matches

TOKEN_ALGORITHM = "HS256"
ONBOARDING_ROLE = "onboarding"
ADMIN_ROLE = "admin"


def signed_message(payload: dict) -> str:
    ref = payload.get("subscription_id") or payload.get("order_id") or ""
    return f"{ref}|{payload.get('payment_id') or ''}"


def verify_external_signature(payload: dict, shared_secret: Optional[str]) -> bool:
    """
    Check a checkout callback.

    `payload` carries `subscription_id` (or `order_id`), `payment_id` and
    `signature`. Raises `InvalidSignature` on any mismatch; the message never
    says which part was wrong.
    """
    if not shared_secret:
        raise NotConfigured("payment provider is not configured")
    if not payload.get("payment_id") or not (payload.get("subscription_id") or payload.get("order_id")):
        raise InvalidSignature()
    if not signature_matches(shared_secret, signed_message(payload), payload.get("signature")):
        json_log("warning", "onboarding.signature_rejected", payment_id=payload.get("payment_id"))
        raise InvalidSignature()
    return True


def verify_webhook_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    if not secret:
        raise NotConfigured("payment webhooks are not configured")
    if not signature_matches(secret, raw_body, signature):
        raise InvalidSignature("Invalid webhook signature")
    return True


class OnboardingTokenBroker:
    def __init__(self, secret: Optional[str], ttl_minutes: int = 60):
        self._secret = secret or ""
        self._ttl = timedelta(minutes=max(1, int(ttl_minutes)))

    def _require_secret(self) -> str:
        if not self._secret:
            raise NotConfigured("onboarding tokens are not configured")
        return self._secret

    def mint(self, subscription_id: str, payment_id: str, plan: str, now: Optional[datetime] = None) -> str:
        plan_tier(plan)
        now = now or datetime.now(timezone.utc)
        claims = {
            "sub": str(subscription_id),
            "pid": str(payment_id),
            "plan": plan,
            "roles": [ONBOARDING_ROLE],
            "jti": uuid.uuid4().hex,
            "iat": int(now.timestamp()),
            "exp": int((now + self._ttl).timestamp()),
        }
        return jwt.encode(claims, self._require_secret(), algorithm=TOKEN_ALGORITHM)

    def decode(self, token: Optional[str]) -> dict:
        secret = self._require_secret()
        if not token:
            raise InvalidOnboardingToken()
        try:
            claims = jwt.decode(token, secret, algorithms=[TOKEN_ALGORITHM])
        except JWTError:
            raise InvalidOnboardingToken() from None
        if ONBOARDING_ROLE not in (claims.get("roles") or []):
            raise InvalidOnboardingToken("token is not an onboarding token")
        if not claims.get("sub") or not claims.get("pid") or not claims.get("plan"):
            raise InvalidOnboardingToken()
        return claims

    def exchange(self, conn, token: str, registration: dict, policy: PlanPolicyEngine) -> dict:
        """
        Redeem an onboarding token for a new organization.

        `registration` holds `organization` (name and owner details), `stores`
        (at least one) and `admin` (username, email, password, full_name,
        phone). Everything happens in one transaction: a rejected plan limit,
        a taken email or a replayed subscription leaves no rows behind.
        """
        claims = self.decode(token)
        plan = claims["plan"]
        subscription_id = claims["sub"]
        org_in = registration.get("organization") or {}
        stores_in = list(registration.get("stores") or [])
        admin_in = registration.get("admin") or {}
        if not stores_in:
            raise StoreRequired()
        # Hash outside the transaction; bcrypt is slow.
        hashed = hash_password(admin_in["password"])

        with conn.transaction():
            with conn.cursor() as cur:
                set_txn_timeouts(cur)
                cur.execute(
                    """
                    INSERT INTO onboarding_redemptions (id, subscription_id, payment_id, token_jti, plan_name)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s)
                    ON CONFLICT (subscription_id) DO NOTHING
                    RETURNING id
                    """,
                    (subscription_id, claims["pid"], claims.get("jti") or "", plan),
                )
                redemption = cur.fetchone()
                if not redemption:
                    raise SubscriptionAlreadyUsed(subscription_id=subscription_id)

                policy.check_store_limit(None, plan, len(stores_in))

                try:
                    cur.execute(
                        """
                        INSERT INTO organizations
                          (id, name, plan_name, subscription_id, payment_id, payment_status,
                           owner_name, owner_email, owner_phone, gst_number, business_address)
                        VALUES
                          (gen_random_uuid(), %s, %s, %s, %s, 'completed', %s, %s, %s, %s, %s)
                        RETURNING id, name, plan_name, subscription_id, created_at
                        """,
                        (
                            org_in.get("name"),
                            plan,
                            subscription_id,
                            claims["pid"],
                            org_in.get("owner_name"),
                            org_in.get("owner_email"),
                            org_in.get("owner_phone"),
                            org_in.get("gst_number"),
                            org_in.get("business_address"),
                        ),
                    )
                except UniqueViolation:
                    raise SubscriptionAlreadyUsed(subscription_id=subscription_id) from None
                org = cur.fetchone()
                org_id = str(org["id"])

            set_org_context(conn, org_id)
            with conn.cursor() as cur:
                stores = []
                for s in stores_in:
                    cur.execute(
                        """
                        INSERT INTO stores (id, org_id, name, address)
                        VALUES (gen_random_uuid(), %s, %s, %s)
                        RETURNING id, org_id, name, address
                        """,
                        (org_id, s.get("name"), s.get("address")),
                    )
                    stores.append(cur.fetchone())

                role = find_role(cur, ADMIN_ROLE)
                if not role:
                    raise RoleNotFound(role=ADMIN_ROLE)
                policy.check_role_limit(org_id, plan, ADMIN_ROLE, 1)

                try:
                    cur.execute(
                        """
                        INSERT INTO users (id, username, email, hashed_password, full_name, phone, is_active)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, true)
                        RETURNING id, username, email, full_name
                        """,
                        (
                            admin_in.get("username"),
                            admin_in["email"],
                            hashed,
                            admin_in.get("full_name"),
                            admin_in.get("phone"),
                        ),
                    )
                except UniqueViolation:
                    raise UserAlreadyExists(email=admin_in["email"]) from None
                admin = cur.fetchone()

                cur.execute(
                    """
                    INSERT INTO user_roles (id, user_id, org_id, role_id, store_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s)
                    """,
                    (admin["id"], org_id, role["id"], stores[0]["id"]),
                )
                cur.execute(
                    "UPDATE onboarding_redemptions SET org_id = %s WHERE id = %s",
                    (org_id, redemption["id"]),
                )

        json_log(
            "info",
            "onboarding.exchanged",
            org_id=org_id,
            subscription_id=subscription_id,
            plan=plan,
            stores=len(stores),
        )
        return {
            "organization": dict(org),
            "stores": [dict(s) for s in stores],
            "admin": dict(admin),
        }
