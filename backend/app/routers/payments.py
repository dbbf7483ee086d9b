from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool
from typing import Optional
import hashlib
import json
from ..config import settings
from ..db import get_admin_conn
from ..deps import get_token_broker
from ..errors import ValidationError
from ..logs import json_log
from ..onboarding import OnboardingTokenBroker, verify_external_signature, verify_webhook_signature
from ..validation import PlanName

router = APIRouter(prefix="/payments", tags=["payments"])


class VerifyIn(BaseModel):
    plan: PlanName
    subscription_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    signature: Optional[str] = None
    # Checkout callbacks post the provider's field names as-is.
    razorpay_subscription_id: Optional[str] = None
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None

    def callback_payload(self) -> dict:
        return {
            "subscription_id": self.subscription_id or self.razorpay_subscription_id,
            "order_id": self.order_id or self.razorpay_order_id,
            "payment_id": self.payment_id or self.razorpay_payment_id,
            "signature": self.signature or self.razorpay_signature,
        }


@router.post("/verify")
def verify_payment(data: VerifyIn, broker: OnboardingTokenBroker = Depends(get_token_broker)):
    payload = data.callback_payload()
    verify_external_signature(payload, settings.payment_key_secret)
    subscription_id = payload["subscription_id"] or payload["order_id"]
    token = broker.mint(subscription_id, payload["payment_id"], data.plan)
    json_log("info", "onboarding.token_minted", subscription_id=subscription_id, plan=data.plan)
    return {
        "ok": True,
        "onboarding_token": token,
        "plan": data.plan,
        "subscription_id": subscription_id,
        "expires_in": settings.onboarding_token_ttl_minutes * 60,
    }


def _record_webhook_event(event_key: str, event_type: str, body: dict) -> bool:
    """Returns False when the event was already recorded."""
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO payment_webhook_events (id, provider, event_key, event_type, payload_json)
                VALUES (gen_random_uuid(), 'razorpay', %s, %s, %s::jsonb)
                ON CONFLICT (event_key) DO NOTHING
                RETURNING id
                """,
                (event_key, event_type, json.dumps(body)),
            )
            return cur.fetchone() is not None


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    x_razorpay_event_id: Optional[str] = Header(None, alias="X-Razorpay-Event-Id"),
):
    raw = await request.body()
    verify_webhook_signature(raw, x_razorpay_signature, settings.payment_webhook_secret)
    try:
        body = json.loads(raw or b"{}")
    except ValueError:
        raise ValidationError("webhook body is not valid JSON") from None
    if not isinstance(body, dict):
        raise ValidationError("webhook body must be a JSON object")
    event_type = str(body.get("event") or "unknown")
    # Providers redeliver; the event id (or the body hash) makes recording idempotent.
    event_key = x_razorpay_event_id or hashlib.sha256(raw).hexdigest()
    # Pool checkout and the insert block; keep them off the event loop.
    duplicate = not await run_in_threadpool(_record_webhook_event, event_key, event_type, body)
    json_log("info", "payment.webhook", event_type=event_type, event_key=event_key, duplicate=duplicate)
    return {"ok": True, "event": event_type, "duplicate": duplicate}
