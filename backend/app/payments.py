"""
Settlement of finalized bills.

Payment methods are a closed set of variants. Request data is parsed into one
of them before any database work, so an unknown method or a gateway payment
without a provider reference never reaches a transaction.

A bill takes at most one completed payment. The check runs under the bill row
lock and is backed by a partial unique index, so a concurrent duplicate still
surfaces as `DuplicatePayment`.
"""
import json
from dataclasses import dataclass
from typing import Optional, Union

from psycopg.errors import UniqueViolation  # type: ignore

from .bill_ledger import fetch_bill
from .db import set_txn_timeouts
from .errors import (
    BillNotFinalized,
    DuplicatePayment,
    MissingProviderReference,
    UnsupportedMethod,
)
from .logs import json_log
from .money import q_money
from .payment_guards import assert_amount_matches_total


@dataclass(frozen=True)
class Cash:
    pass


@dataclass(frozen=True)
class Card:
    auth_code: Optional[str] = None
    last4: Optional[str] = None


@dataclass(frozen=True)
class Upi:
    vpa: Optional[str] = None
    reference: Optional[str] = None


@dataclass(frozen=True)
class ExternalGateway:
    provider_ref: str
    provider: Optional[str] = None


Tender = Union[Cash, Card, Upi, ExternalGateway]

# Gateway names accepted from clients; all map to the external-gateway variant.
GATEWAY_METHODS = {"external-gateway", "external_gateway", "gateway", "razorpay"}

PAYMENT_COLUMNS = "id, bill_id, method, provider, provider_ref, amount, status, created_at, settled_at"


def _clean(v) -> Optional[str]:
    s = str(v).strip() if v is not None else ""
    return s or None


def parse_payment_method(method: Optional[str], fields: Optional[dict] = None) -> Tender:
    fields = fields or {}
    m = (method or "").strip().lower()
    if m == "cash":
        return Cash()
    if m == "card":
        return Card(auth_code=_clean(fields.get("auth_code")), last4=_clean(fields.get("card_last4")))
    if m == "upi":
        return Upi(vpa=_clean(fields.get("upi_vpa")), reference=_clean(fields.get("reference")))
    if m in GATEWAY_METHODS:
        ref = _clean(fields.get("provider_ref")) or _clean(fields.get("payment_id")) or _clean(fields.get("razorpay_payment_id"))
        if not ref:
            raise MissingProviderReference(method=m)
        provider = _clean(fields.get("provider")) or (m if m == "razorpay" else None)
        return ExternalGateway(provider_ref=ref, provider=provider)
    raise UnsupportedMethod(f"unsupported payment method: {method!r}", method=method)


def method_code(tender: Tender) -> str:
    if isinstance(tender, Cash):
        return "cash"
    if isinstance(tender, Card):
        return "card"
    if isinstance(tender, Upi):
        return "upi"
    if isinstance(tender, ExternalGateway):
        return "external-gateway"
    raise UnsupportedMethod(f"unsupported payment method: {type(tender).__name__}")


def _tender_details(tender: Tender) -> dict:
    if isinstance(tender, Card):
        return {"auth_code": tender.auth_code, "card_last4": tender.last4}
    if isinstance(tender, Upi):
        return {"upi_vpa": tender.vpa, "reference": tender.reference}
    return {}


def process_payment(conn, org_id: str, bill_id: str, amount, tender: Tender, actor: Optional[str] = None) -> dict:
    method = method_code(tender)
    provider = tender.provider if isinstance(tender, ExternalGateway) else None
    provider_ref = tender.provider_ref if isinstance(tender, ExternalGateway) else None
    details = {k: v for k, v in _tender_details(tender).items() if v}

    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            bill = fetch_bill(cur, org_id, bill_id, lock=True)
            if bill["status"] != "finalized":
                raise BillNotFinalized(bill_id=str(bill_id))

            cur.execute(
                """
                SELECT id
                FROM payments
                WHERE bill_id = %s AND status = 'completed'
                LIMIT 1
                """,
                (bill_id,),
            )
            existing = cur.fetchone()
            if existing:
                raise DuplicatePayment(bill_id=str(bill_id), payment_id=str(existing["id"]))

            assert_amount_matches_total(bill["total"], amount)

            try:
                cur.execute(
                    f"""
                    INSERT INTO payments
                      (id, org_id, bill_id, method, provider, provider_ref, amount, status, details, created_by, settled_at)
                    VALUES
                      (gen_random_uuid(), %s, %s, %s, %s, %s, %s, 'completed', %s::jsonb, %s, now())
                    RETURNING {PAYMENT_COLUMNS}
                    """,
                    (org_id, bill_id, method, provider, provider_ref, q_money(amount), json.dumps(details), actor),
                )
            except UniqueViolation:
                raise DuplicatePayment(bill_id=str(bill_id)) from None
            payment = cur.fetchone()

            # Only writer of bills.payment_status.
            cur.execute(
                """
                UPDATE bills
                SET payment_status = 'completed',
                    payment_method = %s,
                    updated_at = now()
                WHERE id = %s
                """,
                (method, bill_id),
            )

    json_log(
        "info",
        "payment.completed",
        org_id=org_id,
        bill_id=bill_id,
        payment_id=payment["id"],
        method=method,
        amount=payment["amount"],
    )
    out = dict(payment)
    out.update({"bill_number": bill["bill_number"], "payment_status": "completed", "payment_method": method})
    return out


def get_payment_history(conn, org_id: str, bill_id: str) -> Optional[dict]:
    with conn.cursor() as cur:
        bill = fetch_bill(cur, org_id, bill_id, lock=False)
        cur.execute(
            f"""
            SELECT {PAYMENT_COLUMNS}
            FROM payments
            WHERE org_id = %s AND bill_id = %s
            ORDER BY created_at DESC
            LIMIT 1
            """,
            (org_id, bill_id),
        )
        row = cur.fetchone()
        if not row:
            return None
        out = dict(row)
        out.update(
            {
                "bill_number": bill["bill_number"],
                "payment_status": row["status"],
                "payment_method": row["method"],
            }
        )
        return out
