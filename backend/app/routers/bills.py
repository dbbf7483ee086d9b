from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr
from typing import Optional
from decimal import Decimal
from ..db import get_conn, set_org_context
from ..deps import get_org_id, get_current_user, get_notification_queue, require_permission
from ..errors import BillNotFinalized
from ..notifications import NotificationQueue
from ..validation import BillStatus, PaymentMethod
from .. import bill_ledger, payments

router = APIRouter(prefix="/bills", tags=["bills"])


class BillIn(BaseModel):
    customer_id: Optional[str] = None
    notes: Optional[str] = None
    discount_percent: Decimal = Decimal("0")
    tax_percent: Decimal = Decimal("0")


class BillItemIn(BaseModel):
    product_id: str
    quantity: int


class BillItemUpdate(BaseModel):
    quantity: int


class FinalizeIn(BaseModel):
    discount_percent: Optional[Decimal] = None
    tax_percent: Optional[Decimal] = None


class PaymentIn(BaseModel):
    amount: Decimal
    method: PaymentMethod
    provider: Optional[str] = None
    provider_ref: Optional[str] = None
    payment_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    auth_code: Optional[str] = None
    card_last4: Optional[str] = None
    upi_vpa: Optional[str] = None
    reference: Optional[str] = None


class EmailReceiptIn(BaseModel):
    email: EmailStr


@router.post("", status_code=201, dependencies=[Depends(require_permission("bills:write"))])
def create_bill(data: Optional[BillIn] = None, org_id: str = Depends(get_org_id), user=Depends(get_current_user)):
    data = data or BillIn()
    with get_conn() as conn:
        set_org_context(conn, org_id)
        bill = bill_ledger.create_bill(
            conn,
            org_id,
            actor=user["user_id"],
            customer_id=data.customer_id,
            notes=data.notes,
            discount_percent=data.discount_percent,
            tax_percent=data.tax_percent,
        )
    return {"ok": True, "id": bill["id"], "bill_number": bill["bill_number"], "status": bill["status"], "bill": bill}


@router.get("", dependencies=[Depends(require_permission("bills:read"))])
def list_bills(status: Optional[BillStatus] = None, limit: int = 50, org_id: str = Depends(get_org_id)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        return {"ok": True, "bills": bill_ledger.list_bills(conn, org_id, status=status, limit=limit)}


@router.get("/{bill_id}", dependencies=[Depends(require_permission("bills:read"))])
def get_bill(bill_id: str, org_id: str = Depends(get_org_id)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        return {"ok": True, "bill": bill_ledger.get_bill(conn, org_id, bill_id)}


@router.post("/{bill_id}/items", status_code=201, dependencies=[Depends(require_permission("bills:write"))])
def add_item(bill_id: str, data: BillItemIn, org_id: str = Depends(get_org_id)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        out = bill_ledger.add_item(conn, org_id, bill_id, data.product_id, data.quantity)
    return {"ok": True, **out}


@router.patch("/{bill_id}/items/{product_id}", dependencies=[Depends(require_permission("bills:write"))])
def update_item(bill_id: str, product_id: str, data: BillItemUpdate, org_id: str = Depends(get_org_id)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        out = bill_ledger.update_item(conn, org_id, bill_id, product_id, data.quantity)
    return {"ok": True, **out}


@router.delete("/{bill_id}/items/{product_id}", dependencies=[Depends(require_permission("bills:write"))])
def remove_item(bill_id: str, product_id: str, org_id: str = Depends(get_org_id)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        out = bill_ledger.remove_item(conn, org_id, bill_id, product_id)
    return {"ok": True, **out}


@router.patch("/{bill_id}/finalize", dependencies=[Depends(require_permission("bills:write"))])
def finalize_bill(
    bill_id: str,
    data: Optional[FinalizeIn] = None,
    org_id: str = Depends(get_org_id),
    user=Depends(get_current_user),
):
    data = data or FinalizeIn()
    with get_conn() as conn:
        set_org_context(conn, org_id)
        bill = bill_ledger.finalize_bill(
            conn,
            org_id,
            bill_id,
            actor=user["user_id"],
            discount_percent=data.discount_percent,
            tax_percent=data.tax_percent,
        )
    return {"ok": True, **bill}


@router.post("/{bill_id}/payment", dependencies=[Depends(require_permission("payments:write"))])
def pay_bill(bill_id: str, data: PaymentIn, org_id: str = Depends(get_org_id), user=Depends(get_current_user)):
    # Parse before opening a connection: a bad method never touches the database.
    tender = payments.parse_payment_method(data.method, data.model_dump())
    with get_conn() as conn:
        set_org_context(conn, org_id)
        payment = payments.process_payment(conn, org_id, bill_id, data.amount, tender, actor=user["user_id"])
    return {
        "ok": True,
        "bill_id": bill_id,
        "payment_status": payment["payment_status"],
        "payment_method": payment["payment_method"],
        "payment": payment,
    }


@router.get("/{bill_id}/payments", dependencies=[Depends(require_permission("bills:read"))])
def payment_history(bill_id: str, org_id: str = Depends(get_org_id)):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        payment = payments.get_payment_history(conn, org_id, bill_id)
    return {"ok": True, "bill_id": bill_id, "payment": payment}


@router.post("/{bill_id}/email-receipt", status_code=202, dependencies=[Depends(require_permission("bills:read"))])
def email_receipt(
    bill_id: str,
    data: EmailReceiptIn,
    org_id: str = Depends(get_org_id),
    queue: NotificationQueue = Depends(get_notification_queue),
):
    with get_conn() as conn:
        set_org_context(conn, org_id)
        bill = bill_ledger.get_bill(conn, org_id, bill_id)
    if bill["status"] != "finalized":
        raise BillNotFinalized(bill_id=bill_id)
    queued = queue.enqueue(
        "bill.receipt",
        {
            "to": data.email,
            "bill_id": bill["id"],
            "bill_number": bill["bill_number"],
            "total": bill["total"],
            "items": bill["items"],
            "finalized_at": bill["finalized_at"],
        },
        org_id=org_id,
    )
    return {"ok": True, "queued": queued}
