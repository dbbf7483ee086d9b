from fastapi import APIRouter, Depends
from ..db import get_conn, set_org_context
from ..deps import get_org_id, require_permission
from .. import stock_ledger

router = APIRouter(prefix="/products", tags=["stock"])


@router.get("/{product_id}/availability", dependencies=[Depends(require_permission("stock:read"))])
def availability(product_id: str, quantity: int = 1, org_id: str = Depends(get_org_id)):
    # Advisory: the answer can change before the bill is finalized.
    with get_conn() as conn:
        set_org_context(conn, org_id)
        with conn.cursor() as cur:
            available = stock_ledger.reserve_check(cur, product_id, org_id, quantity)
    return {"ok": True, "product_id": product_id, "quantity": quantity, "available": available}
