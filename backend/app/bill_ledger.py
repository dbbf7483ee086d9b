"""
Bill lifecycle: `draft --add/update/remove--> draft --finalize--> finalized`.

`finalized` is terminal. Every mutation locks the bill row (`FOR UPDATE`) so a
finalize serializes against concurrent item writes and other finalizes on the
same bill. Finalize decrements stock and freezes totals in one transaction;
any failure leaves the bill in draft with stock untouched.
"""
from decimal import Decimal
from typing import Optional

from . import stock_ledger
from .db import set_txn_timeouts
from .errors import (
    BillAlreadyFinalized,
    BillItemNotFound,
    BillNotFound,
    EmptyBill,
    OrganizationNotFound,
    ProductNotFound,
    StoreRequired,
)
from .logs import json_log
from .money import compute_totals, q_money, to_decimal, validate_percent, validate_quantity

BILL_COLUMNS = """
    id, org_id, bill_number, customer_id, notes, status,
    subtotal, discount_percent, tax_percent, discount, tax, total,
    payment_status, payment_method, created_by, finalized_at, finalized_by, created_at
"""


def fetch_bill(cur, org_id: str, bill_id: str, *, lock: bool) -> dict:
    cur.execute(
        f"""
        SELECT {BILL_COLUMNS}
        FROM bills
        WHERE org_id = %s AND id = %s
        {"FOR UPDATE" if lock else ""}
        """,
        (org_id, bill_id),
    )
    bill = cur.fetchone()
    if not bill:
        raise BillNotFound(bill_id=str(bill_id))
    return bill


def _lock_draft_bill(cur, org_id: str, bill_id: str) -> dict:
    bill = fetch_bill(cur, org_id, bill_id, lock=True)
    if bill["status"] != "draft":
        raise BillAlreadyFinalized(bill_id=str(bill_id))
    return bill


def _load_items(cur, bill_id: str) -> list[dict]:
    cur.execute(
        """
        SELECT product_id, quantity, unit_price, line_total
        FROM bill_items
        WHERE bill_id = %s
        ORDER BY created_at, product_id
        """,
        (bill_id,),
    )
    return cur.fetchall()


def _recompute_subtotal(cur, bill_id: str) -> Decimal:
    cur.execute(
        """
        UPDATE bills
        SET subtotal = COALESCE((SELECT SUM(line_total) FROM bill_items WHERE bill_id = %s), 0),
            updated_at = now()
        WHERE id = %s
        RETURNING subtotal
        """,
        (bill_id, bill_id),
    )
    return to_decimal(cur.fetchone()["subtotal"])


def _with_items(bill: dict, items: list[dict], **extra) -> dict:
    out = dict(bill)
    out["items"] = [dict(i) for i in items]
    out.update(extra)
    return out


def create_bill(
    conn,
    org_id: str,
    actor: Optional[str] = None,
    customer_id: Optional[str] = None,
    notes: Optional[str] = None,
    discount_percent=0,
    tax_percent=0,
) -> dict:
    discount_percent = validate_percent(discount_percent, "discount_percent")
    tax_percent = validate_percent(tax_percent, "tax_percent")
    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            cur.execute("SELECT 1 FROM stores WHERE org_id = %s LIMIT 1", (org_id,))
            if not cur.fetchone():
                raise StoreRequired("organization has no store; bills cannot be created", org_id=str(org_id))

            # Per-organization bill numbering; the row lock also orders concurrent creates.
            cur.execute(
                """
                UPDATE organizations
                SET bill_seq = bill_seq + 1
                WHERE id = %s
                RETURNING bill_seq
                """,
                (org_id,),
            )
            seq = cur.fetchone()
            if not seq:
                raise OrganizationNotFound(org_id=str(org_id))
            bill_number = f"BILL-{int(seq['bill_seq']):06d}"

            cur.execute(
                f"""
                INSERT INTO bills
                  (id, org_id, bill_number, customer_id, notes, discount_percent, tax_percent, created_by)
                VALUES
                  (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
                RETURNING {BILL_COLUMNS}
                """,
                (org_id, bill_number, customer_id, notes, discount_percent, tax_percent, actor),
            )
            bill = cur.fetchone()
    json_log("info", "bill.created", org_id=org_id, bill_id=bill["id"], bill_number=bill_number)
    return _with_items(bill, [])


def add_item(conn, org_id: str, bill_id: str, product_id: str, quantity: int) -> dict:
    """Append a line, or merge into the existing line for the same product."""
    validate_quantity(quantity)
    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            _lock_draft_bill(cur, org_id, bill_id)
            product = stock_ledger.get_product(cur, org_id, product_id)
            if not product:
                raise ProductNotFound(product_id=str(product_id))

            unit_price = q_money(product["price"])
            cur.execute(
                """
                INSERT INTO bill_items (id, bill_id, org_id, product_id, quantity, unit_price, line_total)
                VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
                ON CONFLICT (bill_id, product_id) DO UPDATE
                SET quantity = bill_items.quantity + EXCLUDED.quantity,
                    line_total = (bill_items.quantity + EXCLUDED.quantity) * bill_items.unit_price
                RETURNING product_id, quantity, unit_price, line_total
                """,
                (bill_id, org_id, product_id, quantity, unit_price, q_money(unit_price * quantity)),
            )
            item = cur.fetchone()
            subtotal = _recompute_subtotal(cur, bill_id)
            # Advisory only: stock is taken at finalize, not here.
            available = stock_ledger.reserve_check(cur, product_id, org_id, int(item["quantity"]))
    return {"bill_id": bill_id, "item": dict(item), "subtotal": subtotal, "available": available}


def update_item(conn, org_id: str, bill_id: str, product_id: str, quantity: int) -> dict:
    """Set the quantity of an existing line."""
    validate_quantity(quantity)
    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            _lock_draft_bill(cur, org_id, bill_id)
            cur.execute(
                """
                UPDATE bill_items
                SET quantity = %s,
                    line_total = %s * unit_price
                WHERE bill_id = %s AND product_id = %s
                RETURNING product_id, quantity, unit_price, line_total
                """,
                (quantity, quantity, bill_id, product_id),
            )
            item = cur.fetchone()
            if not item:
                raise BillItemNotFound(bill_id=str(bill_id), product_id=str(product_id))
            subtotal = _recompute_subtotal(cur, bill_id)
            available = stock_ledger.reserve_check(cur, product_id, org_id, quantity)
    return {"bill_id": bill_id, "item": dict(item), "subtotal": subtotal, "available": available}


def remove_item(conn, org_id: str, bill_id: str, product_id: str) -> dict:
    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            _lock_draft_bill(cur, org_id, bill_id)
            cur.execute(
                """
                DELETE FROM bill_items
                WHERE bill_id = %s AND product_id = %s
                RETURNING product_id
                """,
                (bill_id, product_id),
            )
            if not cur.fetchone():
                raise BillItemNotFound(bill_id=str(bill_id), product_id=str(product_id))
            subtotal = _recompute_subtotal(cur, bill_id)
    return {"bill_id": bill_id, "removed": product_id, "subtotal": subtotal}


def finalize_bill(
    conn,
    org_id: str,
    bill_id: str,
    actor: Optional[str] = None,
    discount_percent=None,
    tax_percent=None,
) -> dict:
    """
    Freeze the bill and take its stock in one transaction.

    Re-finalizing returns the stored record (`already_finalized=True`) without
    touching stock, so client retries are safe.
    """
    if discount_percent is not None:
        discount_percent = validate_percent(discount_percent, "discount_percent")
    if tax_percent is not None:
        tax_percent = validate_percent(tax_percent, "tax_percent")

    with conn.transaction():
        with conn.cursor() as cur:
            set_txn_timeouts(cur)
            bill = fetch_bill(cur, org_id, bill_id, lock=True)
            items = _load_items(cur, bill_id)
            if bill["status"] == "finalized":
                json_log("info", "bill.finalize.replayed", org_id=org_id, bill_id=bill_id)
                return _with_items(bill, items, already_finalized=True)
            if not items:
                raise EmptyBill(bill_id=str(bill_id))

            # Stable product order keeps row-lock acquisition consistent across
            # concurrent finalizes touching the same products.
            for item in sorted(items, key=lambda i: str(i["product_id"])):
                stock_ledger.decrement(
                    cur,
                    item["product_id"],
                    org_id,
                    int(item["quantity"]),
                    source_type="bill",
                    source_id=bill_id,
                )

            d_pct = discount_percent if discount_percent is not None else to_decimal(bill["discount_percent"])
            t_pct = tax_percent if tax_percent is not None else to_decimal(bill["tax_percent"])
            subtotal = sum((to_decimal(i["line_total"]) for i in items), Decimal("0"))
            totals = compute_totals(subtotal, d_pct, t_pct)

            cur.execute(
                f"""
                UPDATE bills
                SET status = 'finalized',
                    subtotal = %s,
                    discount_percent = %s,
                    tax_percent = %s,
                    discount = %s,
                    tax = %s,
                    total = %s,
                    finalized_at = now(),
                    finalized_by = %s,
                    updated_at = now()
                WHERE id = %s AND status = 'draft'
                RETURNING {BILL_COLUMNS}
                """,
                (
                    totals["subtotal"],
                    d_pct,
                    t_pct,
                    totals["discount"],
                    totals["tax"],
                    totals["total"],
                    actor,
                    bill_id,
                ),
            )
            finalized = cur.fetchone()
            if not finalized:
                raise BillAlreadyFinalized(bill_id=str(bill_id))

    json_log(
        "info",
        "bill.finalized",
        org_id=org_id,
        bill_id=bill_id,
        total=finalized["total"],
        lines=len(items),
        actor=actor,
    )
    return _with_items(finalized, items, already_finalized=False)


def get_bill(conn, org_id: str, bill_id: str) -> dict:
    with conn.cursor() as cur:
        bill = fetch_bill(cur, org_id, bill_id, lock=False)
        return _with_items(bill, _load_items(cur, bill_id))


def list_bills(conn, org_id: str, status: Optional[str] = None, limit: int = 50) -> list[dict]:
    limit = max(1, min(int(limit or 50), 500))
    with conn.cursor() as cur:
        if status:
            cur.execute(
                f"""
                SELECT {BILL_COLUMNS}
                FROM bills
                WHERE org_id = %s AND status = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (org_id, status, limit),
            )
        else:
            cur.execute(
                f"""
                SELECT {BILL_COLUMNS}
                FROM bills
                WHERE org_id = %s
                ORDER BY created_at DESC
                LIMIT %s
                """,
                (org_id, limit),
            )
        return cur.fetchall()
