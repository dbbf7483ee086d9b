"""
Per-product, per-organization stock authority.

Every statement is scoped by `(org_id, id)`, so a product id from another
tenant is simply not found. Decrements are a single conditional UPDATE: the
row changes only if enough stock is there at the moment the row is written,
which closes the race between concurrent finalizations of bills sharing a
product. Callers run `decrement` inside their own transaction; raising out of
it aborts that transaction and nothing is applied.
"""
from typing import Optional

from .errors import InsufficientStock, ProductNotFound
from .logs import json_log
from .money import validate_quantity


def get_product(cur, org_id: str, product_id: str) -> Optional[dict]:
    cur.execute(
        """
        SELECT id, name, price, quantity_in_stock
        FROM products
        WHERE org_id = %s AND id = %s
        """,
        (org_id, product_id),
    )
    return cur.fetchone()


def reserve_check(cur, product_id: str, org_id: str, quantity: int) -> bool:
    """Advisory availability check. Reads only; the answer can be stale by commit time."""
    validate_quantity(quantity)
    row = get_product(cur, org_id, product_id)
    if not row:
        raise ProductNotFound(product_id=str(product_id))
    return int(row["quantity_in_stock"] or 0) >= quantity


def decrement(
    cur,
    product_id: str,
    org_id: str,
    quantity: int,
    source_type: str = "bill",
    source_id: Optional[str] = None,
) -> int:
    """Atomically take `quantity` units. Returns the remaining stock."""
    validate_quantity(quantity)
    cur.execute(
        """
        UPDATE products
        SET quantity_in_stock = quantity_in_stock - %s,
            updated_at = now()
        WHERE org_id = %s AND id = %s AND quantity_in_stock >= %s
        RETURNING quantity_in_stock
        """,
        (quantity, org_id, product_id, quantity),
    )
    row = cur.fetchone()
    if not row:
        if not get_product(cur, org_id, product_id):
            raise ProductNotFound(product_id=str(product_id))
        json_log("warning", "stock.insufficient", org_id=org_id, product_id=product_id, requested=quantity)
        raise InsufficientStock(
            f"insufficient stock for product {product_id}",
            product_id=str(product_id),
            requested=quantity,
        )

    cur.execute(
        """
        INSERT INTO stock_moves (id, org_id, product_id, qty_delta, source_type, source_id)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
        """,
        (org_id, product_id, -quantity, source_type, source_id),
    )
    return int(row["quantity_in_stock"])
