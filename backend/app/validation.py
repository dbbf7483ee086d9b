from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


# Canonical values mirror CHECK constraints in `backend/db/migrations/001_init.sql`.
BillStatus = Annotated[Literal["draft", "finalized"], BeforeValidator(_to_lower_str)]
InviteRole = Annotated[Literal["admin", "store_manager", "cashier"], BeforeValidator(_to_lower_str)]


# Payment methods are parsed into a closed set by `payments.parse_payment_method`.
# Keep a tight, safe character set here so unknown methods reach that parser as
# plain identifiers and fail there with a domain error.
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_-]*$"),
]


# e.g. `starter-monthly`, `premium-yearly`, `starter`.
PlanName = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=40, pattern=r"^[a-z][a-z0-9]*(-[a-z]+)?$"),
]
