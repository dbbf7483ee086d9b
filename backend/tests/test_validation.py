import pytest
from pydantic import BaseModel, ValidationError

from backend.app.validation import BillStatus, InviteRole, PaymentMethod, PlanName


class _M(BaseModel):
    status: BillStatus
    method: PaymentMethod
    role: InviteRole
    plan: PlanName


def test_validation_types_normalize_case():
    m = _M(status="FINALIZED", method=" Cash ", role="Store_Manager", plan="Starter-Monthly")
    assert m.status == "finalized"
    assert m.method == "cash"
    assert m.role == "store_manager"
    assert m.plan == "starter-monthly"


def test_payment_method_rejects_spaces_and_weird_chars():
    # spaces are normalized out by strip, but internal spaces should fail regex
    with pytest.raises(ValidationError):
        _M(status="draft", method="cash money", role="cashier", plan="starter")


def test_bill_status_is_closed():
    with pytest.raises(ValidationError):
        _M(status="void", method="cash", role="cashier", plan="starter")
