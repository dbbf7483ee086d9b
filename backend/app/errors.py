"""
Error taxonomy for the billing engine.

Every error carries a stable machine-readable `code` (what clients branch on),
a human message and the HTTP status it maps to. Engine modules raise these;
`main.py` renders them as `{"ok": false, "error": code, "message": ...}`.
"""
from typing import Any, Optional


class EngineError(Exception):
    status_code = 400
    code = "EngineError"
    message = "request failed"

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None, **details: Any):
        self.message = message or self.message
        if code:
            self.code = code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        out = {"ok": False, "error": self.code, "message": self.message}
        out.update({k: v for k, v in self.details.items() if v is not None})
        return out


# Categories.

class ValidationError(EngineError):
    status_code = 400
    code = "ValidationError"
    message = "validation failed"


class StateConflict(EngineError):
    status_code = 400
    code = "StateConflict"
    message = "state conflict"


class ResourceExhausted(EngineError):
    status_code = 400
    code = "ResourceExhausted"
    message = "resource exhausted"


class AuthFailure(EngineError):
    status_code = 401
    code = "AuthFailure"
    message = "unauthorized"


class NotFound(EngineError):
    status_code = 404
    code = "NotFound"
    message = "not found"


class TransactionTimeout(EngineError):
    status_code = 503
    code = "TransactionTimeout"
    message = "transaction timed out and was rolled back"


# Validation.

class InvalidPercent(ValidationError):
    code = "InvalidPercent"
    message = "percent must be between 0 and 100"


class InvalidQuantity(ValidationError):
    code = "InvalidQuantity"
    message = "quantity must be a positive integer"


class EmptyBill(ValidationError):
    code = "EmptyBill"
    message = "bill has no items"


class AmountMismatch(ValidationError):
    code = "AmountMismatch"
    message = "payment amount does not match bill total"


class UnsupportedMethod(ValidationError):
    code = "UnsupportedMethod"
    message = "unsupported payment method"


class MissingProviderReference(ValidationError):
    code = "MissingProviderReference"
    message = "external gateway payments require a provider transaction id"


class UnknownPlan(ValidationError):
    code = "UnknownPlan"
    message = "unknown subscription plan"


class StoreRequired(ValidationError):
    code = "StoreRequired"
    message = "organization must have at least one store"


# State conflicts.

class BillAlreadyFinalized(StateConflict):
    code = "BillAlreadyFinalized"
    message = "bill is already finalized"


class BillNotFinalized(StateConflict):
    code = "BillNotFinalized"
    message = "bill must be finalized before payment"


class DuplicatePayment(StateConflict):
    code = "DuplicatePayment"
    message = "bill already has a completed payment"


class SubscriptionAlreadyUsed(StateConflict):
    status_code = 409
    code = "SubscriptionAlreadyUsed"
    message = "subscription has already been used to register an organization"


class InviteNotPending(StateConflict):
    status_code = 409
    code = "InviteNotPending"
    message = "invite is no longer pending"


# Business-rule rejections.

class InsufficientStock(ResourceExhausted):
    code = "InsufficientStock"
    message = "insufficient stock"


class PlanLimitExceeded(ResourceExhausted):
    code = "PlanLimitExceeded"
    message = "Plan limit exceeded"


# Auth.

class InvalidSignature(AuthFailure):
    # Fixed message: never reveal which part of the signature failed.
    status_code = 400
    code = "InvalidSignature"
    message = "Invalid signature"


class InvalidOnboardingToken(AuthFailure):
    code = "InvalidOnboardingToken"
    message = "invalid or expired onboarding token"


class InvalidInvite(AuthFailure):
    code = "InvalidInvite"
    message = "invalid or expired invite"


# Not found.

class BillNotFound(NotFound):
    code = "BillNotFound"
    message = "bill not found"


class ProductNotFound(NotFound):
    # Adding an unknown product to a bill is a caller error, not a missing route.
    status_code = 400
    code = "ProductNotFound"
    message = "product not found"


class OrganizationNotFound(NotFound):
    code = "OrganizationNotFound"
    message = "organization not found"


class RoleNotFound(NotFound):
    code = "RoleNotFound"
    message = "role not found"


class BillItemNotFound(NotFound):
    code = "BillItemNotFound"
    message = "bill has no line for this product"


class InviteNotFound(NotFound):
    code = "InviteNotFound"
    message = "invite not found"


class UserAlreadyExists(StateConflict):
    status_code = 409
    code = "UserAlreadyExists"
    message = "a user with this email or username already exists"


class NotConfigured(EngineError):
    status_code = 503
    code = "NotConfigured"
    message = "service is not configured"
