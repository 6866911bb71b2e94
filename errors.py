"""
Error taxonomy shared by the services and the HTTP layer.

Every error is rendered as ``{"error": <message>, "code": <code>}`` by the
exception handlers registered in ``app.py``.
"""
from typing import Any, Dict, Optional


class AppError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def body(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}

    def headers(self) -> Optional[Dict[str, str]]:
        return None


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"


class NotFound(AppError):
    status_code = 404
    code = "not_found"


class Conflict(AppError):
    status_code = 409
    code = "conflict"


class InternalError(AppError):
    status_code = 500
    code = "internal_error"


class PaymentRequired(AppError):
    """No usable payment proof. Carries the x402 requirements document."""

    status_code = 402
    code = "payment_required"

    def __init__(self, message: str, document: Optional[Dict[str, Any]] = None,
                 encoded: Optional[str] = None):
        super().__init__(message)
        self.document = document or {}
        self.encoded = encoded

    def body(self) -> Dict[str, Any]:
        return {**self.document, "error": self.message, "code": self.code}

    def headers(self) -> Optional[Dict[str, str]]:
        if not self.encoded:
            return None
        return {"PAYMENT-REQUIRED": self.encoded}


class PaymentReplayed(PaymentRequired):
    code = "payment_replayed"


class PaymentSettlementFailed(AppError):
    """The operation ran and its result was recorded, but the charge did not go through."""

    status_code = 402
    code = "settlement_failed"
